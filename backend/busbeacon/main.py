"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from busbeacon.api import beacons, vehicles, ws
from busbeacon.config import settings
from busbeacon.core.aggregator import FusionAggregator
from busbeacon.core.beacon_service import BeaconService
from busbeacon.core.broadcaster import Broadcaster
from busbeacon.core.eta_calculator import EtaCalculator
from busbeacon.core.fleet_tracker import FleetTracker
from busbeacon.core.scheduler import create_scheduler
from busbeacon.core.stores import SqlReportStore, SqlStopCatalog, SqlVehicleStateStore
from busbeacon.db.session import async_session, engine
from busbeacon.errors import StoreUnavailable
from busbeacon.models.base import Base
from busbeacon.models import tables  # noqa: F401

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    # Create tables if they don't exist
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Initialize services
    reports = SqlReportStore(async_session)
    states = SqlVehicleStateStore(async_session)
    stop_catalog = SqlStopCatalog(async_session)
    broadcaster = Broadcaster()
    await broadcaster.connect()

    aggregator = FusionAggregator(
        reports,
        states,
        staleness_window_ms=settings.staleness_window_ms,
        min_speed_interval_ms=settings.min_speed_interval_ms,
        timeout_seconds=settings.fusion_timeout_seconds,
    )
    eta_calculator = EtaCalculator(
        default_speed_mps=settings.default_speed_mps,
        buffer_factor=settings.eta_buffer_factor,
        approaching_threshold_minutes=settings.approaching_threshold_minutes,
    )
    tracker = FleetTracker(aggregator, eta_calculator, broadcaster)
    beacon_service = BeaconService(reports)

    # Wire up API modules
    ws.broadcaster = broadcaster
    vehicles.tracker = tracker
    vehicles.stop_catalog = stop_catalog
    beacons.beacons = beacon_service

    # Restore tracked vehicles and their last known state
    await tracker.load_states()
    try:
        for vehicle_id, stops in (await stop_catalog.load_all()).items():
            tracker.track(vehicle_id, stops)
    except StoreUnavailable:
        logger.exception("Failed to load stop lists - vehicles must be re-registered")

    # Start scheduler
    scheduler = create_scheduler(tracker, beacon_service)
    scheduler.start()
    await tracker.run_all()
    logger.info(
        "Beacon fusion started - %d vehicles, fusing every %ds",
        len(tracker.vehicle_ids), settings.fusion_interval_seconds,
    )

    yield

    # Shutdown
    scheduler.shutdown(wait=False)
    await broadcaster.close()
    await engine.dispose()
    logger.info("Beacon fusion shut down")


app = FastAPI(
    title="Bus Beacon Fusion & ETA",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(beacons.router)
app.include_router(vehicles.router)
app.include_router(ws.router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}
