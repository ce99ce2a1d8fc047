"""APScheduler setup for periodic tasks."""

import logging

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from busbeacon.core.beacon_service import BeaconService
from busbeacon.core.fleet_tracker import FleetTracker

logger = logging.getLogger(__name__)


def _fusion_job_id(vehicle_id: str) -> str:
    return f"fuse:{vehicle_id}"


def schedule_vehicle(scheduler: AsyncIOScheduler, tracker: FleetTracker, vehicle_id: str) -> None:
    """One fusion job per vehicle; max_instances=1 keeps cycles from overlapping."""
    from busbeacon.config import settings

    scheduler.add_job(
        tracker.run_cycle,
        "interval",
        seconds=settings.fusion_interval_seconds,
        args=[vehicle_id],
        id=_fusion_job_id(vehicle_id),
        name=f"Fuse beacons for vehicle {vehicle_id}",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )


def unschedule_vehicle(scheduler: AsyncIOScheduler, vehicle_id: str) -> None:
    try:
        scheduler.remove_job(_fusion_job_id(vehicle_id))
    except JobLookupError:
        logger.debug("No fusion job for vehicle %s", vehicle_id)


def create_scheduler(tracker: FleetTracker, beacons: BeaconService) -> AsyncIOScheduler:
    """Create and configure the scheduler with all jobs."""
    from busbeacon.config import settings

    scheduler = AsyncIOScheduler()

    for vehicle_id in tracker.vehicle_ids:
        schedule_vehicle(scheduler, tracker, vehicle_id)

    # Vehicles registered later get their own job
    tracker.on_track = lambda vid: schedule_vehicle(scheduler, tracker, vid)
    tracker.on_untrack = lambda vid: unschedule_vehicle(scheduler, vid)

    # Purge stopped beacon sessions every N hours
    scheduler.add_job(
        beacons.purge_inactive,
        "interval",
        hours=settings.session_cleanup_hours,
        args=[settings.inactive_session_retention_hours * 3600 * 1000],
        id="purge_sessions",
        name="Purge inactive beacon sessions",
        max_instances=1,
    )

    return scheduler
