"""Beacon session lifecycle: a rider starts, updates and stops sharing a position."""

import logging
import time
from collections.abc import Callable

from busbeacon.core.geomath import validate_coordinate
from busbeacon.core.sampler import AdaptiveSampler
from busbeacon.core.stores import ReportStore
from busbeacon.errors import InvalidCoordinate, StoreUnavailable
from busbeacon.schemas.beacon import BeaconReport, PositionFix

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class BeaconService:
    def __init__(self, reports: ReportStore, clock: Callable[[], int] = _now_ms) -> None:
        self.reports = reports
        self.clock = clock

    async def start_beacon(self, beacon_id: str, vehicle_id: str, fix: PositionFix) -> BeaconReport:
        """Open (or reopen) a session with its first fix."""
        validate_coordinate(fix.position.lat, fix.position.lon)
        report = BeaconReport(
            beacon_id=beacon_id,
            vehicle_id=vehicle_id,
            position=fix.position,
            accuracy_meters=fix.accuracy_meters,
            captured_at_ms=fix.captured_at_ms,
            active=True,
            updated_at_ms=self.clock(),
        )
        await self.reports.upsert(report)
        logger.info("Beacon %s started for vehicle %s", beacon_id, vehicle_id)
        return report

    async def update_location(self, beacon_id: str, fix: PositionFix) -> BeaconReport | None:
        """Overwrite the latest fix of an active session. Unknown/stopped sessions are ignored."""
        validate_coordinate(fix.position.lat, fix.position.lon)
        current = await self.reports.get(beacon_id)
        if current is None or not current.active:
            logger.debug("Ignoring location update for inactive beacon %s", beacon_id)
            return None
        report = current.model_copy(update={
            "position": fix.position,
            "accuracy_meters": fix.accuracy_meters,
            "captured_at_ms": fix.captured_at_ms,
            "updated_at_ms": self.clock(),
        })
        await self.reports.upsert(report)
        return report

    async def stop_beacon(self, beacon_id: str) -> bool:
        """Mark the session inactive; the row is purged later."""
        current = await self.reports.get(beacon_id)
        if current is None:
            return False
        if current.active:
            await self.reports.upsert(
                current.model_copy(update={"active": False, "updated_at_ms": self.clock()})
            )
            logger.info("Beacon %s stopped", beacon_id)
        return True

    async def active_beacons(self, vehicle_id: str) -> list[BeaconReport]:
        return await self.reports.active_for_vehicle(vehicle_id)

    async def purge_inactive(self, retention_ms: int) -> int:
        """Delete inactive sessions last touched more than retention_ms ago."""
        try:
            deleted = await self.reports.purge_inactive(self.clock() - retention_ms)
        except StoreUnavailable:
            logger.exception("Failed to purge inactive beacon sessions")
            return 0
        if deleted:
            logger.info("Deleted %d inactive beacon sessions", deleted)
        return deleted

    async def pump(self, beacon_id: str, sampler: AdaptiveSampler) -> int:
        """Write each sampler emission to the report store until the sampler stops.

        Store failures and out-of-range samples are logged and the next sample
        is written as usual.
        """
        written = 0
        async for fix in sampler.samples():
            try:
                if await self.update_location(beacon_id, fix) is not None:
                    written += 1
            except InvalidCoordinate as e:
                logger.warning("Dropping sample for beacon %s: %s", beacon_id, e)
            except StoreUnavailable:
                logger.exception("Failed to write sample for beacon %s", beacon_id)
        return written
