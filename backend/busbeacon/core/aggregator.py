"""Fuse simultaneous beacon reports for one vehicle into a canonical state.

Each report is weighted by the inverse of its accuracy radius. The fused
accuracy is max(accuracy) / sqrt(n): a heuristic that improves with more
corroborating beacons. It is a documented approximation, not an
inverse-variance estimate.
"""

import asyncio
import enum
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from busbeacon.core.geomath import distance_meters
from busbeacon.core.stores import ReportStore, VehicleStateStore
from busbeacon.errors import StoreUnavailable
from busbeacon.schemas.beacon import BeaconReport, Position
from busbeacon.schemas.vehicle import VehicleState

logger = logging.getLogger(__name__)

# Reports older than this are not eligible for fusion
STALENESS_WINDOW_MS = 120_000
# Elapsed time below which no speed is derived
MIN_SPEED_INTERVAL_MS = 1_000
MIN_ACCURACY_M = 1.0


def _now_ms() -> int:
    return int(time.time() * 1000)


class FusionStatus(str, enum.Enum):
    UPDATED = "updated"
    NO_LIVE_BEACONS = "no_live_beacons"
    STORE_UNAVAILABLE = "store_unavailable"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass
class FusedFix:
    position: Position
    accuracy_meters: float
    beacon_count: int


@dataclass
class FusionOutcome:
    vehicle_id: str
    status: FusionStatus
    state: VehicleState | None = None  # new state, or the retained one
    live_reports: int = 0

    @property
    def updated(self) -> bool:
        return self.status is FusionStatus.UPDATED


def live_reports(
    reports: list[BeaconReport],
    vehicle_id: str,
    now_ms: int,
    staleness_window_ms: int = STALENESS_WINDOW_MS,
) -> list[BeaconReport]:
    """Reports eligible for fusion: active, this vehicle, positioned, fresh."""
    live = []
    for r in reports:
        if r.vehicle_id != vehicle_id or not r.active:
            continue
        if r.position is None:
            logger.debug("Skipping malformed report from beacon %s (no position)", r.beacon_id)
            continue
        if now_ms - r.captured_at_ms >= staleness_window_ms:
            continue
        live.append(r)
    return live


def fuse(reports: list[BeaconReport]) -> FusedFix | None:
    """Weighted fusion of already-filtered reports. None for an empty list."""
    if not reports:
        return None

    if len(reports) == 1:
        r = reports[0]
        return FusedFix(
            position=r.position,
            accuracy_meters=max(r.accuracy_meters, MIN_ACCURACY_M),
            beacon_count=1,
        )

    total_w = 0.0
    lat_w = 0.0
    lon_w = 0.0
    worst = 0.0
    for r in reports:
        acc = max(r.accuracy_meters, MIN_ACCURACY_M)
        w = 1.0 / acc
        total_w += w
        lat_w += r.position.lat * w
        lon_w += r.position.lon * w
        worst = max(worst, acc)

    n = len(reports)
    return FusedFix(
        position=Position(lat=lat_w / total_w, lon=lon_w / total_w),
        accuracy_meters=worst / math.sqrt(n),
        beacon_count=n,
    )


def derive_speed(
    prior: VehicleState | None,
    position: Position,
    now_ms: int,
    min_interval_ms: int = MIN_SPEED_INTERVAL_MS,
) -> float | None:
    """Speed in m/s between the prior fused position and the new one."""
    if prior is None:
        return None
    elapsed_ms = now_ms - prior.observed_at_ms
    if elapsed_ms <= 0 or elapsed_ms < min_interval_ms:
        return None
    return distance_meters(prior.position, position) / (elapsed_ms / 1000)


class FusionAggregator:
    """Runs fusion cycles against the report and state stores.

    At most one cycle per vehicle is in flight: cycles for the same vehicle
    queue on a per-vehicle lock, different vehicles run concurrently.
    """

    def __init__(
        self,
        reports: ReportStore,
        states: VehicleStateStore,
        staleness_window_ms: int = STALENESS_WINDOW_MS,
        min_speed_interval_ms: int = MIN_SPEED_INTERVAL_MS,
        timeout_seconds: float | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.reports = reports
        self.states = states
        self.staleness_window_ms = staleness_window_ms
        self.min_speed_interval_ms = min_speed_interval_ms
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, vehicle_id: str) -> asyncio.Lock:
        lock = self._locks.get(vehicle_id)
        if lock is None:
            lock = self._locks[vehicle_id] = asyncio.Lock()
        return lock

    def forget(self, vehicle_id: str) -> None:
        """Drop the per-vehicle lock of a vehicle no longer tracked."""
        lock = self._locks.get(vehicle_id)
        if lock is not None and not lock.locked():
            del self._locks[vehicle_id]

    async def aggregate(self, vehicle_id: str) -> FusionOutcome:
        """One fusion cycle. Store failures and timeouts leave the prior state untouched."""
        async with self._lock_for(vehicle_id):
            try:
                if self.timeout_seconds is None:
                    return await self._cycle(vehicle_id)
                return await asyncio.wait_for(self._cycle(vehicle_id), self.timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning(
                    "Fusion cycle for vehicle %s exceeded %.1fs, abandoned",
                    vehicle_id, self.timeout_seconds,
                )
                return FusionOutcome(vehicle_id, FusionStatus.TIMED_OUT)
            except StoreUnavailable as e:
                logger.warning(
                    "Fusion cycle for vehicle %s aborted, store unavailable (%s): %s",
                    vehicle_id, e.operation, e,
                )
                return FusionOutcome(vehicle_id, FusionStatus.STORE_UNAVAILABLE)

    async def _cycle(self, vehicle_id: str) -> FusionOutcome:
        now_ms = self.clock()
        since_ms = now_ms - self.staleness_window_ms
        snapshot = await self.reports.live_reports(vehicle_id, since_ms)
        live = live_reports(snapshot, vehicle_id, now_ms, self.staleness_window_ms)
        prior = await self.states.get(vehicle_id)

        fused = fuse(live)
        if fused is None:
            logger.debug("No live beacons for vehicle %s", vehicle_id)
            return FusionOutcome(vehicle_id, FusionStatus.NO_LIVE_BEACONS, state=prior)

        state = VehicleState(
            vehicle_id=vehicle_id,
            position=fused.position,
            accuracy_meters=fused.accuracy_meters,
            speed_mps=derive_speed(prior, fused.position, now_ms, self.min_speed_interval_ms),
            contributing_beacon_count=fused.beacon_count,
            observed_at_ms=now_ms,
        )
        await self.states.put(state)
        logger.debug(
            "Vehicle %s fused from %d beacons (acc %.1fm)",
            vehicle_id, fused.beacon_count, fused.accuracy_meters,
        )
        return FusionOutcome(vehicle_id, FusionStatus.UPDATED, state=state, live_reports=len(live))
