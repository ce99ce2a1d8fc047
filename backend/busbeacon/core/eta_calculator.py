"""Calculate ETA to stops from a fused vehicle state and straight-line distance."""

import logging
import math

from busbeacon.core.geomath import distance_meters
from busbeacon.schemas.beacon import Position
from busbeacon.schemas.route import NearestStop, Stop
from busbeacon.schemas.vehicle import EtaBoard, EtaResult, VehicleState

logger = logging.getLogger(__name__)

# Cruising speed used when the vehicle speed is unknown or zero (~30 km/h)
DEFAULT_SPEED_MPS = 8.33
# Fixed 20% allowance for dwell time at stops and traffic
ETA_BUFFER_FACTOR = 1.2
APPROACHING_THRESHOLD_MINUTES = 5


def round_half_up(x: float) -> int:
    """Nearest int with halves rounded up (150 s -> 3 min), for non-negative x."""
    return math.floor(x + 0.5)


class EtaCalculator:
    """Speed-based ETA using great-circle distance from the vehicle to each stop."""

    def __init__(
        self,
        default_speed_mps: float = DEFAULT_SPEED_MPS,
        buffer_factor: float = ETA_BUFFER_FACTOR,
        approaching_threshold_minutes: int = APPROACHING_THRESHOLD_MINUTES,
    ) -> None:
        if default_speed_mps <= 0:
            raise ValueError("default_speed_mps must be positive")
        self.default_speed_mps = default_speed_mps
        self.buffer_factor = buffer_factor
        self.approaching_threshold_seconds = approaching_threshold_minutes * 60

    def effective_speed(self, speed_mps: float | None) -> float:
        if speed_mps is not None and speed_mps > 0:
            return speed_mps
        return self.default_speed_mps

    def calculate(
        self,
        state: VehicleState,
        stops: list[Stop],
        now_ms: int,
    ) -> list[EtaResult]:
        """ETA for every stop, sorted ascending by eta_seconds (not by route order)."""
        speed = self.effective_speed(state.speed_mps)

        results = []
        for stop in stops:
            dist = distance_meters(state.position, stop.position)
            eta = dist / speed * self.buffer_factor
            results.append(EtaResult(
                stop_id=stop.id,
                stop_name=stop.name,
                distance_meters=round(dist, 1),
                eta_seconds=round_half_up(eta),
                eta_minutes=round_half_up(eta / 60),
                estimated_arrival_at_ms=now_ms + round_half_up(eta * 1000),
            ))

        results.sort(key=lambda r: r.eta_seconds)
        return results

    def approaching(self, results: list[EtaResult]) -> list[EtaResult]:
        """Stops close enough to warrant an arrival alert."""
        return [r for r in results if r.eta_seconds <= self.approaching_threshold_seconds]

    def board(self, state: VehicleState, stops: list[Stop], now_ms: int) -> EtaBoard:
        results = self.calculate(state, stops, now_ms)
        return EtaBoard(
            vehicle_id=state.vehicle_id,
            computed_at_ms=now_ms,
            results=results,
            approaching=self.approaching(results),
        )

    @staticmethod
    def nearest_stop(position: Position, stops: list[Stop]) -> NearestStop | None:
        nearest = None
        min_dist = float("inf")
        for stop in stops:
            dist = distance_meters(position, stop.position)
            if dist < min_dist:
                min_dist = dist
                nearest = stop
        if nearest is None:
            return None
        return NearestStop(stop=nearest, distance_meters=min_dist)

    @staticmethod
    def route_progress(position: Position, stops: list[Stop]) -> float:
        """Percentage (0-100) of the route covered, measured along the stop sequence.

        The vehicle is attributed to the segment starting at its nearest stop
        (the last stop is never a segment start); progress into that segment is
        the segment length minus the remaining distance to its end stop.
        """
        ordered = sorted(stops, key=lambda s: s.order)
        if len(ordered) < 2:
            return 0.0

        segments = [
            distance_meters(a.position, b.position)
            for a, b in zip(ordered, ordered[1:])
        ]
        total = sum(segments)
        if total <= 0:
            return 0.0

        nearest_idx = min(
            range(len(ordered) - 1),
            key=lambda i: distance_meters(position, ordered[i].position),
        )
        traveled = sum(segments[:nearest_idx])
        to_next = distance_meters(position, ordered[nearest_idx + 1].position)
        traveled += segments[nearest_idx] - to_next

        return max(0.0, min(100.0, traveled / total * 100))
