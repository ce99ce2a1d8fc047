"""Main orchestrator: per-vehicle fusion cycle, ETA computation, publishing."""

import asyncio
import logging
from collections.abc import Callable

from busbeacon.core.aggregator import FusionAggregator, FusionOutcome, FusionStatus
from busbeacon.core.broadcaster import Broadcaster
from busbeacon.core.eta_calculator import EtaCalculator
from busbeacon.errors import StoreUnavailable
from busbeacon.schemas.route import Stop
from busbeacon.schemas.vehicle import ApproachingAlert, EtaBoard, VehicleState, VehicleUpdate

logger = logging.getLogger(__name__)


class FleetTracker:
    """Runs "read reports -> fuse -> write state -> ETAs -> alerts" per vehicle."""

    def __init__(
        self,
        aggregator: FusionAggregator,
        eta_calculator: EtaCalculator,
        broadcaster: Broadcaster | None = None,
    ) -> None:
        self.aggregator = aggregator
        self.eta_calculator = eta_calculator
        self.broadcaster = broadcaster

        # vehicle_id -> stops ordered by route order
        self._stops: dict[str, list[Stop]] = {}
        # Latest fused (or retained) state per vehicle, for API reads
        self.current_states: dict[str, VehicleState] = {}
        self.eta_boards: dict[str, EtaBoard] = {}

        # Called with the vehicle id when a vehicle starts/stops being tracked
        self.on_track: Callable[[str], None] | None = None
        self.on_untrack: Callable[[str], None] | None = None

    @property
    def vehicle_ids(self) -> list[str]:
        return list(self._stops)

    def track(self, vehicle_id: str, stops: list[Stop]) -> None:
        """Register a vehicle with its route stops (replaces a previous stop list)."""
        is_new = vehicle_id not in self._stops
        self._stops[vehicle_id] = sorted(stops, key=lambda s: s.order)
        self.eta_boards.pop(vehicle_id, None)
        if is_new:
            logger.info("Tracking vehicle %s (%d stops)", vehicle_id, len(stops))
            if self.on_track:
                self.on_track(vehicle_id)

    def untrack(self, vehicle_id: str) -> None:
        if self._stops.pop(vehicle_id, None) is None:
            return
        self.eta_boards.pop(vehicle_id, None)
        self.aggregator.forget(vehicle_id)
        logger.info("Stopped tracking vehicle %s", vehicle_id)
        if self.on_untrack:
            self.on_untrack(vehicle_id)

    def stops_for(self, vehicle_id: str) -> list[Stop]:
        return list(self._stops.get(vehicle_id, []))

    async def load_states(self) -> None:
        """Prime the in-process cache with the last persisted states."""
        try:
            states = await self.aggregator.states.all()
        except StoreUnavailable:
            logger.exception("Failed to load vehicle states from store")
            return
        for s in states:
            self.current_states[s.vehicle_id] = s
        logger.info("Loaded %d vehicle states", len(states))

    async def run_cycle(self, vehicle_id: str) -> FusionOutcome:
        """Single fusion cycle for one vehicle. Runtime failures are logged, never raised."""
        try:
            outcome = await self.aggregator.aggregate(vehicle_id)
            if outcome.state is None:
                return outcome
            self.current_states[vehicle_id] = outcome.state

            # A retained state still gets a board, projected from the current time
            if outcome.updated:
                now_ms = outcome.state.observed_at_ms
            else:
                now_ms = self.aggregator.clock()
            board = self.eta_calculator.board(outcome.state, self.stops_for(vehicle_id), now_ms)
            self.eta_boards[vehicle_id] = board

            # Only fresh states are published
            if outcome.updated and self.broadcaster is not None:
                await self.broadcaster.publish_update(VehicleUpdate(vehicle=outcome.state, etas=board))
                if board.approaching:
                    await self.broadcaster.publish_alert(
                        ApproachingAlert(vehicle_id=vehicle_id, stops=board.approaching)
                    )
            return outcome
        except Exception:
            logger.exception("Error in fusion cycle for vehicle %s", vehicle_id)
            return FusionOutcome(vehicle_id, FusionStatus.FAILED)

    async def run_all(self) -> list[FusionOutcome]:
        """One cycle for every tracked vehicle, concurrently."""
        return list(await asyncio.gather(*(self.run_cycle(v) for v in self.vehicle_ids)))
