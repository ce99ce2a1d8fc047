"""Tests for beacon fusion and the per-vehicle fusion cycle."""

import asyncio
import math

import pytest

from busbeacon.core.aggregator import (
    FusionAggregator,
    FusionStatus,
    derive_speed,
    fuse,
    live_reports,
)
from busbeacon.core.stores import InMemoryReportStore, InMemoryVehicleStateStore
from busbeacon.errors import StoreUnavailable
from busbeacon.schemas.beacon import BeaconReport, Position
from busbeacon.schemas.vehicle import VehicleState

NOW_MS = 1_700_000_000_000


def report(
    beacon_id: str,
    lat: float,
    lon: float,
    accuracy: float = 10.0,
    age_ms: int = 0,
    vehicle_id: str = "bus-1",
    active: bool = True,
) -> BeaconReport:
    return BeaconReport(
        beacon_id=beacon_id,
        vehicle_id=vehicle_id,
        position=Position(lat=lat, lon=lon),
        accuracy_meters=accuracy,
        captured_at_ms=NOW_MS - age_ms,
        active=active,
    )


class Clock:
    def __init__(self, now_ms: int = NOW_MS) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


def make_aggregator(reports=None, states=None, **kwargs) -> FusionAggregator:
    return FusionAggregator(
        reports or InMemoryReportStore(),
        states or InMemoryVehicleStateStore(),
        clock=kwargs.pop("clock", Clock()),
        **kwargs,
    )


# --- pure fusion ---------------------------------------------------------


def test_single_report_is_taken_verbatim():
    r = report("b1", 37.7749, -122.4194, accuracy=12.5)
    fused = fuse([r])
    assert fused.position == r.position
    assert fused.accuracy_meters == 12.5
    assert fused.beacon_count == 1


def test_single_report_accuracy_clamped_to_one_meter():
    fused = fuse([report("b1", 37.0, -122.0, accuracy=0.0)])
    assert fused.accuracy_meters == 1.0


def test_empty_input_yields_nothing():
    assert fuse([]) is None


def test_same_point_different_accuracy():
    fused = fuse([
        report("b1", 37.7749, -122.4194, accuracy=10),
        report("b2", 37.7749, -122.4194, accuracy=50),
    ])
    assert fused.position.lat == pytest.approx(37.7749)
    assert fused.position.lon == pytest.approx(-122.4194)
    assert fused.accuracy_meters == pytest.approx(50 / math.sqrt(2))
    assert fused.accuracy_meters == pytest.approx(35.36, abs=0.01)


def test_more_accurate_beacon_pulls_harder():
    fused = fuse([
        report("b1", 56.840, 60.600, accuracy=5),
        report("b2", 56.850, 60.610, accuracy=50),
    ])
    # weights 0.2 vs 0.02 -> 10/11 of the way toward b1
    assert fused.position.lat == pytest.approx(56.840 + 0.010 / 11)
    assert fused.position.lon == pytest.approx(60.600 + 0.010 / 11)


def test_zero_accuracy_does_not_divide_by_zero():
    fused = fuse([
        report("b1", 56.840, 60.600, accuracy=0),
        report("b2", 56.842, 60.602, accuracy=1),
    ])
    assert fused.position.lat == pytest.approx(56.841)
    assert fused.accuracy_meters == pytest.approx(1 / math.sqrt(2))


@pytest.mark.parametrize("points", [
    [(56.840, 60.600, 3), (56.860, 60.650, 40), (56.845, 60.590, 12)],
    [(-33.87, 151.20, 1), (-33.86, 151.21, 1)],
    [(0.0, 0.0, 100), (0.001, -0.001, 2), (-0.002, 0.003, 7), (0.004, 0.0, 25)],
])
def test_fused_position_inside_bounding_box(points):
    reports = [report(f"b{i}", lat, lon, acc) for i, (lat, lon, acc) in enumerate(points)]
    fused = fuse(reports)
    lats = [p[0] for p in points]
    lons = [p[1] for p in points]
    assert min(lats) - 1e-12 <= fused.position.lat <= max(lats) + 1e-12
    assert min(lons) - 1e-12 <= fused.position.lon <= max(lons) + 1e-12


def test_accuracy_improves_with_more_beacons():
    accuracies = []
    for n in (1, 2, 3, 4):
        reports = [report(f"b{i}", 56.84, 60.60, accuracy=20) for i in range(n)]
        accuracies.append(fuse(reports).accuracy_meters)
    assert accuracies == sorted(accuracies, reverse=True)
    assert len(set(accuracies)) == 4
    assert accuracies[3] < accuracies[0]


def test_live_reports_filters_stale_inactive_foreign_and_malformed():
    malformed = report("b5", 0, 0)
    malformed.position = None
    reports = [
        report("b1", 56.84, 60.60),
        report("b2", 56.84, 60.60, age_ms=120_000),
        report("b3", 56.84, 60.60, active=False),
        report("b4", 56.84, 60.60, vehicle_id="bus-2"),
        malformed,
        report("b6", 56.84, 60.60, age_ms=119_999),
    ]
    live = live_reports(reports, "bus-1", NOW_MS)
    assert [r.beacon_id for r in live] == ["b1", "b6"]


def test_derive_speed():
    prior = VehicleState(
        vehicle_id="bus-1",
        position=Position(lat=56.840, lon=60.600),
        accuracy_meters=10,
        contributing_beacon_count=1,
        observed_at_ms=NOW_MS - 10_000,
    )
    moved = Position(lat=56.841, lon=60.600)  # ~111m north
    assert derive_speed(prior, moved, NOW_MS) == pytest.approx(11.12, abs=0.05)
    assert derive_speed(None, moved, NOW_MS) is None
    assert derive_speed(prior, moved, NOW_MS - 10_000) is None  # zero elapsed
    assert derive_speed(prior, moved, NOW_MS - 20_000) is None  # clock went backwards
    assert derive_speed(prior, moved, NOW_MS - 9_500) is None  # below min interval


# --- fusion cycle --------------------------------------------------------


@pytest.mark.asyncio
async def test_cycle_writes_fused_state():
    reports = InMemoryReportStore()
    states = InMemoryVehicleStateStore()
    await reports.upsert(report("b1", 56.840, 60.600, accuracy=10))
    await reports.upsert(report("b2", 56.842, 60.600, accuracy=10, age_ms=5_000))
    agg = make_aggregator(reports, states)

    outcome = await agg.aggregate("bus-1")

    assert outcome.status is FusionStatus.UPDATED
    assert outcome.live_reports == 2
    stored = await states.get("bus-1")
    assert stored == outcome.state
    assert stored.contributing_beacon_count == 2
    assert stored.observed_at_ms == NOW_MS
    assert stored.position.lat == pytest.approx(56.841)
    assert stored.speed_mps is None


@pytest.mark.asyncio
async def test_no_live_beacons_performs_no_write():
    reports = InMemoryReportStore()
    states = InMemoryVehicleStateStore()
    await reports.upsert(report("b1", 56.84, 60.60, age_ms=121_000))
    await reports.upsert(report("b2", 56.84, 60.60, age_ms=300_000))
    agg = make_aggregator(reports, states)

    outcome = await agg.aggregate("bus-1")

    assert outcome.status is FusionStatus.NO_LIVE_BEACONS
    assert outcome.state is None
    assert await states.get("bus-1") is None


@pytest.mark.asyncio
async def test_no_live_beacons_keeps_prior_state():
    reports = InMemoryReportStore()
    states = InMemoryVehicleStateStore()
    clock = Clock()
    await reports.upsert(report("b1", 56.84, 60.60))
    agg = make_aggregator(reports, states, clock=clock)
    first = await agg.aggregate("bus-1")

    clock.now_ms += 200_000
    outcome = await agg.aggregate("bus-1")

    assert outcome.status is FusionStatus.NO_LIVE_BEACONS
    assert outcome.state == first.state
    retained = await states.get("bus-1")
    assert retained == first.state
    assert retained.is_stale(clock.now_ms, 120_000)


@pytest.mark.asyncio
async def test_all_malformed_behaves_like_no_reports():
    reports = InMemoryReportStore()
    states = InMemoryVehicleStateStore()
    bad = report("b1", 0, 0)
    bad.position = None
    await reports.upsert(bad)

    outcome = await make_aggregator(reports, states).aggregate("bus-1")

    assert outcome.status is FusionStatus.NO_LIVE_BEACONS
    assert await states.get("bus-1") is None


@pytest.mark.asyncio
async def test_back_to_back_cycles_are_idempotent():
    reports = InMemoryReportStore()
    states = InMemoryVehicleStateStore()
    await reports.upsert(report("b1", 56.840, 60.600, accuracy=8))
    await reports.upsert(report("b2", 56.841, 60.601, accuracy=30))
    agg = make_aggregator(reports, states)

    first = await agg.aggregate("bus-1")
    second = await agg.aggregate("bus-1")

    assert second.state.position == first.state.position
    assert second.state.accuracy_meters == first.state.accuracy_meters
    assert second.state.speed_mps is None


@pytest.mark.asyncio
async def test_speed_from_consecutive_cycles():
    reports = InMemoryReportStore()
    states = InMemoryVehicleStateStore()
    clock = Clock()
    agg = make_aggregator(reports, states, clock=clock)

    await reports.upsert(report("b1", 56.840, 60.600))
    await agg.aggregate("bus-1")

    clock.now_ms += 10_000
    await reports.upsert(BeaconReport(
        beacon_id="b1", vehicle_id="bus-1", position=Position(lat=56.841, lon=60.600),
        accuracy_meters=10, captured_at_ms=clock.now_ms,
    ))
    outcome = await agg.aggregate("bus-1")

    assert outcome.state.speed_mps == pytest.approx(11.12, abs=0.05)


class SlowReportStore(InMemoryReportStore):
    """Tracks how many snapshot reads are in flight at once."""

    def __init__(self, delay: float = 0.01) -> None:
        super().__init__()
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0
        self.max_in_flight_per_vehicle: dict[str, int] = {}
        self._per_vehicle: dict[str, int] = {}

    async def live_reports(self, vehicle_id, since_ms):
        self.in_flight += 1
        self._per_vehicle[vehicle_id] = self._per_vehicle.get(vehicle_id, 0) + 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        self.max_in_flight_per_vehicle[vehicle_id] = max(
            self.max_in_flight_per_vehicle.get(vehicle_id, 0), self._per_vehicle[vehicle_id],
        )
        try:
            await asyncio.sleep(self.delay)
            return await super().live_reports(vehicle_id, since_ms)
        finally:
            self.in_flight -= 1
            self._per_vehicle[vehicle_id] -= 1


@pytest.mark.asyncio
async def test_cycles_serialized_per_vehicle_parallel_across_vehicles():
    reports = SlowReportStore()
    await reports.upsert(report("b1", 56.84, 60.60))
    await reports.upsert(report("b2", 56.90, 60.70, vehicle_id="bus-2"))
    agg = make_aggregator(reports)

    outcomes = await asyncio.gather(
        agg.aggregate("bus-1"),
        agg.aggregate("bus-1"),
        agg.aggregate("bus-1"),
        agg.aggregate("bus-2"),
    )

    assert all(o.status is FusionStatus.UPDATED for o in outcomes)
    assert reports.max_in_flight_per_vehicle == {"bus-1": 1, "bus-2": 1}
    assert reports.max_in_flight == 2


@pytest.mark.asyncio
async def test_timed_out_cycle_leaves_state_untouched():
    reports = SlowReportStore(delay=0.0)
    states = InMemoryVehicleStateStore()
    clock = Clock()
    agg = make_aggregator(reports, states, clock=clock, timeout_seconds=0.05)
    await reports.upsert(report("b1", 56.84, 60.60))
    first = await agg.aggregate("bus-1")

    reports.delay = 0.5
    clock.now_ms += 15_000
    await reports.upsert(report("b1", 56.85, 60.61, age_ms=-15_000))
    outcome = await agg.aggregate("bus-1")

    assert outcome.status is FusionStatus.TIMED_OUT
    assert await states.get("bus-1") == first.state

    # Retried on the next tick once the store responds in time
    reports.delay = 0.0
    retry = await agg.aggregate("bus-1")
    assert retry.status is FusionStatus.UPDATED
    assert retry.state.position.lat == pytest.approx(56.85)


class FailingStateStore(InMemoryVehicleStateStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail = False

    async def put(self, state):
        if self.fail:
            raise StoreUnavailable("connection refused", operation="put_state")
        await super().put(state)


@pytest.mark.asyncio
async def test_store_failure_aborts_cycle_and_keeps_prior():
    reports = InMemoryReportStore()
    states = FailingStateStore()
    clock = Clock()
    agg = make_aggregator(reports, states, clock=clock)
    await reports.upsert(report("b1", 56.84, 60.60))
    first = await agg.aggregate("bus-1")

    states.fail = True
    clock.now_ms += 15_000
    outcome = await agg.aggregate("bus-1")

    assert outcome.status is FusionStatus.STORE_UNAVAILABLE
    assert outcome.state is None
    assert await states.get("bus-1") == first.state
