"""Beacon report and vehicle state stores.

The fusion cycle only depends on the ReportStore / VehicleStateStore
protocols. Two implementations are provided: an in-memory one (tests and
single-process deployments) and an SQLAlchemy-backed one.
"""

import asyncio
import logging
from typing import Protocol

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError

from busbeacon.errors import StoreUnavailable
from busbeacon.models.tables import BeaconSession, RouteStop, VehicleStateRow
from busbeacon.schemas.beacon import BeaconReport, Position
from busbeacon.schemas.route import Stop
from busbeacon.schemas.vehicle import VehicleState

logger = logging.getLogger(__name__)


class ReportStore(Protocol):
    async def live_reports(self, vehicle_id: str, since_ms: int) -> list[BeaconReport]:
        """Active reports for a vehicle captured after since_ms, as one snapshot."""
        ...

    async def get(self, beacon_id: str) -> BeaconReport | None: ...

    async def upsert(self, report: BeaconReport) -> None: ...

    async def active_for_vehicle(self, vehicle_id: str) -> list[BeaconReport]: ...

    async def purge_inactive(self, older_than_ms: int) -> int: ...


class VehicleStateStore(Protocol):
    async def get(self, vehicle_id: str) -> VehicleState | None: ...

    async def put(self, state: VehicleState) -> None: ...

    async def all(self) -> list[VehicleState]: ...


class InMemoryReportStore:
    """Reports keyed by beacon id; reads copy under a lock for a consistent snapshot."""

    def __init__(self) -> None:
        self._reports: dict[str, BeaconReport] = {}
        self._lock = asyncio.Lock()

    async def live_reports(self, vehicle_id: str, since_ms: int) -> list[BeaconReport]:
        async with self._lock:
            return [
                r.model_copy() for r in self._reports.values()
                if r.vehicle_id == vehicle_id and r.active and r.captured_at_ms > since_ms
            ]

    async def get(self, beacon_id: str) -> BeaconReport | None:
        async with self._lock:
            report = self._reports.get(beacon_id)
            return report.model_copy() if report else None

    async def upsert(self, report: BeaconReport) -> None:
        async with self._lock:
            self._reports[report.beacon_id] = report.model_copy()

    async def active_for_vehicle(self, vehicle_id: str) -> list[BeaconReport]:
        async with self._lock:
            return [
                r.model_copy() for r in self._reports.values()
                if r.vehicle_id == vehicle_id and r.active
            ]

    async def purge_inactive(self, older_than_ms: int) -> int:
        async with self._lock:
            expired = [
                bid for bid, r in self._reports.items()
                if not r.active and (r.updated_at_ms or r.captured_at_ms) < older_than_ms
            ]
            for bid in expired:
                del self._reports[bid]
            return len(expired)


class InMemoryVehicleStateStore:
    def __init__(self) -> None:
        self._states: dict[str, VehicleState] = {}

    async def get(self, vehicle_id: str) -> VehicleState | None:
        return self._states.get(vehicle_id)

    async def put(self, state: VehicleState) -> None:
        self._states[state.vehicle_id] = state

    async def all(self) -> list[VehicleState]:
        return list(self._states.values())


def _row_to_report(row: BeaconSession) -> BeaconReport:
    position = None
    if row.lat is not None and row.lon is not None:
        position = Position(lat=row.lat, lon=row.lon)
    return BeaconReport(
        beacon_id=row.beacon_id,
        vehicle_id=row.vehicle_id,
        position=position,
        accuracy_meters=row.accuracy_m if row.accuracy_m is not None else 50.0,
        captured_at_ms=row.captured_at_ms,
        active=row.is_active,
        updated_at_ms=row.updated_at_ms,
    )


def _row_to_state(row: VehicleStateRow) -> VehicleState:
    return VehicleState(
        vehicle_id=row.vehicle_id,
        position=Position(lat=row.lat, lon=row.lon),
        accuracy_meters=row.accuracy_m,
        speed_mps=row.speed_mps,
        contributing_beacon_count=row.beacon_count,
        observed_at_ms=row.observed_at_ms,
    )


class SqlReportStore:
    """Beacon sessions table; every read is a single SELECT."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    async def live_reports(self, vehicle_id: str, since_ms: int) -> list[BeaconReport]:
        stmt = select(BeaconSession).where(
            BeaconSession.vehicle_id == vehicle_id,
            BeaconSession.is_active.is_(True),
            BeaconSession.captured_at_ms > since_ms,
        )
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailable(str(e), operation="live_reports") from e
        return [_row_to_report(r) for r in rows]

    async def get(self, beacon_id: str) -> BeaconReport | None:
        try:
            async with self.session_factory() as session:
                row = await session.get(BeaconSession, beacon_id)
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailable(str(e), operation="get") from e
        return _row_to_report(row) if row else None

    async def upsert(self, report: BeaconReport) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.merge(BeaconSession(
                        beacon_id=report.beacon_id,
                        vehicle_id=report.vehicle_id,
                        lat=report.position.lat if report.position else None,
                        lon=report.position.lon if report.position else None,
                        accuracy_m=report.accuracy_meters,
                        captured_at_ms=report.captured_at_ms,
                        is_active=report.active,
                        updated_at_ms=report.updated_at_ms,
                    ))
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailable(str(e), operation="upsert") from e

    async def active_for_vehicle(self, vehicle_id: str) -> list[BeaconReport]:
        stmt = select(BeaconSession).where(
            BeaconSession.vehicle_id == vehicle_id,
            BeaconSession.is_active.is_(True),
        )
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailable(str(e), operation="active_for_vehicle") from e
        return [_row_to_report(r) for r in rows]

    async def purge_inactive(self, older_than_ms: int) -> int:
        stmt = delete(BeaconSession).where(
            BeaconSession.is_active.is_(False),
            func.coalesce(BeaconSession.updated_at_ms, BeaconSession.captured_at_ms) < older_than_ms,
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailable(str(e), operation="purge_inactive") from e
        return result.rowcount or 0


class SqlVehicleStateStore:
    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    async def get(self, vehicle_id: str) -> VehicleState | None:
        try:
            async with self.session_factory() as session:
                row = await session.get(VehicleStateRow, vehicle_id)
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailable(str(e), operation="get_state") from e
        return _row_to_state(row) if row else None

    async def put(self, state: VehicleState) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.merge(VehicleStateRow(
                        vehicle_id=state.vehicle_id,
                        lat=state.position.lat,
                        lon=state.position.lon,
                        accuracy_m=state.accuracy_meters,
                        speed_mps=state.speed_mps,
                        beacon_count=state.contributing_beacon_count,
                        observed_at_ms=state.observed_at_ms,
                    ))
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailable(str(e), operation="put_state") from e

    async def all(self) -> list[VehicleState]:
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(select(VehicleStateRow))).scalars().all()
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailable(str(e), operation="all_states") from e
        return [_row_to_state(r) for r in rows]


class SqlStopCatalog:
    """Persisted stop lists per tracked vehicle, reloaded on startup."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    async def replace(self, vehicle_id: str, stops: list[Stop]) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(delete(RouteStop).where(RouteStop.vehicle_id == vehicle_id))
                    session.add_all([
                        RouteStop(
                            vehicle_id=vehicle_id,
                            stop_id=s.id,
                            name=s.name,
                            lat=s.position.lat,
                            lon=s.position.lon,
                            order=s.order,
                        )
                        for s in stops
                    ])
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailable(str(e), operation="replace_stops") from e

    async def load_all(self) -> dict[str, list[Stop]]:
        stmt = select(RouteStop).order_by(RouteStop.vehicle_id, RouteStop.order)
        try:
            async with self.session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailable(str(e), operation="load_stops") from e
        result: dict[str, list[Stop]] = {}
        for r in rows:
            result.setdefault(r.vehicle_id, []).append(
                Stop(id=r.stop_id, name=r.name, position=Position(lat=r.lat, lon=r.lon), order=r.order)
            )
        return result
