from sqlalchemy import BigInteger, Boolean, Float, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from busbeacon.models.base import Base


class BeaconSession(Base):
    """Latest report of one rider's beacon; one row per active session."""

    __tablename__ = "beacon_sessions"
    __table_args__ = (
        Index("ix_bs_vehicle_active_ts", "vehicle_id", "is_active", "captured_at_ms"),
    )

    beacon_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    vehicle_id: Mapped[str] = mapped_column(String(64), nullable=False)
    lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    lon: Mapped[float | None] = mapped_column(Float, nullable=True)
    accuracy_m: Mapped[float | None] = mapped_column(Float, nullable=True)
    captured_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)


class VehicleStateRow(Base):
    """Canonical fused state, one row per vehicle, overwritten every fusion cycle."""

    __tablename__ = "vehicle_states"

    vehicle_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lon: Mapped[float] = mapped_column(Float, nullable=False)
    accuracy_m: Mapped[float] = mapped_column(Float, nullable=False)
    speed_mps: Mapped[float | None] = mapped_column(Float, nullable=True)
    beacon_count: Mapped[int] = mapped_column(Integer, nullable=False)
    observed_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)


class RouteStop(Base):
    """Stop reference data for a vehicle's route (owned by the routing side)."""

    __tablename__ = "route_stops"
    __table_args__ = (
        Index("ix_rs_vehicle_order", "vehicle_id", "order", unique=True),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    vehicle_id: Mapped[str] = mapped_column(String(64), nullable=False)
    stop_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lon: Mapped[float] = mapped_column(Float, nullable=False)
    order: Mapped[int] = mapped_column(Integer, nullable=False)
