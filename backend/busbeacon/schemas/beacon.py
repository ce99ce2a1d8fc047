from pydantic import BaseModel, ConfigDict, Field


class Position(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float
    lon: float


class PositionFix(BaseModel):
    """A raw sample from the positioning capability of a device."""

    position: Position
    accuracy_meters: float = Field(default=50.0, ge=0)
    captured_at_ms: int
    heading: float | None = None
    speed_mps: float | None = None


class BeaconReport(BaseModel):
    beacon_id: str
    vehicle_id: str
    position: Position | None = None  # None = malformed, skipped by fusion
    accuracy_meters: float = Field(default=50.0, ge=0)
    captured_at_ms: int
    active: bool = True
    updated_at_ms: int | None = None


class BeaconStart(BaseModel):
    vehicle_id: str
    lat: float
    lon: float
    accuracy_meters: float = Field(default=50.0, ge=0)
    captured_at_ms: int | None = None


class LocationUpdate(BaseModel):
    lat: float
    lon: float
    accuracy_meters: float = Field(default=50.0, ge=0)
    captured_at_ms: int | None = None
