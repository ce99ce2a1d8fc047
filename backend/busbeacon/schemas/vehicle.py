from typing import Literal

from pydantic import BaseModel, Field

from busbeacon.schemas.beacon import Position


class VehicleState(BaseModel):
    vehicle_id: str
    position: Position
    accuracy_meters: float
    speed_mps: float | None = None
    contributing_beacon_count: int = Field(ge=1)
    observed_at_ms: int

    def age_ms(self, now_ms: int) -> int:
        return max(0, now_ms - self.observed_at_ms)

    def is_stale(self, now_ms: int, max_age_ms: int) -> bool:
        """True when no fusion cycle has refreshed this state for max_age_ms."""
        return self.age_ms(now_ms) > max_age_ms


class EtaResult(BaseModel):
    stop_id: str
    stop_name: str = ""
    distance_meters: float = Field(ge=0)
    eta_seconds: int = Field(ge=0)
    eta_minutes: int = Field(ge=0)
    estimated_arrival_at_ms: int


class EtaBoard(BaseModel):
    vehicle_id: str
    computed_at_ms: int
    results: list[EtaResult] = []
    approaching: list[EtaResult] = []


class VehicleUpdate(BaseModel):
    type: Literal["update"] = "update"
    vehicle: VehicleState
    etas: EtaBoard | None = None


class ApproachingAlert(BaseModel):
    type: Literal["approaching"] = "approaching"
    vehicle_id: str
    stops: list[EtaResult]
