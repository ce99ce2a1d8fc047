from pydantic import BaseModel

from busbeacon.schemas.beacon import Position


class Stop(BaseModel):
    id: str
    name: str
    position: Position
    order: int


class NearestStop(BaseModel):
    stop: Stop
    distance_meters: float


class RouteStops(BaseModel):
    stops: list[Stop]
