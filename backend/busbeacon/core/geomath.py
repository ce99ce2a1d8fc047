"""Great-circle distance between lat/lon points."""

import math

from busbeacon.errors import InvalidCoordinate
from busbeacon.schemas.beacon import Position

EARTH_RADIUS_M = 6_371_000.0


def validate_coordinate(lat: float, lon: float) -> None:
    """Raise InvalidCoordinate unless lat/lon are finite and in range."""
    if not (math.isfinite(lat) and math.isfinite(lon)):
        raise InvalidCoordinate(lat, lon)
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        raise InvalidCoordinate(lat, lon)


def distance_meters(a: Position, b: Position) -> float:
    """Haversine distance in meters between two positions."""
    validate_coordinate(a.lat, a.lon)
    validate_coordinate(b.lat, b.lon)
    dlat = math.radians(b.lat - a.lat)
    dlon = math.radians(b.lon - a.lon)
    h = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(a.lat)) * math.cos(math.radians(b.lat)) *
         math.sin(dlon / 2) ** 2)
    # Rounding can push h a hair above 1 for antipodal points
    return EARTH_RADIUS_M * 2 * math.asin(math.sqrt(min(h, 1.0)))
