"""Exception hierarchy for the beacon fusion service."""


class BeaconError(Exception):
    """Base exception for all busbeacon errors."""


class InvalidCoordinate(BeaconError, ValueError):
    """Latitude/longitude outside the valid range or not finite."""

    def __init__(self, lat: float, lon: float) -> None:
        self.lat = lat
        self.lon = lon
        super().__init__(f"Invalid coordinate: lat={lat!r}, lon={lon!r}")


class AcquisitionFailure(BeaconError):
    """The positioning capability reported an error."""

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        self.cause = cause
        super().__init__(message)


class StoreUnavailable(BeaconError):
    """Reading from or writing to a report/state store failed."""

    def __init__(self, message: str, *, operation: str = "") -> None:
        self.operation = operation
        super().__init__(message)
