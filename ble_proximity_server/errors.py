from __future__ import annotations


class ProximityError(Exception):
    """Base class for errors raised by the proximity engine."""


class NotFoundError(ProximityError):
    """Unknown beacon, gateway or calibration pair."""


class InvalidInputError(ProximityError, ValueError):
    """Missing field, malformed payload or out-of-range value."""


class PersistenceError(ProximityError):
    """The durable store could not be read or written."""


class DuplicateCalibrationPointError(ProximityError):
    """Strict create of a calibration point at a distance that already exists."""

    def __init__(self, beacon_id: str, gateway_id: str, distance: float):
        super().__init__(
            f"calibration point {beacon_id}/{gateway_id} at {distance}m already exists"
        )
        self.beacon_id = beacon_id
        self.gateway_id = gateway_id
        self.distance = distance
