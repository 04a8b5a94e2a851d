"""Typed failures raised by the fare engine and the ride state machine."""


class RideDomainError(Exception):
    """Base class for every error the domain core raises."""


class InvalidCoordinateError(RideDomainError, ValueError):
    """Latitude / longitude outside the valid range (or not finite)."""


class UnsupportedCurrencyError(RideDomainError):
    """No exchange-rate path exists between two currency codes."""


class UnknownVehicleClassError(RideDomainError):
    """Vehicle class has no entry in the pricing table."""


class InvalidTransitionError(RideDomainError):
    """Raised when a ride status change violates the state machine."""


class AuthorizationError(RideDomainError):
    """The actor is not allowed to perform the requested transition."""


class DataConsistencyError(RideDomainError):
    """The ride's data does not support the transition (e.g. no start time)."""


class StaleRideError(RideDomainError):
    """The ride changed since it was read; the write was rejected."""


class DriverUnavailableError(RideDomainError):
    """The driver is offline or already at their active-ride limit."""
