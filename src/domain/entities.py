"""
Domain entities and value objects.

Patterns used
-------------
- **Value Objects** (``Coordinate``, ``FareQuote``): frozen, validated at
  construction, never mutated.  Re-quoting produces a new ``FareQuote``.
- **Entity** (``Ride``): identity + lifecycle.  Status changes go through
  ``src.domain.state_machine.request_transition``, which returns a new
  ``Ride`` rather than mutating the one it was given.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .enums import (
    RIDE_TRANSITIONS,
    TERMINAL_STATUSES,
    ActorRole,
    PaymentMethod,
    RideStatus,
    VehicleClass,
)
from .errors import InvalidCoordinateError


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        for name, value, bound in (
            ("latitude", self.latitude, 90.0),
            ("longitude", self.longitude, 180.0),
        ):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidCoordinateError(f"{name} must be a number, got {value!r}")
            if not math.isfinite(value) or not -bound <= value <= bound:
                raise InvalidCoordinateError(
                    f"{name} must be between -{bound:g} and {bound:g}, got {value}"
                )


@dataclass(frozen=True)
class Actor:
    """Whoever asks for a ride transition: a rider, a driver or an admin."""

    id: int
    role: ActorRole


@dataclass(frozen=True)
class FareBreakdown:
    """Fare components in the engine's canonical currency (USD)."""

    base_charge: Decimal
    distance_charge: Decimal
    time_charge: Decimal
    surge_charge: Decimal

    def as_dict(self) -> dict[str, str]:
        return {
            "base_charge": str(self.base_charge),
            "distance_charge": str(self.distance_charge),
            "time_charge": str(self.time_charge),
            "surge_charge": str(self.surge_charge),
        }


@dataclass(frozen=True)
class FareQuote:
    distance_km: float
    duration_min: float
    base_fare: Decimal
    surge_multiplier: float
    final_fare: Decimal
    currency: str
    vehicle_class: VehicleClass
    breakdown: FareBreakdown


# ── Entities ──────────────────────────────────────────────────────────


@dataclass
class Ride:
    rider_id: int
    pickup: Coordinate
    dropoff: Coordinate
    fare_quote: FareQuote
    id: Optional[int] = None
    driver_id: Optional[int] = None
    status: RideStatus = RideStatus.PENDING
    payment_method: PaymentMethod = PaymentMethod.CARD
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    version: int = 1
    idempotency_key: Optional[str] = field(default=None, compare=False)

    @property
    def vehicle_class(self) -> VehicleClass:
        return self.fare_quote.vehicle_class

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition_to(self, new_status: RideStatus) -> bool:
        return new_status in RIDE_TRANSITIONS.get(self.status, set())

    def is_party(self, actor: Actor) -> bool:
        """True for the ride's rider, its assigned driver, or any admin."""
        if actor.role is ActorRole.ADMIN:
            return True
        if actor.role is ActorRole.RIDER:
            return actor.id == self.rider_id
        return self.driver_id is not None and actor.id == self.driver_id
