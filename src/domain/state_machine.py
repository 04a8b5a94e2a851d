"""
Ride State Machine
==================

    pending --> accepted --> started --> completed
       |           |            |
       +-----------+------------+--> cancelled

``request_transition`` is a pure decision function of
``(ride, requested_status, actor)``: it validates the move, returns a new
``Ride`` with its timestamps / driver / reason filled in and its version
bumped, and lists the side effects the caller must carry out.  It performs
no I/O; serialising concurrent requests on one ride is the persistence
layer's job (see ``RideRepository.save_transition``).

Role allowances
---------------
* accept   -- any driver (who becomes the assigned driver) or an admin
              naming a driver
* start    -- only the assigned driver
* complete -- the assigned driver or an admin
* cancel   -- the rider, the assigned driver or an admin
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from .effects import Effect, NotifyUser, PersistRide, UpdatePaymentStatus
from .entities import Actor, Coordinate, FareQuote, Ride
from .enums import (
    RIDE_TRANSITIONS,
    ActorRole,
    NotificationType,
    PaymentMethod,
    PaymentStatus,
    RideStatus,
)
from .errors import (
    AuthorizationError,
    DataConsistencyError,
    DriverUnavailableError,
    InvalidTransitionError,
)


@dataclass(frozen=True)
class TransitionResult:
    ride: Ride
    effects: list[Effect] = field(default_factory=list)
    changed: bool = True


_NOTIFICATION_FOR: dict[RideStatus, NotificationType] = {
    RideStatus.ACCEPTED: NotificationType.RIDE_ACCEPTED,
    RideStatus.STARTED: NotificationType.RIDE_STARTED,
    RideStatus.COMPLETED: NotificationType.RIDE_COMPLETED,
    RideStatus.CANCELLED: NotificationType.RIDE_CANCELLED,
}

_PAYMENT_STATUS_FOR: dict[RideStatus, PaymentStatus] = {
    RideStatus.COMPLETED: PaymentStatus.COMPLETED,
    RideStatus.CANCELLED: PaymentStatus.VOIDED,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Creation ──────────────────────────────────────────────────────────


def open_ride(
    rider_id: int,
    pickup: Coordinate,
    dropoff: Coordinate,
    fare_quote: FareQuote,
    payment_method: PaymentMethod = PaymentMethod.CARD,
    now: datetime | None = None,
    idempotency_key: str | None = None,
) -> Ride:
    """Build a new ride in the initial ``pending`` state."""
    return Ride(
        rider_id=rider_id,
        pickup=pickup,
        dropoff=dropoff,
        fare_quote=fare_quote,
        payment_method=payment_method,
        status=RideStatus.PENDING,
        created_at=now or _utcnow(),
        idempotency_key=idempotency_key,
    )


def opening_effects(ride: Ride) -> list[Effect]:
    """Effects owed once a new ride has been stored and has an id."""
    quote = ride.fare_quote
    return [
        NotifyUser(
            user_id=ride.rider_id,
            type=NotificationType.RIDE_REQUESTED,
            ride_id=ride.id,
            payload={
                "estimated_fare": str(quote.final_fare),
                "currency": quote.currency,
                "surge_multiplier": quote.surge_multiplier,
            },
        ),
        UpdatePaymentStatus(ride_id=ride.id, status=PaymentStatus.PENDING),
    ]


# ── Transitions ───────────────────────────────────────────────────────


def _authorize(
    ride: Ride, requested: RideStatus, actor: Actor, driver_id: Optional[int]
) -> Optional[int]:
    """Raise unless *actor* may move *ride* to *requested*.

    Returns the driver id the ride should carry afterwards.
    """
    role = actor.role

    if requested is RideStatus.ACCEPTED:
        if role is ActorRole.DRIVER:
            if ride.driver_id is not None and ride.driver_id != actor.id:
                raise AuthorizationError(
                    f"Ride {ride.id} is assigned to another driver"
                )
            return actor.id
        if role is ActorRole.ADMIN:
            assigned = driver_id if driver_id is not None else ride.driver_id
            if assigned is None:
                raise DataConsistencyError(
                    "An admin accepting a ride must name the driver"
                )
            return assigned
        raise AuthorizationError("Only a driver or an admin may accept a ride")

    if not ride.is_party(actor):
        raise AuthorizationError(
            f"Actor {actor.id} ({role.value}) is not a party to ride {ride.id}"
        )

    if requested is RideStatus.STARTED and role is not ActorRole.DRIVER:
        raise AuthorizationError("Only the assigned driver may start a ride")
    if requested is RideStatus.COMPLETED and role is ActorRole.RIDER:
        raise AuthorizationError("A rider cannot complete a ride")
    return ride.driver_id


def _notifications(
    ride: Ride, status: RideStatus, actor: Actor, reason: Optional[str]
) -> list[Effect]:
    kind = _NOTIFICATION_FOR[status]
    payload: dict = {"status": status.value}
    if reason:
        payload["reason"] = reason
    if status is RideStatus.COMPLETED:
        payload["final_fare"] = str(ride.fare_quote.final_fare)
        payload["currency"] = ride.fare_quote.currency

    if status is RideStatus.COMPLETED:
        recipients = [ride.rider_id, ride.driver_id]
    elif status is RideStatus.CANCELLED:
        # Whoever cancelled already knows.
        recipients = [
            uid for uid in (ride.rider_id, ride.driver_id) if uid != actor.id
        ]
    else:
        recipients = [ride.rider_id]

    return [
        NotifyUser(user_id=uid, type=kind, ride_id=ride.id, payload=dict(payload))
        for uid in recipients
        if uid is not None
    ]


def request_transition(
    ride: Ride,
    requested_status: RideStatus,
    actor: Actor,
    *,
    now: datetime | None = None,
    cancellation_reason: str | None = None,
    driver_id: int | None = None,
) -> TransitionResult:
    """Validate and apply a status change, returning the new ride + effects.

    Raises ``InvalidTransitionError``, ``AuthorizationError`` or
    ``DataConsistencyError``; the input ride is never modified.
    """
    try:
        requested = RideStatus(requested_status)
    except ValueError:
        raise InvalidTransitionError(
            f"Unknown ride status: {requested_status!r}"
        ) from None

    if requested is ride.status:
        if not ride.is_party(actor):
            raise AuthorizationError(
                f"Actor {actor.id} ({actor.role.value}) is not a party to ride {ride.id}"
            )
        return TransitionResult(ride=ride, effects=[], changed=False)

    if ride.is_terminal:
        raise InvalidTransitionError(
            f"Ride {ride.id} is already {ride.status.value}"
        )
    if not ride.can_transition_to(requested):
        raise InvalidTransitionError(
            f"Cannot transition from {ride.status.value} to {requested.value}"
        )

    new_driver_id = _authorize(ride, requested, actor, driver_id)
    now = now or _utcnow()
    changes: dict = {
        "status": requested,
        "driver_id": new_driver_id,
        "version": ride.version + 1,
    }

    if requested is RideStatus.STARTED:
        changes["started_at"] = now
    elif requested is RideStatus.COMPLETED:
        if ride.started_at is None:
            raise DataConsistencyError(
                f"Ride {ride.id} cannot complete without having started"
            )
        changes["completed_at"] = now
    elif requested is RideStatus.CANCELLED:
        reason = (cancellation_reason or "").strip()
        if not reason:
            raise DataConsistencyError("A cancellation reason is required")
        changes["cancellation_reason"] = reason

    updated = dataclasses.replace(ride, **changes)

    effects: list[Effect] = [PersistRide(ride=updated, expected_version=ride.version)]
    effects.extend(
        _notifications(updated, requested, actor, changes.get("cancellation_reason"))
    )
    if requested in _PAYMENT_STATUS_FOR:
        effects.append(
            UpdatePaymentStatus(ride_id=ride.id, status=_PAYMENT_STATUS_FOR[requested])
        )
    return TransitionResult(ride=updated, effects=effects)


def can_transition(current: RideStatus, requested: RideStatus) -> bool:
    """Pure legality check (identity counts as legal: it is a no-op)."""
    return requested is current or requested in RIDE_TRANSITIONS.get(current, set())


def check_driver_capacity(
    driver_id: int, is_available: bool, active_rides: int, max_active_rides: int = 1
) -> None:
    """Raise unless the driver may take on one more ride.

    ``active_rides`` counts the driver's accepted and started rides.
    """
    if not is_available:
        raise DriverUnavailableError(f"Driver {driver_id} is not available")
    if active_rides >= max_active_rides:
        raise DriverUnavailableError(
            f"Driver {driver_id} already has {active_rides} active ride(s)"
        )
