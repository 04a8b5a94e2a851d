"""
Effect descriptors.

The state machine never talks to email, push, payment or storage systems
directly.  It returns these values and a separate executor acts on them:
``PersistRide`` is applied synchronously by the API (it carries the
optimistic version check), everything else is queued for the dispatcher
worker.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Union

from .entities import Ride
from .enums import NotificationType, PaymentStatus


@dataclass(frozen=True)
class NotifyUser:
    user_id: int
    type: NotificationType
    ride_id: Optional[int]
    payload: dict[str, Any] = field(default_factory=dict)

    kind = "notify_user"


@dataclass(frozen=True)
class UpdatePaymentStatus:
    ride_id: Optional[int]
    status: PaymentStatus

    kind = "update_payment_status"


@dataclass(frozen=True)
class PersistRide:
    ride: Ride
    expected_version: int

    kind = "persist_ride"


Effect = Union[NotifyUser, UpdatePaymentStatus, PersistRide]
DeferredEffect = Union[NotifyUser, UpdatePaymentStatus]


def partition_effects(
    effects: list[Effect],
) -> tuple[Optional[PersistRide], list[DeferredEffect]]:
    """Split out the (at most one) ``PersistRide`` from the deferrable rest."""
    persist: Optional[PersistRide] = None
    deferred: list[DeferredEffect] = []
    for effect in effects:
        if isinstance(effect, PersistRide):
            persist = effect
        else:
            deferred.append(effect)
    return persist, deferred


# ── Serialisation (queue payloads / API responses) ────────────────────


def effect_to_dict(effect: Effect) -> dict[str, Any]:
    if isinstance(effect, NotifyUser):
        return {
            "kind": effect.kind,
            "user_id": effect.user_id,
            "type": effect.type.value,
            "ride_id": effect.ride_id,
            "payload": dict(effect.payload),
        }
    if isinstance(effect, UpdatePaymentStatus):
        return {
            "kind": effect.kind,
            "ride_id": effect.ride_id,
            "status": effect.status.value,
        }
    if isinstance(effect, PersistRide):
        return {
            "kind": effect.kind,
            "ride_id": effect.ride.id,
            "status": effect.ride.status.value,
            "expected_version": effect.expected_version,
        }
    raise TypeError(f"Not an effect: {effect!r}")


def effect_from_dict(data: dict[str, Any]) -> DeferredEffect:
    """Rebuild a queued effect.  ``PersistRide`` is never queued."""
    kind = data.get("kind")
    if kind == NotifyUser.kind:
        return NotifyUser(
            user_id=int(data["user_id"]),
            type=NotificationType(data["type"]),
            ride_id=data.get("ride_id"),
            payload=dict(data.get("payload") or {}),
        )
    if kind == UpdatePaymentStatus.kind:
        return UpdatePaymentStatus(
            ride_id=data.get("ride_id"),
            status=PaymentStatus(data["status"]),
        )
    raise ValueError(f"Unknown or non-deferrable effect kind: {kind!r}")
