"""
Ride endpoints
==============

POST  /api/v1/rides                  -- request a ride (quotes and stores it)
GET   /api/v1/rides/active           -- a user's unfinished rides
GET   /api/v1/rides/history          -- a user's rides, paginated
GET   /api/v1/rides/{ride_id}        -- ride status and fare
PATCH /api/v1/rides/{ride_id}/status -- accept / start / complete / cancel

Notifications and payment updates are staged in the ``effect_outbox``
table inside the same transaction as the ride write; the dispatcher
delivers them.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import get_db, get_fare_engine
from src.api.middleware import limiter
from src.api.schemas import (
    ErrorResponse,
    RideCreateRequest,
    RidePageResponse,
    RideResponse,
    RideStatusUpdateRequest,
    TransitionResponse,
)
from src.config import settings
from src.domain.effects import effect_to_dict, partition_effects
from src.domain.entities import Actor, Coordinate
from src.domain.enums import ActorRole, RideStatus
from src.domain.errors import AuthorizationError, DataConsistencyError
from src.domain.pricing import FareEngine
from src.domain.state_machine import (
    check_driver_capacity,
    open_ride,
    opening_effects,
    request_transition,
)
from src.infrastructure.repositories import (
    OutboxRepository,
    RideRepository,
    UserRepository,
    enum_value,
    ride_from_model,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rides", tags=["rides"])

REJECTIONS = {
    403: {"model": ErrorResponse, "description": "Actor may not make this move."},
    404: {"model": ErrorResponse, "description": "Ride not found."},
    409: {"model": ErrorResponse, "description": "Illegal move, busy driver or stale ride."},
}


@router.post(
    "",
    status_code=201,
    response_model=RideResponse,
    summary="Request a ride",
    responses={
        201: {"description": "Ride stored in PENDING with its fare quote."},
        404: {"model": ErrorResponse, "description": "Rider not found."},
    },
)
@limiter.limit("100/minute")
async def create_ride(
    request: Request,
    body: RideCreateRequest,
    db: AsyncSession = Depends(get_db),
    engine: FareEngine = Depends(get_fare_engine),
):
    repo = RideRepository(db)

    # ── Idempotency guard ─────────────────────────────────────────
    if body.idempotency_key:
        existing = await repo.get_by_idempotency_key(body.idempotency_key)
        if existing:
            return RideResponse.from_domain(ride_from_model(existing))

    users = UserRepository(db)
    rider = await users.get_by_id(body.rider_id)
    if not rider or ActorRole(enum_value(rider.role)) is not ActorRole.RIDER:
        raise HTTPException(status_code=404, detail="Rider not found")

    # The incoming request counts towards demand.
    active_rides = await repo.count_pending() + 1
    available_drivers = await users.count_available_drivers()

    pickup = Coordinate(body.pickup.latitude, body.pickup.longitude)
    dropoff = Coordinate(body.dropoff.latitude, body.dropoff.longitude)
    quote = engine.quote_fare(
        pickup,
        dropoff,
        vehicle_class=body.vehicle_class,
        active_rides=active_rides,
        available_drivers=available_drivers,
        currency=body.currency,
    )

    ride = open_ride(
        rider_id=body.rider_id,
        pickup=pickup,
        dropoff=dropoff,
        fare_quote=quote,
        payment_method=body.payment_method,
        idempotency_key=body.idempotency_key,
    )
    row = await repo.create_ride(ride)
    ride = dataclasses.replace(ride, id=row.id)
    await OutboxRepository(db).add(opening_effects(ride))
    await db.commit()

    logger.info(
        "Ride %s requested by rider %s: %s %s (surge %.2f)",
        ride.id, ride.rider_id, quote.final_fare, quote.currency,
        quote.surge_multiplier,
    )
    return RideResponse.from_domain(ride)


@router.get(
    "/active",
    response_model=list[RideResponse],
    summary="A user's pending, accepted and started rides",
)
@limiter.limit("100/minute")
async def list_active_rides(
    request: Request,
    user_id: int,
    role: Optional[ActorRole] = None,
    db: AsyncSession = Depends(get_db),
):
    rides = await RideRepository(db).list_active_for_user(user_id, role)
    return [RideResponse.from_domain(ride) for ride in rides]


@router.get(
    "/history",
    response_model=RidePageResponse,
    summary="A user's rides, newest first",
)
@limiter.limit("100/minute")
async def ride_history(
    request: Request,
    user_id: int,
    role: Optional[ActorRole] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    rides, total = await RideRepository(db).list_history(user_id, role, page, limit)
    return RidePageResponse.build(rides, total, page, limit)


@router.get(
    "/{ride_id}",
    response_model=RideResponse,
    summary="Get ride status and fare",
    responses={404: REJECTIONS[404]},
)
@limiter.limit("100/minute")
async def get_ride(
    request: Request,
    ride_id: int,
    db: AsyncSession = Depends(get_db),
):
    ride = await RideRepository(db).get_ride(ride_id)
    if not ride:
        raise HTTPException(status_code=404, detail="Ride not found")
    return RideResponse.from_domain(ride)


@router.patch(
    "/{ride_id}/status",
    response_model=TransitionResponse,
    summary="Change a ride's status",
    description=(
        "Runs the ride state machine.  Illegal moves return 409, actors who "
        "may not make the move return 403.  A driver who is offline or "
        "already at their active-ride limit cannot accept (409).  Requesting "
        "the current status is a no-op.  Notifications and payment updates "
        "are queued."
    ),
    responses=REJECTIONS,
)
@limiter.limit("100/minute")
async def update_ride_status(
    request: Request,
    ride_id: int,
    body: RideStatusUpdateRequest,
    db: AsyncSession = Depends(get_db),
):
    repo = RideRepository(db)
    users = UserRepository(db)
    ride = await repo.get_ride(ride_id)
    if not ride:
        raise HTTPException(status_code=404, detail="Ride not found")

    actor_row = await users.get_by_id(body.actor_id)
    if not actor_row or ActorRole(enum_value(actor_row.role)) is not body.actor_role:
        raise AuthorizationError(
            f"User {body.actor_id} is not a {body.actor_role.value}"
        )

    result = request_transition(
        ride,
        body.requested_status,
        Actor(id=body.actor_id, role=body.actor_role),
        cancellation_reason=body.cancellation_reason,
        driver_id=body.driver_id,
    )

    persist, deferred = partition_effects(result.effects)
    if persist is not None:
        new_ride = persist.ride
        accepting = new_ride.status is RideStatus.ACCEPTED
        active_after = 0
        if accepting:
            # Row lock serialises concurrent accepts by the same driver.
            driver = await users.get_for_update(new_ride.driver_id)
            if not driver or ActorRole(enum_value(driver.role)) is not ActorRole.DRIVER:
                raise DataConsistencyError(
                    f"User {new_ride.driver_id} is not a driver"
                )
            active = await repo.count_active_for_driver(driver.id)
            check_driver_capacity(
                driver.id,
                driver.is_available,
                active,
                settings.max_active_rides_per_driver,
            )
            active_after = active + 1

        await repo.save_transition(new_ride, persist.expected_version)
        if accepting:
            await users.set_availability(
                new_ride.driver_id,
                active_after < settings.max_active_rides_per_driver,
            )
        elif new_ride.is_terminal and new_ride.driver_id is not None:
            await users.set_availability(new_ride.driver_id, True)
        await OutboxRepository(db).add(deferred)
        await db.commit()
        logger.info(
            "Ride %s: %s -> %s by %s %s",
            ride_id, ride.status.value, new_ride.status.value,
            body.actor_role.value, body.actor_id,
        )

    return TransitionResponse(
        ride=RideResponse.from_domain(result.ride),
        changed=result.changed,
        effects=[effect_to_dict(effect) for effect in result.effects],
    )
