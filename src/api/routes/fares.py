"""
Fare endpoints
==============

POST /api/v1/fares/estimate -- quote a fare without creating a ride
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import get_db, get_fare_engine
from src.api.middleware import limiter
from src.api.schemas import FareEstimateRequest, FareQuoteResponse
from src.domain.entities import Coordinate
from src.domain.pricing import FareEngine
from src.infrastructure.repositories import RideRepository, UserRepository

router = APIRouter(prefix="/fares", tags=["fares"])


@router.post(
    "/estimate",
    response_model=FareQuoteResponse,
    summary="Estimate the fare for a trip",
)
@limiter.limit("100/minute")
async def estimate_fare(
    request: Request,
    body: FareEstimateRequest,
    db: AsyncSession = Depends(get_db),
    engine: FareEngine = Depends(get_fare_engine),
):
    # The prospective request counts towards demand.
    active_rides = await RideRepository(db).count_pending() + 1
    available_drivers = await UserRepository(db).count_available_drivers()

    quote = engine.quote_fare(
        Coordinate(body.pickup.latitude, body.pickup.longitude),
        Coordinate(body.dropoff.latitude, body.dropoff.longitude),
        vehicle_class=body.vehicle_class,
        active_rides=active_rides,
        available_drivers=available_drivers,
        currency=body.currency,
        event_multiplier=body.event_multiplier,
    )
    return FareQuoteResponse.from_domain(quote)
