"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field

from src.domain.entities import FareQuote, Ride
from src.domain.enums import ActorRole, PaymentMethod, RideStatus


# ── Requests ──────────────────────────────────────────────────────────


class CoordinateIn(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class FareEstimateRequest(BaseModel):
    pickup: CoordinateIn
    dropoff: CoordinateIn
    vehicle_class: str = "standard"
    currency: str = Field("USD", min_length=3, max_length=3)
    event_multiplier: float = Field(
        1.0, gt=0, description="Extra multiplier for special events (concerts, storms)."
    )


class RideCreateRequest(BaseModel):
    rider_id: int
    pickup: CoordinateIn
    dropoff: CoordinateIn
    vehicle_class: str = "standard"
    payment_method: PaymentMethod = PaymentMethod.CARD
    currency: str = Field("USD", min_length=3, max_length=3)
    idempotency_key: Optional[str] = Field(
        None,
        max_length=64,
        description="Client-generated UUID to prevent double-booking on retries.",
    )


class RideStatusUpdateRequest(BaseModel):
    requested_status: RideStatus
    actor_id: int
    actor_role: ActorRole
    cancellation_reason: Optional[str] = Field(None, max_length=255)
    driver_id: Optional[int] = Field(
        None, description="Driver to assign when an admin accepts a ride."
    )


# ── Responses ─────────────────────────────────────────────────────────


class FareBreakdownResponse(BaseModel):
    base_charge: Decimal
    distance_charge: Decimal
    time_charge: Decimal
    surge_charge: Decimal


class FareQuoteResponse(BaseModel):
    distance_km: float
    duration_min: float
    base_fare: Decimal
    surge_multiplier: float
    final_fare: Decimal
    currency: str
    vehicle_class: str
    breakdown: FareBreakdownResponse

    @classmethod
    def from_domain(cls, quote: FareQuote) -> "FareQuoteResponse":
        return cls(
            distance_km=round(quote.distance_km, 3),
            duration_min=round(quote.duration_min, 2),
            base_fare=quote.base_fare,
            surge_multiplier=quote.surge_multiplier,
            final_fare=quote.final_fare,
            currency=quote.currency,
            vehicle_class=quote.vehicle_class.value,
            breakdown=FareBreakdownResponse(
                base_charge=quote.breakdown.base_charge,
                distance_charge=quote.breakdown.distance_charge,
                time_charge=quote.breakdown.time_charge,
                surge_charge=quote.breakdown.surge_charge,
            ),
        )


class RideResponse(BaseModel):
    id: int
    rider_id: int
    driver_id: Optional[int] = None
    pickup: CoordinateIn
    dropoff: CoordinateIn
    status: str
    version: int
    payment_method: str
    fare: FareQuoteResponse
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, ride: Ride) -> "RideResponse":
        return cls(
            id=ride.id,
            rider_id=ride.rider_id,
            driver_id=ride.driver_id,
            pickup=CoordinateIn(
                latitude=ride.pickup.latitude, longitude=ride.pickup.longitude
            ),
            dropoff=CoordinateIn(
                latitude=ride.dropoff.latitude, longitude=ride.dropoff.longitude
            ),
            status=ride.status.value,
            version=ride.version,
            payment_method=ride.payment_method.value,
            fare=FareQuoteResponse.from_domain(ride.fare_quote),
            cancellation_reason=ride.cancellation_reason,
            created_at=ride.created_at,
            started_at=ride.started_at,
            completed_at=ride.completed_at,
        )


class TransitionResponse(BaseModel):
    ride: RideResponse
    changed: bool
    effects: list[dict[str, Any]] = []


class RidePageResponse(BaseModel):
    rides: list[RideResponse]
    total: int
    page: int
    limit: int
    pages: int

    @classmethod
    def build(cls, rides: list[Ride], total: int, page: int, limit: int) -> "RidePageResponse":
        return cls(
            rides=[RideResponse.from_domain(ride) for ride in rides],
            total=total,
            page=page,
            limit=limit,
            pages=(total + limit - 1) // limit,
        )


class SurgeSnapshotResponse(BaseModel):
    active_rides: int
    available_drivers: int
    peak_hour: bool
    surge_multiplier: float


class HealthResponse(BaseModel):
    status: str = "ok"


class ErrorResponse(BaseModel):
    detail: str
