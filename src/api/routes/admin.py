"""
Admin / observability endpoints
===============================

GET /api/v1/admin/surge  -- current demand snapshot and surge multiplier
GET /api/v1/admin/rides  -- every ride, paginated, optionally by status
GET /api/v1/admin/health -- simple health check
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import get_db, get_fare_engine
from src.api.middleware import limiter
from src.api.schemas import HealthResponse, RidePageResponse, SurgeSnapshotResponse
from src.domain.enums import RideStatus
from src.domain.pricing import FareEngine, is_peak_hour
from src.infrastructure.repositories import RideRepository, UserRepository

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get(
    "/surge",
    response_model=SurgeSnapshotResponse,
    summary="Current surge multiplier and the demand behind it",
)
@limiter.limit("100/minute")
async def get_surge(
    request: Request,
    db: AsyncSession = Depends(get_db),
    engine: FareEngine = Depends(get_fare_engine),
):
    active_rides = await RideRepository(db).count_pending()
    available_drivers = await UserRepository(db).count_available_drivers()
    now = engine.clock()
    return SurgeSnapshotResponse(
        active_rides=active_rides,
        available_drivers=available_drivers,
        peak_hour=is_peak_hour(now, engine.policy.peak_windows),
        surge_multiplier=engine.compute_surge_multiplier(
            active_rides, available_drivers, now=now
        ),
    )


@router.get(
    "/rides",
    response_model=RidePageResponse,
    summary="All rides, newest first",
)
@limiter.limit("100/minute")
async def list_rides(
    request: Request,
    status: Optional[RideStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    rides, total = await RideRepository(db).list_rides(status, page, limit)
    return RidePageResponse.build(rides, total, page, limit)


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health():
    return HealthResponse()
