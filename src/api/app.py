"""
FastAPI application factory.

* Registers routes for fares, rides and admin.
* Starts / stops the background effect dispatcher via lifespan events.
* Maps domain errors onto HTTP status codes.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from src.api.middleware import limiter
from src.api.routes import admin, fares, rides
from src.config import settings
from src.domain.errors import (
    AuthorizationError,
    DataConsistencyError,
    DriverUnavailableError,
    InvalidCoordinateError,
    InvalidTransitionError,
    RideDomainError,
    StaleRideError,
    UnknownVehicleClassError,
    UnsupportedCurrencyError,
)
from src.infrastructure.redis_client import close_redis
from src.workers import dispatcher as _dispatcher

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[RideDomainError], int] = {
    InvalidCoordinateError: 422,
    UnsupportedCurrencyError: 422,
    UnknownVehicleClassError: 422,
    AuthorizationError: 403,
    InvalidTransitionError: 409,
    DataConsistencyError: 409,
    DriverUnavailableError: 409,
    StaleRideError: 409,
}


async def _domain_error_handler(request: Request, exc: RideDomainError) -> JSONResponse:
    status = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 400
    )
    logger.info("%s %s rejected (%d): %s", request.method, request.url.path, status, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc)})


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the effect dispatcher on startup; stop on shutdown."""
    await _dispatcher.start_dispatch_loop()
    yield
    await _dispatcher.stop_dispatch_loop()
    await close_redis()


def create_app() -> FastAPI:
    app = FastAPI(
        title="RideLink Ride-Hailing API",
        description=(
            "Fare estimation with surge and peak-hour pricing, and the ride "
            "lifecycle (request, accept, start, complete, cancel) with "
            "notifications and payment status updates dispatched "
            "asynchronously."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Domain errors
    app.add_exception_handler(RideDomainError, _domain_error_handler)

    # Routers
    app.include_router(fares.router, prefix="/api/v1")
    app.include_router(rides.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")

    return app
