"""FastAPI dependency injection helpers."""

from datetime import datetime
from functools import lru_cache
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.domain.pricing import FareEngine, FarePolicy
from src.infrastructure.database import async_session_factory


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """Yield an async DB session; commit on success, rollback on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@lru_cache
def get_fare_engine() -> FareEngine:
    """One shared engine; peak hours are judged in ``PRICING_TIMEZONE``."""
    zone = ZoneInfo(settings.pricing_timezone)
    return FareEngine(
        FarePolicy.from_settings(settings),
        clock=lambda: datetime.now(zone),
    )
