"""
Shared test fixtures.

Uses an in-memory SQLite database (via aiosqlite) so tests run without
Docker / PostgreSQL / Redis.  PostGIS-specific features (Geometry columns)
are mocked by using plain String columns in the test models, and the
production repositories are pointed at those models by subclassing.
Redis is replaced by a small in-memory fake.
"""

from datetime import datetime
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from src.domain.entities import Coordinate
from src.domain.pricing import FareEngine
from src.infrastructure.repositories import (
    NotificationRepository,
    OutboxRepository,
    RideRepository,
    UserRepository,
)


# ── Test DB (SQLite in-memory) ────────────────────────────────────────

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(TEST_DB_URL, echo=False, poolclass=StaticPool)
TestSessionFactory = async_sessionmaker(
    test_engine, class_=AsyncSession, expire_on_commit=False
)


class TestBase(DeclarativeBase):
    pass


# Mirror the production models but without PostGIS Geometry columns
# (SQLite doesn't support them) and with enums stored as plain strings.

class TestUserModel(TestBase):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    role = Column(String(20), default="rider", nullable=False)
    device_token = Column(String(255), nullable=True)
    is_available = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class TestRideModel(TestBase):
    __tablename__ = "rides"
    id = Column(Integer, primary_key=True, autoincrement=True)
    rider_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    pickup_point = Column(String, nullable=True)  # stub for Geometry
    dropoff_point = Column(String, nullable=True)  # stub for Geometry
    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    dropoff_lat = Column(Float, nullable=False)
    dropoff_lng = Column(Float, nullable=False)
    status = Column(String(20), default="pending", nullable=False)
    version = Column(Integer, default=1, nullable=False)
    vehicle_class = Column(String(20), nullable=False)
    payment_method = Column(String(20), nullable=False)
    payment_status = Column(String(20), default="pending", nullable=False)
    distance_km = Column(Float, nullable=False)
    duration_min = Column(Float, nullable=False)
    base_fare = Column(Numeric(10, 2), nullable=False)
    surge_multiplier = Column(Float, nullable=False)
    final_fare = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    fare_breakdown = Column(JSON, nullable=False)
    idempotency_key = Column(String(64), unique=True, nullable=True)
    cancellation_reason = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, server_default=func.now())


class TestNotificationModel(TestBase):
    __tablename__ = "notifications"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    ride_id = Column(Integer, ForeignKey("rides.id"), nullable=True)
    type = Column(String(30), nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(String(20), default="pending", nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class TestEffectOutboxModel(TestBase):
    __tablename__ = "effect_outbox"
    id = Column(Integer, primary_key=True, autoincrement=True)
    ride_id = Column(Integer, ForeignKey("rides.id"), nullable=True)
    kind = Column(String(40), nullable=False)
    effect = Column(JSON, nullable=False)
    created_at = Column(DateTime, server_default=func.now())


# ── Repositories over the test models ─────────────────────────────────


class _TestRideRepository(RideRepository):
    ride_model = TestRideModel

    @staticmethod
    def _point(lat: float, lng: float):
        return f"POINT({lng} {lat})"


class _TestUserRepository(UserRepository):
    user_model = TestUserModel


class _TestNotificationRepository(NotificationRepository):
    notification_model = TestNotificationModel


class _TestOutboxRepository(OutboxRepository):
    outbox_model = TestEffectOutboxModel


# ── Fakes ─────────────────────────────────────────────────────────────


class FakeRedis:
    """Just enough of ``redis.asyncio.Redis`` for the queue and the lock."""

    def __init__(self):
        self.lists: dict[str, list[str]] = {}
        self.values: dict[str, str] = {}
        self.fail_rpush = False

    async def rpush(self, key: str, *values: str) -> int:
        if self.fail_rpush:
            raise ConnectionError("Redis unavailable")
        self.lists.setdefault(key, []).extend(values)
        return len(self.lists[key])

    async def lpop(self, key: str) -> Optional[str]:
        items = self.lists.get(key)
        return items.pop(0) if items else None

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.values:
            return None
        self.values[key] = value
        return True

    async def eval(self, script, numkeys, key, token, *args):
        if self.values.get(key) != token:
            return 0
        if "del" in script:
            del self.values[key]
        return 1

    def items(self, key: str) -> list[str]:
        return list(self.lists.get(key, []))


# Mid-day Monday: outside both default peak windows.
OFF_PEAK = datetime(2026, 10, 19, 12, 0)
MORNING_PEAK = datetime(2026, 10, 19, 8, 15)

SF_PICKUP = Coordinate(37.7749, -122.4194)
SF_DROPOFF = Coordinate(37.7833, -122.4167)


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture
def off_peak_engine() -> FareEngine:
    return FareEngine(clock=lambda: OFF_PEAK)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create tables, yield a session, then drop everything."""
    async with test_engine.begin() as conn:
        await conn.run_sync(TestBase.metadata.create_all)

    async with TestSessionFactory() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(TestBase.metadata.drop_all)
