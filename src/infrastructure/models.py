"""
SQLAlchemy ORM models  (maps to PostgreSQL + PostGIS).

Tables
------
* ``users``          -- riders, drivers and admins
* ``rides``          -- ride requests with their fare quote and lifecycle
* ``notifications``  -- notifications queued for delivery to users
* ``effect_outbox``  -- deferred effects awaiting relay to the Redis queue

Indexes
-------
* **GIST** on the ride geometry columns (pickup_point, dropoff_point) for
  spatial queries.
* **B-Tree** on ``status``, ``rider_id``, ``driver_id``, ``idempotency_key``
  and on the driver availability flag used for surge pricing.

Optimistic concurrency
----------------------
``rides.version`` is bumped by every status change; writers update with
``WHERE version = :expected`` so two concurrent transitions on the same
ride cannot both succeed.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    func,
)
from geoalchemy2 import Geometry

from .database import Base
from src.domain.enums import (
    ActorRole,
    NotificationType,
    PaymentMethod,
    PaymentStatus,
    RideStatus,
    VehicleClass,
)


def _values(enum_cls):
    return [member.value for member in enum_cls]


def _enum(enum_cls, name: str) -> Enum:
    return Enum(enum_cls, name=name, values_callable=_values)


class UserModel(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    role = Column(_enum(ActorRole, "actorrole"), default=ActorRole.RIDER, nullable=False)
    device_token = Column(String(255), nullable=True)
    # Only meaningful for drivers: online and not on a trip.
    is_available = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("idx_users_role_available", "role", "is_available"),)


class RideModel(Base):
    __tablename__ = "rides"

    id = Column(Integer, primary_key=True, autoincrement=True)
    rider_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    # Stored as PostGIS geometry for spatial indexing
    pickup_point = Column(Geometry("POINT", srid=4326), nullable=False)
    dropoff_point = Column(Geometry("POINT", srid=4326), nullable=False)

    # Also stored as plain floats for fast reads (avoids ST_X / ST_Y)
    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    dropoff_lat = Column(Float, nullable=False)
    dropoff_lng = Column(Float, nullable=False)

    status = Column(
        _enum(RideStatus, "ridestatus"), default=RideStatus.PENDING, nullable=False
    )
    version = Column(Integer, default=1, nullable=False)
    vehicle_class = Column(_enum(VehicleClass, "vehicleclass"), nullable=False)
    payment_method = Column(_enum(PaymentMethod, "paymentmethod"), nullable=False)
    payment_status = Column(
        _enum(PaymentStatus, "paymentstatus"), default=PaymentStatus.PENDING, nullable=False
    )

    # Fare quote (immutable once written)
    distance_km = Column(Float, nullable=False)
    duration_min = Column(Float, nullable=False)
    base_fare = Column(Numeric(10, 2), nullable=False)
    surge_multiplier = Column(Float, nullable=False)
    final_fare = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    fare_breakdown = Column(JSON, nullable=False)

    idempotency_key = Column(String(64), unique=True, nullable=True)
    cancellation_reason = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_rides_pickup", "pickup_point", postgresql_using="gist"),
        Index("idx_rides_dropoff", "dropoff_point", postgresql_using="gist"),
        Index("idx_rides_status", "status"),
        Index("idx_rides_rider", "rider_id"),
        Index("idx_rides_driver", "driver_id"),
        Index("idx_rides_idempotency", "idempotency_key"),
    )


class NotificationModel(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    ride_id = Column(Integer, ForeignKey("rides.id"), nullable=True)
    type = Column(_enum(NotificationType, "notificationtype"), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(String(20), default="pending", nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_notifications_user", "user_id"),
        Index("idx_notifications_ride", "ride_id"),
    )


class EffectOutboxModel(Base):
    """Deferred effects written in the same transaction as the ride change.

    The dispatcher relays rows to the Redis effect queue and deletes them.
    """

    __tablename__ = "effect_outbox"

    id = Column(Integer, primary_key=True, autoincrement=True)
    ride_id = Column(Integer, ForeignKey("rides.id"), nullable=True)
    kind = Column(String(40), nullable=False)
    effect = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("idx_effect_outbox_created", "created_at"),)
