"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.  Rows are mapped to and from the domain
``Ride`` here; routes and workers never build ORM rows themselves.

The ORM classes a repository works with are class attributes so that the
test-suite can point the same queries at SQLite-friendly mirrors of the
PostGIS models.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import EffectOutboxModel, NotificationModel, RideModel, UserModel
from src.domain.effects import DeferredEffect, NotifyUser, effect_to_dict
from src.domain.entities import Coordinate, FareBreakdown, FareQuote, Ride
from src.domain.enums import (
    ActorRole,
    PaymentMethod,
    PaymentStatus,
    RideStatus,
    VehicleClass,
)
from src.domain.errors import StaleRideError

# A driver is busy with these; riders also see PENDING as active.
ACTIVE_DRIVER_STATUSES = (RideStatus.ACCEPTED.value, RideStatus.STARTED.value)
OPEN_STATUSES = (RideStatus.PENDING.value,) + ACTIVE_DRIVER_STATUSES


def enum_value(member_or_str: Any) -> Any:
    return member_or_str.value if hasattr(member_or_str, "value") else member_or_str


def ride_from_model(row: Any) -> Ride:
    """Map a ``rides`` row onto the domain ``Ride`` entity."""
    breakdown = row.fare_breakdown or {}
    quote = FareQuote(
        distance_km=row.distance_km,
        duration_min=row.duration_min,
        base_fare=Decimal(str(row.base_fare)),
        surge_multiplier=row.surge_multiplier,
        final_fare=Decimal(str(row.final_fare)),
        currency=row.currency,
        vehicle_class=VehicleClass(enum_value(row.vehicle_class)),
        breakdown=FareBreakdown(
            base_charge=Decimal(breakdown.get("base_charge", "0")),
            distance_charge=Decimal(breakdown.get("distance_charge", "0")),
            time_charge=Decimal(breakdown.get("time_charge", "0")),
            surge_charge=Decimal(breakdown.get("surge_charge", "0")),
        ),
    )
    return Ride(
        id=row.id,
        rider_id=row.rider_id,
        driver_id=row.driver_id,
        pickup=Coordinate(row.pickup_lat, row.pickup_lng),
        dropoff=Coordinate(row.dropoff_lat, row.dropoff_lng),
        status=RideStatus(enum_value(row.status)),
        fare_quote=quote,
        payment_method=PaymentMethod(enum_value(row.payment_method)),
        created_at=row.created_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
        cancellation_reason=row.cancellation_reason,
        version=row.version,
        idempotency_key=row.idempotency_key,
    )


class RideRepository:
    ride_model = RideModel

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _point(lat: float, lng: float):
        from geoalchemy2.functions import ST_MakePoint

        return ST_MakePoint(lng, lat)

    async def create_ride(self, ride: Ride) -> Any:
        """Insert a new ride (with its fare quote) and return the row."""
        quote = ride.fare_quote
        row = self.ride_model(
            rider_id=ride.rider_id,
            driver_id=ride.driver_id,
            pickup_lat=ride.pickup.latitude,
            pickup_lng=ride.pickup.longitude,
            dropoff_lat=ride.dropoff.latitude,
            dropoff_lng=ride.dropoff.longitude,
            pickup_point=self._point(ride.pickup.latitude, ride.pickup.longitude),
            dropoff_point=self._point(ride.dropoff.latitude, ride.dropoff.longitude),
            status=ride.status.value,
            version=ride.version,
            vehicle_class=quote.vehicle_class.value,
            payment_method=ride.payment_method.value,
            payment_status=PaymentStatus.PENDING.value,
            distance_km=quote.distance_km,
            duration_min=quote.duration_min,
            base_fare=quote.base_fare,
            surge_multiplier=quote.surge_multiplier,
            final_fare=quote.final_fare,
            currency=quote.currency,
            fare_breakdown=quote.breakdown.as_dict(),
            idempotency_key=ride.idempotency_key,
            cancellation_reason=ride.cancellation_reason,
            created_at=ride.created_at,
            started_at=ride.started_at,
            completed_at=ride.completed_at,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def get_by_id(self, ride_id: int) -> Optional[Any]:
        # Bulk UPDATEs bypass the identity map; always reload the row.
        return await self.session.get(self.ride_model, ride_id, populate_existing=True)

    async def get_ride(self, ride_id: int) -> Optional[Ride]:
        row = await self.get_by_id(ride_id)
        return ride_from_model(row) if row is not None else None

    async def get_by_idempotency_key(self, key: str) -> Optional[Any]:
        result = await self.session.execute(
            select(self.ride_model).where(self.ride_model.idempotency_key == key)
        )
        return result.scalar_one_or_none()

    async def save_transition(self, ride: Ride, expected_version: int) -> None:
        """Write a transitioned ride only if nobody changed it meanwhile.

        Raises ``StaleRideError`` when the stored version no longer matches
        *expected_version* (another transition won the race).
        """
        model = self.ride_model
        result = await self.session.execute(
            update(model)
            .where(model.id == ride.id, model.version == expected_version)
            .values(
                status=ride.status.value,
                version=ride.version,
                driver_id=ride.driver_id,
                started_at=ride.started_at,
                completed_at=ride.completed_at,
                cancellation_reason=ride.cancellation_reason,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleRideError(
                f"Ride {ride.id} was modified concurrently "
                f"(expected version {expected_version})"
            )

    async def set_payment_status(self, ride_id: int, status: PaymentStatus) -> bool:
        model = self.ride_model
        result = await self.session.execute(
            update(model)
            .where(model.id == ride_id)
            .values(payment_status=status.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def count_pending(self) -> int:
        model = self.ride_model
        result = await self.session.execute(
            select(func.count())
            .select_from(model)
            .where(model.status == RideStatus.PENDING.value)
        )
        return result.scalar() or 0

    async def count_active_for_driver(self, driver_id: int) -> int:
        model = self.ride_model
        result = await self.session.execute(
            select(func.count())
            .select_from(model)
            .where(
                model.driver_id == driver_id,
                model.status.in_(ACTIVE_DRIVER_STATUSES),
            )
        )
        return result.scalar() or 0

    def _for_user(self, user_id: int, role: Optional[ActorRole]):
        model = self.ride_model
        if role is ActorRole.RIDER:
            return model.rider_id == user_id
        if role is ActorRole.DRIVER:
            return model.driver_id == user_id
        return or_(model.rider_id == user_id, model.driver_id == user_id)

    async def list_active_for_user(
        self, user_id: int, role: Optional[ActorRole] = None
    ) -> list[Ride]:
        """Rides the user is on that have not finished, newest first."""
        model = self.ride_model
        result = await self.session.execute(
            select(model)
            .where(
                self._for_user(user_id, role),
                model.status.in_(OPEN_STATUSES),
            )
            .order_by(model.created_at.desc(), model.id.desc())
        )
        return [ride_from_model(row) for row in result.scalars().all()]

    async def list_history(
        self,
        user_id: int,
        role: Optional[ActorRole] = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Ride], int]:
        """One page of every ride the user took part in, plus the total."""
        return await self._page(self._for_user(user_id, role), page, limit)

    async def list_rides(
        self, status: Optional[RideStatus] = None, page: int = 1, limit: int = 20
    ) -> tuple[list[Ride], int]:
        """Admin listing, optionally filtered by status."""
        criteria = []
        if status is not None:
            criteria.append(self.ride_model.status == status.value)
        return await self._page(criteria, page, limit)

    async def _page(self, criteria, page: int, limit: int) -> tuple[list[Ride], int]:
        model = self.ride_model
        if not isinstance(criteria, list):
            criteria = [criteria]
        total = await self.session.execute(
            select(func.count()).select_from(model).where(*criteria)
        )
        rows = await self.session.execute(
            select(model)
            .where(*criteria)
            .order_by(model.created_at.desc(), model.id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        )
        return (
            [ride_from_model(row) for row in rows.scalars().all()],
            total.scalar() or 0,
        )


class UserRepository:
    user_model = UserModel

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, user_id: int) -> Optional[Any]:
        return await self.session.get(self.user_model, user_id)

    async def get_for_update(self, user_id: int) -> Optional[Any]:
        """Load a user row locked until the end of the transaction."""
        model = self.user_model
        result = await self.session.execute(
            select(model)
            .where(model.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def set_availability(self, user_id: int, available: bool) -> None:
        model = self.user_model
        await self.session.execute(
            update(model)
            .where(model.id == user_id)
            .values(is_available=available)
            .execution_options(synchronize_session=False)
        )

    async def count_available_drivers(self) -> int:
        model = self.user_model
        result = await self.session.execute(
            select(func.count())
            .select_from(model)
            .where(
                model.role == ActorRole.DRIVER.value,
                model.is_available.is_(True),
            )
        )
        return result.scalar() or 0


class NotificationRepository:
    notification_model = NotificationModel

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_from_effect(self, effect: NotifyUser) -> Any:
        row = self.notification_model(
            user_id=effect.user_id,
            ride_id=effect.ride_id,
            type=effect.type.value,
            payload=dict(effect.payload),
            status="pending",
        )
        self.session.add(row)
        await self.session.flush()
        return row


class OutboxRepository:
    outbox_model = EffectOutboxModel

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, effects: list[DeferredEffect]) -> int:
        """Stage effects in the caller's transaction.  Returns the count."""
        for effect in effects:
            self.session.add(
                self.outbox_model(
                    ride_id=effect.ride_id,
                    kind=effect.kind,
                    effect=effect_to_dict(effect),
                )
            )
        if effects:
            await self.session.flush()
        return len(effects)

    async def pending(self, limit: int) -> list[Any]:
        """Oldest staged rows first, locked against a concurrent relay."""
        model = self.outbox_model
        result = await self.session.execute(
            select(model)
            .order_by(model.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def delete(self, ids: list[int]) -> None:
        model = self.outbox_model
        await self.session.execute(
            delete(model)
            .where(model.id.in_(ids))
            .execution_options(synchronize_session=False)
        )
