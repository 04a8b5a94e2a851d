"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 6 riders, 6 drivers (4 available) and 1 admin
  - 6 sample rides around San Francisco, priced by the fare engine and
    walked through the state machine (PENDING, ACCEPTED, STARTED,
    COMPLETED, CANCELLED)
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import text

from src.config import settings
from src.domain.entities import Actor, Coordinate
from src.domain.enums import ActorRole, PaymentMethod, RideStatus, VehicleClass
from src.domain.pricing import FareEngine, FarePolicy
from src.domain.state_machine import open_ride, request_transition
from src.infrastructure.database import async_session_factory, engine
from src.infrastructure.models import UserModel
from src.infrastructure.repositories import RideRepository

# Union Square, San Francisco (approx)
CITY_CENTER = (37.7879, -122.4075)


USERS = [
    {"name": "Maya Chen", "email": "maya@example.com", "role": ActorRole.RIDER},
    {"name": "Luis Ortega", "email": "luis@example.com", "role": ActorRole.RIDER},
    {"name": "Hannah Weiss", "email": "hannah@example.com", "role": ActorRole.RIDER},
    {"name": "Kwame Mensah", "email": "kwame@example.com", "role": ActorRole.RIDER},
    {"name": "Sofia Rossi", "email": "sofia@example.com", "role": ActorRole.RIDER},
    {"name": "Arjun Rao", "email": "arjun@example.com", "role": ActorRole.RIDER},
    {"name": "Dana Brooks", "email": "dana@example.com", "role": ActorRole.DRIVER},
    {"name": "Tomasz Nowak", "email": "tomasz@example.com", "role": ActorRole.DRIVER},
    {"name": "Amara Okafor", "email": "amara@example.com", "role": ActorRole.DRIVER, "available": True},
    {"name": "Felix Braun", "email": "felix@example.com", "role": ActorRole.DRIVER, "available": True},
    {"name": "Yuki Tanaka", "email": "yuki@example.com", "role": ActorRole.DRIVER, "available": True},
    {"name": "Omar Haddad", "email": "omar@example.com", "role": ActorRole.DRIVER},
    {"name": "Ops Admin", "email": "admin@example.com", "role": ActorRole.ADMIN},
]

# (rider index, pickup, dropoff, vehicle class, final status, driver index)
# Drivers 6 and 7 are on the accepted and started rides, so seed them busy.
RIDES = [
    (0, (37.7749, -122.4194), (37.7833, -122.4167), VehicleClass.STANDARD, RideStatus.PENDING, None),
    (1, (37.7955, -122.3937), (37.8080, -122.4177), VehicleClass.SEDAN, RideStatus.ACCEPTED, 6),
    (2, (37.7694, -122.4862), (37.7599, -122.4148), VehicleClass.SUV, RideStatus.STARTED, 7),
    (3, (37.6213, -122.3790), (37.7879, -122.4075), VehicleClass.LUXURY, RideStatus.COMPLETED, 10),
    (4, (37.7599, -122.4148), (37.7786, -122.3893), VehicleClass.ELECTRIC, RideStatus.CANCELLED, None),
    (5, (37.8024, -122.4058), (37.7609, -122.4350), VehicleClass.VAN, RideStatus.COMPLETED, 11),
]

_PATH = {
    RideStatus.PENDING: [],
    RideStatus.ACCEPTED: [RideStatus.ACCEPTED],
    RideStatus.STARTED: [RideStatus.ACCEPTED, RideStatus.STARTED],
    RideStatus.COMPLETED: [RideStatus.ACCEPTED, RideStatus.STARTED, RideStatus.COMPLETED],
    RideStatus.CANCELLED: [RideStatus.CANCELLED],
}


async def seed():
    fares = FareEngine(FarePolicy.from_settings(settings))

    async with async_session_factory() as session:
        # Check if already seeded
        result = await session.execute(text("SELECT count(*) FROM users"))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return

        # ── Users ─────────────────────────────────────────────────────
        user_models = []
        for u in USERS:
            m = UserModel(
                name=u["name"],
                email=u["email"],
                role=u["role"],
                is_available=u.get("available", False),
            )
            session.add(m)
            user_models.append(m)
        await session.flush()
        print(f"  Created {len(user_models)} users")

        # ── Rides ─────────────────────────────────────────────────────
        repo = RideRepository(session)
        started = datetime.now(timezone.utc) - timedelta(hours=2)
        for i, (rider_idx, pickup, dropoff, vclass, status, driver_idx) in enumerate(RIDES):
            rider = user_models[rider_idx]
            quote = fares.quote_fare(
                Coordinate(*pickup),
                Coordinate(*dropoff),
                vehicle_class=vclass,
                active_rides=len(RIDES),
                available_drivers=3,
            )
            ride = open_ride(
                rider_id=rider.id,
                pickup=Coordinate(*pickup),
                dropoff=Coordinate(*dropoff),
                fare_quote=quote,
                payment_method=PaymentMethod.CARD,
                now=started + timedelta(minutes=10 * i),
            )
            # Replay the lifecycle through the state machine so the sample
            # rows carry consistent timestamps and versions.
            for step, target in enumerate(_PATH[status], start=1):
                if target is RideStatus.CANCELLED:
                    actor = Actor(rider.id, ActorRole.RIDER)
                else:
                    actor = Actor(user_models[driver_idx].id, ActorRole.DRIVER)
                ride = request_transition(
                    ride,
                    target,
                    actor,
                    now=ride.created_at + timedelta(minutes=3 * step),
                    cancellation_reason="Plans changed",
                ).ride
            await repo.create_ride(ride)
        await session.flush()
        print(f"  Created {len(RIDES)} rides")

        await session.commit()
        print("\nSeed complete!")


async def main():
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
