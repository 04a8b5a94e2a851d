"""Tests for the background effect dispatcher (outbox relay, execution, retries)."""

from __future__ import annotations

import json

import pytest
from sqlalchemy import func, select

from src.config import settings
from src.domain.effects import NotifyUser, UpdatePaymentStatus, effect_to_dict
from src.domain.enums import NotificationType, PaymentStatus
from src.domain.state_machine import open_ride, opening_effects
from src.infrastructure.locks import DistributedLock
from src.workers.dispatcher import (
    DEAD_LETTER_KEY,
    QUEUE_KEY,
    EffectExecutor,
    relay_outbox,
    run_dispatch_cycle,
)
from tests.conftest import (
    SF_DROPOFF,
    SF_PICKUP,
    TestEffectOutboxModel,
    TestNotificationModel,
    TestRideModel,
    TestSessionFactory,
    TestUserModel,
    _TestNotificationRepository,
    _TestOutboxRepository,
    _TestRideRepository,
)


def _executor(session):
    return EffectExecutor(
        _TestRideRepository(session), _TestNotificationRepository(session)
    )


async def _run(redis, executor_factory=_executor):
    return await run_dispatch_cycle(
        redis,
        session_factory=TestSessionFactory,
        executor_factory=executor_factory,
        outbox_factory=_TestOutboxRepository,
    )


async def _stage(session, effects):
    await _TestOutboxRepository(session).add(effects)
    await session.commit()


async def _outbox_count(session) -> int:
    result = await session.execute(
        select(func.count()).select_from(TestEffectOutboxModel)
    )
    return result.scalar()


async def _notifications(session, ride_id):
    result = await session.execute(
        select(TestNotificationModel)
        .where(TestNotificationModel.ride_id == ride_id)
        .order_by(TestNotificationModel.id)
    )
    return result.scalars().all()


async def _stored_ride(session, engine):
    rider = TestUserModel(name="Rider", email="rider@test.com", role="rider")
    session.add(rider)
    await session.flush()
    quote = engine.quote_fare(SF_PICKUP, SF_DROPOFF)
    ride = open_ride(rider.id, SF_PICKUP, SF_DROPOFF, quote)
    row = await _TestRideRepository(session).create_ride(ride)
    await session.commit()
    ride.id = row.id
    return ride


class TestOutboxRelay:
    @pytest.mark.asyncio
    async def test_rows_become_queue_envelopes(self, db_session, fake_redis):
        await _stage(
            db_session, [UpdatePaymentStatus(ride_id=None, status=PaymentStatus.VOIDED)]
        )

        relayed = await relay_outbox(fake_redis, TestSessionFactory, _TestOutboxRepository)

        assert relayed == 1
        assert json.loads(fake_redis.items(QUEUE_KEY)[0]) == {
            "effect": {"kind": "update_payment_status", "ride_id": None, "status": "voided"},
            "attempts": 0,
        }
        assert await _outbox_count(db_session) == 0

    @pytest.mark.asyncio
    async def test_empty_outbox_pushes_nothing(self, db_session, fake_redis):
        assert await relay_outbox(fake_redis, TestSessionFactory, _TestOutboxRepository) == 0
        assert fake_redis.items(QUEUE_KEY) == []

    @pytest.mark.asyncio
    async def test_redis_failure_keeps_rows_for_next_cycle(
        self, db_session, off_peak_engine, fake_redis
    ):
        ride = await _stored_ride(db_session, off_peak_engine)
        await _stage(db_session, opening_effects(ride))

        fake_redis.fail_rpush = True
        assert await _run(fake_redis) == 0
        assert await _outbox_count(db_session) == 2
        assert await _notifications(db_session, ride.id) == []

        fake_redis.fail_rpush = False
        assert await _run(fake_redis) == 2
        assert await _outbox_count(db_session) == 0
        assert len(await _notifications(db_session, ride.id)) == 1


class TestDispatchCycle:
    @pytest.mark.asyncio
    async def test_opening_effects_are_executed(self, db_session, off_peak_engine, fake_redis):
        ride = await _stored_ride(db_session, off_peak_engine)
        await _stage(db_session, opening_effects(ride))

        assert await _run(fake_redis) == 2
        assert fake_redis.items(QUEUE_KEY) == []

        notes = await _notifications(db_session, ride.id)
        assert len(notes) == 1
        assert notes[0].user_id == ride.rider_id
        assert notes[0].type == NotificationType.RIDE_REQUESTED.value
        assert notes[0].payload["estimated_fare"] == "10.00"

    @pytest.mark.asyncio
    async def test_payment_status_is_synced(self, db_session, off_peak_engine, fake_redis):
        ride = await _stored_ride(db_session, off_peak_engine)
        await _stage(
            db_session, [UpdatePaymentStatus(ride_id=ride.id, status=PaymentStatus.COMPLETED)]
        )

        assert await _run(fake_redis) == 1

        result = await db_session.execute(
            select(TestRideModel.payment_status).where(TestRideModel.id == ride.id)
        )
        assert result.scalar_one() == "completed"

    @pytest.mark.asyncio
    async def test_failing_effect_is_dead_lettered(self, db_session, fake_redis):
        await fake_redis.rpush(
            QUEUE_KEY,
            json.dumps({
                "effect": effect_to_dict(
                    UpdatePaymentStatus(ride_id=404, status=PaymentStatus.VOIDED)
                ),
                "attempts": 0,
            }),
        )

        assert await _run(fake_redis) == 0
        assert fake_redis.items(QUEUE_KEY) == []
        dead = [json.loads(item) for item in fake_redis.items(DEAD_LETTER_KEY)]
        assert len(dead) == 1
        assert dead[0]["attempts"] == settings.effect_max_attempts
        assert dead[0]["effect"]["ride_id"] == 404

    @pytest.mark.asyncio
    async def test_failure_does_not_block_later_effects(
        self, db_session, off_peak_engine, fake_redis
    ):
        ride = await _stored_ride(db_session, off_peak_engine)
        await _stage(
            db_session,
            [
                NotifyUser(
                    user_id=ride.rider_id,
                    type=NotificationType.RIDE_CANCELLED,
                    ride_id=ride.id,
                    payload={"reason": "test"},
                ),
            ],
        )
        await fake_redis.rpush(
            QUEUE_KEY,
            json.dumps({
                "effect": effect_to_dict(
                    UpdatePaymentStatus(ride_id=404, status=PaymentStatus.VOIDED)
                ),
                "attempts": 0,
            }),
        )

        assert await _run(fake_redis) == 1
        assert len(fake_redis.items(DEAD_LETTER_KEY)) == 1

    @pytest.mark.asyncio
    async def test_malformed_payload_is_dead_lettered(self, db_session, fake_redis):
        await fake_redis.rpush(QUEUE_KEY, "not json", json.dumps({"effect": {"kind": "persist_ride"}}))

        assert await _run(fake_redis) == 0
        assert fake_redis.items(DEAD_LETTER_KEY) == [
            "not json",
            json.dumps({"effect": {"kind": "persist_ride"}}),
        ]

    @pytest.mark.asyncio
    async def test_skips_cycle_while_lock_is_held(self, db_session, fake_redis):
        await _stage(
            db_session, [UpdatePaymentStatus(ride_id=1, status=PaymentStatus.VOIDED)]
        )
        holder = DistributedLock(fake_redis, "effect_dispatcher")
        assert await holder.acquire()

        assert await _run(fake_redis) == 0
        assert fake_redis.items(QUEUE_KEY) == []
        assert await _outbox_count(db_session) == 1

    @pytest.mark.asyncio
    async def test_lock_is_released_after_cycle(self, db_session, fake_redis):
        assert await _run(fake_redis) == 0
        assert await DistributedLock(fake_redis, "effect_dispatcher").acquire()

    @pytest.mark.asyncio
    async def test_cycle_stops_once_lock_is_lost(
        self, db_session, off_peak_engine, fake_redis
    ):
        ride = await _stored_ride(db_session, off_peak_engine)
        await _stage(db_session, opening_effects(ride))

        def stealing_executor(session):
            # Another worker takes over the lock while the first effect runs.
            fake_redis.values["lock:effect_dispatcher"] = "other-worker"
            return _executor(session)

        assert await _run(fake_redis, stealing_executor) == 1
        assert len(fake_redis.items(QUEUE_KEY)) == 1
        assert fake_redis.values["lock:effect_dispatcher"] == "other-worker"
