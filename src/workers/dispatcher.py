"""
Background Effect Dispatcher
============================

Runs every ``DISPATCH_INTERVAL_SECONDS`` (default 5 s).

The ride state machine returns effect descriptors instead of calling the
notification and payment systems itself.  The API stores the ride and its
deferred effects in one DB transaction (the ``effect_outbox`` table).  Each
cycle of this worker:

1. **Relays** outbox rows onto the Redis list ``ride:effects`` and deletes
   them.  If Redis is down the rows stay put for the next cycle.
2. **Drains** the list and executes each effect in its own DB transaction.

Delivery is at-least-once: a crash between the push and the outbox delete
relays the same rows again.

Concurrency safety
------------------
* **Redis distributed lock** ensures only one instance drains the queue
  per cycle across multiple API processes.  The lock is refreshed after
  every effect; a cycle that loses it stops early.
* Effects are popped one at a time (``LPOP``), so a crash loses at most
  the effect in flight.

Retry policy
------------
A failed effect is pushed back onto the tail of the queue with its
``attempts`` counter incremented.  After ``EFFECT_MAX_ATTEMPTS`` it is
moved to the dead-letter list ``ride:effects:dead`` for inspection.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import settings
from src.domain.effects import (
    DeferredEffect,
    NotifyUser,
    UpdatePaymentStatus,
    effect_from_dict,
)
from src.infrastructure.database import async_session_factory
from src.infrastructure.locks import DistributedLock
from src.infrastructure.redis_client import get_redis
from src.infrastructure.repositories import (
    NotificationRepository,
    OutboxRepository,
    RideRepository,
)

logger = logging.getLogger(__name__)

QUEUE_KEY = "ride:effects"
DEAD_LETTER_KEY = "ride:effects:dead"
LOCK_TTL_SECONDS = 60

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


# ── Queue ─────────────────────────────────────────────────────────────


def _envelope(effect_data: dict[str, Any], attempts: int = 0) -> str:
    return json.dumps({"effect": effect_data, "attempts": attempts})


async def relay_outbox(
    redis,
    session_factory: async_sessionmaker = async_session_factory,
    outbox_factory: Callable[[AsyncSession], OutboxRepository] = OutboxRepository,
) -> int:
    """Move staged effects from the outbox onto the queue.  Returns the count.

    The rows are only deleted once the push succeeded; any error leaves
    them in place and propagates.
    """
    async with session_factory() as session:
        outbox = outbox_factory(session)
        rows = await outbox.pending(settings.dispatch_batch_size)
        if not rows:
            return 0
        await redis.rpush(QUEUE_KEY, *[_envelope(row.effect) for row in rows])
        await outbox.delete([row.id for row in rows])
        await session.commit()
    return len(rows)


# ── Execution ─────────────────────────────────────────────────────────


class EffectExecutor:
    """Carries out one deferred effect against its collaborator.

    Notification delivery (push / email) is outside this service: a
    ``NotifyUser`` effect becomes a pending ``notifications`` row for the
    delivery service to pick up.  Payment capture likewise happens in the
    payment service; here we only sync the ride's ``payment_status``.
    """

    def __init__(self, rides: RideRepository, notifications: NotificationRepository):
        self.rides = rides
        self.notifications = notifications

    @classmethod
    def for_session(cls, session: AsyncSession) -> "EffectExecutor":
        return cls(RideRepository(session), NotificationRepository(session))

    async def execute(self, effect: DeferredEffect) -> None:
        if isinstance(effect, NotifyUser):
            await self.notifications.create_from_effect(effect)
            logger.info(
                "Queued %s notification for user %s (ride %s)",
                effect.type.value, effect.user_id, effect.ride_id,
            )
        elif isinstance(effect, UpdatePaymentStatus):
            if effect.ride_id is None:
                raise ValueError("UpdatePaymentStatus effect without a ride id")
            if not await self.rides.set_payment_status(effect.ride_id, effect.status):
                raise LookupError(f"Ride {effect.ride_id} not found")
            logger.info(
                "Payment status of ride %s set to %s",
                effect.ride_id, effect.status.value,
            )
        else:
            raise TypeError(f"Effect {effect!r} cannot be dispatched")


# ── Public API ────────────────────────────────────────────────────────


async def start_dispatch_loop() -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop())
    logger.info(
        "Effect dispatcher started (interval=%ds)", settings.dispatch_interval_seconds
    )


async def stop_dispatch_loop() -> None:
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    logger.info("Effect dispatcher stopped")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop() -> None:
    """Periodic loop: run a dispatch cycle then sleep."""
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            await run_dispatch_cycle()
        except Exception:
            logger.exception("Unhandled error in dispatch cycle")
        # Wait for the interval or until stop is signalled
        try:
            await asyncio.wait_for(
                _stop_event.wait(), timeout=settings.dispatch_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass  # next cycle


async def _retry_or_bury(redis, envelope: dict[str, Any]) -> None:
    attempts = int(envelope.get("attempts", 0)) + 1
    if attempts >= settings.effect_max_attempts:
        logger.error(
            "Effect %s failed %d times; moving to %s",
            envelope.get("effect"), attempts, DEAD_LETTER_KEY,
        )
        await redis.rpush(DEAD_LETTER_KEY, _envelope(envelope.get("effect"), attempts))
    else:
        await redis.rpush(QUEUE_KEY, _envelope(envelope.get("effect"), attempts))


async def run_dispatch_cycle(
    redis=None,
    session_factory: async_sessionmaker = async_session_factory,
    executor_factory: Callable[[AsyncSession], EffectExecutor] = EffectExecutor.for_session,
    outbox_factory: Callable[[AsyncSession], OutboxRepository] = OutboxRepository,
) -> int:
    """Execute one dispatch cycle.  Returns the number of effects executed."""
    redis = redis or await get_redis()
    lock = DistributedLock(redis, "effect_dispatcher", ttl_seconds=LOCK_TTL_SECONDS)

    if not await lock.acquire():
        logger.debug("Lock held by another worker – skipping cycle")
        return 0

    executed = 0
    try:
        try:
            relayed = await relay_outbox(redis, session_factory, outbox_factory)
        except Exception:
            # Rows stay in the outbox; effects already queued still run.
            logger.exception("Outbox relay failed")
        else:
            if relayed:
                logger.info("Relayed %d effects from the outbox", relayed)

        for _ in range(settings.dispatch_batch_size):
            raw = await redis.lpop(QUEUE_KEY)
            if raw is None:
                break

            try:
                envelope = json.loads(raw)
                effect = effect_from_dict(envelope["effect"])
            except (ValueError, KeyError, TypeError):
                logger.error("Malformed effect payload, dead-lettering: %s", raw)
                await redis.rpush(DEAD_LETTER_KEY, raw)
                continue

            try:
                async with session_factory() as session:
                    await executor_factory(session).execute(effect)
                    await session.commit()
            except Exception:
                logger.exception("Failed to execute effect %s", envelope["effect"])
                await _retry_or_bury(redis, envelope)
            else:
                executed += 1

            if not await lock.refresh():
                logger.warning("Dispatcher lock lost; ending cycle early")
                break

        if executed:
            logger.info("Dispatch cycle: %d effects executed", executed)
    finally:
        await lock.release()

    return executed
