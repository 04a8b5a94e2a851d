"""Unit tests for the ride state machine."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from src.domain.effects import NotifyUser, PersistRide, UpdatePaymentStatus
from src.domain.entities import Actor
from src.domain.enums import (
    RIDE_TRANSITIONS,
    ActorRole,
    NotificationType,
    PaymentStatus,
    RideStatus,
)
from src.domain.errors import (
    AuthorizationError,
    DataConsistencyError,
    DriverUnavailableError,
    InvalidTransitionError,
)
from src.domain.pricing import FareEngine
from src.domain.state_machine import (
    can_transition,
    check_driver_capacity,
    open_ride,
    opening_effects,
    request_transition,
)
from tests.conftest import OFF_PEAK, SF_DROPOFF, SF_PICKUP

RIDER = Actor(1, ActorRole.RIDER)
OTHER_RIDER = Actor(2, ActorRole.RIDER)
DRIVER = Actor(10, ActorRole.DRIVER)
OTHER_DRIVER = Actor(11, ActorRole.DRIVER)
ADMIN = Actor(99, ActorRole.ADMIN)

T0 = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _pending_ride():
    quote = FareEngine(clock=lambda: OFF_PEAK).quote_fare(SF_PICKUP, SF_DROPOFF)
    ride = open_ride(RIDER.id, SF_PICKUP, SF_DROPOFF, quote, now=T0)
    ride.id = 7
    return ride


def _advance(ride, *steps):
    for status, actor in steps:
        ride = request_transition(
            ride, status, actor, now=T0 + timedelta(minutes=5),
            cancellation_reason="changed plans",
        ).ride
    return ride


def _accepted_ride():
    return _advance(_pending_ride(), (RideStatus.ACCEPTED, DRIVER))


def _started_ride():
    return _advance(_accepted_ride(), (RideStatus.STARTED, DRIVER))


class TestTransitionTable:
    @pytest.mark.parametrize("current", list(RideStatus))
    @pytest.mark.parametrize("requested", list(RideStatus))
    def test_legality_matches_table(self, current, requested):
        expected = requested is current or requested in RIDE_TRANSITIONS[current]
        assert can_transition(current, requested) is expected

    def test_happy_path(self):
        assert can_transition(RideStatus.PENDING, RideStatus.ACCEPTED)
        assert can_transition(RideStatus.ACCEPTED, RideStatus.STARTED)
        assert can_transition(RideStatus.STARTED, RideStatus.COMPLETED)

    def test_no_skipping_ahead(self):
        assert not can_transition(RideStatus.PENDING, RideStatus.STARTED)
        assert not can_transition(RideStatus.PENDING, RideStatus.COMPLETED)
        assert not can_transition(RideStatus.ACCEPTED, RideStatus.COMPLETED)

    def test_no_going_back(self):
        assert not can_transition(RideStatus.STARTED, RideStatus.ACCEPTED)
        assert not can_transition(RideStatus.ACCEPTED, RideStatus.PENDING)

    @pytest.mark.parametrize("terminal", [RideStatus.COMPLETED, RideStatus.CANCELLED])
    def test_terminal_states_are_final(self, terminal):
        for target in RideStatus:
            if target is not terminal:
                assert not can_transition(terminal, target)


class TestOpenRide:
    def test_new_ride_is_pending(self):
        ride = _pending_ride()
        assert ride.status is RideStatus.PENDING
        assert ride.version == 1
        assert ride.driver_id is None
        assert ride.created_at == T0

    def test_opening_effects(self):
        ride = _pending_ride()
        notify, payment = opening_effects(ride)
        assert notify == NotifyUser(
            user_id=RIDER.id,
            type=NotificationType.RIDE_REQUESTED,
            ride_id=7,
            payload={
                "estimated_fare": "10.00",
                "currency": "USD",
                "surge_multiplier": 1.0,
            },
        )
        assert payment == UpdatePaymentStatus(ride_id=7, status=PaymentStatus.PENDING)


class TestAccept:
    def test_driver_accepts_and_is_assigned(self):
        ride = _pending_ride()
        result = request_transition(ride, RideStatus.ACCEPTED, DRIVER, now=T0)
        assert result.changed
        assert result.ride.status is RideStatus.ACCEPTED
        assert result.ride.driver_id == DRIVER.id
        assert result.ride.version == 2
        assert result.effects == [
            PersistRide(ride=result.ride, expected_version=1),
            NotifyUser(
                user_id=RIDER.id,
                type=NotificationType.RIDE_ACCEPTED,
                ride_id=7,
                payload={"status": "accepted"},
            ),
        ]

    def test_input_ride_is_not_modified(self):
        ride = _pending_ride()
        request_transition(ride, RideStatus.ACCEPTED, DRIVER, now=T0)
        assert ride.status is RideStatus.PENDING
        assert ride.driver_id is None
        assert ride.version == 1

    def test_rider_cannot_accept(self):
        with pytest.raises(AuthorizationError):
            request_transition(_pending_ride(), RideStatus.ACCEPTED, RIDER)

    def test_admin_must_name_driver(self):
        with pytest.raises(DataConsistencyError):
            request_transition(_pending_ride(), RideStatus.ACCEPTED, ADMIN)

    def test_admin_assigns_driver(self):
        result = request_transition(
            _pending_ride(), RideStatus.ACCEPTED, ADMIN, driver_id=OTHER_DRIVER.id
        )
        assert result.ride.driver_id == OTHER_DRIVER.id

    def test_status_given_as_string(self):
        result = request_transition(_pending_ride(), "accepted", DRIVER)
        assert result.ride.status is RideStatus.ACCEPTED

    @pytest.mark.parametrize("status", ["teleported", "", "ACCEPTED"])
    def test_unknown_status_string(self, status):
        with pytest.raises(InvalidTransitionError):
            request_transition(_pending_ride(), status, DRIVER)


class TestStart:
    def test_assigned_driver_starts(self):
        ride = _accepted_ride()
        now = T0 + timedelta(minutes=9)
        result = request_transition(ride, RideStatus.STARTED, DRIVER, now=now)
        assert result.ride.status is RideStatus.STARTED
        assert result.ride.started_at == now
        assert result.ride.version == ride.version + 1

    def test_other_driver_cannot_start(self):
        with pytest.raises(AuthorizationError):
            request_transition(_accepted_ride(), RideStatus.STARTED, OTHER_DRIVER)

    def test_rider_cannot_start(self):
        with pytest.raises(AuthorizationError):
            request_transition(_accepted_ride(), RideStatus.STARTED, RIDER)

    def test_admin_cannot_start(self):
        with pytest.raises(AuthorizationError):
            request_transition(_accepted_ride(), RideStatus.STARTED, ADMIN)

    def test_pending_ride_cannot_start(self):
        with pytest.raises(InvalidTransitionError):
            request_transition(_pending_ride(), RideStatus.STARTED, DRIVER)


class TestComplete:
    def test_completion_effects(self):
        ride = _started_ride()
        now = T0 + timedelta(minutes=30)
        result = request_transition(ride, RideStatus.COMPLETED, DRIVER, now=now)

        assert result.ride.status is RideStatus.COMPLETED
        assert result.ride.completed_at == now
        payload = {"status": "completed", "final_fare": "10.00", "currency": "USD"}
        assert result.effects == [
            PersistRide(ride=result.ride, expected_version=ride.version),
            NotifyUser(RIDER.id, NotificationType.RIDE_COMPLETED, 7, payload),
            NotifyUser(DRIVER.id, NotificationType.RIDE_COMPLETED, 7, payload),
            UpdatePaymentStatus(ride_id=7, status=PaymentStatus.COMPLETED),
        ]

    def test_admin_can_complete(self):
        result = request_transition(_started_ride(), RideStatus.COMPLETED, ADMIN)
        assert result.ride.status is RideStatus.COMPLETED

    def test_rider_cannot_complete(self):
        with pytest.raises(AuthorizationError):
            request_transition(_started_ride(), RideStatus.COMPLETED, RIDER)

    def test_accepted_ride_cannot_complete(self):
        with pytest.raises(InvalidTransitionError):
            request_transition(_accepted_ride(), RideStatus.COMPLETED, DRIVER)


class TestCancel:
    def test_rider_cancels_pending_ride(self):
        result = request_transition(
            _pending_ride(), RideStatus.CANCELLED, RIDER,
            cancellation_reason="  found another ride ",
        )
        assert result.ride.status is RideStatus.CANCELLED
        assert result.ride.cancellation_reason == "found another ride"
        # No driver yet and the rider cancelled, so nobody else to tell.
        assert result.effects == [
            PersistRide(ride=result.ride, expected_version=1),
            UpdatePaymentStatus(ride_id=7, status=PaymentStatus.VOIDED),
        ]

    def test_driver_cancel_notifies_rider(self):
        result = request_transition(
            _accepted_ride(), RideStatus.CANCELLED, DRIVER,
            cancellation_reason="vehicle trouble",
        )
        notifications = [e for e in result.effects if isinstance(e, NotifyUser)]
        assert [n.user_id for n in notifications] == [RIDER.id]
        assert notifications[0].payload["reason"] == "vehicle trouble"

    def test_admin_cancel_notifies_both_parties(self):
        result = request_transition(
            _started_ride(), RideStatus.CANCELLED, ADMIN,
            cancellation_reason="safety report",
        )
        notified = {e.user_id for e in result.effects if isinstance(e, NotifyUser)}
        assert notified == {RIDER.id, DRIVER.id}

    def test_reason_is_required(self):
        with pytest.raises(DataConsistencyError):
            request_transition(_pending_ride(), RideStatus.CANCELLED, RIDER)
        with pytest.raises(DataConsistencyError):
            request_transition(
                _pending_ride(), RideStatus.CANCELLED, RIDER, cancellation_reason="  "
            )

    def test_stranger_cannot_cancel(self):
        with pytest.raises(AuthorizationError):
            request_transition(
                _accepted_ride(), RideStatus.CANCELLED, OTHER_RIDER,
                cancellation_reason="nope",
            )
        with pytest.raises(AuthorizationError):
            request_transition(
                _accepted_ride(), RideStatus.CANCELLED, OTHER_DRIVER,
                cancellation_reason="nope",
            )


class TestTerminalAndNoOp:
    def test_completed_ride_cannot_be_cancelled(self):
        ride = _advance(_started_ride(), (RideStatus.COMPLETED, DRIVER))
        with pytest.raises(InvalidTransitionError):
            request_transition(
                ride, RideStatus.CANCELLED, ADMIN, cancellation_reason="late"
            )

    def test_cancelled_ride_cannot_be_accepted(self):
        ride = _advance(_pending_ride(), (RideStatus.CANCELLED, RIDER))
        with pytest.raises(InvalidTransitionError):
            request_transition(ride, RideStatus.ACCEPTED, DRIVER)

    def test_same_status_is_a_no_op(self):
        ride = _accepted_ride()
        result = request_transition(ride, RideStatus.ACCEPTED, DRIVER)
        assert not result.changed
        assert result.effects == []
        assert result.ride is ride
        assert result.ride.version == ride.version

    def test_same_status_still_requires_a_party(self):
        with pytest.raises(AuthorizationError):
            request_transition(_accepted_ride(), RideStatus.ACCEPTED, OTHER_DRIVER)

    def test_version_counts_transitions(self):
        ride = _advance(
            _started_ride(), (RideStatus.COMPLETED, DRIVER)
        )
        assert ride.version == 4
        assert ride.fare_quote.final_fare == Decimal("10.00")

    def test_terminal_rides_are_terminal(self):
        completed = _advance(_started_ride(), (RideStatus.COMPLETED, DRIVER))
        cancelled = _advance(_pending_ride(), (RideStatus.CANCELLED, RIDER))
        assert completed.is_terminal and cancelled.is_terminal
        assert not _started_ride().is_terminal


class TestDriverCapacity:
    def test_free_driver_may_accept(self):
        check_driver_capacity(DRIVER.id, True, 0)

    def test_unavailable_driver(self):
        with pytest.raises(DriverUnavailableError):
            check_driver_capacity(DRIVER.id, False, 0)

    def test_driver_at_limit(self):
        with pytest.raises(DriverUnavailableError):
            check_driver_capacity(DRIVER.id, True, 1)

    def test_higher_limit(self):
        check_driver_capacity(DRIVER.id, True, 2, max_active_rides=3)
        with pytest.raises(DriverUnavailableError):
            check_driver_capacity(DRIVER.id, True, 3, max_active_rides=3)
