"""
Tests for the BookingOrchestrator: booking saga, cancellation and updates.
"""

import asyncio
import logging
import random

import pendulum
import pytest

from conftest import fixed_clock, monday_schedule, seed_store
from mentorbook.adapters import InMemoryStore
from mentorbook.api import BookingEngine
from mentorbook.domain.exceptions import (
    ConcurrencyConflict,
    Forbidden,
    InsufficientCredits,
    InvalidTime,
    InvalidTransition,
    MentorRequired,
    NotFound,
    ServiceUnavailable,
    SlotUnavailable,
)
from mentorbook.domain.models import Actor, AppointmentStatus, Role, TransactionReason, overlaps
from mentorbook.schemas import AppointmentUpdate

MONDAY_9 = pendulum.datetime(2025, 3, 3, 9, 0, tz="UTC")
MONDAY_10 = pendulum.datetime(2025, 3, 3, 10, 0, tz="UTC")

STUDENT = Actor("student-1")
MENTOR = Actor("mentor-1", roles=frozenset({Role.MENTOR}))
ADMIN = Actor("admin", roles=frozenset({Role.ADMIN}))


def _fund(engine: BookingEngine, user_id: str, amount: int) -> None:
    asyncio.run(engine.ledger.credit(user_id, amount, TransactionReason.PURCHASED, "Credit pack"))


def _book(engine: BookingEngine, start=MONDAY_9, student_id="student-1", service="session", mentor="mentor-1"):
    return asyncio.run(
        engine.bookings.book(
            student_id=student_id,
            service_offering_id=service,
            mentor_id=mentor,
            scheduled_at=start,
        )
    )


class TestBook:
    """Tests for the booking saga."""

    def test_successful_booking_charges_once(self, engine, store):
        _fund(engine, "student-1", 100)

        appointment = _book(engine)

        assert appointment.status is AppointmentStatus.PENDING
        assert appointment.credits_charged
        assert appointment.credit_cost == 50
        assert store.accounts["student-1"].balance == 50

        debits = [tx for tx in store.transactions["student-1"] if tx.reason is TransactionReason.USED]
        assert len(debits) == 1
        assert debits[0].amount == -50
        assert debits[0].related_appointment_id == appointment.id
        assert debits[0].description == "Appointment: Mentoring session"

    def test_insufficient_credits(self, engine, store):
        """Balance 40 against cost 50: rejected, nothing written."""
        _fund(engine, "student-1", 40)

        with pytest.raises(InsufficientCredits) as exc_info:
            _book(engine)

        assert exc_info.value.details == {"required": 50, "available": 40}
        assert exc_info.value.status_code == 402
        assert store.appointments == {}
        assert store.accounts["student-1"].balance == 40

    def test_slot_becomes_unavailable(self, engine):
        _fund(engine, "student-1", 100)
        _book(engine)

        slots = asyncio.run(engine.slots.list_slots("mentor-1", MONDAY_9.date(), MONDAY_9.date(), 60))
        assert [slot.start for slot in slots] == [MONDAY_10]

    def test_conflicting_booking_rejected(self, engine):
        _fund(engine, "student-1", 100)
        _fund(engine, "student-2", 100)
        first = _book(engine)

        with pytest.raises(SlotUnavailable) as exc_info:
            _book(engine, start=MONDAY_9.add(minutes=30), student_id="student-2")

        assert exc_info.value.details["reason"] == "conflict"
        assert exc_info.value.details["conflicting_appointment_ids"] == [first.id]

    def test_conflict_details(self, engine):
        _fund(engine, "student-1", 100)
        _fund(engine, "student-2", 100)
        first = _book(engine)

        with pytest.raises(SlotUnavailable) as exc_info:
            _book(engine, student_id="student-2")

        assert exc_info.value.details["reason"] == "conflict"
        assert exc_info.value.details["conflicting_appointment_ids"] == [first.id]
        assert exc_info.value.status_code == 409

    def test_back_to_back_bookings(self, engine, store):
        _fund(engine, "student-1", 100)

        _book(engine, start=MONDAY_9)
        _book(engine, start=MONDAY_10)

        assert len(store.appointments) == 2

    def test_simultaneous_bookings_for_the_same_slot(self, store):
        """Exactly one of two concurrent requests wins; the other sees SlotUnavailable."""
        store.latency = 0
        engine = BookingEngine(store, clock=fixed_clock)
        _fund(engine, "student-1", 100)
        _fund(engine, "student-2", 100)

        async def scenario():
            return await asyncio.gather(
                engine.bookings.book(
                    student_id="student-1",
                    service_offering_id="session",
                    mentor_id="mentor-1",
                    scheduled_at=MONDAY_9,
                ),
                engine.bookings.book(
                    student_id="student-2",
                    service_offering_id="session",
                    mentor_id="mentor-1",
                    scheduled_at=MONDAY_9,
                ),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())

        rejected = [r for r in results if isinstance(r, SlotUnavailable)]
        booked = [r for r in results if not isinstance(r, Exception)]
        assert len(booked) == 1
        assert len(rejected) == 1
        assert list(store.appointments) == [booked[0].id]

        loser = "student-2" if booked[0].student_id == "student-1" else "student-1"
        assert store.accounts[loser].balance == 100

    def test_store_rejects_overlap_from_another_engine(self, store):
        """Two engines on one store only share the store's overlap check."""
        store.latency = 0
        first = BookingEngine(store, clock=fixed_clock)
        second = BookingEngine(store, clock=fixed_clock)
        _fund(first, "student-1", 100)
        _fund(first, "student-2", 100)

        async def scenario():
            return await asyncio.gather(
                first.bookings.book(
                    student_id="student-1",
                    service_offering_id="session",
                    mentor_id="mentor-1",
                    scheduled_at=MONDAY_9,
                ),
                second.bookings.book(
                    student_id="student-2",
                    service_offering_id="session",
                    mentor_id="mentor-1",
                    scheduled_at=MONDAY_9,
                ),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())

        assert sum(isinstance(r, SlotUnavailable) for r in results) == 1
        assert len(store.appointments) == 1

    def test_random_concurrent_requests_never_double_book(self):
        """Property check: accepted appointments of one mentor never overlap."""
        rng = random.Random(7)
        store = seed_store(InMemoryStore(latency=0))
        store.schedules["mentor-1"] = monday_schedule(buffer_minutes=0)
        engine = BookingEngine(store, clock=fixed_clock)
        for student in ("student-1", "student-2"):
            _fund(engine, student, 10_000)

        async def scenario():
            requests = [
                engine.bookings.book(
                    student_id=rng.choice(["student-1", "student-2"]),
                    service_offering_id="session",
                    mentor_id="mentor-1",
                    scheduled_at=MONDAY_9.add(minutes=15 * rng.randint(0, 8)),
                )
                for _ in range(30)
            ]
            return await asyncio.gather(*requests, return_exceptions=True)

        results = asyncio.run(scenario())

        assert all(not isinstance(r, Exception) or isinstance(r, SlotUnavailable) for r in results)
        booked = list(store.appointments.values())
        assert booked
        for a in booked:
            for b in booked:
                if a.id != b.id:
                    assert not overlaps(a.window, b.window)

        spent = 10_000 * 2 - sum(account.balance for account in store.accounts.values())
        assert spent == 50 * len(booked)


class TestBookPreconditions:
    def test_unknown_service(self, engine):
        with pytest.raises(ServiceUnavailable):
            _book(engine, service="missing")

    def test_inactive_service(self, engine):
        with pytest.raises(ServiceUnavailable) as exc_info:
            _book(engine, service="retired")

        assert exc_info.value.code == "ServiceUnavailable"
        assert exc_info.value.status_code == 400

    def test_mentor_required(self, engine):
        with pytest.raises(MentorRequired):
            _book(engine, mentor=None)

    def test_past_time(self, engine):
        with pytest.raises(InvalidTime):
            _book(engine, start=pendulum.datetime(2025, 2, 24, 9, 0, tz="UTC"))

    def test_mentor_not_bookable(self, engine):
        _fund(engine, "student-1", 100)

        with pytest.raises(SlotUnavailable) as exc_info:
            _book(engine, mentor="mentor-2")

        assert exc_info.value.details["reason"] == "mentor_not_bookable"

    def test_mentor_without_schedule(self, engine, store):
        _fund(engine, "student-1", 100)
        del store.schedules["mentor-1"]

        with pytest.raises(SlotUnavailable) as exc_info:
            _book(engine)

        assert exc_info.value.details["reason"] == "no_schedule"

    def test_within_notice_period(self, engine):
        """Twelve hours ahead is inside the 24 hour notice period."""
        _fund(engine, "student-1", 100)

        with pytest.raises(SlotUnavailable) as exc_info:
            _book(engine, start=pendulum.datetime(2025, 3, 1, 20, 0, tz="UTC"))

        assert exc_info.value.details["reason"] == "outside_booking_window"

    def test_beyond_horizon(self, engine):
        _fund(engine, "student-1", 100)

        with pytest.raises(SlotUnavailable) as exc_info:
            _book(engine, start=MONDAY_9.add(weeks=14))

        assert exc_info.value.details["reason"] == "outside_booking_window"

    def test_outside_availability(self, engine):
        _fund(engine, "student-1", 100)

        with pytest.raises(SlotUnavailable) as exc_info:
            _book(engine, start=MONDAY_9.add(hours=2))

        assert exc_info.value.details["reason"] == "outside_availability"

    def test_service_checked_before_credits(self, engine):
        """Precondition failures are reported in a fixed order."""
        with pytest.raises(ServiceUnavailable):
            _book(engine, service="retired", start=pendulum.datetime(2020, 1, 1, tz="UTC"))

    def test_slot_checked_before_credits(self, engine):
        with pytest.raises(SlotUnavailable):
            _book(engine, start=MONDAY_9.add(hours=2))

    def test_unknown_student(self, engine):
        with pytest.raises(NotFound):
            _book(engine, student_id="ghost")

    def test_free_service_is_not_charged(self, engine, store):
        appointment = _book(engine, service="intro")

        assert appointment.credit_cost == 0
        assert not appointment.credits_charged
        assert store.transactions["student-1"] == []

    def test_service_without_mentor(self, engine, store):
        _fund(engine, "student-1", 100)

        appointment = _book(engine, service="workshop", mentor=None)

        assert appointment.mentor_id is None
        assert store.accounts["student-1"].balance == 80


class TestCompensation:
    def test_failed_debit_removes_appointment(self, engine, store, monkeypatch):
        _fund(engine, "student-1", 100)

        async def failing_debit(*args, **kwargs):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(engine.ledger, "debit", failing_debit)

        with pytest.raises(RuntimeError):
            _book(engine)

        assert store.appointments == {}
        assert store.accounts["student-1"].balance == 100

    def test_failed_compensation_is_logged(self, engine, store, monkeypatch, caplog):
        """The debit error still reaches the caller; the orphan is left for the integrity job."""
        _fund(engine, "student-1", 100)

        async def failing_debit(*args, **kwargs):
            raise RuntimeError("ledger unavailable")

        async def failing_delete(appointment_id):
            raise RuntimeError("store unavailable")

        monkeypatch.setattr(engine.ledger, "debit", failing_debit)
        monkeypatch.setattr(store, "delete_appointment", failing_delete)

        with caplog.at_level(logging.ERROR, logger="mentorbook.services.booking"):
            with pytest.raises(RuntimeError, match="ledger unavailable"):
                _book(engine)

        assert "Compensation failed" in caplog.text
        later = BookingEngine(store, clock=lambda: fixed_clock().add(minutes=10))
        report = asyncio.run(later.run_integrity_check())
        assert [a.id for a in report.orphaned_appointments] == list(store.appointments)

    def test_unrecorded_charge_is_refunded(self, engine, store, monkeypatch):
        """If the charge cannot be written to the appointment, debit and appointment are undone."""
        _fund(engine, "student-1", 100)

        async def always_conflict(appointment, expected_version):
            raise ConcurrencyConflict("Version moved")

        monkeypatch.setattr(store, "update_appointment", always_conflict)

        with pytest.raises(ConcurrencyConflict):
            _book(engine)

        assert store.appointments == {}
        assert store.accounts["student-1"].balance == 100
        assert [tx.reason for tx in store.transactions["student-1"]] == [
            TransactionReason.PURCHASED,
            TransactionReason.USED,
            TransactionReason.REFUNDED,
        ]
        assert asyncio.run(engine.ledger.verify("student-1"))


class TestCancel:
    def test_cancel_refunds(self, engine, store):
        _fund(engine, "student-1", 100)
        appointment = _book(engine)

        result = asyncio.run(engine.bookings.cancel(appointment.id, by="student-1", reason="Sick"))

        assert result.refunded
        assert result.refund_amount == 50
        assert result.appointment.status is AppointmentStatus.CANCELLED
        assert result.appointment.cancellation.reason == "Sick"
        assert result.appointment.cancellation.by == "student-1"
        assert store.accounts["student-1"].balance == 100
        assert result.refund_transaction.description == f"Refund for cancelled appointment: {appointment.id}"

    def test_cancel_twice_refunds_once(self, engine, store):
        _fund(engine, "student-1", 100)
        appointment = _book(engine)

        asyncio.run(engine.bookings.cancel(appointment.id, by="student-1"))
        second = asyncio.run(engine.bookings.cancel(appointment.id, by="student-1"))

        assert second.already_cancelled
        assert not second.refunded
        refunds = [tx for tx in store.transactions["student-1"] if tx.reason is TransactionReason.REFUNDED]
        assert len(refunds) == 1
        assert store.accounts["student-1"].balance == 100

    def test_concurrent_cancellations_refund_once(self, store):
        store.latency = 0
        engine = BookingEngine(store, clock=fixed_clock)
        _fund(engine, "student-1", 100)
        appointment = _book(engine)

        async def scenario():
            return await asyncio.gather(
                *(engine.bookings.cancel(appointment.id, by="student-1") for _ in range(5))
            )

        results = asyncio.run(scenario())

        assert sum(result.refunded for result in results) == 1
        assert store.accounts["student-1"].balance == 100

    def test_refund_is_retried_after_interrupted_cancel(self, engine, store):
        """A cancelled but unrefunded appointment is refunded on the next cancel."""
        _fund(engine, "student-1", 100)
        appointment = _book(engine)
        stored = store.appointments[appointment.id]
        stored.status = AppointmentStatus.CANCELLED

        result = asyncio.run(engine.bookings.cancel(appointment.id, by="student-1"))

        assert result.already_cancelled
        assert result.refunded
        assert store.accounts["student-1"].balance == 100

    def test_cancel_during_booking_refunds(self, store):
        """A cancel issued while the booking is still charging waits and then refunds."""
        store.latency = 0
        engine = BookingEngine(store, clock=fixed_clock)
        _fund(engine, "student-1", 100)

        async def cancel_first_seen():
            while not store.appointments:
                await asyncio.sleep(0)
            appointment_id = next(iter(store.appointments))
            return await engine.bookings.cancel(appointment_id, by="student-1")

        async def scenario():
            return await asyncio.gather(
                engine.bookings.book(
                    student_id="student-1",
                    service_offering_id="session",
                    mentor_id="mentor-1",
                    scheduled_at=MONDAY_9,
                ),
                cancel_first_seen(),
            )

        booked, result = asyncio.run(scenario())

        assert booked.credits_charged
        assert result.refunded
        assert result.refund_amount == 50
        assert store.appointments[booked.id].status is AppointmentStatus.CANCELLED
        assert store.accounts["student-1"].balance == 100

    def test_cancelled_elsewhere_while_charging(self, engine, store, monkeypatch):
        """Cancelled through another engine before the charge was recorded: the booking refunds itself."""
        _fund(engine, "student-1", 100)
        debit = engine.ledger.debit

        async def debit_then_cancel_elsewhere(*args, **kwargs):
            tx = await debit(*args, **kwargs)
            store.appointments[tx.related_appointment_id].status = AppointmentStatus.CANCELLED
            return tx

        monkeypatch.setattr(engine.ledger, "debit", debit_then_cancel_elsewhere)

        appointment = _book(engine)

        assert appointment.status is AppointmentStatus.CANCELLED
        assert appointment.credits_charged
        assert store.accounts["student-1"].balance == 100
        refunds = [tx for tx in store.transactions["student-1"] if tx.reason is TransactionReason.REFUNDED]
        assert len(refunds) == 1

        again = asyncio.run(engine.bookings.cancel(appointment.id, by="student-1"))
        assert not again.refunded
        assert store.accounts["student-1"].balance == 100

    def test_refund_follows_the_ledger(self, engine, store):
        """A debit the appointment never recorded as charged is still refunded."""
        _fund(engine, "student-1", 100)
        appointment = _book(engine)
        store.appointments[appointment.id].credits_charged = False

        result = asyncio.run(engine.bookings.cancel(appointment.id, by="student-1"))

        assert result.refunded
        assert result.refund_amount == 50
        assert store.accounts["student-1"].balance == 100

    def test_cancel_frees_the_slot(self, engine):
        _fund(engine, "student-1", 100)
        _fund(engine, "student-2", 100)
        appointment = _book(engine)
        asyncio.run(engine.bookings.cancel(appointment.id, by="student-1"))

        rebooked = _book(engine, student_id="student-2")

        assert rebooked.status is AppointmentStatus.PENDING

    def test_completed_cannot_be_cancelled(self, engine):
        _fund(engine, "student-1", 100)
        appointment = _book(engine)
        for status in (AppointmentStatus.CONFIRMED, AppointmentStatus.IN_PROGRESS, AppointmentStatus.COMPLETED):
            asyncio.run(engine.bookings.transition(appointment.id, MENTOR, status))

        with pytest.raises(InvalidTransition):
            asyncio.run(engine.bookings.cancel(appointment.id, by="student-1"))

    def test_free_appointment_cancel_has_no_refund(self, engine, store):
        appointment = _book(engine, service="intro")

        result = asyncio.run(engine.bookings.cancel(appointment.id, by="student-1"))

        assert not result.refunded
        assert store.transactions["student-1"] == []

    def test_unknown_appointment(self, engine):
        with pytest.raises(NotFound):
            asyncio.run(engine.bookings.cancel("missing", by="student-1"))


class TestUpdate:
    def test_pending_to_completed_rejected(self, engine):
        _fund(engine, "student-1", 100)
        appointment = _book(engine)

        with pytest.raises(InvalidTransition) as exc_info:
            asyncio.run(engine.bookings.transition(appointment.id, MENTOR, AppointmentStatus.COMPLETED))

        assert exc_info.value.details["from"] == "pending"

    def test_mentor_confirms(self, engine):
        _fund(engine, "student-1", 100)
        appointment = _book(engine)

        confirmed = asyncio.run(engine.bookings.transition(appointment.id, MENTOR, AppointmentStatus.CONFIRMED))

        assert confirmed.status is AppointmentStatus.CONFIRMED
        assert confirmed.version > appointment.version

    def test_student_cannot_confirm(self, engine):
        _fund(engine, "student-1", 100)
        appointment = _book(engine)

        with pytest.raises(Forbidden):
            asyncio.run(engine.bookings.transition(appointment.id, STUDENT, AppointmentStatus.CONFIRMED))

    def test_outsider_forbidden(self, engine):
        _fund(engine, "student-1", 100)
        appointment = _book(engine)

        with pytest.raises(Forbidden):
            asyncio.run(engine.bookings.get(appointment.id, Actor("student-2")))

    def test_admin_can_read(self, engine):
        _fund(engine, "student-1", 100)
        appointment = _book(engine)

        assert asyncio.run(engine.bookings.get(appointment.id, ADMIN)).id == appointment.id

    def test_role_specific_fields(self, engine):
        _fund(engine, "student-1", 100)
        appointment = _book(engine)

        asyncio.run(
            engine.bookings.update(
                appointment.id,
                MENTOR,
                AppointmentUpdate(meeting_link="https://meet.example.com/abc", meeting_notes="Agenda"),
            )
        )
        updated = asyncio.run(
            engine.bookings.update(appointment.id, STUDENT, AppointmentUpdate(student_notes="Bring CV"))
        )

        assert updated.meeting_link == "https://meet.example.com/abc"
        assert updated.meeting_notes == "Agenda"
        assert updated.student_notes == "Bring CV"

    def test_student_cannot_set_meeting_link(self, engine):
        _fund(engine, "student-1", 100)
        appointment = _book(engine)

        with pytest.raises(Forbidden) as exc_info:
            asyncio.run(
                engine.bookings.update(appointment.id, STUDENT, AppointmentUpdate(meeting_link="https://x"))
            )

        assert exc_info.value.details["fields"] == ["meeting_link"]

    def test_mentor_cannot_rate(self, engine):
        _fund(engine, "student-1", 100)
        appointment = _book(engine)

        with pytest.raises(Forbidden):
            asyncio.run(engine.bookings.update(appointment.id, MENTOR, AppointmentUpdate(rating=5)))

    def test_cancel_through_update_refunds(self, engine, store):
        _fund(engine, "student-1", 100)
        appointment = _book(engine)

        cancelled = asyncio.run(
            engine.bookings.update(
                appointment.id,
                STUDENT,
                AppointmentUpdate(status=AppointmentStatus.CANCELLED, cancellation_reason="Clash"),
            )
        )

        assert cancelled.status is AppointmentStatus.CANCELLED
        assert cancelled.cancellation.reason == "Clash"
        assert store.accounts["student-1"].balance == 100

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValueError):
            AppointmentUpdate.model_validate({"credit_cost": 0})


class TestQueries:
    def test_list_for_user(self, engine):
        _fund(engine, "student-1", 200)
        later = _book(engine, start=MONDAY_10)
        earlier = _book(engine, start=MONDAY_9)

        as_student = asyncio.run(engine.bookings.list_for_user("student-1"))
        as_mentor = asyncio.run(engine.bookings.list_for_user("mentor-1", role=Role.MENTOR))

        assert [a.id for a in as_student] == [earlier.id, later.id]
        assert [a.id for a in as_mentor] == [earlier.id, later.id]

    def test_upcoming_skips_cancelled(self, engine):
        _fund(engine, "student-1", 200)
        first = _book(engine, start=MONDAY_9)
        second = _book(engine, start=MONDAY_10)
        asyncio.run(engine.bookings.cancel(first.id, by="student-1"))

        upcoming = asyncio.run(engine.bookings.upcoming("student-1"))

        assert [a.id for a in upcoming] == [second.id]

    def test_status_filter(self, engine):
        _fund(engine, "student-1", 200)
        first = _book(engine, start=MONDAY_9)
        _book(engine, start=MONDAY_10)
        asyncio.run(engine.bookings.cancel(first.id, by="student-1"))

        cancelled = asyncio.run(engine.bookings.list_for_user("student-1", status=AppointmentStatus.CANCELLED))

        assert [a.id for a in cancelled] == [first.id]
