"""
Tests for YAML persistence of the in-memory store.
"""

import asyncio
from datetime import date

import pendulum
import pytest

from conftest import MONDAY, fixed_clock
from mentorbook.adapters import StateFile
from mentorbook.api import BookingEngine
from mentorbook.domain.models import AppointmentStatus, TransactionReason
from mentorbook.domain.schedule import DayOfWeek

SEED = """
services:
  - id: session
    name: Mentoring session
    credit_cost: 50
    duration_minutes: 60
mentors:
  - user_id: mentor-1
schedules:
  - owner_id: mentor-1
    policy:
      timezone: Europe/Berlin
    weekly_pattern:
      monday:
        available: true
        slots:
          - {start: "09:00", end: "12:00"}
    exceptions:
      - date: 2025-03-10
        available: false
        reason: Conference
accounts:
  - user_id: student-1
"""


class TestStateFile:
    def test_missing_file_gives_empty_store(self, tmp_path):
        store = StateFile(tmp_path / "state.yaml").load()

        assert store.services == {}
        assert store.accounts == {}

    def test_load_seed(self, tmp_path):
        path = tmp_path / "state.yaml"
        path.write_text(SEED, encoding="utf-8")

        store = StateFile(path).load()

        assert store.services["session"].credit_cost == 50
        assert store.mentors["mentor-1"].is_bookable
        schedule = store.schedules["mentor-1"]
        assert schedule.policy.timezone == "Europe/Berlin"
        assert schedule.weekly_pattern[DayOfWeek.MONDAY].available
        assert schedule.exception_for(date(2025, 3, 10)).reason == "Conference"
        assert store.accounts["student-1"].balance == 0

    def test_state_survives_save_and_load(self, tmp_path):
        """A booking made in one session is visible, with its ledger, in the next."""
        path = tmp_path / "state.yaml"
        path.write_text(SEED, encoding="utf-8")
        state = StateFile(path)

        store = state.load()
        engine = BookingEngine(store, clock=fixed_clock)

        async def book():
            await engine.ledger.credit("student-1", 80, TransactionReason.PURCHASED)
            return await engine.bookings.book(
                student_id="student-1",
                service_offering_id="session",
                mentor_id="mentor-1",
                scheduled_at=pendulum.datetime(2025, 3, 3, 9, 0, tz="Europe/Berlin"),
                timezone="Europe/Berlin",
            )

        appointment = asyncio.run(book())
        state.save(store)

        reloaded = state.load()
        engine = BookingEngine(reloaded, clock=fixed_clock)

        stored = reloaded.appointments[appointment.id]
        assert stored.status is AppointmentStatus.PENDING
        assert stored.credits_charged
        assert stored.scheduled_at == pendulum.datetime(2025, 3, 3, 8, 0, tz="UTC")
        assert stored.version == appointment.version
        assert asyncio.run(engine.balance("student-1")) == 30
        assert asyncio.run(engine.verify("student-1"))

        slots = asyncio.run(engine.availability("mentor-1", MONDAY, MONDAY, 60))
        assert [slot.start for slot in slots] == [pendulum.datetime(2025, 3, 3, 9, 0, tz="UTC")]

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "state.yaml"
        path.write_text("services: [", encoding="utf-8")

        with pytest.raises(ValueError, match="Invalid YAML"):
            StateFile(path).load()

    def test_non_mapping_root(self, tmp_path):
        path = tmp_path / "state.yaml"
        path.write_text("- 1\n", encoding="utf-8")

        with pytest.raises(ValueError, match="mapping"):
            StateFile(path).load()

    def test_tampered_history_is_detected(self, tmp_path):
        path = tmp_path / "state.yaml"
        path.write_text(
            """
accounts:
  - user_id: student-1
    transactions:
      - {id: t1, amount: 100, balance_after: 100, reason: purchased, created_at: "2025-03-01T08:00:00Z"}
      - {id: t2, amount: -30, balance_after: 90, reason: used, created_at: "2025-03-01T09:00:00Z"}
""",
            encoding="utf-8",
        )
        engine = BookingEngine(StateFile(path).load(), clock=fixed_clock)

        assert not asyncio.run(engine.verify("student-1"))
