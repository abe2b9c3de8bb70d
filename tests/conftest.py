"""
Shared fixtures: a fixed clock and a seeded in-memory store.

All scenarios run on Saturday 2025-03-01 08:00 UTC. The default mentor is
open Mondays 09:00-12:00 UTC, so with a 24 hour notice and a 15 minute
buffer, Monday 2025-03-03 offers 60 minute slots at 09:00 and 10:00.
"""

import pendulum
import pytest

from mentorbook.adapters import InMemoryStore
from mentorbook.api import BookingEngine
from mentorbook.domain.models import MentorProfile, MentorStatus, ServiceOffering
from mentorbook.domain.schedule import BookingPolicy, DayAvailability, DayOfWeek, Schedule, WallClockSlot

NOW = pendulum.datetime(2025, 3, 1, 8, 0, tz="UTC")
MONDAY = pendulum.date(2025, 3, 3)


def fixed_clock():
    return NOW


def monday_schedule(owner_id: str = "mentor-1", **policy) -> Schedule:
    return Schedule(
        owner_id=owner_id,
        weekly_pattern={
            DayOfWeek.MONDAY: DayAvailability(available=True, slots=(WallClockSlot.parse("09:00", "12:00"),)),
        },
        policy=BookingPolicy(**policy),
    )


def seed_store(store: InMemoryStore) -> InMemoryStore:
    store.add_service(ServiceOffering(id="session", name="Mentoring session", credit_cost=50, duration_minutes=60))
    store.add_service(
        ServiceOffering(
            id="workshop",
            name="Group workshop",
            credit_cost=20,
            duration_minutes=60,
            requires_mentor=False,
        )
    )
    store.add_service(
        ServiceOffering(id="intro", name="Intro call", credit_cost=0, duration_minutes=30)
    )
    store.add_service(
        ServiceOffering(id="retired", name="Old format", credit_cost=10, duration_minutes=60, active=False)
    )
    store.add_mentor(MentorProfile(user_id="mentor-1", status=MentorStatus.ACTIVE))
    store.add_mentor(MentorProfile(user_id="mentor-2", status=MentorStatus.PENDING_APPROVAL))
    store.schedules["mentor-1"] = monday_schedule()
    store.schedules["mentor-2"] = monday_schedule("mentor-2")
    for user_id in ("student-1", "student-2"):
        store.open_account(user_id)
    return store


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def store():
    return seed_store(InMemoryStore())


@pytest.fixture
def engine(store):
    return BookingEngine(store, clock=fixed_clock)
