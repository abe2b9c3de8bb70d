"""
Domain models for windows, appointments and the credit ledger.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, FrozenSet, Optional

import pendulum
from pendulum import DateTime

Clock = Callable[[], DateTime]


def utc_now() -> DateTime:
    return pendulum.now("UTC")


def overlaps(a: "TimeRange", b: "TimeRange") -> bool:
    """
    Half-open overlap test for ``[a.start, a.end)`` and ``[b.start, b.end)``.

    This is the only overlap rule in the engine. A window that fully spans
    another one overlaps it; windows that merely touch do not.
    """
    return a.start < b.end and b.start < a.end


@dataclass(frozen=True)
class TimeRange:
    """
    Represents an immutable half-open time window ``[start, end)``.

    Invariant: start must be before end.
    """
    start: DateTime
    end: DateTime

    def __post_init__(self):
        if self.start >= self.end:
            raise ValueError(f"Start time {self.start} must be before end time {self.end}")

    @classmethod
    def from_duration(cls, start: DateTime, minutes: int) -> "TimeRange":
        """Build a window of ``minutes`` length starting at ``start``."""
        return cls(start=start, end=start.add(minutes=minutes))

    def duration_minutes(self) -> int:
        """Return the duration in minutes."""
        return int((self.end - self.start).total_seconds() / 60)

    def overlaps(self, other: "TimeRange") -> bool:
        """Check if this range overlaps with another."""
        return overlaps(self, other)

    def contains(self, other: "TimeRange") -> bool:
        """Check if ``other`` lies completely inside this range."""
        return self.start <= other.start and other.end <= self.end

    def __str__(self) -> str:
        return f"{self.start.format('DD.MM.YYYY HH:mm')} - {self.end.format('HH:mm')}"


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


# Statuses that hold a mentor's time.
BLOCKING_STATUSES: FrozenSet[AppointmentStatus] = frozenset(
    {
        AppointmentStatus.PENDING,
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.IN_PROGRESS,
    }
)


class MentorStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING_APPROVAL = "pending_approval"


class TransactionReason(str, Enum):
    EARNED = "earned"
    PURCHASED = "purchased"
    USED = "used"
    REFUNDED = "refunded"
    BONUS = "bonus"


class Role(str, Enum):
    STUDENT = "student"
    MENTOR = "mentor"
    ADMIN = "admin"


@dataclass(frozen=True)
class Actor:
    """The authenticated caller, as resolved by the identity collaborator."""
    id: str
    roles: FrozenSet[Role] = frozenset({Role.STUDENT})

    @property
    def is_admin(self) -> bool:
        return Role.ADMIN in self.roles


@dataclass(frozen=True)
class ServiceOffering:
    """Read-only snapshot of a service from the catalog."""
    id: str
    name: str
    credit_cost: int
    duration_minutes: int
    requires_mentor: bool = True
    active: bool = True

    def __post_init__(self):
        if self.credit_cost < 0:
            raise ValueError(f"credit_cost must be >= 0, got {self.credit_cost}")
        if self.duration_minutes < 15:
            raise ValueError(f"duration_minutes must be >= 15, got {self.duration_minutes}")


@dataclass(frozen=True)
class MentorProfile:
    user_id: str
    status: MentorStatus = MentorStatus.PENDING_APPROVAL
    available_for_booking: bool = True

    @property
    def is_bookable(self) -> bool:
        return self.status is MentorStatus.ACTIVE and self.available_for_booking


@dataclass
class Cancellation:
    reason: Optional[str] = None
    at: Optional[DateTime] = None
    by: Optional[str] = None


@dataclass
class Appointment:
    """
    A booked session between a student and (optionally) a mentor.

    ``version`` is bumped on every persisted update and used for conditional
    writes by the appointment repository.
    """
    id: str
    student_id: str
    service_offering_id: str
    scheduled_at: DateTime
    duration_minutes: int
    credit_cost: int
    mentor_id: Optional[str] = None
    status: AppointmentStatus = AppointmentStatus.PENDING
    timezone: str = "UTC"
    credits_charged: bool = False
    cancellation: Cancellation = field(default_factory=Cancellation)
    student_notes: Optional[str] = None
    meeting_notes: Optional[str] = None
    meeting_link: Optional[str] = None
    rating: Optional[int] = None
    feedback: Optional[str] = None
    created_at: DateTime = field(default_factory=lambda: pendulum.now("UTC"))
    updated_at: DateTime = field(default_factory=lambda: pendulum.now("UTC"))
    version: int = 0

    @property
    def window(self) -> TimeRange:
        return TimeRange.from_duration(self.scheduled_at, self.duration_minutes)

    @property
    def is_blocking(self) -> bool:
        return self.status in BLOCKING_STATUSES

    def involves(self, user_id: str) -> bool:
        return user_id == self.student_id or user_id == self.mentor_id


@dataclass(frozen=True)
class LedgerTransaction:
    """
    Immutable ledger entry.

    Invariant: ``balance_after`` equals the previous entry's ``balance_after``
    plus ``amount`` (signed: negative for usage, positive otherwise).
    """
    id: str
    user_id: str
    amount: int
    balance_after: int
    reason: TransactionReason
    description: str
    created_at: DateTime
    related_appointment_id: Optional[str] = None


@dataclass(frozen=True)
class CreditAccount:
    """
    Cached balance for a user.

    The cache points at the latest known-good transaction; ``balance`` must
    always equal that transaction's ``balance_after`` (zero when empty).
    """
    user_id: str
    balance: int = 0
    last_transaction_id: Optional[str] = None
