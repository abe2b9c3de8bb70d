"""
Schedule models: recurring weekly pattern, date exceptions and booking policy.

Times inside a schedule are local wall-clock times (``HH:mm``) in the
policy's timezone; they only become absolute instants when a concrete
calendar date is applied.
"""

import re
from dataclasses import dataclass, field
from datetime import date, time
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pendulum

from .exceptions import InvalidSlot

HHMM_PATTERN = re.compile(r"^([0-1][0-9]|2[0-3]):[0-5][0-9]$")


class DayOfWeek(str, Enum):
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

    @classmethod
    def for_date(cls, day: date) -> "DayOfWeek":
        """Return the weekday of a calendar date (Monday first)."""
        return list(cls)[day.weekday()]


def parse_hhmm(value: str) -> time:
    """
    Parse a 24-hour ``HH:mm`` string.

    Raises:
        InvalidSlot: If the value is not a valid ``HH:mm`` string
    """
    if not isinstance(value, str) or not HHMM_PATTERN.match(value):
        raise InvalidSlot(
            f"Invalid time format: {value!r}. Use HH:mm",
            details={"value": value},
        )
    hour, minute = value.split(":")
    return time(hour=int(hour), minute=int(minute))


@dataclass(frozen=True)
class WallClockSlot:
    """
    A configured window of local wall-clock time, e.g. 09:00-12:00.

    Invariant: start must be before end.
    """
    start: time
    end: time

    def __post_init__(self):
        if self.start >= self.end:
            raise InvalidSlot(
                f"Slot start {self.format_time(self.start)} must be before end {self.format_time(self.end)}",
                details={"start": self.format_time(self.start), "end": self.format_time(self.end)},
            )

    @classmethod
    def parse(cls, start: str, end: str) -> "WallClockSlot":
        return cls(start=parse_hhmm(start), end=parse_hhmm(end))

    @staticmethod
    def format_time(value: time) -> str:
        return value.strftime("%H:%M")

    def overlaps(self, other: "WallClockSlot") -> bool:
        return self.start < other.end and other.start < self.end

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.format_time(self.start), "end": self.format_time(self.end)}

    def __str__(self) -> str:
        return f"{self.format_time(self.start)}-{self.format_time(self.end)}"


def validate_slots(slots: Iterable[WallClockSlot]) -> Tuple[WallClockSlot, ...]:
    """
    Sort a day's slots and make sure none of them overlap.

    Raises:
        InvalidSlot: If two slots of the same day overlap
    """
    ordered = tuple(sorted(slots, key=lambda s: (s.start, s.end)))
    for previous, current in zip(ordered, ordered[1:]):
        if previous.overlaps(current):
            raise InvalidSlot(
                f"Slots {previous} and {current} overlap",
                details={"slots": [previous.to_dict(), current.to_dict()]},
            )
    return ordered


@dataclass(frozen=True)
class DayAvailability:
    """Availability for one day: open flag plus its ordered windows."""
    available: bool = False
    slots: Tuple[WallClockSlot, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "slots", validate_slots(self.slots))

    @property
    def windows(self) -> Tuple[WallClockSlot, ...]:
        """Bookable windows; a closed day has none regardless of its slots."""
        return self.slots if self.available else ()


CLOSED_DAY = DayAvailability(available=False)


@dataclass(frozen=True)
class DateException:
    """
    Override for a single calendar date.

    An ``available`` exception without slots opens the day with zero
    bookable hours.
    """
    date: date
    available: bool
    slots: Optional[Tuple[WallClockSlot, ...]] = None
    reason: Optional[str] = None

    def __post_init__(self):
        if self.slots is not None:
            object.__setattr__(self, "slots", validate_slots(self.slots))

    def as_day(self) -> DayAvailability:
        return DayAvailability(available=self.available, slots=self.slots or ())


@dataclass(frozen=True)
class BookingPolicy:
    """Eligibility rules applied on top of the configured windows."""
    timezone: str = "UTC"
    buffer_minutes: int = 15
    min_notice_hours: int = 24
    max_advance_days: int = 90

    def __post_init__(self):
        if self.buffer_minutes < 0:
            raise InvalidSlot(f"buffer_minutes must be >= 0, got {self.buffer_minutes}")
        if self.min_notice_hours < 0:
            raise InvalidSlot(f"min_notice_hours must be >= 0, got {self.min_notice_hours}")
        if self.max_advance_days < 1:
            raise InvalidSlot(f"max_advance_days must be >= 1, got {self.max_advance_days}")
        try:
            pendulum.timezone(self.timezone)
        except (ValueError, KeyError) as exc:
            raise InvalidSlot(f"Unknown timezone: {self.timezone}") from exc


WeeklyPattern = Dict[DayOfWeek, DayAvailability]


def index_exceptions(exceptions: Sequence[DateException]) -> Dict[date, DateException]:
    """
    Key exceptions by calendar date.

    Raises:
        InvalidSlot: If two exceptions share the same date
    """
    indexed: Dict[date, DateException] = {}
    for exception in exceptions:
        if exception.date in indexed:
            raise InvalidSlot(
                f"Duplicate exception for {exception.date.isoformat()}",
                details={"date": exception.date.isoformat()},
            )
        indexed[exception.date] = exception
    return indexed


@dataclass(frozen=True)
class Schedule:
    """A mentor's availability: weekly pattern, exceptions and policy."""
    owner_id: str
    weekly_pattern: WeeklyPattern = field(default_factory=dict)
    exceptions: Tuple[DateException, ...] = ()
    policy: BookingPolicy = field(default_factory=BookingPolicy)
    active: bool = True

    def __post_init__(self):
        object.__setattr__(
            self,
            "exceptions",
            tuple(sorted(self.exceptions, key=lambda e: e.date)),
        )
        object.__setattr__(self, "_exception_index", index_exceptions(self.exceptions))

    def exception_for(self, day: date) -> Optional[DateException]:
        return self._exception_index.get(day)

    def effective_day(self, day: date) -> DayAvailability:
        """Resolve the availability of a date: its exception wins over the weekly pattern."""
        exception = self.exception_for(day)
        if exception is not None:
            return exception.as_day()
        return self.weekly_pattern.get(DayOfWeek.for_date(day), CLOSED_DAY)

    def effective_windows(self, day: date) -> List[WallClockSlot]:
        return list(self.effective_day(day).windows)
