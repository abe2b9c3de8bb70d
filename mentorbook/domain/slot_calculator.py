"""
Core business logic for turning a schedule into candidate booking slots.

This is pure domain logic without any external dependencies (no storage,
no I/O). Conflict filtering against existing appointments happens in the
service layer, which consumes the candidates produced here lazily.
"""

from datetime import date, datetime
from typing import Iterator, List, Tuple, Union

import pendulum
from pendulum import DateTime

from .models import TimeRange
from .schedule import Schedule, WallClockSlot

DateLike = Union[date, datetime]


class SlotCalculator:
    """
    Calculates candidate slots for one schedule.

    Algorithm, per calendar day in the requested range:
    1. Resolve the effective availability (exception, else weekly pattern)
    2. Skip closed days
    3. Step through each window by the requested duration, keeping
       candidates for which ``start + duration + buffer`` still fits
    4. Drop candidates outside the notice/horizon bounds
    """

    def __init__(self, schedule: Schedule):
        self.schedule = schedule
        self.policy = schedule.policy

    @property
    def timezone(self) -> str:
        return self.policy.timezone

    def eligibility_bounds(self, now: DateTime) -> Tuple[DateTime, DateTime]:
        """Earliest and latest allowed start times relative to ``now``."""
        earliest = now.add(hours=self.policy.min_notice_hours)
        latest = now.add(days=self.policy.max_advance_days)
        return earliest, latest

    def is_eligible_start(self, start: DateTime, now: DateTime) -> bool:
        earliest, latest = self.eligibility_bounds(now)
        return earliest <= start <= latest

    def iter_candidates(
        self,
        range_start: DateLike,
        range_end: DateLike,
        duration_minutes: int,
        now: DateTime,
    ) -> Iterator[TimeRange]:
        """
        Yield candidate slots in chronological order.

        Args:
            range_start: First calendar day (or an instant on it) to consider
            range_end: Last calendar day (or an instant on it), inclusive
            duration_minutes: Length of every emitted slot
            now: Reference instant for notice and horizon bounds

        Yields:
            TimeRange objects of exactly ``duration_minutes`` length
        """
        if duration_minutes <= 0:
            raise ValueError(f"duration_minutes must be greater than zero, got {duration_minutes}")

        if not self.schedule.active:
            return

        for day in self.iter_days(range_start, range_end):
            for block in self.day_blocks(day):
                for candidate in self._step_block(block, duration_minutes):
                    if self.is_eligible_start(candidate.start, now):
                        yield candidate

    def iter_days(self, range_start: DateLike, range_end: DateLike) -> Iterator[date]:
        """Iterate calendar days of the schedule's timezone, both ends inclusive."""
        current = self._local_date(range_start)
        last = self._local_date(range_end)

        while current <= last:
            yield current
            current = current.add(days=1)

    def day_blocks(self, day: date) -> List[TimeRange]:
        """Materialize the effective windows of a day as absolute instants."""
        return [self._materialize(day, window) for window in self.schedule.effective_windows(day)]

    def fits_schedule(self, window: TimeRange) -> bool:
        """
        Check whether a requested window lies inside a configured block.

        The block must also leave room for the policy buffer after the
        window ends.
        """
        local_day = window.start.in_timezone(self.timezone).date()
        buffer_end = window.end.add(minutes=self.policy.buffer_minutes)

        for block in self.day_blocks(local_day):
            if block.start <= window.start and buffer_end <= block.end:
                return True
        return False

    def _step_block(self, block: TimeRange, duration_minutes: int) -> Iterator[TimeRange]:
        """
        Split a block into back-to-back candidates.

        A block shorter than ``duration + buffer`` contributes nothing.
        """
        reserved = duration_minutes + self.policy.buffer_minutes
        candidate_start = block.start

        while candidate_start.add(minutes=reserved) <= block.end:
            yield TimeRange.from_duration(candidate_start, duration_minutes)
            candidate_start = candidate_start.add(minutes=duration_minutes)

    def _materialize(self, day: date, window: WallClockSlot) -> TimeRange:
        start = pendulum.datetime(
            day.year, day.month, day.day,
            window.start.hour, window.start.minute,
            tz=self.timezone,
        )
        end = pendulum.datetime(
            day.year, day.month, day.day,
            window.end.hour, window.end.minute,
            tz=self.timezone,
        )
        return TimeRange(start=start, end=end)

    def _local_date(self, value: DateLike) -> pendulum.Date:
        if isinstance(value, datetime):
            return pendulum.instance(value).in_timezone(self.timezone).date()
        return pendulum.date(value.year, value.month, value.day)
