"""
Slot Generator: lazily yields bookable windows for a mentor.

Slots are never cached. Every call re-reads the schedule and checks each
candidate against the appointments stored at the moment it is produced.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator, List

from ..domain.models import Clock, TimeRange, utc_now
from ..domain.slot_calculator import DateLike, SlotCalculator
from .conflict_checker import ConflictChecker
from .schedule_store import ScheduleStore

logger = logging.getLogger(__name__)


class SlotGenerator:
    """Combines the schedule's candidates with live conflict checks."""

    def __init__(
        self,
        schedule_store: ScheduleStore,
        conflict_checker: ConflictChecker,
        clock: Clock = utc_now,
    ) -> None:
        self._schedule_store = schedule_store
        self._conflict_checker = conflict_checker
        self._clock = clock

    async def generate_slots(
        self,
        owner_id: str,
        range_start: DateLike,
        range_end: DateLike,
        duration_minutes: int,
    ) -> AsyncIterator[TimeRange]:
        """
        Yield free slots of ``duration_minutes`` in chronological order.

        Args:
            owner_id: Mentor whose schedule is used
            range_start: First calendar day of the search, inclusive
            range_end: Last calendar day of the search, inclusive
            duration_minutes: Requested service duration

        Yields:
            TimeRange objects that pass notice, horizon and conflict checks
        """
        schedule = await self._schedule_store.find_schedule(owner_id)
        if schedule is None or not schedule.active:
            logger.debug("No active schedule for %s, no slots generated", owner_id)
            return

        calculator = SlotCalculator(schedule)
        now = self._clock()

        for candidate in calculator.iter_candidates(range_start, range_end, duration_minutes, now):
            if await self._conflict_checker.has_conflict(owner_id, candidate):
                continue
            yield candidate

    async def list_slots(
        self,
        owner_id: str,
        range_start: DateLike,
        range_end: DateLike,
        duration_minutes: int,
    ) -> List[TimeRange]:
        """Collect ``generate_slots`` into a list."""
        return [
            slot
            async for slot in self.generate_slots(owner_id, range_start, range_end, duration_minutes)
        ]
