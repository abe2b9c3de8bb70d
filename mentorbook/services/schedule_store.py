"""
Schedule Store: one availability schedule per mentor.
"""

from __future__ import annotations

import logging
from typing import Mapping, Optional, Sequence

from ..domain.exceptions import NotFound
from ..domain.schedule import BookingPolicy, DateException, DayAvailability, DayOfWeek, Schedule
from .repositories import ScheduleRepository

logger = logging.getLogger(__name__)


class ScheduleStore:
    """
    Reads and validates mentor schedules.

    Validation lives in the domain objects themselves (malformed times,
    ``start >= end``, intra-day overlap, duplicate exception dates all raise
    ``InvalidSlot``), so an invalid schedule never reaches the repository.
    """

    def __init__(self, repository: ScheduleRepository, default_policy: Optional[BookingPolicy] = None) -> None:
        self._repository = repository
        self._default_policy = default_policy or BookingPolicy()

    async def get_schedule(self, owner_id: str) -> Schedule:
        """
        Load a schedule.

        Raises:
            NotFound: If the owner has no schedule
        """
        schedule = await self._repository.get_schedule(owner_id)
        if schedule is None:
            raise NotFound(f"No schedule for {owner_id}", details={"owner_id": owner_id})
        return schedule

    async def find_schedule(self, owner_id: str) -> Optional[Schedule]:
        """Load a schedule, returning None when the owner has none."""
        return await self._repository.get_schedule(owner_id)

    async def upsert_schedule(
        self,
        owner_id: str,
        weekly_pattern: Mapping[DayOfWeek, DayAvailability],
        exceptions: Sequence[DateException] = (),
        policy: Optional[BookingPolicy] = None,
        active: bool = True,
    ) -> Schedule:
        """
        Create or fully replace an owner's schedule.

        Args:
            owner_id: Mentor the schedule belongs to
            weekly_pattern: Availability per weekday; missing days are closed
            exceptions: Date-specific overrides, at most one per date
            policy: Booking policy; the store default applies when omitted
            active: Inactive schedules produce no slots

        Returns:
            The stored Schedule

        Raises:
            InvalidSlot: If any slot, exception or policy value is invalid
        """
        schedule = Schedule(
            owner_id=owner_id,
            weekly_pattern=dict(weekly_pattern),
            exceptions=tuple(exceptions),
            policy=policy or self._default_policy,
            active=active,
        )
        stored = await self._repository.save_schedule(schedule)
        logger.info(
            "Schedule saved for %s (%d open weekdays, %d exceptions)",
            owner_id,
            sum(1 for day in stored.weekly_pattern.values() if day.available),
            len(stored.exceptions),
        )
        return stored
