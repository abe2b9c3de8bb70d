"""
Conflict Checker: decides whether a window collides with a mentor's bookings.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from ..domain.models import BLOCKING_STATUSES, Appointment, TimeRange, overlaps
from .repositories import AppointmentRepository

logger = logging.getLogger(__name__)


class ConflictChecker:
    """
    Interval conflict detection against blocking appointments.

    Only ``pending``, ``confirmed`` and ``in_progress`` appointments hold a
    mentor's time. Overlap uses half-open windows, so back-to-back sessions
    do not conflict.
    """

    def __init__(self, repository: AppointmentRepository) -> None:
        self._repository = repository

    async def find_conflicts(
        self,
        mentor_id: str,
        window: TimeRange,
        exclude_appointment_id: Optional[str] = None,
    ) -> List[Appointment]:
        """Return the mentor's blocking appointments overlapping ``window``."""
        appointments = await self._repository.list_appointments(
            mentor_id=mentor_id,
            statuses=BLOCKING_STATUSES,
        )

        conflicts = [
            appointment
            for appointment in appointments
            if appointment.id != exclude_appointment_id and overlaps(appointment.window, window)
        ]

        if conflicts:
            logger.debug(
                "Found %d conflicting appointment(s) for %s in %s",
                len(conflicts),
                mentor_id,
                window,
            )

        return conflicts

    async def has_conflict(
        self,
        mentor_id: str,
        window: TimeRange,
        exclude_appointment_id: Optional[str] = None,
    ) -> bool:
        conflicts = await self.find_conflicts(mentor_id, window, exclude_appointment_id)
        return bool(conflicts)
