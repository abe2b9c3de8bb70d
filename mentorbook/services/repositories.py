"""
Persistence protocols consumed by the services.

Each protocol describes only the record-store behaviour a service needs.
Conditional writes (``expected_*`` arguments) are what make the per-mentor
and per-user critical sections safe across processes; an implementation
raises ``ConcurrencyConflict`` when the stored state no longer matches.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Protocol

from ..domain.models import (
    Appointment,
    AppointmentStatus,
    CreditAccount,
    LedgerTransaction,
    MentorProfile,
    ServiceOffering,
)
from ..domain.schedule import Schedule


class ScheduleRepository(Protocol):
    async def get_schedule(self, owner_id: str) -> Optional[Schedule]:
        """Return the schedule of ``owner_id`` or None."""

    async def save_schedule(self, schedule: Schedule) -> Schedule:
        """Insert or replace the owner's schedule."""


class CatalogRepository(Protocol):
    """Read-only lookups into the service catalog and mentor directory."""

    async def get_service(self, service_id: str) -> Optional[ServiceOffering]:
        """Return the service offering or None."""

    async def get_mentor(self, mentor_id: str) -> Optional[MentorProfile]:
        """Return the mentor profile or None."""


class AppointmentRepository(Protocol):
    async def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        """Return a copy of the stored appointment or None."""

    async def list_appointments(
        self,
        *,
        mentor_id: Optional[str] = None,
        student_id: Optional[str] = None,
        statuses: Optional[Iterable[AppointmentStatus]] = None,
    ) -> List[Appointment]:
        """Return appointments matching all given filters."""

    async def insert_appointment(self, appointment: Appointment) -> Appointment:
        """
        Persist a new appointment.

        Must re-validate at write time that no other blocking appointment of
        the same mentor overlaps it, raising ``ConcurrencyConflict`` if one
        does.
        """

    async def update_appointment(self, appointment: Appointment, expected_version: int) -> Appointment:
        """Replace the appointment if its stored version equals ``expected_version``."""

    async def delete_appointment(self, appointment_id: str) -> None:
        """Remove an appointment. Only used as a compensating action."""


class LedgerRepository(Protocol):
    async def get_account(self, user_id: str) -> Optional[CreditAccount]:
        """Return the cached balance of a user or None if the user is unknown."""

    async def list_accounts(self) -> List[CreditAccount]:
        """Return every known account."""

    async def append_transaction(
        self,
        transaction: LedgerTransaction,
        expected_last_transaction_id: Optional[str],
    ) -> CreditAccount:
        """
        Append a transaction and move the cached balance to it atomically.

        The write only happens if the account still points at
        ``expected_last_transaction_id``.
        """

    async def list_transactions(self, user_id: str) -> List[LedgerTransaction]:
        """Return a user's transactions oldest first."""
