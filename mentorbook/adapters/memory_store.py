"""
In-memory record store implementing every repository protocol.

Used by the CLI (together with ``StateFile``) and by the tests. All
conditional writes are checked and applied without yielding to the event
loop, which makes each of them atomic with respect to other coroutines.
An optional ``latency`` simulates a storage round trip before each call so
tests can force interleavings between concurrent requests.
"""

from __future__ import annotations

import asyncio
import copy
from typing import Dict, Iterable, List, Optional

from ..domain.exceptions import ConcurrencyConflict, IntegrityViolation, NotFound
from ..domain.models import (
    Appointment,
    AppointmentStatus,
    CreditAccount,
    LedgerTransaction,
    MentorProfile,
    ServiceOffering,
    overlaps,
)
from ..domain.schedule import Schedule


class InMemoryStore:
    """
    Dictionary-backed persistence.

    Records are copied on the way in and out, so callers can never mutate
    stored state without going through a write method.
    """

    def __init__(self, latency: Optional[float] = None):
        """
        Initialize an empty store.

        Args:
            latency: Seconds to sleep before every operation. ``0`` still
                yields to the event loop; ``None`` never yields.
        """
        self.latency = latency
        self.schedules: Dict[str, Schedule] = {}
        self.services: Dict[str, ServiceOffering] = {}
        self.mentors: Dict[str, MentorProfile] = {}
        self.appointments: Dict[str, Appointment] = {}
        self.accounts: Dict[str, CreditAccount] = {}
        self.transactions: Dict[str, List[LedgerTransaction]] = {}

    async def _round_trip(self) -> None:
        if self.latency is not None:
            await asyncio.sleep(self.latency)

    # Seeding -----------------------------------------------------------

    def add_service(self, service: ServiceOffering) -> ServiceOffering:
        self.services[service.id] = service
        return service

    def add_mentor(self, mentor: MentorProfile) -> MentorProfile:
        self.mentors[mentor.user_id] = mentor
        return mentor

    def open_account(self, user_id: str) -> CreditAccount:
        """Create an empty account; credits only ever arrive through the ledger."""
        if user_id not in self.accounts:
            self.accounts[user_id] = CreditAccount(user_id=user_id)
            self.transactions[user_id] = []
        return self.accounts[user_id]

    # ScheduleRepository -------------------------------------------------

    async def get_schedule(self, owner_id: str) -> Optional[Schedule]:
        await self._round_trip()
        return self.schedules.get(owner_id)

    async def save_schedule(self, schedule: Schedule) -> Schedule:
        await self._round_trip()
        self.schedules[schedule.owner_id] = schedule
        return schedule

    # CatalogRepository --------------------------------------------------

    async def get_service(self, service_id: str) -> Optional[ServiceOffering]:
        await self._round_trip()
        return self.services.get(service_id)

    async def get_mentor(self, mentor_id: str) -> Optional[MentorProfile]:
        await self._round_trip()
        return self.mentors.get(mentor_id)

    # AppointmentRepository ----------------------------------------------

    async def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        await self._round_trip()
        appointment = self.appointments.get(appointment_id)
        return copy.deepcopy(appointment) if appointment else None

    async def list_appointments(
        self,
        *,
        mentor_id: Optional[str] = None,
        student_id: Optional[str] = None,
        statuses: Optional[Iterable[AppointmentStatus]] = None,
    ) -> List[Appointment]:
        await self._round_trip()
        wanted = set(statuses) if statuses is not None else None
        return [
            copy.deepcopy(appointment)
            for appointment in self.appointments.values()
            if (mentor_id is None or appointment.mentor_id == mentor_id)
            and (student_id is None or appointment.student_id == student_id)
            and (wanted is None or appointment.status in wanted)
        ]

    async def insert_appointment(self, appointment: Appointment) -> Appointment:
        await self._round_trip()
        if appointment.id in self.appointments:
            raise ConcurrencyConflict(f"Appointment {appointment.id} already exists")

        if appointment.mentor_id and appointment.is_blocking:
            for existing in self.appointments.values():
                if (
                    existing.mentor_id == appointment.mentor_id
                    and existing.is_blocking
                    and overlaps(existing.window, appointment.window)
                ):
                    raise ConcurrencyConflict(
                        f"Mentor {appointment.mentor_id} already has appointment {existing.id} in this window",
                        details={"conflicting_appointment_id": existing.id},
                    )

        self.appointments[appointment.id] = copy.deepcopy(appointment)
        return copy.deepcopy(appointment)

    async def update_appointment(self, appointment: Appointment, expected_version: int) -> Appointment:
        await self._round_trip()
        stored = self.appointments.get(appointment.id)
        if stored is None:
            raise NotFound(f"Appointment {appointment.id} not found")
        if stored.version != expected_version:
            raise ConcurrencyConflict(
                f"Appointment {appointment.id} changed concurrently",
                details={"expected_version": expected_version, "actual_version": stored.version},
            )

        updated = copy.deepcopy(appointment)
        updated.version = expected_version + 1
        self.appointments[appointment.id] = updated
        return copy.deepcopy(updated)

    async def delete_appointment(self, appointment_id: str) -> None:
        await self._round_trip()
        self.appointments.pop(appointment_id, None)

    # LedgerRepository ---------------------------------------------------

    async def get_account(self, user_id: str) -> Optional[CreditAccount]:
        await self._round_trip()
        return self.accounts.get(user_id)

    async def list_accounts(self) -> List[CreditAccount]:
        await self._round_trip()
        return list(self.accounts.values())

    async def append_transaction(
        self,
        transaction: LedgerTransaction,
        expected_last_transaction_id: Optional[str],
    ) -> CreditAccount:
        await self._round_trip()
        account = self.accounts.get(transaction.user_id)
        if account is None:
            raise NotFound(f"Unknown user {transaction.user_id}")
        if account.last_transaction_id != expected_last_transaction_id:
            raise ConcurrencyConflict(
                f"Balance of {transaction.user_id} changed concurrently",
                details={"user_id": transaction.user_id},
            )
        if transaction.balance_after != account.balance + transaction.amount or transaction.balance_after < 0:
            raise IntegrityViolation(
                f"Transaction {transaction.id} does not continue the balance of {transaction.user_id}",
                details={
                    "user_id": transaction.user_id,
                    "balance": account.balance,
                    "amount": transaction.amount,
                    "balance_after": transaction.balance_after,
                },
            )

        self.transactions[transaction.user_id].append(transaction)
        updated = CreditAccount(
            user_id=transaction.user_id,
            balance=transaction.balance_after,
            last_transaction_id=transaction.id,
        )
        self.accounts[transaction.user_id] = updated
        return updated

    async def list_transactions(self, user_id: str) -> List[LedgerTransaction]:
        await self._round_trip()
        return list(self.transactions.get(user_id, []))
