"""
Integrity job: replays every ledger and finds orphaned appointments.

Nothing here corrects data. Findings are reported (and logged) so that an
operator can reconcile them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List

from ..domain.exceptions import IntegrityViolation
from ..domain.models import Appointment, AppointmentStatus, Clock, utc_now
from .ledger import Ledger
from .repositories import AppointmentRepository, LedgerRepository

logger = logging.getLogger(__name__)


@dataclass
class IntegrityReport:
    checked_accounts: int = 0
    ledger_mismatches: List[str] = field(default_factory=list)
    orphaned_appointments: List[Appointment] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.ledger_mismatches and not self.orphaned_appointments


class IntegrityChecker:
    """Runs the periodic consistency checks outside the booking hot path."""

    def __init__(
        self,
        ledger: Ledger,
        accounts: LedgerRepository,
        appointments: AppointmentRepository,
        clock: Clock = utc_now,
        grace_minutes: int = 5,
    ) -> None:
        self._ledger = ledger
        self._accounts = accounts
        self._appointments = appointments
        self._clock = clock
        self._grace_minutes = grace_minutes

    async def run(self, raise_on_violation: bool = False) -> IntegrityReport:
        """
        Verify every ledger and look for uncharged pending appointments.

        Args:
            raise_on_violation: Raise instead of returning a failing report

        Raises:
            IntegrityViolation: If ``raise_on_violation`` is set and a ledger
                replay disagrees with its cached balance
        """
        report = IntegrityReport()

        for account in await self._accounts.list_accounts():
            report.checked_accounts += 1
            if not await self._ledger.verify(account.user_id):
                report.ledger_mismatches.append(account.user_id)

        # A pending appointment that costs credits but was never charged is
        # what a failed compensation leaves behind. Recent ones may still be
        # between insert and charge.
        cutoff = self._clock().subtract(minutes=self._grace_minutes)
        pending = await self._appointments.list_appointments(statuses=[AppointmentStatus.PENDING])
        report.orphaned_appointments = [
            appointment
            for appointment in pending
            if appointment.credit_cost > 0
            and not appointment.credits_charged
            and appointment.created_at <= cutoff
        ]

        for appointment in report.orphaned_appointments:
            logger.warning(
                "Orphaned appointment %s: pending for %s without charged credits",
                appointment.id,
                appointment.student_id,
            )

        if report.ledger_mismatches:
            logger.error("Ledger replay mismatch for %s", ", ".join(report.ledger_mismatches))
            if raise_on_violation:
                raise IntegrityViolation(
                    "Ledger replay does not match cached balances",
                    details={"user_ids": report.ledger_mismatches},
                )

        return report
