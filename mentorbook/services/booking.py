"""
Booking Orchestrator: creates, cancels and transitions appointments.

Booking is a two-step saga. The appointment is written first (holding the
mentor's time), then the student's credits are debited. If the debit
fails, the compensating action deletes the appointment again. If the
debit succeeds but the charge cannot be recorded on the appointment, the
debit is refunded before the appointment is deleted.

Refunds follow the ledger: whatever was debited against an appointment is
credited back once, regardless of the ``credits_charged`` flag.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional
from uuid import uuid4

import pendulum

from ..domain.exceptions import (
    ConcurrencyConflict,
    Forbidden,
    InsufficientCredits,
    InvalidTime,
    MentorRequired,
    NotFound,
    ServiceUnavailable,
    SlotUnavailable,
)
from ..domain.models import (
    BLOCKING_STATUSES,
    Actor,
    Appointment,
    AppointmentStatus,
    Cancellation,
    Clock,
    LedgerTransaction,
    Role,
    ServiceOffering,
    TimeRange,
    TransactionReason,
    utc_now,
)
from ..domain.slot_calculator import SlotCalculator
from ..domain.transitions import ensure_transition
from ..schemas import AppointmentUpdate
from .conflict_checker import ConflictChecker
from .ledger import Ledger
from .locks import KeyedLock
from .repositories import AppointmentRepository, CatalogRepository
from .schedule_store import ScheduleStore

logger = logging.getLogger(__name__)

MENTOR_FIELDS = frozenset({"meeting_notes", "meeting_link"})
STUDENT_FIELDS = frozenset({"rating", "feedback", "student_notes"})


@dataclass(frozen=True)
class CancellationResult:
    """Outcome of a cancellation, including its effect on the ledger."""
    appointment: Appointment
    refund_transaction: Optional[LedgerTransaction] = None
    already_cancelled: bool = False

    @property
    def refunded(self) -> bool:
        return self.refund_transaction is not None

    @property
    def refund_amount(self) -> int:
        return self.refund_transaction.amount if self.refund_transaction else 0


def _new_id() -> str:
    return uuid4().hex


class BookingOrchestrator:
    """
    Validates booking requests end-to-end and drives appointment status.

    Check-then-create for a mentor runs under a per-mentor lock, and the
    repository re-validates overlap on insert, so at most one blocking
    appointment can ever cover a given mentor window. Mutations of an
    existing appointment run under a per-appointment lock with a version
    check on write.
    """

    def __init__(
        self,
        appointments: AppointmentRepository,
        catalog: CatalogRepository,
        schedule_store: ScheduleStore,
        conflict_checker: ConflictChecker,
        ledger: Ledger,
        clock: Clock = utc_now,
        retry_attempts: int = 3,
        id_factory: Callable[[], str] = _new_id,
    ) -> None:
        self._appointments = appointments
        self._catalog = catalog
        self._schedule_store = schedule_store
        self._conflict_checker = conflict_checker
        self._ledger = ledger
        self._clock = clock
        self._retry_attempts = retry_attempts
        self._id_factory = id_factory
        self._mentor_locks = KeyedLock("mentor")
        self._appointment_locks = KeyedLock("appointment")

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    async def book(
        self,
        *,
        student_id: str,
        service_offering_id: str,
        scheduled_at: datetime,
        timezone: str = "UTC",
        mentor_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Appointment:
        """
        Book a session and charge its credits.

        Args:
            student_id: User the session is booked for
            service_offering_id: Catalog entry being booked
            scheduled_at: Absolute start instant (timezone-aware)
            timezone: Display timezone stored with the appointment
            mentor_id: Mentor conducting the session, if any
            notes: Pre-session notes from the student

        Returns:
            The pending Appointment with ``credits_charged`` set

        Raises:
            ServiceUnavailable: Service missing or inactive
            MentorRequired: Service needs a mentor and none was given
            InvalidTime: ``scheduled_at`` is in the past
            SlotUnavailable: Mentor cannot take the requested window
            InsufficientCredits: Balance lower than the service cost
        """
        service = await self._catalog.get_service(service_offering_id)
        if service is None or not service.active:
            raise ServiceUnavailable(
                "Invalid or inactive service type",
                details={"service_offering_id": service_offering_id},
            )

        if service.requires_mentor and not mentor_id:
            raise MentorRequired(
                "Mentor is required for this service",
                details={"service_offering_id": service_offering_id},
            )

        start = pendulum.instance(scheduled_at).in_timezone("UTC")
        now = self._clock()
        if start < now:
            raise InvalidTime(
                "Cannot book appointments in the past",
                details={"scheduled_at": start.to_iso8601_string(), "now": now.to_iso8601_string()},
            )

        window = TimeRange.from_duration(start, service.duration_minutes)
        appointment_id = self._id_factory()

        # A cancel of the new appointment waits until the charge is recorded.
        async with self._appointment_locks.hold(appointment_id):
            if mentor_id:
                async with self._mentor_locks.hold(mentor_id):
                    await self._ensure_mentor_available(mentor_id, window, now)
                    await self._ensure_credits(student_id, service.credit_cost)
                    appointment = await self._create(
                        appointment_id, student_id, mentor_id, service, start, timezone, notes
                    )
            else:
                await self._ensure_credits(student_id, service.credit_cost)
                appointment = await self._create(appointment_id, student_id, None, service, start, timezone, notes)

            return await self._charge(appointment, service)

    async def _ensure_mentor_available(self, mentor_id: str, window: TimeRange, now: pendulum.DateTime) -> None:
        mentor = await self._catalog.get_mentor(mentor_id)
        if mentor is None or not mentor.is_bookable:
            raise SlotUnavailable(
                "Mentor not available",
                details={"mentor_id": mentor_id, "reason": "mentor_not_bookable"},
            )

        schedule = await self._schedule_store.find_schedule(mentor_id)
        if schedule is None or not schedule.active:
            raise SlotUnavailable(
                "Mentor has no active schedule",
                details={"mentor_id": mentor_id, "reason": "no_schedule"},
            )

        calculator = SlotCalculator(schedule)
        if not calculator.is_eligible_start(window.start, now):
            earliest, latest = calculator.eligibility_bounds(now)
            raise SlotUnavailable(
                "Requested time is outside the mentor's booking window",
                details={
                    "mentor_id": mentor_id,
                    "reason": "outside_booking_window",
                    "earliest": earliest.to_iso8601_string(),
                    "latest": latest.to_iso8601_string(),
                },
            )

        if not calculator.fits_schedule(window):
            raise SlotUnavailable(
                "Mentor is not available at the requested time",
                details={"mentor_id": mentor_id, "reason": "outside_availability"},
            )

        conflicts = await self._conflict_checker.find_conflicts(mentor_id, window)
        if conflicts:
            raise SlotUnavailable(
                "Mentor is already booked at the requested time",
                details={
                    "mentor_id": mentor_id,
                    "reason": "conflict",
                    "conflicting_appointment_ids": [appointment.id for appointment in conflicts],
                },
            )

    async def _ensure_credits(self, student_id: str, credit_cost: int) -> None:
        if credit_cost == 0:
            return
        balance = await self._ledger.balance(student_id)
        if balance < credit_cost:
            logger.warning(
                "Booking rejected for %s: %d credits required, %d available",
                student_id,
                credit_cost,
                balance,
            )
            raise InsufficientCredits(required=credit_cost, available=balance)

    async def _create(
        self,
        appointment_id: str,
        student_id: str,
        mentor_id: Optional[str],
        service: ServiceOffering,
        start: pendulum.DateTime,
        timezone: str,
        notes: Optional[str],
    ) -> Appointment:
        now = self._clock()
        appointment = Appointment(
            id=appointment_id,
            student_id=student_id,
            mentor_id=mentor_id,
            service_offering_id=service.id,
            scheduled_at=start,
            duration_minutes=service.duration_minutes,
            timezone=timezone,
            credit_cost=service.credit_cost,
            credits_charged=False,
            student_notes=notes,
            created_at=now,
            updated_at=now,
        )

        try:
            return await self._appointments.insert_appointment(appointment)
        except ConcurrencyConflict as exc:
            raise SlotUnavailable(
                "Mentor was booked by another request",
                details={"mentor_id": mentor_id, "reason": "conflict"},
            ) from exc

    async def _charge(self, appointment: Appointment, service: ServiceOffering) -> Appointment:
        if appointment.credit_cost == 0:
            logger.info("Booked free appointment %s for %s", appointment.id, appointment.student_id)
            return appointment

        try:
            await self._ledger.debit(
                appointment.student_id,
                appointment.credit_cost,
                TransactionReason.USED,
                f"Appointment: {service.name}",
                related_appointment_id=appointment.id,
            )
        except Exception:
            await self._compensate(appointment)
            raise

        def mark_charged(current: Appointment) -> None:
            current.credits_charged = True

        try:
            charged = await self._mutate(appointment.id, mark_charged)
        except Exception:
            await self._compensate_charge(appointment)
            raise

        if charged.status is AppointmentStatus.CANCELLED:
            # Cancelled through another engine between insert and charge.
            logger.warning("Appointment %s was cancelled while being charged, refunding", charged.id)
            await self._refund_once(charged)
            return charged

        logger.info(
            "Booked appointment %s for %s with %s at %s (%d credits)",
            charged.id,
            charged.student_id,
            charged.mentor_id or "no mentor",
            charged.scheduled_at.to_iso8601_string(),
            charged.credit_cost,
        )
        return charged

    async def _compensate(self, appointment: Appointment) -> None:
        """Undo the appointment write after a failed booking step. Never raises."""
        try:
            await self._appointments.delete_appointment(appointment.id)
        except Exception:
            logger.exception(
                "Compensation failed: appointment %s is pending and uncharged; "
                "the integrity job has to reconcile it",
                appointment.id,
            )
            return
        logger.warning("Booking failed, appointment %s rolled back", appointment.id)

    async def _compensate_charge(self, appointment: Appointment) -> None:
        """Undo debit and appointment when the charge could not be recorded. Never raises."""
        try:
            await self._refund_once(appointment, f"Refund for failed booking: {appointment.id}")
        except Exception:
            # The appointment stays, so a later cancel can still refund it.
            logger.exception(
                "Compensation failed: credits for appointment %s were debited and not refunded",
                appointment.id,
            )
            return
        await self._compensate(appointment)

    # ------------------------------------------------------------------
    # Cancellation and updates
    # ------------------------------------------------------------------

    async def cancel(self, appointment_id: str, by: str, reason: Optional[str] = None) -> CancellationResult:
        """
        Cancel a pending or confirmed appointment and refund its credits.

        Cancelling an already cancelled appointment is a no-op. The refund is
        issued at most once per appointment, even if an earlier cancellation
        stopped between the status change and the refund.

        Raises:
            NotFound: Unknown appointment
            InvalidTransition: Appointment is past the cancellable states
        """
        async with self._appointment_locks.hold(appointment_id):
            return await self._cancel_locked(appointment_id, by, reason)

    async def _cancel_locked(self, appointment_id: str, by: str, reason: Optional[str]) -> CancellationResult:
        appointment = await self._load(appointment_id)
        already_cancelled = appointment.status is AppointmentStatus.CANCELLED

        if not already_cancelled:
            now = self._clock()

            def mark_cancelled(current: Appointment) -> None:
                ensure_transition(current.status, AppointmentStatus.CANCELLED)
                current.status = AppointmentStatus.CANCELLED
                current.cancellation = Cancellation(reason=reason, at=now, by=by)

            appointment = await self._mutate(appointment_id, mark_cancelled)
            logger.info("Appointment %s cancelled by %s", appointment_id, by)

        refund = await self._refund_once(appointment)

        return CancellationResult(
            appointment=appointment,
            refund_transaction=refund,
            already_cancelled=already_cancelled,
        )

    async def _refund_once(
        self,
        appointment: Appointment,
        description: Optional[str] = None,
    ) -> Optional[LedgerTransaction]:
        """
        Credit back what the ledger shows as debited for ``appointment``.

        The ledger decides, not ``credits_charged``: the flag can lag behind
        a debit whose charge was never recorded on the appointment.
        """
        related = await self._ledger.find_transactions(
            appointment.student_id,
            related_appointment_id=appointment.id,
        )
        debited = -sum(tx.amount for tx in related if tx.reason is TransactionReason.USED)
        if debited <= 0:
            return None
        if any(tx.reason is TransactionReason.REFUNDED for tx in related):
            logger.debug("Appointment %s already refunded", appointment.id)
            return None

        return await self._ledger.credit(
            appointment.student_id,
            debited,
            TransactionReason.REFUNDED,
            description or f"Refund for cancelled appointment: {appointment.id}",
            related_appointment_id=appointment.id,
        )

    async def update(self, appointment_id: str, actor: Actor, changes: AppointmentUpdate) -> Appointment:
        """
        Apply a typed update on behalf of a participant.

        Mentors and admins may move the status along the transition table
        and edit meeting notes and link. Students and admins may rate, leave
        feedback and edit their notes. Anyone involved may cancel, which runs
        the regular cancellation with its refund.

        Raises:
            NotFound: Unknown appointment
            Forbidden: Actor is not involved or may not touch a field
            InvalidTransition: Status change not in the allow-list
        """
        async with self._appointment_locks.hold(appointment_id):
            appointment = await self._load(appointment_id)
            is_student = actor.id == appointment.student_id
            is_mentor = appointment.mentor_id is not None and actor.id == appointment.mentor_id
            is_admin = actor.is_admin

            if not (is_student or is_mentor or is_admin):
                raise Forbidden("Access denied", details={"appointment_id": appointment_id})

            fields = changes.changed_fields()
            denied = []
            if not (is_mentor or is_admin):
                denied.extend(sorted(MENTOR_FIELDS & fields.keys()))
            if not (is_student or is_admin):
                denied.extend(sorted(STUDENT_FIELDS & fields.keys()))

            status = changes.status
            if status is not None and status is not AppointmentStatus.CANCELLED and not (is_mentor or is_admin):
                denied.append("status")

            if denied:
                raise Forbidden(
                    f"Not allowed to change: {', '.join(denied)}",
                    details={"appointment_id": appointment_id, "fields": denied},
                )

            if status is AppointmentStatus.CANCELLED:
                result = await self._cancel_locked(appointment_id, actor.id, changes.cancellation_reason)
                appointment = result.appointment
            elif status is not None:
                appointment = await self._transition_locked(appointment_id, status)

            if fields:
                def apply_fields(current: Appointment) -> None:
                    for name, value in fields.items():
                        setattr(current, name, value)

                appointment = await self._mutate(appointment_id, apply_fields)

            return appointment

    async def _transition_locked(self, appointment_id: str, target: AppointmentStatus) -> Appointment:
        """Move an appointment to ``target``; the caller holds the appointment lock."""
        def apply_status(current: Appointment) -> None:
            ensure_transition(current.status, target)
            current.status = target

        appointment = await self._mutate(appointment_id, apply_status)
        logger.info("Appointment %s is now %s", appointment_id, target.value)
        return appointment

    async def transition(self, appointment_id: str, actor: Actor, target: AppointmentStatus) -> Appointment:
        """Shortcut for a status-only update."""
        return await self.update(appointment_id, actor, AppointmentUpdate(status=target))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, appointment_id: str, actor: Actor) -> Appointment:
        """
        Load an appointment for a participant or admin.

        Raises:
            NotFound: Unknown appointment
            Forbidden: Actor is not involved
        """
        appointment = await self._load(appointment_id)
        if not (appointment.involves(actor.id) or actor.is_admin):
            raise Forbidden("Access denied", details={"appointment_id": appointment_id})
        return appointment

    async def list_for_user(
        self,
        user_id: str,
        role: Role = Role.STUDENT,
        status: Optional[AppointmentStatus] = None,
        upcoming_only: bool = False,
    ) -> List[Appointment]:
        """Appointments where ``user_id`` is the student (or mentor), earliest first."""
        statuses = [status] if status is not None else None
        if role is Role.MENTOR:
            appointments = await self._appointments.list_appointments(mentor_id=user_id, statuses=statuses)
        else:
            appointments = await self._appointments.list_appointments(student_id=user_id, statuses=statuses)

        if upcoming_only:
            now = self._clock()
            appointments = [appointment for appointment in appointments if appointment.scheduled_at >= now]

        return sorted(appointments, key=lambda appointment: appointment.scheduled_at)

    async def upcoming(self, user_id: str, role: Role = Role.STUDENT, limit: int = 10) -> List[Appointment]:
        """Next blocking appointments of a user."""
        appointments = await self.list_for_user(user_id, role=role, upcoming_only=True)
        return [appointment for appointment in appointments if appointment.status in BLOCKING_STATUSES][:limit]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, appointment_id: str) -> Appointment:
        appointment = await self._appointments.get_appointment(appointment_id)
        if appointment is None:
            raise NotFound(
                f"Appointment {appointment_id} not found",
                details={"appointment_id": appointment_id},
            )
        return appointment

    async def _mutate(self, appointment_id: str, mutate: Callable[[Appointment], None]) -> Appointment:
        """Load, change and conditionally write an appointment, retrying lost races."""
        for attempt in range(1, self._retry_attempts + 1):
            appointment = await self._load(appointment_id)
            expected_version = appointment.version
            mutate(appointment)
            appointment.updated_at = self._clock()

            try:
                return await self._appointments.update_appointment(appointment, expected_version)
            except ConcurrencyConflict:
                logger.warning(
                    "Update of appointment %s lost a race (attempt %d/%d), retrying",
                    appointment_id,
                    attempt,
                    self._retry_attempts,
                )

        raise ConcurrencyConflict(
            f"Could not update appointment {appointment_id} after {self._retry_attempts} attempts",
            details={"appointment_id": appointment_id},
        )
