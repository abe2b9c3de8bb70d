"""
Transport-agnostic facade over the booking engine.

``BookingEngine`` wires the services to a record store and exposes the
operations a web handler, a worker or the CLI needs. Inputs and outputs
are the Pydantic schemas from ``mentorbook.schemas``; failures are raised
as ``BookingEngineError`` subclasses and can be turned into a response
body with ``error_payload``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol

from pydantic import ValidationError

from .config import EngineConfig
from .domain.exceptions import BookingEngineError, NotFound, ServiceUnavailable
from .domain.models import Actor, AppointmentStatus, Clock, Role, utc_now
from .domain.slot_calculator import DateLike
from .schemas import (
    AppointmentOut,
    AppointmentUpdate,
    BookingRequest,
    CancellationOut,
    CancelRequest,
    ScheduleIn,
    SlotOut,
    TransactionOut,
)
from .services import (
    BookingOrchestrator,
    ConflictChecker,
    IntegrityChecker,
    IntegrityReport,
    Ledger,
    ScheduleStore,
    SlotGenerator,
)
from .services.repositories import (
    AppointmentRepository,
    CatalogRepository,
    LedgerRepository,
    ScheduleRepository,
)

logger = logging.getLogger(__name__)


class RecordStore(ScheduleRepository, CatalogRepository, AppointmentRepository, LedgerRepository, Protocol):
    """A single backend implementing every repository protocol."""


def error_payload(exc: Exception) -> Dict[str, Any]:
    """
    Convert an engine or validation error into a client-facing body.

    Unknown exceptions are not handled here; they should propagate.
    """
    if isinstance(exc, BookingEngineError):
        return exc.to_dict()
    if isinstance(exc, ValidationError):
        return {
            "error": "Invalid request",
            "code": "ValidationError",
            "details": {"errors": exc.errors(include_url=False)},
            "status": 422,
        }
    raise TypeError(f"No error payload for {type(exc).__name__}") from exc


class BookingEngine:
    """
    Wires repositories, services and configuration together.

    Example:
        store = InMemoryStore()
        engine = BookingEngine(store)
        slots = await engine.availability("mentor-1", start, end, 60)
    """

    def __init__(
        self,
        store: RecordStore,
        config: Optional[EngineConfig] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config or EngineConfig()
        self.store = store

        self.schedules = ScheduleStore(store, default_policy=self.config.default_booking_policy())
        self.conflicts = ConflictChecker(store)
        self.slots = SlotGenerator(self.schedules, self.conflicts, clock=clock)
        self.ledger = Ledger(store, clock=clock, retry_attempts=self.config.ledger.retry_attempts)
        self.bookings = BookingOrchestrator(
            appointments=store,
            catalog=store,
            schedule_store=self.schedules,
            conflict_checker=self.conflicts,
            ledger=self.ledger,
            clock=clock,
            retry_attempts=self.config.booking.retry_attempts,
        )
        self.integrity = IntegrityChecker(
            self.ledger,
            store,
            store,
            clock=clock,
            grace_minutes=self.config.booking.orphan_grace_minutes,
        )

    # Availability -------------------------------------------------------

    async def availability(
        self,
        owner_id: str,
        range_start: DateLike,
        range_end: DateLike,
        duration_minutes: Optional[int] = None,
    ) -> List[SlotOut]:
        """Free slots of a mentor between two calendar days, inclusive."""
        duration = duration_minutes or self.config.booking.default_duration_minutes
        slots = await self.slots.list_slots(owner_id, range_start, range_end, duration)
        return [SlotOut.from_domain(slot) for slot in slots]

    async def availability_for_service(
        self,
        owner_id: str,
        service_offering_id: str,
        range_start: DateLike,
        range_end: DateLike,
    ) -> List[SlotOut]:
        """Free slots sized to a catalog service's duration."""
        service = await self.store.get_service(service_offering_id)
        if service is None:
            raise NotFound(
                "Service type not found",
                details={"service_offering_id": service_offering_id},
            )
        if not service.active:
            raise ServiceUnavailable(
                "Invalid or inactive service type",
                details={"service_offering_id": service_offering_id},
            )
        return await self.availability(owner_id, range_start, range_end, service.duration_minutes)

    async def upsert_schedule(self, owner_id: str, payload: ScheduleIn) -> None:
        policy = payload.policy.to_domain() if "policy" in payload.model_fields_set else None
        await self.schedules.upsert_schedule(
            owner_id,
            payload.weekly_pattern_to_domain(),
            payload.exceptions_to_domain(),
            policy=policy,
            active=payload.active,
        )

    # Bookings -----------------------------------------------------------

    async def book(self, request: BookingRequest) -> AppointmentOut:
        appointment = await self.bookings.book(
            student_id=request.student_id,
            service_offering_id=request.service_offering_id,
            mentor_id=request.mentor_id,
            scheduled_at=request.scheduled_at,
            timezone=request.timezone,
            notes=request.notes,
        )
        return AppointmentOut.from_domain(appointment)

    async def cancel(
        self,
        appointment_id: str,
        actor: Actor,
        request: Optional[CancelRequest] = None,
    ) -> CancellationOut:
        """Cancel on behalf of a participant and report the ledger effect."""
        await self.bookings.get(appointment_id, actor)
        reason = request.reason if request else None
        result = await self.bookings.cancel(appointment_id, by=actor.id, reason=reason)
        return CancellationOut(
            appointment=AppointmentOut.from_domain(result.appointment),
            refunded=result.refunded,
            refund_amount=result.refund_amount,
            already_cancelled=result.already_cancelled,
        )

    async def update(self, appointment_id: str, actor: Actor, changes: AppointmentUpdate) -> AppointmentOut:
        appointment = await self.bookings.update(appointment_id, actor, changes)
        return AppointmentOut.from_domain(appointment)

    async def get_appointment(self, appointment_id: str, actor: Actor) -> AppointmentOut:
        appointment = await self.bookings.get(appointment_id, actor)
        return AppointmentOut.from_domain(appointment)

    async def list_appointments(
        self,
        actor: Actor,
        role: Role = Role.STUDENT,
        status: Optional[AppointmentStatus] = None,
        upcoming_only: bool = False,
    ) -> List[AppointmentOut]:
        appointments = await self.bookings.list_for_user(
            actor.id, role=role, status=status, upcoming_only=upcoming_only
        )
        return [AppointmentOut.from_domain(appointment) for appointment in appointments]

    # Ledger -------------------------------------------------------------

    async def balance(self, user_id: str) -> int:
        return await self.ledger.balance(user_id)

    async def history(self, user_id: str, limit: int = 50, offset: int = 0) -> List[TransactionOut]:
        transactions = await self.ledger.history(user_id, limit=limit, offset=offset)
        return [TransactionOut.from_domain(tx) for tx in transactions]

    async def grant_free_credits(self, user_id: str, amount: Optional[int] = None) -> TransactionOut:
        transaction = await self.ledger.grant_free_credits(
            user_id,
            amount or self.config.ledger.free_credit_amount,
        )
        return TransactionOut.from_domain(transaction)

    async def verify(self, user_id: str) -> bool:
        return await self.ledger.verify(user_id)

    async def run_integrity_check(self, raise_on_violation: bool = False) -> IntegrityReport:
        report = await self.integrity.run(raise_on_violation=raise_on_violation)
        logger.info(
            "Integrity check: %d accounts, %d mismatches, %d orphaned appointments",
            report.checked_accounts,
            len(report.ledger_mismatches),
            len(report.orphaned_appointments),
        )
        return report
