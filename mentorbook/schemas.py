"""
Request and response schemas exposed to transport layers.

Requests are validated with Pydantic before they reach the services;
responses are flat, JSON-friendly views of the domain objects.
"""

from __future__ import annotations

from datetime import date as CalendarDate, datetime
from typing import Dict, List, Optional

import pendulum
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .domain.models import Appointment, AppointmentStatus, LedgerTransaction, TimeRange, TransactionReason
from .domain.schedule import (
    BookingPolicy,
    DateException,
    DayAvailability,
    DayOfWeek,
    WallClockSlot,
)


class SlotIn(BaseModel):
    start: str
    end: str

    def to_domain(self) -> WallClockSlot:
        return WallClockSlot.parse(self.start, self.end)


class DayIn(BaseModel):
    available: bool = False
    slots: List[SlotIn] = Field(default_factory=list)

    def to_domain(self) -> DayAvailability:
        return DayAvailability(
            available=self.available,
            slots=tuple(slot.to_domain() for slot in self.slots),
        )


class ExceptionIn(BaseModel):
    date: CalendarDate
    available: bool
    slots: Optional[List[SlotIn]] = None
    reason: Optional[str] = None

    def to_domain(self) -> DateException:
        slots = None
        if self.slots is not None:
            slots = tuple(slot.to_domain() for slot in self.slots)
        return DateException(date=self.date, available=self.available, slots=slots, reason=self.reason)


class PolicyIn(BaseModel):
    timezone: str = "UTC"
    buffer_minutes: int = 15
    min_notice_hours: int = 24
    max_advance_days: int = 90

    def to_domain(self) -> BookingPolicy:
        return BookingPolicy(**self.model_dump())


class ScheduleIn(BaseModel):
    """Full replacement of a mentor's schedule."""
    weekly_pattern: Dict[DayOfWeek, DayIn] = Field(default_factory=dict)
    exceptions: List[ExceptionIn] = Field(default_factory=list)
    policy: PolicyIn = Field(default_factory=PolicyIn)
    active: bool = True

    def weekly_pattern_to_domain(self) -> Dict[DayOfWeek, DayAvailability]:
        return {day: value.to_domain() for day, value in self.weekly_pattern.items()}

    def exceptions_to_domain(self) -> List[DateException]:
        return [exception.to_domain() for exception in self.exceptions]


class BookingRequest(BaseModel):
    student_id: str
    service_offering_id: str
    mentor_id: Optional[str] = None
    scheduled_at: datetime
    timezone: str = "UTC"
    notes: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("scheduled_at")
    @classmethod
    def validate_scheduled_at(cls, value: datetime) -> datetime:
        """Naive datetimes are rejected; the instant must be unambiguous."""
        if value.tzinfo is None:
            raise ValueError("scheduled_at must include a UTC offset")
        return value


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class AppointmentUpdate(BaseModel):
    """
    Typed partial update of an appointment.

    Only the fields listed here can change; ``status`` is still validated
    against the transition table by the orchestrator.
    """
    model_config = ConfigDict(extra="forbid")

    status: Optional[AppointmentStatus] = None
    student_notes: Optional[str] = Field(default=None, max_length=2000)
    meeting_notes: Optional[str] = Field(default=None, max_length=5000)
    meeting_link: Optional[str] = None
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    feedback: Optional[str] = Field(default=None, max_length=2000)
    cancellation_reason: Optional[str] = Field(default=None, max_length=500)

    def changed_fields(self) -> Dict[str, object]:
        """Fields explicitly provided by the caller, status excluded."""
        return self.model_dump(exclude_unset=True, exclude={"status", "cancellation_reason"})


class SlotOut(BaseModel):
    start: datetime
    end: datetime

    @classmethod
    def from_domain(cls, slot: TimeRange) -> "SlotOut":
        return cls(start=slot.start, end=slot.end)


class AppointmentOut(BaseModel):
    id: str
    student_id: str
    mentor_id: Optional[str]
    service_offering_id: str
    status: AppointmentStatus
    scheduled_at: datetime
    ends_at: datetime
    duration_minutes: int
    timezone: str
    credit_cost: int
    credits_charged: bool
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    student_notes: Optional[str] = None
    meeting_notes: Optional[str] = None
    meeting_link: Optional[str] = None
    rating: Optional[int] = None
    feedback: Optional[str] = None

    @classmethod
    def from_domain(cls, appointment: Appointment) -> "AppointmentOut":
        return cls(
            id=appointment.id,
            student_id=appointment.student_id,
            mentor_id=appointment.mentor_id,
            service_offering_id=appointment.service_offering_id,
            status=appointment.status,
            scheduled_at=appointment.scheduled_at,
            ends_at=appointment.window.end,
            duration_minutes=appointment.duration_minutes,
            timezone=appointment.timezone,
            credit_cost=appointment.credit_cost,
            credits_charged=appointment.credits_charged,
            cancellation_reason=appointment.cancellation.reason,
            cancelled_at=appointment.cancellation.at,
            cancelled_by=appointment.cancellation.by,
            student_notes=appointment.student_notes,
            meeting_notes=appointment.meeting_notes,
            meeting_link=appointment.meeting_link,
            rating=appointment.rating,
            feedback=appointment.feedback,
        )

    def local_start(self) -> pendulum.DateTime:
        """Start time in the appointment's own timezone."""
        return pendulum.instance(self.scheduled_at).in_timezone(self.timezone)


class TransactionOut(BaseModel):
    id: str
    user_id: str
    amount: int
    balance_after: int
    reason: TransactionReason
    description: str
    related_appointment_id: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_domain(cls, transaction: LedgerTransaction) -> "TransactionOut":
        return cls(
            id=transaction.id,
            user_id=transaction.user_id,
            amount=transaction.amount,
            balance_after=transaction.balance_after,
            reason=transaction.reason,
            description=transaction.description,
            related_appointment_id=transaction.related_appointment_id,
            created_at=transaction.created_at,
        )


class CancellationOut(BaseModel):
    appointment: AppointmentOut
    refunded: bool
    refund_amount: int = 0
    already_cancelled: bool = False
