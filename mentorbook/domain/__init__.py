"""
Domain layer - Pure business logic without external dependencies.
"""

from .models import (
    Actor,
    Appointment,
    AppointmentStatus,
    CreditAccount,
    LedgerTransaction,
    MentorProfile,
    MentorStatus,
    Role,
    ServiceOffering,
    TimeRange,
    TransactionReason,
    overlaps,
)
from .schedule import BookingPolicy, DateException, DayAvailability, DayOfWeek, Schedule, WallClockSlot
from .slot_calculator import SlotCalculator

__all__ = [
    "Actor",
    "Appointment",
    "AppointmentStatus",
    "BookingPolicy",
    "CreditAccount",
    "DateException",
    "DayAvailability",
    "DayOfWeek",
    "LedgerTransaction",
    "MentorProfile",
    "MentorStatus",
    "Role",
    "Schedule",
    "ServiceOffering",
    "SlotCalculator",
    "TimeRange",
    "TransactionReason",
    "WallClockSlot",
    "overlaps",
]
