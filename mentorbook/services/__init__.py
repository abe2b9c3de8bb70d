"""
Service layer helpers that orchestrate repositories and domain logic.
"""

from .booking import BookingOrchestrator, CancellationResult
from .conflict_checker import ConflictChecker
from .integrity import IntegrityChecker, IntegrityReport
from .ledger import Ledger
from .schedule_store import ScheduleStore
from .slot_generator import SlotGenerator

__all__ = [
    "BookingOrchestrator",
    "CancellationResult",
    "ConflictChecker",
    "IntegrityChecker",
    "IntegrityReport",
    "Ledger",
    "ScheduleStore",
    "SlotGenerator",
]
