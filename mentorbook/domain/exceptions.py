"""
Domain-specific exception hierarchy for the booking engine.

Every error carries a machine-readable ``code``, a ``details`` mapping that
tells the caller which precondition failed, and the HTTP-like status code a
transport layer should answer with.
"""

from typing import Any, Dict, Optional


class BookingEngineError(Exception):
    """Base class for all engine-level errors."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for a client-facing response."""
        return {
            "error": self.message,
            "code": self.code,
            "details": self.details,
            "status": self.status_code,
        }


class InvalidSlot(BookingEngineError):
    """Raised when a schedule contains malformed or overlapping time slots."""

    status_code = 400


class ServiceUnavailable(BookingEngineError):
    """Raised when a service offering is missing or inactive."""

    status_code = 400


class MentorRequired(BookingEngineError):
    """Raised when a service requires a mentor but none was given."""

    status_code = 400


class InvalidTime(BookingEngineError):
    """Raised when a booking is requested for a time in the past."""

    status_code = 400


class SlotUnavailable(BookingEngineError):
    """Raised when the requested window cannot be booked with the mentor."""

    status_code = 409


class InsufficientCredits(BookingEngineError):
    """Raised when a user's balance does not cover the requested amount."""

    status_code = 402

    def __init__(self, required: int, available: int, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"Insufficient credits: {required} required, {available} available",
            details={"required": required, "available": available},
        )
        self.required = required
        self.available = available


class InvalidTransition(BookingEngineError):
    """Raised when an appointment status change is not in the allow-list."""

    status_code = 409


class NotFound(BookingEngineError):
    """Raised when a requested record does not exist."""

    status_code = 404


class Forbidden(BookingEngineError):
    """Raised when an actor is not a participant of the appointment."""

    status_code = 403


class ConcurrencyConflict(BookingEngineError):
    """Raised when a conditional write lost a race. Safe to retry."""

    status_code = 409


class IntegrityViolation(BookingEngineError):
    """Raised when a ledger replay disagrees with the cached balance."""

    status_code = 500
