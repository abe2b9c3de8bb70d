"""
Appointment state machine.

The allow-list below is the only source of valid status changes; nothing
else in the engine may assign ``Appointment.status``.
"""

from typing import Dict, FrozenSet

from .exceptions import InvalidTransition
from .models import AppointmentStatus

S = AppointmentStatus

ALLOWED_TRANSITIONS: Dict[AppointmentStatus, FrozenSet[AppointmentStatus]] = {
    S.PENDING: frozenset({S.CONFIRMED, S.CANCELLED}),
    S.CONFIRMED: frozenset({S.IN_PROGRESS, S.CANCELLED, S.NO_SHOW}),
    S.IN_PROGRESS: frozenset({S.COMPLETED, S.NO_SHOW}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
    S.NO_SHOW: frozenset(),
}

TERMINAL_STATUSES: FrozenSet[AppointmentStatus] = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(current: AppointmentStatus, target: AppointmentStatus) -> None:
    """
    Validate a status change against the allow-list.

    Raises:
        InvalidTransition: If ``current -> target`` is not an allowed edge
    """
    if not can_transition(current, target):
        allowed = sorted(s.value for s in ALLOWED_TRANSITIONS[current])
        raise InvalidTransition(
            f"Cannot change status from {current.value} to {target.value}",
            details={"from": current.value, "to": target.value, "allowed": allowed},
        )
