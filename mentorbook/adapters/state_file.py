"""
YAML persistence for the in-memory store.

Lets the CLI keep schedules, appointments and ledgers between invocations.
The same format doubles as a seed file: every section is optional.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import pendulum
import yaml

from ..domain.models import (
    Appointment,
    AppointmentStatus,
    Cancellation,
    CreditAccount,
    LedgerTransaction,
    MentorProfile,
    MentorStatus,
    ServiceOffering,
    TransactionReason,
)
from ..domain.schedule import Schedule
from ..schemas import ScheduleIn
from .memory_store import InMemoryStore

logger = logging.getLogger(__name__)


def _iso(value: Optional[pendulum.DateTime]) -> Optional[str]:
    return value.to_iso8601_string() if value is not None else None


def _parse_instant(value: Union[str, datetime, None]) -> Optional[pendulum.DateTime]:
    if value is None:
        return None
    # Unquoted YAML timestamps arrive as datetime objects
    if isinstance(value, datetime):
        return pendulum.instance(value).in_timezone("UTC")
    parsed = pendulum.parse(value)
    if not isinstance(parsed, pendulum.DateTime):
        raise ValueError(f"Could not parse datetime: {value}")
    return parsed.in_timezone("UTC")


class StateFile:
    """Reads and writes an ``InMemoryStore`` as a YAML document."""

    def __init__(self, path: Path):
        self.path = path

    def load(self, latency: Optional[float] = None) -> InMemoryStore:
        """
        Load the store from disk.

        A missing file yields an empty store.

        Raises:
            ValueError: If the file is not valid YAML or has the wrong shape
        """
        store = InMemoryStore(latency=latency)

        if not self.path.exists():
            logger.info("State file %s does not exist, starting empty", self.path)
            return store

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {self.path}: {exc}") from exc

        if not isinstance(data, dict):
            raise ValueError("State file must contain a mapping at the root level.")

        for raw in data.get("services", []):
            store.add_service(
                ServiceOffering(
                    id=str(raw["id"]),
                    name=raw.get("name", str(raw["id"])),
                    credit_cost=int(raw["credit_cost"]),
                    duration_minutes=int(raw["duration_minutes"]),
                    requires_mentor=bool(raw.get("requires_mentor", True)),
                    active=bool(raw.get("active", True)),
                )
            )

        for raw in data.get("mentors", []):
            store.add_mentor(
                MentorProfile(
                    user_id=str(raw["user_id"]),
                    status=MentorStatus(raw.get("status", MentorStatus.ACTIVE.value)),
                    available_for_booking=bool(raw.get("available_for_booking", True)),
                )
            )

        for raw in data.get("schedules", []):
            schedule = self._parse_schedule(raw)
            store.schedules[schedule.owner_id] = schedule

        for raw in data.get("accounts", []):
            self._load_account(store, raw)

        for raw in data.get("appointments", []):
            appointment = self._parse_appointment(raw)
            store.appointments[appointment.id] = appointment

        logger.debug(
            "Loaded %d services, %d schedules, %d accounts, %d appointments from %s",
            len(store.services),
            len(store.schedules),
            len(store.accounts),
            len(store.appointments),
            self.path,
        )
        return store

    def save(self, store: InMemoryStore) -> None:
        """Write the whole store to disk, replacing the previous file."""
        data = {
            "services": [self._dump_service(s) for s in store.services.values()],
            "mentors": [
                {
                    "user_id": m.user_id,
                    "status": m.status.value,
                    "available_for_booking": m.available_for_booking,
                }
                for m in store.mentors.values()
            ],
            "schedules": [self._dump_schedule(s) for s in store.schedules.values()],
            "accounts": [
                {
                    "user_id": user_id,
                    "transactions": [self._dump_transaction(tx) for tx in store.transactions.get(user_id, [])],
                }
                for user_id in store.accounts
            ],
            "appointments": [self._dump_appointment(a) for a in store.appointments.values()],
        }

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, sort_keys=False, allow_unicode=True)

    # Parsing -----------------------------------------------------------

    @staticmethod
    def _parse_schedule(raw: Dict[str, Any]) -> Schedule:
        payload = ScheduleIn.model_validate({k: v for k, v in raw.items() if k != "owner_id"})
        return Schedule(
            owner_id=str(raw["owner_id"]),
            weekly_pattern=payload.weekly_pattern_to_domain(),
            exceptions=tuple(payload.exceptions_to_domain()),
            policy=payload.policy.to_domain(),
            active=payload.active,
        )

    @staticmethod
    def _load_account(store: InMemoryStore, raw: Dict[str, Any]) -> None:
        user_id = str(raw["user_id"])
        store.open_account(user_id)

        transactions: List[LedgerTransaction] = []
        for tx in raw.get("transactions", []):
            transactions.append(
                LedgerTransaction(
                    id=str(tx["id"]),
                    user_id=user_id,
                    amount=int(tx["amount"]),
                    balance_after=int(tx["balance_after"]),
                    reason=TransactionReason(tx["reason"]),
                    description=tx.get("description", ""),
                    created_at=_parse_instant(tx["created_at"]),
                    related_appointment_id=tx.get("related_appointment_id"),
                )
            )

        # Stored as-is; Ledger.verify reports a tampered history.
        store.transactions[user_id] = transactions
        if transactions:
            store.accounts[user_id] = CreditAccount(
                user_id=user_id,
                balance=transactions[-1].balance_after,
                last_transaction_id=transactions[-1].id,
            )

    @staticmethod
    def _parse_appointment(raw: Dict[str, Any]) -> Appointment:
        cancellation = raw.get("cancellation") or {}
        return Appointment(
            id=str(raw["id"]),
            student_id=str(raw["student_id"]),
            mentor_id=raw.get("mentor_id"),
            service_offering_id=str(raw["service_offering_id"]),
            status=AppointmentStatus(raw.get("status", AppointmentStatus.PENDING.value)),
            scheduled_at=_parse_instant(raw["scheduled_at"]),
            duration_minutes=int(raw["duration_minutes"]),
            timezone=raw.get("timezone", "UTC"),
            credit_cost=int(raw["credit_cost"]),
            credits_charged=bool(raw.get("credits_charged", False)),
            cancellation=Cancellation(
                reason=cancellation.get("reason"),
                at=_parse_instant(cancellation.get("at")),
                by=cancellation.get("by"),
            ),
            student_notes=raw.get("student_notes"),
            meeting_notes=raw.get("meeting_notes"),
            meeting_link=raw.get("meeting_link"),
            rating=raw.get("rating"),
            feedback=raw.get("feedback"),
            created_at=_parse_instant(raw.get("created_at")) or pendulum.now("UTC"),
            updated_at=_parse_instant(raw.get("updated_at")) or pendulum.now("UTC"),
            version=int(raw.get("version", 0)),
        )

    # Dumping -----------------------------------------------------------

    @staticmethod
    def _dump_service(service: ServiceOffering) -> Dict[str, Any]:
        return {
            "id": service.id,
            "name": service.name,
            "credit_cost": service.credit_cost,
            "duration_minutes": service.duration_minutes,
            "requires_mentor": service.requires_mentor,
            "active": service.active,
        }

    @staticmethod
    def _dump_schedule(schedule: Schedule) -> Dict[str, Any]:
        exceptions = []
        for exception in schedule.exceptions:
            entry: Dict[str, Any] = {
                "date": exception.date.isoformat(),
                "available": exception.available,
            }
            if exception.slots is not None:
                entry["slots"] = [slot.to_dict() for slot in exception.slots]
            if exception.reason:
                entry["reason"] = exception.reason
            exceptions.append(entry)

        return {
            "owner_id": schedule.owner_id,
            "active": schedule.active,
            "policy": {
                "timezone": schedule.policy.timezone,
                "buffer_minutes": schedule.policy.buffer_minutes,
                "min_notice_hours": schedule.policy.min_notice_hours,
                "max_advance_days": schedule.policy.max_advance_days,
            },
            "weekly_pattern": {
                day.value: {
                    "available": availability.available,
                    "slots": [slot.to_dict() for slot in availability.slots],
                }
                for day, availability in schedule.weekly_pattern.items()
            },
            "exceptions": exceptions,
        }

    @staticmethod
    def _dump_transaction(transaction: LedgerTransaction) -> Dict[str, Any]:
        return {
            "id": transaction.id,
            "amount": transaction.amount,
            "balance_after": transaction.balance_after,
            "reason": transaction.reason.value,
            "description": transaction.description,
            "related_appointment_id": transaction.related_appointment_id,
            "created_at": _iso(transaction.created_at),
        }

    @staticmethod
    def _dump_appointment(appointment: Appointment) -> Dict[str, Any]:
        return {
            "id": appointment.id,
            "student_id": appointment.student_id,
            "mentor_id": appointment.mentor_id,
            "service_offering_id": appointment.service_offering_id,
            "status": appointment.status.value,
            "scheduled_at": _iso(appointment.scheduled_at),
            "duration_minutes": appointment.duration_minutes,
            "timezone": appointment.timezone,
            "credit_cost": appointment.credit_cost,
            "credits_charged": appointment.credits_charged,
            "cancellation": {
                "reason": appointment.cancellation.reason,
                "at": _iso(appointment.cancellation.at),
                "by": appointment.cancellation.by,
            },
            "student_notes": appointment.student_notes,
            "meeting_notes": appointment.meeting_notes,
            "meeting_link": appointment.meeting_link,
            "rating": appointment.rating,
            "feedback": appointment.feedback,
            "created_at": _iso(appointment.created_at),
            "updated_at": _iso(appointment.updated_at),
            "version": appointment.version,
        }
