"""
Credit ledger: append-only signed transactions per user.

The transaction history is the source of truth. The cached balance on a
``CreditAccount`` only points at the latest transaction and can always be
re-derived by replaying the history (see ``Ledger.verify``).
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional
from uuid import uuid4

from ..domain.exceptions import ConcurrencyConflict, InsufficientCredits, NotFound
from ..domain.models import Clock, CreditAccount, LedgerTransaction, TransactionReason, utc_now
from .locks import KeyedLock
from .repositories import LedgerRepository

logger = logging.getLogger(__name__)

DEFAULT_FREE_CREDITS = 100
WELCOME_DESCRIPTION = "Welcome bonus - Free credits to get started"


def _new_id() -> str:
    return uuid4().hex


class Ledger:
    """
    Debits and credits with per-user atomicity.

    Within one process, mutations for the same user are serialized by a
    keyed lock. Across processes the repository's compare-and-swap on the
    account's last transaction id catches stale reads; those are retried
    with a fresh balance up to ``retry_attempts`` times.
    """

    def __init__(
        self,
        repository: LedgerRepository,
        clock: Clock = utc_now,
        retry_attempts: int = 3,
        id_factory: Callable[[], str] = _new_id,
    ) -> None:
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        self._repository = repository
        self._clock = clock
        self._retry_attempts = retry_attempts
        self._id_factory = id_factory
        self._locks = KeyedLock("ledger")

    async def get_account(self, user_id: str) -> CreditAccount:
        account = await self._repository.get_account(user_id)
        if account is None:
            raise NotFound(f"Unknown user {user_id}", details={"user_id": user_id})
        return account

    async def balance(self, user_id: str) -> int:
        """Return the cached balance of a user."""
        account = await self.get_account(user_id)
        return account.balance

    async def debit(
        self,
        user_id: str,
        amount: int,
        reason: TransactionReason = TransactionReason.USED,
        description: str = "",
        related_appointment_id: Optional[str] = None,
    ) -> LedgerTransaction:
        """
        Take ``amount`` credits from a user.

        Raises:
            InsufficientCredits: If the current balance is lower than ``amount``
            NotFound: If the user has no account
            ConcurrencyConflict: If every retry lost a conditional write
        """
        self._check_amount(amount)
        return await self._apply(user_id, -amount, reason, description, related_appointment_id)

    async def credit(
        self,
        user_id: str,
        amount: int,
        reason: TransactionReason,
        description: str = "",
        related_appointment_id: Optional[str] = None,
    ) -> LedgerTransaction:
        """
        Give ``amount`` credits to a user.

        Raises:
            NotFound: If the user has no account
        """
        self._check_amount(amount)
        return await self._apply(user_id, amount, reason, description, related_appointment_id)

    async def grant_free_credits(
        self,
        user_id: str,
        amount: int = DEFAULT_FREE_CREDITS,
        description: str = WELCOME_DESCRIPTION,
    ) -> LedgerTransaction:
        """Give free-tier credits, e.g. to a newly registered user."""
        return await self.credit(user_id, amount, TransactionReason.EARNED, description)

    async def history(self, user_id: str, limit: int = 50, offset: int = 0) -> List[LedgerTransaction]:
        """Return a page of a user's transactions, newest first."""
        await self.get_account(user_id)
        transactions = await self._repository.list_transactions(user_id)
        newest_first = list(reversed(transactions))
        return newest_first[offset:offset + limit]

    async def find_transactions(
        self,
        user_id: str,
        *,
        related_appointment_id: Optional[str] = None,
        reason: Optional[TransactionReason] = None,
    ) -> List[LedgerTransaction]:
        """Return a user's transactions matching the given filters, oldest first."""
        transactions = await self._repository.list_transactions(user_id)
        return [
            tx
            for tx in transactions
            if (related_appointment_id is None or tx.related_appointment_id == related_appointment_id)
            and (reason is None or tx.reason is reason)
        ]

    async def replayed_balance(self, user_id: str) -> int:
        """Sum every signed amount in the user's history."""
        transactions = await self._repository.list_transactions(user_id)
        return sum(tx.amount for tx in transactions)

    async def verify(self, user_id: str) -> bool:
        """
        Replay the history and compare it with the cached balance.

        Checks that every ``balance_after`` continues the running sum and
        that the account points at the latest transaction with the same
        balance. Mismatches are logged, never corrected.
        """
        account = await self.get_account(user_id)
        transactions = await self._repository.list_transactions(user_id)

        running = 0
        for tx in transactions:
            running += tx.amount
            if tx.balance_after != running:
                logger.error(
                    "Ledger chain broken for %s at transaction %s: recorded %d, replayed %d",
                    user_id,
                    tx.id,
                    tx.balance_after,
                    running,
                )
                return False

        last_id = transactions[-1].id if transactions else None
        if account.balance != running or account.last_transaction_id != last_id:
            logger.error(
                "Cached balance for %s is %d (at %s) but replay gives %d (at %s)",
                user_id,
                account.balance,
                account.last_transaction_id,
                running,
                last_id,
            )
            return False

        return True

    async def _apply(
        self,
        user_id: str,
        signed_amount: int,
        reason: TransactionReason,
        description: str,
        related_appointment_id: Optional[str],
    ) -> LedgerTransaction:
        async with self._locks.hold(user_id):
            for attempt in range(1, self._retry_attempts + 1):
                account = await self.get_account(user_id)

                if signed_amount < 0 and account.balance < -signed_amount:
                    raise InsufficientCredits(required=-signed_amount, available=account.balance)

                transaction = LedgerTransaction(
                    id=self._id_factory(),
                    user_id=user_id,
                    amount=signed_amount,
                    balance_after=account.balance + signed_amount,
                    reason=reason,
                    description=description,
                    created_at=self._clock(),
                    related_appointment_id=related_appointment_id,
                )

                try:
                    await self._repository.append_transaction(
                        transaction,
                        expected_last_transaction_id=account.last_transaction_id,
                    )
                except ConcurrencyConflict:
                    logger.warning(
                        "Ledger write for %s lost a race (attempt %d/%d), retrying",
                        user_id,
                        attempt,
                        self._retry_attempts,
                    )
                    continue

                logger.info(
                    "Ledger %s %+d for %s, balance now %d",
                    reason.value,
                    signed_amount,
                    user_id,
                    transaction.balance_after,
                )
                return transaction

        raise ConcurrencyConflict(
            f"Could not update balance of {user_id} after {self._retry_attempts} attempts",
            details={"user_id": user_id},
        )

    @staticmethod
    def _check_amount(amount: int) -> None:
        if amount <= 0:
            raise ValueError(f"amount must be greater than zero, got {amount}")
