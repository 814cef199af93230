"""
Balance Reconciler

CRITICAL: This is the ONLY component allowed to change Account.balance.

Invariant after every reconciling operation:
    account.balance == sum(income amounts) - sum(expense amounts)
over all of the account's transactions.

DESIGN DECISION: Balances change through signed increments
(storage.adjust_balance), never by writing back a value read earlier, and
every mutation of one account is serialized behind that account's
asyncio.Lock. Two concurrent paths touching the same account therefore
cannot lose an update.

Callers persist the transaction FIRST and reconcile SECOND, so a failed
write never leaves a delta behind.
"""

import asyncio
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog

from fintrack.audit import AuditLogger
from fintrack.models.ledger import Transaction, signed_delta
from fintrack.services.storage import LedgerStorageInterface, NotFoundError


logger = structlog.get_logger(__name__)


def net_delta(transactions: list[Transaction]) -> Decimal:
    """Σincome − Σexpense."""
    return sum((t.signed_amount for t in transactions), Decimal("0"))


class BalanceReconciler:
    """Applies balance deltas for every ledger mutation path."""

    def __init__(
        self,
        storage: LedgerStorageInterface,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = storage
        self._audit = audit_logger or AuditLogger()
        self._locks: dict[UUID, asyncio.Lock] = {}

    def lock_for(self, account_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        return lock

    async def _adjust(
        self,
        account_id: UUID,
        delta: Decimal,
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> Decimal:
        """Apply one increment. Caller must hold the account lock."""
        balance = await self._storage.adjust_balance(account_id, delta)
        await self._audit.log_balance_adjusted(
            account_id=account_id,
            delta=delta,
            balance=balance,
            reason=reason,
            correlation_id=correlation_id,
        )
        return balance

    async def apply_create(
        self,
        transaction: Transaction,
        correlation_id: Optional[UUID] = None,
    ) -> Decimal:
        """A new transaction was persisted: apply its signed delta once."""
        async with self.lock_for(transaction.account_id):
            return await self._adjust(
                transaction.account_id,
                transaction.signed_amount,
                reason="create",
                correlation_id=correlation_id,
            )

    async def apply_edit(
        self,
        original: Transaction,
        updated: Transaction,
        correlation_id: Optional[UUID] = None,
    ) -> Optional[Decimal]:
        """
        A transaction was edited.

        When amount, type or account changed, the original delta is
        reversed and then the new delta applied, in that order.

        Returns:
            The balance of the updated transaction's account, or None when
            the edit did not touch money
        """
        if (
            original.amount == updated.amount
            and original.type == updated.type
            and original.account_id == updated.account_id
        ):
            return None

        if original.account_id == updated.account_id:
            async with self.lock_for(original.account_id):
                await self._adjust(
                    original.account_id,
                    -original.signed_amount,
                    reason="edit_reverse",
                    correlation_id=correlation_id,
                )
                return await self._adjust(
                    updated.account_id,
                    updated.signed_amount,
                    reason="edit_apply",
                    correlation_id=correlation_id,
                )

        # Moved between accounts: take both locks in a stable order
        first, second = sorted([original.account_id, updated.account_id], key=str)
        async with self.lock_for(first), self.lock_for(second):
            await self._adjust(
                original.account_id,
                -original.signed_amount,
                reason="edit_reverse",
                correlation_id=correlation_id,
            )
            return await self._adjust(
                updated.account_id,
                updated.signed_amount,
                reason="edit_apply",
                correlation_id=correlation_id,
            )

    async def apply_delete(
        self,
        transaction: Transaction,
        correlation_id: Optional[UUID] = None,
    ) -> Decimal:
        """A transaction was removed: apply the inverse of its delta."""
        async with self.lock_for(transaction.account_id):
            return await self._adjust(
                transaction.account_id,
                -transaction.signed_amount,
                reason="delete",
                correlation_id=correlation_id,
            )

    async def apply_bulk(
        self,
        account_id: UUID,
        persisted: list[Transaction],
        correlation_id: Optional[UUID] = None,
    ) -> Decimal:
        """
        A batch was committed: apply one net delta for the rows that
        actually persisted.

        Returns:
            The resulting balance (unchanged when nothing persisted)
        """
        async with self.lock_for(account_id):
            if not persisted:
                account = await self._storage.get_account(account_id)
                if account is None:
                    raise NotFoundError(f"Account not found: {account_id}")
                return account.balance

            return await self._adjust(
                account_id,
                net_delta(persisted),
                reason=f"bulk:{len(persisted)}",
                correlation_id=correlation_id,
            )

    async def recalculate_balance(self, account_id: UUID) -> Decimal:
        """
        Rebuild the cached balance from the account's transactions.

        Used for repair and verification; a drift is audited as a warning.
        """
        async with self.lock_for(account_id):
            account = await self._storage.get_account(account_id)
            if account is None:
                raise NotFoundError(f"Account not found: {account_id}")

            transactions = await self._storage.list_transactions(
                account.user_id,
                account_id=account_id,
            )
            balance = net_delta(transactions)
            await self._storage.set_balance(account_id, balance)

            if balance != account.balance:
                logger.warning(
                    "balance_drift_detected",
                    account_id=str(account_id),
                    cached=str(account.balance),
                    actual=str(balance),
                )
            await self._audit.log_balance_recalculated(
                account_id=account_id,
                previous=account.balance,
                balance=balance,
            )
            return balance
