"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Swap Google Sheets for a real database later
2. Use in-memory storage for testing
3. Keep business logic decoupled from storage implementation

The interface is intentionally simple - we're not building a full ORM.
Just the operations the engine needs.

BALANCE RULE: implementations never write `Account.balance` from
`update_account`. The only ways to change it are `adjust_balance` (signed
increment) and `set_balance` (recalculation), and only the
BalanceReconciler calls those.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional
from uuid import UUID

from fintrack.models.ledger import (
    Account,
    Budget,
    Category,
    RecurringTransaction,
    Transaction,
    TransactionType,
    User,
)
from fintrack.models.audit import AuditEvent


class LedgerStorageInterface(ABC):
    """
    Abstract interface for ledger storage operations.

    Any storage implementation (Google Sheets, PostgreSQL, etc.)
    must implement these methods.
    """

    # -- users ---------------------------------------------------------------

    @abstractmethod
    async def save_user(self, user: User) -> User:
        pass

    @abstractmethod
    async def get_user(self, user_id: UUID) -> Optional[User]:
        pass

    # -- accounts ------------------------------------------------------------

    @abstractmethod
    async def create_account(self, account: Account) -> Account:
        """
        Persist a new account.

        Raises:
            DuplicateError: If the id already exists
            PersistenceError: If the write fails
        """
        pass

    @abstractmethod
    async def get_account(
        self,
        account_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> Optional[Account]:
        """
        Retrieve an account, optionally restricted to one owner.

        Returns:
            The account if found (and owned by user_id when given), None otherwise
        """
        pass

    @abstractmethod
    async def update_account(self, account: Account) -> Account:
        """
        Update account metadata. The stored balance is kept as is.

        Raises:
            NotFoundError: If account doesn't exist
        """
        pass

    @abstractmethod
    async def list_accounts(
        self,
        user_id: UUID,
        include_inactive: bool = False,
    ) -> list[Account]:
        pass

    @abstractmethod
    async def adjust_balance(self, account_id: UUID, delta: Decimal) -> Decimal:
        """
        Apply a signed increment to the cached balance.

        Returns:
            The balance after the increment

        Raises:
            NotFoundError: If account doesn't exist
            PersistenceError: If the write fails
        """
        pass

    @abstractmethod
    async def set_balance(self, account_id: UUID, balance: Decimal) -> Decimal:
        """Overwrite the cached balance (recalculation only)."""
        pass

    # -- categories ----------------------------------------------------------

    @abstractmethod
    async def create_categories(self, categories: Iterable[Category]) -> list[Category]:
        pass

    @abstractmethod
    async def get_category(
        self,
        category_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> Optional[Category]:
        pass

    @abstractmethod
    async def list_categories(self, user_id: UUID) -> list[Category]:
        """All categories of a user, in creation order."""
        pass

    # -- transactions --------------------------------------------------------

    @abstractmethod
    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        """
        Persist a single transaction.

        Raises:
            DuplicateError: If import_hash already exists for the user
            PersistenceError: If the write fails
        """
        pass

    @abstractmethod
    async def insert_transactions(
        self,
        transactions: list[Transaction],
    ) -> list[Transaction]:
        """
        Persist a batch of transactions as one write.

        Returns:
            The transactions that were actually persisted

        Raises:
            DuplicateError: If any import_hash collides (nothing is written)
            PersistenceError: If the write fails
        """
        pass

    @abstractmethod
    async def get_transaction(
        self,
        transaction_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def update_transaction(self, transaction: Transaction) -> Transaction:
        """
        Raises:
            NotFoundError: If transaction doesn't exist
        """
        pass

    @abstractmethod
    async def delete_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        """
        Delete a transaction.

        Returns:
            The deleted transaction, None if it did not exist
        """
        pass

    @abstractmethod
    async def list_transactions(
        self,
        user_id: UUID,
        account_id: Optional[UUID] = None,
        transaction_type: Optional[TransactionType] = None,
        category_ids: Optional[Iterable[UUID]] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        """
        List transactions with optional filters, newest first.

        Args:
            category_ids: Keep only transactions in one of these categories
            date_from: Keep transactions dated on or after this moment
            date_to: Keep transactions dated on or before this moment
        """
        pass

    @abstractmethod
    async def import_hash_exists(self, user_id: UUID, import_hash: str) -> bool:
        pass

    @abstractmethod
    async def external_id_exists(self, user_id: UUID, external_id: str) -> bool:
        pass

    # -- budgets -------------------------------------------------------------

    @abstractmethod
    async def save_budget(self, budget: Budget) -> Budget:
        pass

    @abstractmethod
    async def get_budget(
        self,
        budget_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> Optional[Budget]:
        pass

    @abstractmethod
    async def update_budget(self, budget: Budget) -> Budget:
        pass

    @abstractmethod
    async def delete_budget(self, budget_id: UUID) -> bool:
        pass

    @abstractmethod
    async def list_budgets(
        self,
        user_id: UUID,
        active_only: bool = False,
    ) -> list[Budget]:
        pass

    @abstractmethod
    async def set_budget_alert_sent(self, budget_id: UUID, alert_sent: bool) -> None:
        """Flip the hysteresis latch without touching other budget fields."""
        pass

    # -- recurring templates -------------------------------------------------

    @abstractmethod
    async def save_recurring(
        self,
        recurring: RecurringTransaction,
    ) -> RecurringTransaction:
        pass

    @abstractmethod
    async def get_recurring(
        self,
        recurring_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> Optional[RecurringTransaction]:
        pass

    @abstractmethod
    async def update_recurring(
        self,
        recurring: RecurringTransaction,
    ) -> RecurringTransaction:
        pass

    @abstractmethod
    async def list_recurring(
        self,
        user_id: UUID,
        active: Optional[bool] = None,
    ) -> list[RecurringTransaction]:
        pass

    @abstractmethod
    async def list_due_recurring(self, now: datetime) -> list[RecurringTransaction]:
        """Active templates of every user with next_execution_date <= now."""
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Related events in chronological order."""
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        """Events of one entity in chronological order."""
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Most recent events, newest first."""
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class PersistenceError(StorageError):
    """A write did not reach the storage backend."""
    pass


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass
