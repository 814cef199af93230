"""
In-Memory Storage Implementation

Process-local storage used by default and by the test suite.

Every read returns a copy, so callers can never mutate stored state
behind the storage layer's back. Balance increments happen without an
await between read and write, which makes them atomic under asyncio.
"""

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
    utcnow,
)
from fintrack.models.audit import AuditEvent
from fintrack.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    LedgerStorageInterface,
    NotFoundError,
)


def _owned(entity, user_id: Optional[UUID]) -> bool:
    return user_id is None or entity.user_id == user_id


class InMemoryLedgerStorage(LedgerStorageInterface):
    """Dictionary-backed ledger, one dict per table keyed by id."""

    def __init__(self):
        self._users: dict[UUID, User] = {}
        self._accounts: dict[UUID, Account] = {}
        self._categories: dict[UUID, Category] = {}
        self._transactions: dict[UUID, Transaction] = {}
        self._budgets: dict[UUID, Budget] = {}
        self._recurring: dict[UUID, RecurringTransaction] = {}

    # -- users ---------------------------------------------------------------

    async def save_user(self, user: User) -> User:
        self._users[user.id] = user.model_copy(deep=True)
        return user

    async def get_user(self, user_id: UUID) -> Optional[User]:
        user = self._users.get(user_id)
        return user.model_copy(deep=True) if user else None

    # -- accounts ------------------------------------------------------------

    async def create_account(self, account: Account) -> Account:
        if account.id in self._accounts:
            raise DuplicateError(f"Account already exists: {account.id}")
        self._accounts[account.id] = account.model_copy(deep=True)
        return account

    async def get_account(
        self,
        account_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> Optional[Account]:
        account = self._accounts.get(account_id)
        if account is None or not _owned(account, user_id):
            return None
        return account.model_copy(deep=True)

    async def update_account(self, account: Account) -> Account:
        stored = self._accounts.get(account.id)
        if stored is None:
            raise NotFoundError(f"Account not found: {account.id}")
        updated = account.model_copy(
            deep=True,
            update={"balance": stored.balance, "updated_at": utcnow()},
        )
        self._accounts[account.id] = updated
        return updated.model_copy(deep=True)

    async def list_accounts(
        self,
        user_id: UUID,
        include_inactive: bool = False,
    ) -> list[Account]:
        return [
            account.model_copy(deep=True)
            for account in self._accounts.values()
            if account.user_id == user_id and (include_inactive or account.is_active)
        ]

    async def adjust_balance(self, account_id: UUID, delta: Decimal) -> Decimal:
        account = self._accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Account not found: {account_id}")
        account.balance = account.balance + delta
        account.updated_at = utcnow()
        return account.balance

    async def set_balance(self, account_id: UUID, balance: Decimal) -> Decimal:
        account = self._accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Account not found: {account_id}")
        account.balance = balance
        account.updated_at = utcnow()
        return account.balance

    # -- categories ----------------------------------------------------------

    async def create_categories(self, categories: Iterable[Category]) -> list[Category]:
        created = []
        for category in categories:
            self._categories[category.id] = category.model_copy(deep=True)
            created.append(category)
        return created

    async def get_category(
        self,
        category_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> Optional[Category]:
        category = self._categories.get(category_id)
        if category is None or not _owned(category, user_id):
            return None
        return category.model_copy(deep=True)

    async def list_categories(self, user_id: UUID) -> list[Category]:
        return [
            category.model_copy(deep=True)
            for category in self._categories.values()
            if category.user_id == user_id
        ]

    # -- transactions --------------------------------------------------------

    def _check_unique(self, transactions: list[Transaction]) -> None:
        existing = {
            (t.user_id, t.import_hash)
            for t in self._transactions.values()
            if t.import_hash
        }
        for transaction in transactions:
            if transaction.id in self._transactions:
                raise DuplicateError(f"Transaction already exists: {transaction.id}")
            if not transaction.import_hash:
                continue
            key = (transaction.user_id, transaction.import_hash)
            if key in existing:
                raise DuplicateError(
                    f"Import hash already exists: {transaction.import_hash}"
                )
            existing.add(key)

    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        self._check_unique([transaction])
        self._transactions[transaction.id] = transaction.model_copy(deep=True)
        return transaction

    async def insert_transactions(
        self,
        transactions: list[Transaction],
    ) -> list[Transaction]:
        # Validate the whole batch first so a collision writes nothing
        self._check_unique(transactions)
        for transaction in transactions:
            self._transactions[transaction.id] = transaction.model_copy(deep=True)
        return list(transactions)

    async def get_transaction(
        self,
        transaction_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> Optional[Transaction]:
        transaction = self._transactions.get(transaction_id)
        if transaction is None or not _owned(transaction, user_id):
            return None
        return transaction.model_copy(deep=True)

    async def update_transaction(self, transaction: Transaction) -> Transaction:
        if transaction.id not in self._transactions:
            raise NotFoundError(f"Transaction not found: {transaction.id}")
        self._transactions[transaction.id] = transaction.model_copy(deep=True)
        return transaction

    async def delete_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        return self._transactions.pop(transaction_id, None)

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
        wanted_categories = set(category_ids) if category_ids is not None else None

        results = []
        for transaction in self._transactions.values():
            if transaction.user_id != user_id:
                continue
            if account_id and transaction.account_id != account_id:
                continue
            if transaction_type and transaction.type != transaction_type:
                continue
            if wanted_categories is not None and transaction.category_id not in wanted_categories:
                continue
            if date_from and transaction.date < date_from:
                continue
            if date_to and transaction.date > date_to:
                continue
            results.append(transaction.model_copy(deep=True))

        results.sort(key=lambda t: t.date, reverse=True)
        return results[:limit] if limit else results

    async def import_hash_exists(self, user_id: UUID, import_hash: str) -> bool:
        return any(
            t.user_id == user_id and t.import_hash == import_hash
            for t in self._transactions.values()
        )

    async def external_id_exists(self, user_id: UUID, external_id: str) -> bool:
        return any(
            t.user_id == user_id and t.external_id == external_id
            for t in self._transactions.values()
        )

    # -- budgets -------------------------------------------------------------

    async def save_budget(self, budget: Budget) -> Budget:
        self._budgets[budget.id] = budget.model_copy(deep=True)
        return budget

    async def get_budget(
        self,
        budget_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> Optional[Budget]:
        budget = self._budgets.get(budget_id)
        if budget is None or not _owned(budget, user_id):
            return None
        return budget.model_copy(deep=True)

    async def update_budget(self, budget: Budget) -> Budget:
        if budget.id not in self._budgets:
            raise NotFoundError(f"Budget not found: {budget.id}")
        self._budgets[budget.id] = budget.model_copy(deep=True)
        return budget

    async def delete_budget(self, budget_id: UUID) -> bool:
        return self._budgets.pop(budget_id, None) is not None

    async def list_budgets(
        self,
        user_id: UUID,
        active_only: bool = False,
    ) -> list[Budget]:
        budgets = [
            budget.model_copy(deep=True)
            for budget in self._budgets.values()
            if budget.user_id == user_id and (budget.is_active or not active_only)
        ]
        budgets.sort(key=lambda b: b.created_at, reverse=True)
        return budgets

    async def set_budget_alert_sent(self, budget_id: UUID, alert_sent: bool) -> None:
        budget = self._budgets.get(budget_id)
        if budget is None:
            raise NotFoundError(f"Budget not found: {budget_id}")
        budget.alert_sent = alert_sent

    # -- recurring templates -------------------------------------------------

    async def save_recurring(
        self,
        recurring: RecurringTransaction,
    ) -> RecurringTransaction:
        self._recurring[recurring.id] = recurring.model_copy(deep=True)
        return recurring

    async def get_recurring(
        self,
        recurring_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> Optional[RecurringTransaction]:
        recurring = self._recurring.get(recurring_id)
        if recurring is None or not _owned(recurring, user_id):
            return None
        return recurring.model_copy(deep=True)

    async def update_recurring(
        self,
        recurring: RecurringTransaction,
    ) -> RecurringTransaction:
        if recurring.id not in self._recurring:
            raise NotFoundError(f"Recurring transaction not found: {recurring.id}")
        recurring.updated_at = utcnow()
        self._recurring[recurring.id] = recurring.model_copy(deep=True)
        return recurring

    async def list_recurring(
        self,
        user_id: UUID,
        active: Optional[bool] = None,
    ) -> list[RecurringTransaction]:
        templates = [
            r.model_copy(deep=True)
            for r in self._recurring.values()
            if r.user_id == user_id and (active is None or r.is_active == active)
        ]
        templates.sort(key=lambda r: r.created_at, reverse=True)
        return templates

    async def list_due_recurring(self, now: datetime) -> list[RecurringTransaction]:
        due = [r.model_copy(deep=True) for r in self._recurring.values() if r.is_due(now)]
        due.sort(key=lambda r: r.next_execution_date)
        return due


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only list of audit events."""

    def __init__(self):
        self._events: list[AuditEvent] = []

    @property
    def events(self) -> list[AuditEvent]:
        return list(self._events)

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in self._events if e.correlation_id == correlation_id]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        events = [
            e for e in self._events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        return sorted(self._events, key=lambda e: e.timestamp, reverse=True)[:limit]
