"""
Google Sheets Storage Implementation

DESIGN DECISION: Google Sheets is kept as a persistent backend because:
1. Non-technical users can inspect their ledger directly in Sheets
2. No database setup required
3. Easy to export/migrate later

TRADEOFFS:
- Not suitable for high-volume data (we're fine for personal use)
- No transactions: a batch is validated fully before the single
  append_rows call, so a rejected batch writes nothing
- Limited query capabilities (we filter in Python)
- Balance increments are read-modify-write. The BalanceReconciler's
  per-account lock serializes them within one process.

Every table is one worksheet whose header row is the model's field list.
Rows are produced with model_dump(mode="json") and parsed back with
model_validate, so the sheet layout follows the models automatically.
"""

import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Optional, Type
from uuid import UUID

import gspread
import structlog
from google.oauth2.service_account import Credentials
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from fintrack.config import get_settings
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
from fintrack.models.audit import AuditEvent, AuditEventType, AuditSeverity
from fintrack.services.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    LedgerStorageInterface,
    NotFoundError,
    PersistenceError,
)


logger = structlog.get_logger(__name__)


# Column mappings for Audit sheet
AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "entity_type",
    "entity_id",
    "user_id",
    "correlation_id",
    "description",
    "details_json",
    "error_message",
    "is_user_action",
]

# Model fields stored as JSON text
JSON_FIELDS = {"tags"}


# Only transport failures are retried; Duplicate/NotFound are final
sheets_retry = retry(
    retry=retry_if_exception_type(PersistenceError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and hands out worksheets, creating them with
    a header row on first use.
    """

    def __init__(self):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._worksheets: dict[str, gspread.Worksheet] = {}
        self._settings = get_settings().google_sheets

    @property
    def settings(self):
        return self._settings

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise ConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise ConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise ConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def get_worksheet(self, title: str, columns: list[str]) -> gspread.Worksheet:
        """Get or create a worksheet whose first row holds `columns`."""
        if title in self._worksheets:
            return self._worksheets[title]

        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            sheet = spreadsheet.add_worksheet(
                title=title,
                rows=1000,
                cols=len(columns),
            )
            sheet.append_row(columns)
        self._worksheets[title] = sheet
        return sheet


# =============================================================================
# ROW CONVERSION
# =============================================================================

def model_to_row(model: BaseModel, columns: list[str]) -> list[str]:
    """Serialize a model into cell strings ordered like `columns`."""
    data = model.model_dump(mode="json")
    row = []
    for column in columns:
        value = data.get(column)
        if value is None:
            row.append("")
        elif column in JSON_FIELDS:
            row.append(json.dumps(value))
        else:
            row.append(str(value))
    return row


def row_to_model(model_class: Type[BaseModel], header: list[str], row: list[str]):
    """
    Parse a sheet row back into a model.

    Empty cells are dropped so the model's defaults apply.
    """
    data: dict[str, Any] = {}
    for column, value in zip(header, row):
        if value == "":
            continue
        data[column] = json.loads(value) if column in JSON_FIELDS else value
    return model_class.model_validate(data)


class _SheetTable:
    """One worksheet holding one model type, keyed by the `id` column."""

    def __init__(
        self,
        client: GoogleSheetsClient,
        title: str,
        model_class: Type[BaseModel],
    ):
        self._client = client
        self.title = title
        self.model_class = model_class
        self.columns = list(model_class.model_fields)

    @property
    def sheet(self) -> gspread.Worksheet:
        return self._client.get_worksheet(self.title, self.columns)

    def _values(self) -> list[list[str]]:
        try:
            return self.sheet.get_all_values()
        except gspread.exceptions.GSpreadException as e:
            raise PersistenceError(f"Failed to read {self.title}: {e}") from e

    def all(self) -> list:
        """Every parseable row as a model; malformed rows are logged and skipped."""
        values = self._values()
        if not values:
            return []

        header, rows = values[0], values[1:]
        models = []
        for row_number, row in enumerate(rows, start=2):
            if not row or not row[0]:
                continue
            try:
                models.append(row_to_model(self.model_class, header, row))
            except ValueError as e:
                logger.warning(
                    "sheet_row_skipped",
                    sheet=self.title,
                    row_number=row_number,
                    error=str(e),
                )
        return models

    def find(self, entity_id: UUID) -> tuple[Optional[int], Any]:
        """Return (sheet row index, model) or (None, None)."""
        values = self._values()
        if not values:
            return None, None

        header = values[0]
        for idx, row in enumerate(values[1:], start=2):
            if row and row[0] == str(entity_id):
                return idx, row_to_model(self.model_class, header, row)
        return None, None

    def append(self, models: list[BaseModel]) -> None:
        rows = [model_to_row(m, self.columns) for m in models]
        if not rows:
            return
        try:
            self.sheet.append_rows(rows, value_input_option="RAW")
        except gspread.exceptions.GSpreadException as e:
            raise PersistenceError(f"Failed to write {self.title}: {e}") from e

    def replace(self, idx: int, model: BaseModel) -> None:
        try:
            self.sheet.update(
                range_name=f"A{idx}",
                values=[model_to_row(model, self.columns)],
                value_input_option="RAW",
            )
        except gspread.exceptions.GSpreadException as e:
            raise PersistenceError(f"Failed to update {self.title}: {e}") from e

    def delete(self, idx: int) -> None:
        try:
            self.sheet.delete_rows(idx)
        except gspread.exceptions.GSpreadException as e:
            raise PersistenceError(f"Failed to delete from {self.title}: {e}") from e


class GoogleSheetsLedgerStorage(LedgerStorageInterface):
    """
    Google Sheets implementation of ledger storage.

    One worksheet per entity type, one row per entity.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()
        names = self._client.settings
        self._users = _SheetTable(self._client, names.users_sheet_name, User)
        self._accounts = _SheetTable(self._client, names.accounts_sheet_name, Account)
        self._categories = _SheetTable(self._client, names.categories_sheet_name, Category)
        self._transactions = _SheetTable(
            self._client, names.transactions_sheet_name, Transaction
        )
        self._budgets = _SheetTable(self._client, names.budgets_sheet_name, Budget)
        self._recurring = _SheetTable(
            self._client, names.recurring_sheet_name, RecurringTransaction
        )

    @staticmethod
    def _owned(entity, user_id: Optional[UUID]):
        if entity is None or (user_id is not None and entity.user_id != user_id):
            return None
        return entity

    # -- users ---------------------------------------------------------------

    @sheets_retry
    async def save_user(self, user: User) -> User:
        idx, _ = self._users.find(user.id)
        if idx:
            self._users.replace(idx, user)
        else:
            self._users.append([user])
        return user

    async def get_user(self, user_id: UUID) -> Optional[User]:
        _, user = self._users.find(user_id)
        return user

    # -- accounts ------------------------------------------------------------

    @sheets_retry
    async def create_account(self, account: Account) -> Account:
        idx, _ = self._accounts.find(account.id)
        if idx:
            raise DuplicateError(f"Account already exists: {account.id}")
        self._accounts.append([account])
        return account

    async def get_account(
        self,
        account_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> Optional[Account]:
        _, account = self._accounts.find(account_id)
        return self._owned(account, user_id)

    @sheets_retry
    async def update_account(self, account: Account) -> Account:
        idx, stored = self._accounts.find(account.id)
        if idx is None:
            raise NotFoundError(f"Account not found: {account.id}")
        updated = account.model_copy(
            update={"balance": stored.balance, "updated_at": utcnow()}
        )
        self._accounts.replace(idx, updated)
        return updated

    async def list_accounts(
        self,
        user_id: UUID,
        include_inactive: bool = False,
    ) -> list[Account]:
        return [
            a for a in self._accounts.all()
            if a.user_id == user_id and (include_inactive or a.is_active)
        ]

    async def _write_balance(self, account_id: UUID, compute) -> Decimal:
        idx, account = self._accounts.find(account_id)
        if idx is None:
            raise NotFoundError(f"Account not found: {account_id}")
        account.balance = compute(account.balance)
        account.updated_at = utcnow()
        self._accounts.replace(idx, account)
        return account.balance

    @sheets_retry
    async def adjust_balance(self, account_id: UUID, delta: Decimal) -> Decimal:
        return await self._write_balance(account_id, lambda current: current + delta)

    @sheets_retry
    async def set_balance(self, account_id: UUID, balance: Decimal) -> Decimal:
        return await self._write_balance(account_id, lambda current: balance)

    # -- categories ----------------------------------------------------------

    @sheets_retry
    async def create_categories(self, categories: Iterable[Category]) -> list[Category]:
        categories = list(categories)
        self._categories.append(categories)
        return categories

    async def get_category(
        self,
        category_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> Optional[Category]:
        _, category = self._categories.find(category_id)
        return self._owned(category, user_id)

    async def list_categories(self, user_id: UUID) -> list[Category]:
        return [c for c in self._categories.all() if c.user_id == user_id]

    # -- transactions --------------------------------------------------------

    def _check_unique(self, transactions: list[Transaction]) -> None:
        stored = self._transactions.all()
        ids = {t.id for t in stored}
        hashes = {(t.user_id, t.import_hash) for t in stored if t.import_hash}
        for transaction in transactions:
            if transaction.id in ids:
                raise DuplicateError(f"Transaction already exists: {transaction.id}")
            if not transaction.import_hash:
                continue
            key = (transaction.user_id, transaction.import_hash)
            if key in hashes:
                raise DuplicateError(
                    f"Import hash already exists: {transaction.import_hash}"
                )
            hashes.add(key)

    @sheets_retry
    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        self._check_unique([transaction])
        self._transactions.append([transaction])
        return transaction

    @sheets_retry
    async def insert_transactions(
        self,
        transactions: list[Transaction],
    ) -> list[Transaction]:
        self._check_unique(transactions)
        self._transactions.append(transactions)
        return list(transactions)

    async def get_transaction(
        self,
        transaction_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> Optional[Transaction]:
        _, transaction = self._transactions.find(transaction_id)
        return self._owned(transaction, user_id)

    @sheets_retry
    async def update_transaction(self, transaction: Transaction) -> Transaction:
        idx, _ = self._transactions.find(transaction.id)
        if idx is None:
            raise NotFoundError(f"Transaction not found: {transaction.id}")
        self._transactions.replace(idx, transaction)
        return transaction

    @sheets_retry
    async def delete_transaction(self, transaction_id: UUID) -> Optional[Transaction]:
        idx, transaction = self._transactions.find(transaction_id)
        if idx is None:
            return None
        self._transactions.delete(idx)
        return transaction

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

        transactions = []
        for transaction in self._transactions.all():
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
            transactions.append(transaction)

        # Sort by date descending (newest first)
        transactions.sort(key=lambda t: t.date, reverse=True)
        return transactions[:limit] if limit else transactions

    async def import_hash_exists(self, user_id: UUID, import_hash: str) -> bool:
        return any(
            t.user_id == user_id and t.import_hash == import_hash
            for t in self._transactions.all()
        )

    async def external_id_exists(self, user_id: UUID, external_id: str) -> bool:
        return any(
            t.user_id == user_id and t.external_id == external_id
            for t in self._transactions.all()
        )

    # -- budgets -------------------------------------------------------------

    @sheets_retry
    async def save_budget(self, budget: Budget) -> Budget:
        self._budgets.append([budget])
        return budget

    async def get_budget(
        self,
        budget_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> Optional[Budget]:
        _, budget = self._budgets.find(budget_id)
        return self._owned(budget, user_id)

    @sheets_retry
    async def update_budget(self, budget: Budget) -> Budget:
        idx, _ = self._budgets.find(budget.id)
        if idx is None:
            raise NotFoundError(f"Budget not found: {budget.id}")
        self._budgets.replace(idx, budget)
        return budget

    @sheets_retry
    async def delete_budget(self, budget_id: UUID) -> bool:
        idx, _ = self._budgets.find(budget_id)
        if idx is None:
            return False
        self._budgets.delete(idx)
        return True

    async def list_budgets(
        self,
        user_id: UUID,
        active_only: bool = False,
    ) -> list[Budget]:
        budgets = [
            b for b in self._budgets.all()
            if b.user_id == user_id and (b.is_active or not active_only)
        ]
        budgets.sort(key=lambda b: b.created_at, reverse=True)
        return budgets

    @sheets_retry
    async def set_budget_alert_sent(self, budget_id: UUID, alert_sent: bool) -> None:
        idx, budget = self._budgets.find(budget_id)
        if idx is None:
            raise NotFoundError(f"Budget not found: {budget_id}")
        budget.alert_sent = alert_sent
        self._budgets.replace(idx, budget)

    # -- recurring templates -------------------------------------------------

    @sheets_retry
    async def save_recurring(
        self,
        recurring: RecurringTransaction,
    ) -> RecurringTransaction:
        self._recurring.append([recurring])
        return recurring

    async def get_recurring(
        self,
        recurring_id: UUID,
        user_id: Optional[UUID] = None,
    ) -> Optional[RecurringTransaction]:
        _, recurring = self._recurring.find(recurring_id)
        return self._owned(recurring, user_id)

    @sheets_retry
    async def update_recurring(
        self,
        recurring: RecurringTransaction,
    ) -> RecurringTransaction:
        idx, _ = self._recurring.find(recurring.id)
        if idx is None:
            raise NotFoundError(f"Recurring transaction not found: {recurring.id}")
        recurring.updated_at = utcnow()
        self._recurring.replace(idx, recurring)
        return recurring

    async def list_recurring(
        self,
        user_id: UUID,
        active: Optional[bool] = None,
    ) -> list[RecurringTransaction]:
        templates = [
            r for r in self._recurring.all()
            if r.user_id == user_id and (active is None or r.is_active == active)
        ]
        templates.sort(key=lambda r: r.created_at, reverse=True)
        return templates

    async def list_due_recurring(self, now: datetime) -> list[RecurringTransaction]:
        due = [r for r in self._recurring.all() if r.is_due(now)]
        due.sort(key=lambda r: r.next_execution_date)
        return due


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _sheet(self) -> gspread.Worksheet:
        return self._client.get_worksheet(
            self._client.settings.audit_sheet_name,
            AUDIT_COLUMNS,
        )

    def _row_to_event(self, row: list) -> AuditEvent:
        """Convert a spreadsheet row to an AuditEvent."""
        def safe_get(index: int, default: str = "") -> str:
            try:
                return row[index] if row[index] else default
            except IndexError:
                return default

        return AuditEvent(
            event_id=UUID(safe_get(0)),
            timestamp=datetime.fromisoformat(safe_get(1)),
            event_type=AuditEventType(safe_get(2)),
            severity=AuditSeverity(safe_get(3)),
            entity_type=safe_get(4) or None,
            entity_id=UUID(safe_get(5)) if safe_get(5) else None,
            user_id=UUID(safe_get(6)) if safe_get(6) else None,
            correlation_id=UUID(safe_get(7)) if safe_get(7) else None,
            description=safe_get(8),
            details=json.loads(safe_get(9)) if safe_get(9) else {},
            error_message=safe_get(10) or None,
            is_user_action=safe_get(11).lower() == "true",
        )

    def _events(self, keep) -> list[AuditEvent]:
        try:
            all_rows = self._sheet().get_all_values()[1:]
        except gspread.exceptions.GSpreadException as e:
            raise PersistenceError(f"Failed to read audit events: {e}") from e

        events = []
        for row in all_rows:
            if not row or not row[0] or not keep(row):
                continue
            try:
                events.append(self._row_to_event(row))
            except ValueError as e:
                logger.warning("audit_row_skipped", event_id=row[0], error=str(e))
        return events

    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event.

        Audit logging must not break the main flow, so a failed write is
        logged and reported through the return value.
        """
        try:
            self._sheet().append_row(event.to_sheets_row(), value_input_option="RAW")
            return True
        except (gspread.exceptions.GSpreadException, ConnectionError) as e:
            logger.warning(
                "audit_write_failed",
                event_type=event.event_type.value,
                error=str(e),
            )
            return False

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = self._events(
            lambda row: len(row) > 7 and row[7] == str(correlation_id)
        )
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        events = self._events(
            lambda row: len(row) > 5 and row[4] == entity_type and row[5] == str(entity_id)
        )
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = self._events(lambda row: True)
        # Sort newest first
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
