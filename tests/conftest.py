"""
Shared fixtures.

Everything runs against InMemoryLedgerStorage; external services (SMTP,
Google Sheets) are replaced with fakes that record what they were asked
to do.
"""

from datetime import datetime
from types import SimpleNamespace

import pytest
import pytest_asyncio

from fintrack.audit import AuditLogger
from fintrack.budgets import AlertDispatcher, BudgetAlertEvaluator
from fintrack.categorization import seed_default_categories
from fintrack.config import AppSettings
from fintrack.models.ledger import Account, User
from fintrack.reconciliation import BalanceReconciler
from fintrack.services.notifications import (
    BudgetAlert,
    BudgetNotifierInterface,
    NotificationError,
)
from fintrack.services.storage import InMemoryAuditStorage, InMemoryLedgerStorage


NOW = datetime(2024, 3, 15, 12, 0, 0)


class FakeClock:
    """Settable time source."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeNotifier(BudgetNotifierInterface):
    """Records alerts; can be told to fail."""

    def __init__(self):
        self.sent: list[BudgetAlert] = []
        self.fail = False

    async def send_budget_alert(self, alert: BudgetAlert) -> bool:
        if self.fail:
            raise NotificationError("SMTP server unreachable")
        self.sent.append(alert)
        return True


class FakeWorksheet:
    """The subset of gspread.Worksheet used by the storage layer."""

    def __init__(self, title: str):
        self.title = title
        self.rows: list[list[str]] = []

    def get_all_values(self) -> list[list[str]]:
        return [list(row) for row in self.rows]

    def append_row(self, row, value_input_option=None):
        self.rows.append([str(v) for v in row])

    def append_rows(self, rows, value_input_option=None):
        for row in rows:
            self.append_row(row)

    def update(self, range_name=None, values=None, value_input_option=None):
        # Only whole-row updates anchored in column A are issued
        idx = int(range_name.lstrip("A"))
        self.rows[idx - 1] = [str(v) for v in values[0]]

    def delete_rows(self, idx: int):
        del self.rows[idx - 1]


class FakeSheetsClient:
    """Stands in for GoogleSheetsClient without touching the network."""

    def __init__(self):
        self.settings = SimpleNamespace(
            users_sheet_name="Users",
            accounts_sheet_name="Accounts",
            transactions_sheet_name="Transactions",
            categories_sheet_name="Categories",
            budgets_sheet_name="Budgets",
            recurring_sheet_name="Recurring",
            audit_sheet_name="Audit_Log",
        )
        self.worksheets: dict[str, FakeWorksheet] = {}

    def get_worksheet(self, title: str, columns: list[str]) -> FakeWorksheet:
        if title not in self.worksheets:
            sheet = FakeWorksheet(title)
            sheet.append_row(columns)
            self.worksheets[title] = sheet
        return self.worksheets[title]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def app_settings():
    return AppSettings()


@pytest.fixture
def storage():
    return InMemoryLedgerStorage()


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage):
    return AuditLogger(audit_storage)


@pytest.fixture
def reconciler(storage, audit_logger):
    return BalanceReconciler(storage, audit_logger)


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def evaluator(storage, notifier, audit_logger, clock):
    return BudgetAlertEvaluator(storage, notifier, audit_logger, clock=clock)


@pytest.fixture
def dispatcher(evaluator):
    return AlertDispatcher(evaluator)


@pytest_asyncio.fixture
async def user(storage):
    return await storage.save_user(
        User(email="ada@example.com", first_name="Ada", currency="EUR")
    )


@pytest_asyncio.fixture
async def account(storage, user):
    return await storage.create_account(Account(user_id=user.id, name="Main"))


@pytest_asyncio.fixture
async def categories(storage, user):
    await seed_default_categories(storage, user.id)
    return {c.name: c for c in await storage.list_categories(user.id)}


@pytest.fixture
def sheets_client():
    return FakeSheetsClient()
