"""Services package."""

from fintrack.services.notifications import (
    BudgetAlert,
    BudgetNotifierInterface,
    LoggingBudgetNotifier,
    NotificationError,
    SMTPBudgetNotifier,
)
from fintrack.services.storage import (
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsLedgerStorage,
    InMemoryAuditStorage,
    InMemoryLedgerStorage,
    LedgerStorageInterface,
    NotFoundError,
    PersistenceError,
    StorageError,
)

__all__ = [
    # Notification services
    "BudgetAlert",
    "BudgetNotifierInterface",
    "LoggingBudgetNotifier",
    "NotificationError",
    "SMTPBudgetNotifier",
    # Storage services
    "AuditStorageInterface",
    "ConnectionError",
    "DuplicateError",
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsLedgerStorage",
    "InMemoryAuditStorage",
    "InMemoryLedgerStorage",
    "LedgerStorageInterface",
    "NotFoundError",
    "PersistenceError",
    "StorageError",
]
