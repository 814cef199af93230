"""
Data Models Package

This package contains all Pydantic models used by the engine.
All data flowing through the system must conform to these schemas.
"""

from fintrack.models.ledger import (
    GLOBAL_CATEGORY_NAME,
    DESCRIPTION_MAX_LENGTH,
    IMPORT_SAMPLE_LIMIT,
    MERCHANT_NAME_MAX_LENGTH,
    Account,
    AccountType,
    BankFormat,
    Budget,
    BudgetEvaluation,
    BudgetPeriod,
    BudgetStatus,
    CategorizationResult,
    Category,
    DraftTransaction,
    Frequency,
    ImportResult,
    RecurringTransaction,
    RowError,
    SweepResult,
    Transaction,
    TransactionSource,
    TransactionType,
    User,
    ValidationIssue,
    ValidationResult,
    signed_delta,
    utcnow,
)
from fintrack.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "GLOBAL_CATEGORY_NAME",
    "DESCRIPTION_MAX_LENGTH",
    "IMPORT_SAMPLE_LIMIT",
    "MERCHANT_NAME_MAX_LENGTH",
    "Account",
    "AccountType",
    "BankFormat",
    "Budget",
    "BudgetEvaluation",
    "BudgetPeriod",
    "BudgetStatus",
    "CategorizationResult",
    "Category",
    "DraftTransaction",
    "Frequency",
    "ImportResult",
    "RecurringTransaction",
    "RowError",
    "SweepResult",
    "Transaction",
    "TransactionSource",
    "TransactionType",
    "User",
    "ValidationIssue",
    "ValidationResult",
    "signed_delta",
    "utcnow",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
