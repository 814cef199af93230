"""
Core Data Models for Fintrack

These models define the strict schemas for all data flowing through the engine.
They are designed to:
1. Enforce type safety at runtime
2. Provide clear validation error messages
3. Be serializable for storage and logging
4. Support the audit trail

DESIGN DECISION: Money is always Decimal. Transactions store an UNSIGNED
amount plus a type; the sign only appears when a balance delta is computed.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    model_validator,
)


GLOBAL_CATEGORY_NAME = "Global"

# Only this many sample rows are echoed back in an import result
IMPORT_SAMPLE_LIMIT = 5

DESCRIPTION_MAX_LENGTH = 500
MERCHANT_NAME_MAX_LENGTH = 200


def utcnow() -> datetime:
    """Naive UTC timestamp, the only clock representation stored in the ledger."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class TransactionType(str, Enum):
    """Direction of money movement."""
    INCOME = "income"
    EXPENSE = "expense"


class AccountType(str, Enum):
    """Supported account kinds."""
    CHECKING = "checking"
    SAVINGS = "savings"
    CREDIT = "credit"
    INVESTMENT = "investment"
    CASH = "cash"


class Frequency(str, Enum):
    """Recurrence frequencies for recurring templates."""
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class BudgetPeriod(str, Enum):
    """Display label of a budget window."""
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class BankFormat(str, Enum):
    """
    Statement dialects the normalizer understands.

    REVOLUT exports carry "Started Date"/"Completed Date" columns and a
    separate Fee column that must be netted against the amount.
    """
    REVOLUT = "revolut"
    GENERIC = "generic"
    FEED = "feed"


class TransactionSource(str, Enum):
    """How a transaction entered the ledger."""
    MANUAL = "manual"
    IMPORT = "import"
    FEED = "feed"
    RECURRING = "recurring"


def signed_delta(transaction_type: TransactionType, amount: Decimal) -> Decimal:
    """Balance effect of a transaction: income adds, expense subtracts."""
    if transaction_type == TransactionType.INCOME:
        return amount
    return -amount


# =============================================================================
# OWNERSHIP
# =============================================================================

class User(BaseModel):
    """
    Minimal owner record.

    Authentication lives elsewhere; the engine only needs an address to
    deliver budget alerts to.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    email: Optional[str] = Field(default=None, max_length=320)
    first_name: str = Field(default="", max_length=100)
    currency: str = Field(default="EUR", min_length=3, max_length=3)


class Account(BaseModel):
    """
    A money container owned by one user.

    CRITICAL: `balance` is a cached value. Only the BalanceReconciler may
    change it, and it must equal the signed sum of the account's
    transactions after every reconciling operation.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    name: str = Field(..., min_length=1, max_length=200)
    type: AccountType = AccountType.CHECKING
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    balance: Decimal = Field(
        default=Decimal("0"),
        description="Cached signed balance"
    )

    # External connection metadata
    external_id: Optional[str] = None
    external_provider: str = Field(default="manual", max_length=50)
    institution_name: Optional[str] = Field(default=None, max_length=200)
    last_synced_at: Optional[datetime] = None

    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Category(BaseModel):
    """
    Spending or income category.

    Categories are matched by NAME in budgets, so a user may own several
    categories sharing one name.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    icon: Optional[str] = None
    color: Optional[str] = Field(default=None, max_length=20)
    is_default: bool = False


# =============================================================================
# TRANSACTIONS
# =============================================================================

class DraftTransaction(BaseModel):
    """
    A normalized, not-yet-persisted transaction.

    Produced by the normalizer from one statement row (or one feed record).
    Nothing in a draft has been checked against storage yet.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    date: datetime
    description: str = Field(
        default="Unknown",
        min_length=1,
        max_length=DESCRIPTION_MAX_LENGTH
    )
    amount: Decimal = Field(..., ge=0, decimal_places=2)
    type: TransactionType
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    merchant_name: Optional[str] = Field(default=None, max_length=MERCHANT_NAME_MAX_LENGTH)
    external_id: Optional[str] = None
    row_number: Optional[int] = Field(
        default=None,
        description="1-based data row in the source file"
    )
    raw: dict[str, Any] = Field(default_factory=dict)

    def summary(self) -> dict:
        """Compact form echoed back in import results."""
        return {
            "date": self.date.isoformat(),
            "description": self.description,
            "amount": str(self.amount),
            "type": self.type.value,
            "currency": self.currency,
        }


class Transaction(BaseModel):
    """A persisted ledger entry."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    account_id: UUID
    category_id: Optional[UUID] = None
    type: TransactionType
    amount: Decimal = Field(..., ge=0, decimal_places=2)
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    date: datetime
    description: str = Field(..., min_length=1, max_length=DESCRIPTION_MAX_LENGTH)
    merchant_name: Optional[str] = Field(default=None, max_length=MERCHANT_NAME_MAX_LENGTH)
    notes: Optional[str] = Field(default=None, max_length=1000)
    tags: list[str] = Field(default_factory=list)

    # Deduplication
    import_hash: Optional[str] = None
    external_id: Optional[str] = None

    category_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    source: TransactionSource = TransactionSource.MANUAL
    is_recurring: bool = False
    recurring_id: Optional[UUID] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def signed_amount(self) -> Decimal:
        return signed_delta(self.type, self.amount)


# =============================================================================
# BUDGETS
# =============================================================================

class Budget(BaseModel):
    """
    Spending limit for one category name over a date window.

    `alert_sent` is a hysteresis latch: it is set once a notification has
    been delivered and only cleared when spend falls back under the
    threshold.
    """

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    category_id: UUID
    amount: Decimal = Field(..., ge=0, decimal_places=2)
    period: BudgetPeriod = BudgetPeriod.MONTHLY
    start_date: datetime
    end_date: Optional[datetime] = None
    alert_threshold: float = Field(default=80.0, ge=0.0, le=100.0)
    alert_sent: bool = False
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode='after')
    def validate_window(self) -> 'Budget':
        if self.end_date and self.end_date < self.start_date:
            raise ValueError("Budget end date cannot be before start date")
        return self

    def covers(self, moment: datetime) -> bool:
        """Is `moment` inside the budget window?"""
        if moment < self.start_date:
            return False
        return self.end_date is None or moment <= self.end_date


class BudgetStatus(BaseModel):
    """Read view of a budget with its computed spend."""

    budget: Budget
    category_name: Optional[str] = None
    spent: Decimal
    remaining: Decimal
    percentage: float


class BudgetEvaluation(BaseModel):
    """What one evaluation pass did to one budget."""

    budget_id: UUID
    category_name: Optional[str] = None
    spent: Decimal
    percentage: float
    action: str = Field(
        ...,
        pattern="^(alert_sent|alert_failed|alert_reset|none)$",
    )


# =============================================================================
# RECURRENCE
# =============================================================================

class RecurringTransaction(BaseModel):
    """
    Template that the scheduler turns into concrete transactions.

    States: active (waiting), due (next_execution_date <= now) and stopped
    (is_active False once an end condition is reached).
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID
    account_id: UUID
    category_id: Optional[UUID] = None
    type: TransactionType
    amount: Decimal = Field(..., ge=0, decimal_places=2)
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    description: str = Field(..., min_length=1, max_length=DESCRIPTION_MAX_LENGTH)
    merchant_name: Optional[str] = Field(default=None, max_length=MERCHANT_NAME_MAX_LENGTH)
    notes: Optional[str] = Field(default=None, max_length=1000)
    tags: list[str] = Field(default_factory=list)

    # Schedule descriptor
    frequency: Frequency
    interval: int = Field(default=1, ge=1)
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    start_date: datetime
    end_date: Optional[datetime] = None
    end_after_occurrences: Optional[int] = Field(default=None, ge=1)

    # Schedule state
    next_execution_date: datetime
    last_execution_date: Optional[datetime] = None
    occurrence_count: int = Field(default=0, ge=0)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode='after')
    def validate_dates(self) -> 'RecurringTransaction':
        if self.end_date and self.end_date < self.start_date:
            raise ValueError("End date cannot be before start date")
        return self

    def is_due(self, now: datetime) -> bool:
        return self.is_active and self.next_execution_date <= now


class SweepResult(BaseModel):
    """Outcome of one scheduler pass over the due templates."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    due: int = 0
    materialized: int = 0
    stopped: int = 0
    failed: int = 0
    transaction_ids: list[UUID] = Field(default_factory=list)


# =============================================================================
# CATEGORIZATION
# =============================================================================

class CategorizationResult(BaseModel):
    """Category picked for a draft and how sure the rules are about it."""

    category_id: Optional[UUID] = None
    category_name: Optional[str] = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    rule: str = Field(
        ...,
        description="Which priority rule produced the result"
    )


# =============================================================================
# IMPORT RESULTS
# =============================================================================

class RowError(BaseModel):
    """A statement row that could not be imported."""

    row_number: Optional[int] = None
    row: dict[str, Any] = Field(default_factory=dict)
    error: str


class ImportResult(BaseModel):
    """
    Row-level outcome of an import or feed sync.

    Always returned, even when some rows failed, so the caller can
    reconcile against the source file.
    """

    account_id: UUID
    bank_format: BankFormat
    imported: int = Field(default=0, ge=0)
    duplicates: int = Field(default=0, ge=0)
    errors: int = Field(default=0, ge=0)
    account_balance: Decimal
    duplicate_samples: list[dict] = Field(default_factory=list)
    error_samples: list[RowError] = Field(default_factory=list)
    transaction_ids: list[UUID] = Field(default_factory=list)

    @property
    def message(self) -> str:
        return f"Successfully imported {self.imported} transactions"

    def to_summary(self) -> dict:
        """The counts surface handed back to callers."""
        return {
            "imported": self.imported,
            "duplicates": self.duplicates,
            "errors": self.errors,
            "accountBalance": self.account_balance,
        }


# =============================================================================
# VALIDATION MODELS
# =============================================================================

class ValidationIssue(BaseModel):
    """A single validation issue found."""

    field: str = Field(
        ...,
        description="Field with the issue"
    )
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'missing', 'invalid_value', 'suspicious_value')"
    )
    message: str = Field(
        ...,
        description="Human-readable description of the issue"
    )
    severity: str = Field(
        ...,
        pattern="^(error|warning|info)$",
        description="Issue severity"
    )


class ValidationResult(BaseModel):
    """
    Result of the two-stage validation.

    Stage 1: Schema validation (required fields, value ranges)
    Stage 2: Semantic validation (plausibility checks)
    """

    validated_at: datetime = Field(default_factory=utcnow)
    schema_valid: bool
    semantic_valid: bool
    issues: list[ValidationIssue] = Field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        """Both stages passed."""
        return self.schema_valid and self.semantic_valid

    @property
    def has_errors(self) -> bool:
        """Check if there are any error-level issues."""
        return any(issue.severity == "error" for issue in self.issues)

    @property
    def error_count(self) -> int:
        """Count error-level issues."""
        return sum(1 for issue in self.issues if issue.severity == "error")

    @property
    def warnings(self) -> list[str]:
        return [issue.message for issue in self.issues if issue.severity == "warning"]

    def error_message(self) -> str:
        return "; ".join(
            issue.message for issue in self.issues if issue.severity == "error"
        )
