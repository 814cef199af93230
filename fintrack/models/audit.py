"""
Audit Models for Fintrack

Every operation that touches money is logged for audit purposes.
This provides:
1. Complete traceability of balance changes
2. Debugging information when an import or sweep goes wrong
3. Ability to reconstruct how a balance was reached

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from fintrack.models.ledger import utcnow


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every mutation path of the ledger has its own event type.
    """
    # Ingestion
    IMPORT_STARTED = "import_started"
    IMPORT_COMPLETED = "import_completed"
    IMPORT_FAILED = "import_failed"
    FEED_SYNCED = "feed_synced"

    # Manual transaction changes
    TRANSACTION_CREATED = "transaction_created"
    TRANSACTION_UPDATED = "transaction_updated"
    TRANSACTION_DELETED = "transaction_deleted"
    TRANSACTION_RECATEGORIZED = "transaction_recategorized"

    # Balance
    BALANCE_ADJUSTED = "balance_adjusted"
    BALANCE_RECALCULATED = "balance_recalculated"

    # Recurrence
    RECURRING_MATERIALIZED = "recurring_materialized"
    RECURRING_STOPPED = "recurring_stopped"
    RECURRING_FAILED = "recurring_failed"
    SWEEP_COMPLETED = "sweep_completed"

    # Budgets
    BUDGET_ALERT_SENT = "budget_alert_sent"
    BUDGET_ALERT_RESET = "budget_alert_reset"
    BUDGET_ALERT_FAILED = "budget_alert_failed"

    # System events
    SYSTEM_ERROR = "system_error"
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'account', 'transaction', 'budget')"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )
    user_id: Optional[UUID] = None

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events of one import)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "user_id": str(self.user_id) if self.user_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, event_type, severity, entity_type, entity_id,
         user_id, correlation_id, description, details_json, error_message,
         is_user_action]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.event_type.value,
            self.severity.value,
            self.entity_type or "",
            str(self.entity_id) if self.entity_id else "",
            str(self.user_id) if self.user_id else "",
            str(self.correlation_id) if self.correlation_id else "",
            self.description,
            json.dumps(self.details, default=str) if self.details else "",
            self.error_message or "",
            str(self.is_user_action),
        ]


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.import_completed(account_id, user_id, ...)
        event = AuditEventBuilder.balance_adjusted(account_id, delta, balance, reason)
    """

    @staticmethod
    def import_started(
        account_id: UUID,
        user_id: UUID,
        filename: str,
        size_bytes: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.IMPORT_STARTED,
            entity_type="account",
            entity_id=account_id,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"Import started: {filename}",
            details={
                "filename": filename,
                "size_bytes": size_bytes,
            },
            is_user_action=True,
        )

    @staticmethod
    def import_completed(
        account_id: UUID,
        user_id: UUID,
        bank_format: str,
        imported: int,
        duplicates: int,
        errors: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        severity = AuditSeverity.WARNING if errors else AuditSeverity.INFO
        return AuditEvent(
            event_type=AuditEventType.IMPORT_COMPLETED,
            severity=severity,
            entity_type="account",
            entity_id=account_id,
            user_id=user_id,
            correlation_id=correlation_id,
            description=(
                f"Import completed ({bank_format}): {imported} imported, "
                f"{duplicates} duplicates, {errors} errors"
            ),
            details={
                "bank_format": bank_format,
                "imported": imported,
                "duplicates": duplicates,
                "errors": errors,
            },
        )

    @staticmethod
    def import_failed(
        account_id: UUID,
        user_id: UUID,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.IMPORT_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="account",
            entity_id=account_id,
            user_id=user_id,
            correlation_id=correlation_id,
            description="Import failed",
            error_message=error_message,
        )

    @staticmethod
    def feed_synced(
        account_id: UUID,
        user_id: UUID,
        imported: int,
        duplicates: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.FEED_SYNCED,
            entity_type="account",
            entity_id=account_id,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"Feed synced: {imported} imported, {duplicates} duplicates",
            details={
                "imported": imported,
                "duplicates": duplicates,
            },
        )

    @staticmethod
    def transaction_changed(
        event_type: AuditEventType,
        transaction_id: UUID,
        user_id: UUID,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        verb = event_type.value.replace("transaction_", "")
        return AuditEvent(
            event_type=event_type,
            entity_type="transaction",
            entity_id=transaction_id,
            user_id=user_id,
            correlation_id=correlation_id,
            description=f"Transaction {verb}",
            details=details or {},
            is_user_action=True,
        )

    @staticmethod
    def balance_adjusted(
        account_id: UUID,
        delta: Decimal,
        balance: Decimal,
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BALANCE_ADJUSTED,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description=f"Balance adjusted by {delta} ({reason})",
            details={
                "delta": str(delta),
                "balance": str(balance),
                "reason": reason,
            },
        )

    @staticmethod
    def balance_recalculated(
        account_id: UUID,
        previous: Decimal,
        balance: Decimal,
    ) -> AuditEvent:
        drifted = previous != balance
        return AuditEvent(
            event_type=AuditEventType.BALANCE_RECALCULATED,
            severity=AuditSeverity.WARNING if drifted else AuditSeverity.INFO,
            entity_type="account",
            entity_id=account_id,
            description=(
                f"Balance drift corrected: {previous} -> {balance}"
                if drifted
                else "Balance verified"
            ),
            details={
                "previous": str(previous),
                "balance": str(balance),
            },
        )

    @staticmethod
    def recurring_materialized(
        recurring_id: UUID,
        transaction_id: UUID,
        user_id: UUID,
        occurrence: int,
        next_execution: datetime,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_MATERIALIZED,
            entity_type="recurring_transaction",
            entity_id=recurring_id,
            user_id=user_id,
            description=f"Occurrence {occurrence} materialized",
            details={
                "transaction_id": str(transaction_id),
                "occurrence": occurrence,
                "next_execution_date": next_execution.isoformat(),
            },
        )

    @staticmethod
    def recurring_stopped(
        recurring_id: UUID,
        user_id: UUID,
        reason: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_STOPPED,
            entity_type="recurring_transaction",
            entity_id=recurring_id,
            user_id=user_id,
            description=f"Recurring transaction stopped: {reason}",
            details={"reason": reason},
        )

    @staticmethod
    def recurring_failed(
        recurring_id: UUID,
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECURRING_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="recurring_transaction",
            entity_id=recurring_id,
            description="Recurring transaction could not be processed",
            error_message=error_message,
        )

    @staticmethod
    def sweep_completed(
        due: int,
        materialized: int,
        stopped: int,
        failed: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SWEEP_COMPLETED,
            severity=AuditSeverity.WARNING if failed else AuditSeverity.INFO,
            description=(
                f"Sweep completed: {materialized} materialized, "
                f"{stopped} stopped, {failed} failed"
            ),
            details={
                "due": due,
                "materialized": materialized,
                "stopped": stopped,
                "failed": failed,
            },
        )

    @staticmethod
    def budget_alert(
        event_type: AuditEventType,
        budget_id: UUID,
        user_id: UUID,
        category_name: Optional[str],
        percentage: float,
        error_message: Optional[str] = None,
    ) -> AuditEvent:
        severity = (
            AuditSeverity.WARNING
            if event_type == AuditEventType.BUDGET_ALERT_FAILED
            else AuditSeverity.INFO
        )
        return AuditEvent(
            event_type=event_type,
            severity=severity,
            entity_type="budget",
            entity_id=budget_id,
            user_id=user_id,
            description=f"Budget {category_name or 'Unknown'} at {percentage:.0f}%",
            details={
                "category_name": category_name,
                "percentage": round(percentage, 2),
            },
            error_message=error_message,
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

    @staticmethod
    def external_service_error(
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"External service error: {service}",
            error_message=error_message,
            details={
                "service": service,
            },
            correlation_id=correlation_id,
        )
