"""
Audit Logger

DESIGN DECISION: Every operation that moves money is logged.
This provides:
1. Complete traceability of balance changes
2. Debugging capability for imports and scheduler sweeps
3. Ability to reconstruct how a balance was reached

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (doesn't crash the app if logging fails)
- Supports correlation IDs to trace related events
"""

import logging
import sys
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

import structlog

from fintrack.models.audit import AuditEvent, AuditEventBuilder, AuditEventType
from fintrack.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


def configure_logging(level: str = "INFO") -> None:
    """
    Route structlog's JSON lines to stderr at the given stdlib level.

    structlog filters by the stdlib logger level, so nothing below
    `level` is rendered.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper(), logging.INFO),
    )


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("fintrack.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity.value in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    # -- ingestion -----------------------------------------------------------

    async def log_import_started(
        self,
        account_id: UUID,
        user_id: UUID,
        filename: str,
        size_bytes: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.import_started(
            account_id=account_id,
            user_id=user_id,
            filename=filename,
            size_bytes=size_bytes,
            correlation_id=correlation_id,
        ))

    async def log_import_completed(
        self,
        account_id: UUID,
        user_id: UUID,
        bank_format: str,
        imported: int,
        duplicates: int,
        errors: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.import_completed(
            account_id=account_id,
            user_id=user_id,
            bank_format=bank_format,
            imported=imported,
            duplicates=duplicates,
            errors=errors,
            correlation_id=correlation_id,
        ))

    async def log_import_failed(
        self,
        account_id: UUID,
        user_id: UUID,
        error_message: str,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.import_failed(
            account_id=account_id,
            user_id=user_id,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    async def log_feed_synced(
        self,
        account_id: UUID,
        user_id: UUID,
        imported: int,
        duplicates: int,
        correlation_id: UUID,
    ) -> None:
        await self.log(AuditEventBuilder.feed_synced(
            account_id=account_id,
            user_id=user_id,
            imported=imported,
            duplicates=duplicates,
            correlation_id=correlation_id,
        ))

    # -- ledger --------------------------------------------------------------

    async def log_transaction_changed(
        self,
        event_type: AuditEventType,
        transaction_id: UUID,
        user_id: UUID,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.transaction_changed(
            event_type=event_type,
            transaction_id=transaction_id,
            user_id=user_id,
            details=details,
            correlation_id=correlation_id,
        ))

    async def log_balance_adjusted(
        self,
        account_id: UUID,
        delta: Decimal,
        balance: Decimal,
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.balance_adjusted(
            account_id=account_id,
            delta=delta,
            balance=balance,
            reason=reason,
            correlation_id=correlation_id,
        ))

    async def log_balance_recalculated(
        self,
        account_id: UUID,
        previous: Decimal,
        balance: Decimal,
    ) -> None:
        await self.log(AuditEventBuilder.balance_recalculated(
            account_id=account_id,
            previous=previous,
            balance=balance,
        ))

    # -- recurrence ----------------------------------------------------------

    async def log_recurring_materialized(
        self,
        recurring_id: UUID,
        transaction_id: UUID,
        user_id: UUID,
        occurrence: int,
        next_execution: datetime,
    ) -> None:
        await self.log(AuditEventBuilder.recurring_materialized(
            recurring_id=recurring_id,
            transaction_id=transaction_id,
            user_id=user_id,
            occurrence=occurrence,
            next_execution=next_execution,
        ))

    async def log_recurring_stopped(
        self,
        recurring_id: UUID,
        user_id: UUID,
        reason: str,
    ) -> None:
        await self.log(AuditEventBuilder.recurring_stopped(
            recurring_id=recurring_id,
            user_id=user_id,
            reason=reason,
        ))

    async def log_recurring_failed(
        self,
        recurring_id: UUID,
        error_message: str,
    ) -> None:
        await self.log(AuditEventBuilder.recurring_failed(
            recurring_id=recurring_id,
            error_message=error_message,
        ))

    async def log_sweep_completed(
        self,
        due: int,
        materialized: int,
        stopped: int,
        failed: int,
    ) -> None:
        await self.log(AuditEventBuilder.sweep_completed(
            due=due,
            materialized=materialized,
            stopped=stopped,
            failed=failed,
        ))

    # -- budgets -------------------------------------------------------------

    async def log_budget_alert(
        self,
        event_type: AuditEventType,
        budget_id: UUID,
        user_id: UUID,
        category_name: Optional[str],
        percentage: float,
        error_message: Optional[str] = None,
    ) -> None:
        await self.log(AuditEventBuilder.budget_alert(
            event_type=event_type,
            budget_id=budget_id,
            user_id=user_id,
            category_name=category_name,
            percentage=percentage,
            error_message=error_message,
        ))

    # -- errors --------------------------------------------------------------

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        event = AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_external_service_error(
        self,
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log external service error."""
        event = AuditEventBuilder.external_service_error(
            service=service,
            error_message=error_message,
            correlation_id=correlation_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a new user action (e.g., a statement import).
    Pass it through all subsequent operations.
    """
    return uuid4()
