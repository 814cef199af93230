"""
Recurrence Scheduler

DESIGN DECISION: The scheduler is a service with an explicit lifecycle,
not a module-level timer.
- start() launches one asyncio task: an optional sweep right away, then
  one sweep every `interval_seconds`
- stop() waits for an in-flight sweep to finish, then cancels the idle loop
- run_sweep() can be called on demand at any time
- the clock is injected, so tests control "now"

Each due template is processed in isolation: a failure is logged and
audited, and the sweep moves on to the next template.
"""

import asyncio
import contextlib
from datetime import datetime
from typing import Callable, Optional

import structlog

from fintrack.audit import AuditLogger
from fintrack.budgets import AlertDispatcher
from fintrack.models.ledger import (
    RecurringTransaction,
    SweepResult,
    Transaction,
    TransactionSource,
    utcnow,
)
from fintrack.reconciliation import BalanceReconciler
from fintrack.recurrence.schedule import calculate_next_date
from fintrack.services.storage import LedgerStorageInterface, NotFoundError


logger = structlog.get_logger(__name__)


def end_reason(recurring: RecurringTransaction, now: datetime) -> Optional[str]:
    """Why a due template must stop instead of generating, if it must."""
    if recurring.end_date and recurring.end_date < now:
        return "end_date_passed"
    if (
        recurring.end_after_occurrences
        and recurring.occurrence_count >= recurring.end_after_occurrences
    ):
        return "occurrence_limit_reached"
    return None


class RecurrenceScheduler:
    """Turns due recurring templates into transactions."""

    def __init__(
        self,
        storage: LedgerStorageInterface,
        reconciler: BalanceReconciler,
        dispatcher: Optional[AlertDispatcher] = None,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utcnow,
        interval_seconds: float = 3600.0,
        run_on_start: bool = True,
    ):
        self._storage = storage
        self._reconciler = reconciler
        self._dispatcher = dispatcher
        self._audit = audit_logger or AuditLogger()
        self._clock = clock
        self._interval = interval_seconds
        self._run_on_start = run_on_start
        self._task: Optional[asyncio.Task] = None
        self._sweep_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> asyncio.Task:
        """Start the background loop. Calling it twice is a no-op."""
        if self.is_running:
            logger.info("recurrence_scheduler_already_running")
            return self._task

        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info("recurrence_scheduler_started", interval_seconds=self._interval)
        return self._task

    async def stop(self) -> None:
        """Stop the loop; a sweep in progress completes first."""
        task, self._task = self._task, None
        if task is None:
            return

        async with self._sweep_lock:
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("recurrence_scheduler_stopped")

    async def _loop(self) -> None:
        if self._run_on_start:
            await self._guarded_sweep()
        while True:
            await asyncio.sleep(self._interval)
            await self._guarded_sweep()

    async def _guarded_sweep(self) -> None:
        try:
            await self.run_sweep()
        except Exception as e:
            # The loop must survive a failed sweep (e.g. storage unreachable)
            logger.error("recurrence_sweep_failed", error=str(e), exc_info=True)

    # -- sweeping ------------------------------------------------------------

    async def run_sweep(self) -> SweepResult:
        """Process every template that is due at the current clock time."""
        async with self._sweep_lock:
            now = self._clock()
            result = SweepResult(started_at=now)

            due = await self._storage.list_due_recurring(now)
            result.due = len(due)
            logger.info("recurrence_sweep_started", due=len(due))

            for recurring in due:
                try:
                    transaction = await self.process_recurring(recurring, now)
                except Exception as e:
                    result.failed += 1
                    logger.error(
                        "recurring_processing_failed",
                        recurring_id=str(recurring.id),
                        error=str(e),
                        exc_info=True,
                    )
                    await self._audit.log_recurring_failed(
                        recurring_id=recurring.id,
                        error_message=str(e),
                    )
                    continue

                if transaction is None:
                    result.stopped += 1
                else:
                    result.materialized += 1
                    result.transaction_ids.append(transaction.id)

            result.finished_at = self._clock()
            await self._audit.log_sweep_completed(
                due=result.due,
                materialized=result.materialized,
                stopped=result.stopped,
                failed=result.failed,
            )
            return result

    async def process_recurring(
        self,
        recurring: RecurringTransaction,
        now: datetime,
    ) -> Optional[Transaction]:
        """
        Materialize one occurrence of a due template.

        Returns:
            The created transaction, or None when an end condition stopped
            the template instead
        """
        reason = end_reason(recurring, now)
        if reason:
            recurring.is_active = False
            await self._storage.update_recurring(recurring)
            await self._audit.log_recurring_stopped(
                recurring_id=recurring.id,
                user_id=recurring.user_id,
                reason=reason,
            )
            return None

        if await self._storage.get_account(recurring.account_id, recurring.user_id) is None:
            raise NotFoundError(f"Account not found: {recurring.account_id}")

        transaction = Transaction(
            user_id=recurring.user_id,
            account_id=recurring.account_id,
            category_id=recurring.category_id,
            type=recurring.type,
            amount=recurring.amount,
            currency=recurring.currency,
            date=now,
            description=recurring.description,
            merchant_name=recurring.merchant_name,
            notes=recurring.notes,
            tags=list(recurring.tags),
            category_confidence=1.0 if recurring.category_id else 0.0,
            source=TransactionSource.RECURRING,
            is_recurring=True,
            recurring_id=recurring.id,
        )
        await self._storage.insert_transaction(transaction)
        await self._reconciler.apply_create(transaction)

        recurring.occurrence_count += 1
        recurring.last_execution_date = now
        recurring.next_execution_date = calculate_next_date(
            now,
            recurring.frequency,
            recurring.interval,
            recurring.day_of_month,
            recurring.day_of_week,
        )

        stop_reason = None
        if (
            recurring.end_after_occurrences
            and recurring.occurrence_count >= recurring.end_after_occurrences
        ):
            stop_reason = "occurrence_limit_reached"
        elif recurring.end_date and recurring.next_execution_date > recurring.end_date:
            stop_reason = "end_date_passed"
        if stop_reason:
            recurring.is_active = False

        await self._storage.update_recurring(recurring)
        await self._audit.log_recurring_materialized(
            recurring_id=recurring.id,
            transaction_id=transaction.id,
            user_id=recurring.user_id,
            occurrence=recurring.occurrence_count,
            next_execution=recurring.next_execution_date,
        )
        if stop_reason:
            await self._audit.log_recurring_stopped(
                recurring_id=recurring.id,
                user_id=recurring.user_id,
                reason=stop_reason,
            )

        if self._dispatcher:
            self._dispatcher.schedule(recurring.user_id)
        return transaction
