"""
Budget Alert Evaluator

For every active budget whose window covers "now", compute what has been
spent and drive the one-shot alert latch:

    percentage >= threshold and not alert_sent -> notify, latch on success
    percentage <  threshold and alert_sent     -> reset latch

DESIGN DECISION: The latch is only set after a delivery succeeded. A
failed delivery leaves it false, so the next evaluation retries. This is
the whole retry policy; there is no outbox.

Spend is matched by category NAME: every category of the user sharing the
budget category's name counts. The name "Global" counts all expenses.
"""

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

import structlog

from fintrack.audit import AuditLogger
from fintrack.models.audit import AuditEventType
from fintrack.models.ledger import (
    GLOBAL_CATEGORY_NAME,
    Budget,
    BudgetEvaluation,
    TransactionType,
    User,
    utcnow,
)
from fintrack.services.notifications import (
    BudgetAlert,
    BudgetNotifierInterface,
    NotificationError,
)
from fintrack.services.storage import LedgerStorageInterface


logger = structlog.get_logger(__name__)


def budget_percentage(spent: Decimal, amount: Decimal) -> float:
    """spent / amount × 100; a zero budget with any spend counts as 100%."""
    if amount == 0:
        return 100.0 if spent > 0 else 0.0
    return float(spent / amount * 100)


class BudgetAlertEvaluator:
    """Evaluates a user's budgets and sends threshold alerts."""

    def __init__(
        self,
        storage: LedgerStorageInterface,
        notifier: BudgetNotifierInterface,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._storage = storage
        self._notifier = notifier
        self._audit = audit_logger or AuditLogger()
        self._clock = clock
        self._locks: dict[UUID, asyncio.Lock] = {}

    async def calculate_spent(
        self,
        budget: Budget,
        now: Optional[datetime] = None,
    ) -> tuple[Decimal, Optional[str]]:
        """
        Sum of expense amounts inside the budget window.

        Returns:
            (spent, budget category name or None when the category is gone)
        """
        now = now or self._clock()
        window_end = min(budget.end_date, now) if budget.end_date else now

        category = await self._storage.get_category(budget.category_id, budget.user_id)
        category_ids = None
        if category and category.name != GLOBAL_CATEGORY_NAME:
            category_ids = [
                c.id for c in await self._storage.list_categories(budget.user_id)
                if c.name == category.name
            ]

        transactions = await self._storage.list_transactions(
            budget.user_id,
            transaction_type=TransactionType.EXPENSE,
            category_ids=category_ids,
            date_from=budget.start_date,
            date_to=window_end,
        )
        spent = sum((abs(t.amount) for t in transactions), Decimal("0"))
        return spent, category.name if category else None

    def _lock_for(self, user_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    async def evaluate(
        self,
        user_id: UUID,
        now: Optional[datetime] = None,
    ) -> list[BudgetEvaluation]:
        """
        Run one evaluation pass over the user's live budgets.

        Evaluations of one user are serialized so two concurrent passes
        cannot both send the same alert.
        """
        now = now or self._clock()

        async with self._lock_for(user_id):
            budgets = [
                b for b in await self._storage.list_budgets(user_id, active_only=True)
                if b.covers(now)
            ]
            if not budgets:
                return []

            user = await self._storage.get_user(user_id)
            results = []
            for budget in budgets:
                results.append(await self._evaluate_budget(budget, user, now))
            return results

    async def _evaluate_budget(
        self,
        budget: Budget,
        user: Optional[User],
        now: datetime,
    ) -> BudgetEvaluation:
        spent, category_name = await self.calculate_spent(budget, now)
        percentage = budget_percentage(spent, budget.amount)
        action = "none"

        if percentage >= budget.alert_threshold and not budget.alert_sent:
            action = await self._notify(budget, user, category_name, spent, percentage)
        elif percentage < budget.alert_threshold and budget.alert_sent:
            await self._storage.set_budget_alert_sent(budget.id, False)
            await self._audit.log_budget_alert(
                event_type=AuditEventType.BUDGET_ALERT_RESET,
                budget_id=budget.id,
                user_id=budget.user_id,
                category_name=category_name,
                percentage=percentage,
            )
            action = "alert_reset"

        return BudgetEvaluation(
            budget_id=budget.id,
            category_name=category_name,
            spent=spent,
            percentage=percentage,
            action=action,
        )

    async def _notify(
        self,
        budget: Budget,
        user: Optional[User],
        category_name: Optional[str],
        spent: Decimal,
        percentage: float,
    ) -> str:
        if user is None or not user.email:
            logger.warning(
                "budget_alert_skipped",
                budget_id=str(budget.id),
                user_id=str(budget.user_id),
                reason="no recipient address",
            )
            return "alert_failed"

        alert = BudgetAlert(
            budget_id=budget.id,
            user_id=budget.user_id,
            recipient=user.email,
            first_name=user.first_name,
            category_name=category_name or "Unknown",
            spent=spent,
            budget_amount=budget.amount,
            percentage=percentage,
            currency=user.currency,
        )

        try:
            delivered = await self._notifier.send_budget_alert(alert)
        except NotificationError as e:
            logger.warning("budget_alert_failed", budget_id=str(budget.id), error=str(e))
            await self._audit.log_budget_alert(
                event_type=AuditEventType.BUDGET_ALERT_FAILED,
                budget_id=budget.id,
                user_id=budget.user_id,
                category_name=category_name,
                percentage=percentage,
                error_message=str(e),
            )
            return "alert_failed"

        if not delivered:
            logger.warning("budget_alert_not_delivered", budget_id=str(budget.id))
            return "alert_failed"

        await self._storage.set_budget_alert_sent(budget.id, True)
        await self._audit.log_budget_alert(
            event_type=AuditEventType.BUDGET_ALERT_SENT,
            budget_id=budget.id,
            user_id=budget.user_id,
            category_name=category_name,
            percentage=percentage,
        )
        return "alert_sent"
