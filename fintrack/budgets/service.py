"""
Budget management and read surface.

Budgets are created from a category NAME and a length in months; the
window runs from the start date to start + months. Twelve months or more
is labelled yearly, anything shorter monthly.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog
from dateutil.relativedelta import relativedelta

from fintrack.budgets.dispatcher import AlertDispatcher
from fintrack.budgets.evaluator import BudgetAlertEvaluator, budget_percentage
from fintrack.models.ledger import (
    Budget,
    BudgetPeriod,
    BudgetStatus,
    Category,
    utcnow,
)
from fintrack.services.storage import LedgerStorageInterface, NotFoundError


logger = structlog.get_logger(__name__)


def period_label(months: int) -> BudgetPeriod:
    return BudgetPeriod.YEARLY if months >= 12 else BudgetPeriod.MONTHLY


class BudgetService:
    """Create, update and read budgets with their computed spend."""

    def __init__(
        self,
        storage: LedgerStorageInterface,
        evaluator: BudgetAlertEvaluator,
        dispatcher: Optional[AlertDispatcher] = None,
    ):
        self._storage = storage
        self._evaluator = evaluator
        self._dispatcher = dispatcher

    async def _category_by_name(self, user_id: UUID, name: str) -> Category:
        for category in await self._storage.list_categories(user_id):
            if category.name == name:
                return category
        raise NotFoundError(f"Category not found: {name}")

    async def create_budget(
        self,
        user_id: UUID,
        category_name: str,
        amount: Decimal,
        period_months: int,
        start_date: Optional[datetime] = None,
        alert_threshold: float = 80.0,
    ) -> Budget:
        """
        Create a budget for the first of the user's categories named
        `category_name`.

        Raises:
            NotFoundError: If the user owns no category with that name
        """
        if period_months < 1:
            raise ValueError("A budget must last at least one month")

        category = await self._category_by_name(user_id, category_name)
        start = start_date or utcnow()
        budget = Budget(
            user_id=user_id,
            category_id=category.id,
            amount=Decimal(str(amount)),
            period=period_label(period_months),
            start_date=start,
            end_date=start + relativedelta(months=period_months),
            alert_threshold=alert_threshold,
        )
        await self._storage.save_budget(budget)
        logger.info(
            "budget_created",
            budget_id=str(budget.id),
            category=category.name,
            amount=str(budget.amount),
        )

        if self._dispatcher:
            self._dispatcher.schedule(user_id)
        return budget

    async def update_budget(
        self,
        user_id: UUID,
        budget_id: UUID,
        category_name: Optional[str] = None,
        amount: Optional[Decimal] = None,
        period_months: Optional[int] = None,
        start_date: Optional[datetime] = None,
        alert_threshold: Optional[float] = None,
        is_active: Optional[bool] = None,
    ) -> Budget:
        """
        Update a budget. A new period length recomputes the window from
        the (possibly new) start date.

        Raises:
            NotFoundError: Unknown budget or category name
        """
        budget = await self._storage.get_budget(budget_id, user_id)
        if budget is None:
            raise NotFoundError(f"Budget not found: {budget_id}")

        changes = {}
        if category_name is not None:
            changes["category_id"] = (await self._category_by_name(user_id, category_name)).id
        if amount is not None:
            changes["amount"] = Decimal(str(amount))
        if start_date is not None:
            changes["start_date"] = start_date
        if period_months is not None:
            start = changes.get("start_date", budget.start_date)
            changes["period"] = period_label(period_months)
            changes["end_date"] = start + relativedelta(months=period_months)
        if alert_threshold is not None:
            changes["alert_threshold"] = alert_threshold
        if is_active is not None:
            changes["is_active"] = is_active

        # Re-validate so the window invariant holds after the update
        updated = Budget.model_validate({**budget.model_dump(), **changes})
        await self._storage.update_budget(updated)

        if self._dispatcher:
            self._dispatcher.schedule(user_id)
        return updated

    async def delete_budget(self, user_id: UUID, budget_id: UUID) -> None:
        budget = await self._storage.get_budget(budget_id, user_id)
        if budget is None:
            raise NotFoundError(f"Budget not found: {budget_id}")
        await self._storage.delete_budget(budget_id)

    async def list_budget_statuses(
        self,
        user_id: UUID,
        now: Optional[datetime] = None,
    ) -> list[BudgetStatus]:
        """Every budget of the user, newest first, with spent and remaining."""
        statuses = []
        for budget in await self._storage.list_budgets(user_id):
            spent, category_name = await self._evaluator.calculate_spent(budget, now)
            statuses.append(BudgetStatus(
                budget=budget,
                category_name=category_name,
                spent=spent,
                remaining=budget.amount - spent,
                percentage=budget_percentage(spent, budget.amount),
            ))
        return statuses
