"""Budget evaluation and alerting package."""

from fintrack.budgets.dispatcher import AlertDispatcher
from fintrack.budgets.evaluator import BudgetAlertEvaluator, budget_percentage
from fintrack.budgets.service import BudgetService, period_label

__all__ = [
    "AlertDispatcher",
    "BudgetAlertEvaluator",
    "BudgetService",
    "budget_percentage",
    "period_label",
]
