"""
Fire-and-forget budget evaluation.

Every mutating operation calls `schedule(user_id)` after it committed.
The evaluation runs as a background task; its errors are logged and
never reach the caller.
"""

import asyncio
from typing import Optional
from uuid import UUID

import structlog

from fintrack.budgets.evaluator import BudgetAlertEvaluator
from fintrack.models.ledger import BudgetEvaluation


logger = structlog.get_logger(__name__)


class AlertDispatcher:
    """Runs budget evaluations in the background."""

    def __init__(self, evaluator: BudgetAlertEvaluator):
        self._evaluator = evaluator
        # Strong references so pending tasks are not garbage collected
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, user_id: UUID) -> asyncio.Task:
        """Start an evaluation for `user_id` without waiting for it."""
        task = asyncio.get_running_loop().create_task(self._run(user_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, user_id: UUID) -> Optional[list[BudgetEvaluation]]:
        try:
            return await self._evaluator.evaluate(user_id)
        except Exception as e:
            logger.error(
                "budget_evaluation_failed",
                user_id=str(user_id),
                error=str(e),
                exc_info=True,
            )
            return None

    async def drain(self) -> None:
        """Wait for every evaluation scheduled so far."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending)
