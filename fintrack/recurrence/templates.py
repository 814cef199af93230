"""
Recurring template management.

Templates are never erased: deleting one deactivates it, and pausing
toggles the same flag.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

import structlog

from fintrack.models.ledger import (
    Frequency,
    RecurringTransaction,
    TransactionType,
)
from fintrack.recurrence.schedule import calculate_next_date
from fintrack.services.storage import LedgerStorageInterface, NotFoundError


logger = structlog.get_logger(__name__)

# Changing any of these moves the next execution date
SCHEDULE_FIELDS = {"frequency", "interval", "day_of_month", "day_of_week", "start_date"}

UPDATABLE_FIELDS = SCHEDULE_FIELDS | {
    "account_id",
    "category_id",
    "type",
    "amount",
    "currency",
    "description",
    "merchant_name",
    "notes",
    "tags",
    "end_date",
    "end_after_occurrences",
    "is_active",
}


class RecurringTemplateService:
    """CRUD-style operations on recurring templates, scoped to one owner."""

    def __init__(self, storage: LedgerStorageInterface):
        self._storage = storage

    async def _require_account(self, account_id: UUID, user_id: UUID):
        account = await self._storage.get_account(account_id, user_id)
        if account is None:
            raise NotFoundError(f"Account not found: {account_id}")
        return account

    async def _require_category(self, category_id: Optional[UUID], user_id: UUID) -> None:
        if category_id and await self._storage.get_category(category_id, user_id) is None:
            raise NotFoundError(f"Category not found: {category_id}")

    async def _require_template(self, recurring_id: UUID, user_id: UUID) -> RecurringTransaction:
        recurring = await self._storage.get_recurring(recurring_id, user_id)
        if recurring is None:
            raise NotFoundError(f"Recurring transaction not found: {recurring_id}")
        return recurring

    async def create_template(
        self,
        user_id: UUID,
        account_id: UUID,
        type: TransactionType,
        amount: Decimal,
        description: str,
        frequency: Frequency,
        start_date: datetime,
        interval: int = 1,
        category_id: Optional[UUID] = None,
        currency: Optional[str] = None,
        merchant_name: Optional[str] = None,
        notes: Optional[str] = None,
        tags: Optional[list[str]] = None,
        day_of_month: Optional[int] = None,
        day_of_week: Optional[int] = None,
        end_date: Optional[datetime] = None,
        end_after_occurrences: Optional[int] = None,
    ) -> RecurringTransaction:
        """
        Create a template owned by `user_id`.

        The first execution is one step after `start_date`.

        Raises:
            NotFoundError: Account or category not owned by the user
        """
        account = await self._require_account(account_id, user_id)
        await self._require_category(category_id, user_id)

        recurring = RecurringTransaction(
            user_id=user_id,
            account_id=account_id,
            category_id=category_id,
            type=type,
            amount=abs(Decimal(str(amount))),
            currency=currency or account.currency,
            description=description,
            merchant_name=merchant_name,
            notes=notes,
            tags=tags or [],
            frequency=frequency,
            interval=interval,
            day_of_month=day_of_month,
            day_of_week=day_of_week,
            start_date=start_date,
            end_date=end_date,
            end_after_occurrences=end_after_occurrences,
            next_execution_date=calculate_next_date(
                start_date, frequency, interval, day_of_month, day_of_week
            ),
        )
        await self._storage.save_recurring(recurring)
        logger.info(
            "recurring_template_created",
            recurring_id=str(recurring.id),
            frequency=recurring.frequency.value,
            next_execution_date=recurring.next_execution_date.isoformat(),
        )
        return recurring

    async def update_template(
        self,
        user_id: UUID,
        recurring_id: UUID,
        **changes: Any,
    ) -> RecurringTransaction:
        """
        Update template fields.

        When a schedule field changes, the next execution date is
        recomputed from the last execution (or the start date if the
        template never ran).

        Raises:
            NotFoundError: Unknown template, account or category
            ValueError: Unknown field name
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        recurring = await self._require_template(recurring_id, user_id)

        if changes.get("account_id"):
            await self._require_account(changes["account_id"], user_id)
        if "category_id" in changes:
            await self._require_category(changes["category_id"], user_id)
        if changes.get("amount") is not None:
            changes["amount"] = abs(Decimal(str(changes["amount"])))

        data = {**recurring.model_dump(), **changes}
        if SCHEDULE_FIELDS & set(changes):
            data["next_execution_date"] = calculate_next_date(
                data["last_execution_date"] or data["start_date"],
                data["frequency"],
                data["interval"],
                data["day_of_month"],
                data["day_of_week"],
            )

        # Re-validate the whole template so date and range rules still hold
        updated = RecurringTransaction.model_validate(data)
        return await self._storage.update_recurring(updated)

    async def toggle_template(self, user_id: UUID, recurring_id: UUID) -> RecurringTransaction:
        """Pause an active template or resume a paused one."""
        recurring = await self._require_template(recurring_id, user_id)
        recurring.is_active = not recurring.is_active
        logger.info(
            "recurring_template_toggled",
            recurring_id=str(recurring_id),
            is_active=recurring.is_active,
        )
        return await self._storage.update_recurring(recurring)

    async def deactivate_template(self, user_id: UUID, recurring_id: UUID) -> RecurringTransaction:
        recurring = await self._require_template(recurring_id, user_id)
        recurring.is_active = False
        return await self._storage.update_recurring(recurring)

    async def list_templates(
        self,
        user_id: UUID,
        active: Optional[bool] = None,
    ) -> list[RecurringTransaction]:
        return await self._storage.list_recurring(user_id, active=active)
