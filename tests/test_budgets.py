"""Tests for budget spend, alert hysteresis and budget management."""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

import pytest

from fintrack.budgets import BudgetService, budget_percentage, period_label
from fintrack.models.audit import AuditEventType
from fintrack.models.ledger import (
    Budget,
    BudgetPeriod,
    Category,
    Transaction,
    TransactionType,
    User,
)
from fintrack.services.notifications import BudgetAlert, LoggingBudgetNotifier
from fintrack.services.storage import NotFoundError


MARCH = datetime(2024, 3, 1)


@pytest.fixture
def service(storage, evaluator):
    return BudgetService(storage, evaluator)


async def spend(storage, user, account, category, amount, day=5, transaction_type=TransactionType.EXPENSE):
    transaction = Transaction(
        user_id=user.id,
        account_id=account.id,
        category_id=category.id if category else None,
        type=transaction_type,
        amount=Decimal(amount),
        date=datetime(2024, 3, day),
        description="Purchase",
    )
    return await storage.insert_transaction(transaction)


class TestPercentage:
    """spent / amount arithmetic."""

    def test_regular(self):
        assert budget_percentage(Decimal("85"), Decimal("100")) == 85.0

    def test_zero_budget_with_spend(self):
        assert budget_percentage(Decimal("1"), Decimal("0")) == 100.0

    def test_zero_budget_without_spend(self):
        assert budget_percentage(Decimal("0"), Decimal("0")) == 0.0

    def test_period_label(self):
        assert period_label(1) == BudgetPeriod.MONTHLY
        assert period_label(11) == BudgetPeriod.MONTHLY
        assert period_label(12) == BudgetPeriod.YEARLY


class TestHysteresis:
    """The alert latch."""

    @pytest.mark.asyncio
    async def test_alert_once_then_reset_then_again(
        self, service, evaluator, storage, notifier, user, account, categories
    ):
        groceries = categories["Groceries"]
        budget = await service.create_budget(user.id, "Groceries", Decimal("100"), 1, start_date=MARCH)

        first = await spend(storage, user, account, groceries, "70")
        assert (await evaluator.evaluate(user.id))[0].action == "none"
        assert notifier.sent == []

        await spend(storage, user, account, groceries, "15", day=6)
        assert (await evaluator.evaluate(user.id))[0].action == "alert_sent"
        assert len(notifier.sent) == 1
        assert (await storage.get_budget(budget.id)).alert_sent is True

        # Still above: no second alert
        assert (await evaluator.evaluate(user.id))[0].action == "none"
        assert len(notifier.sent) == 1

        # 15 + 45 = 60%
        await storage.delete_transaction(first.id)
        await spend(storage, user, account, groceries, "45", day=9)
        assert (await evaluator.evaluate(user.id))[0].action == "alert_reset"
        assert (await storage.get_budget(budget.id)).alert_sent is False

        await spend(storage, user, account, groceries, "25", day=10)
        assert (await evaluator.evaluate(user.id))[0].action == "alert_sent"
        assert len(notifier.sent) == 2

    @pytest.mark.asyncio
    async def test_failed_delivery_keeps_latch_open(
        self, service, evaluator, storage, notifier, user, account, categories, audit_storage
    ):
        budget = await service.create_budget(user.id, "Groceries", Decimal("100"), 1, start_date=MARCH)
        await spend(storage, user, account, categories["Groceries"], "90")

        notifier.fail = True
        assert (await evaluator.evaluate(user.id))[0].action == "alert_failed"
        assert (await storage.get_budget(budget.id)).alert_sent is False
        assert any(
            e.event_type == AuditEventType.BUDGET_ALERT_FAILED for e in audit_storage.events
        )

        notifier.fail = False
        assert (await evaluator.evaluate(user.id))[0].action == "alert_sent"
        assert (await storage.get_budget(budget.id)).alert_sent is True

    @pytest.mark.asyncio
    async def test_missing_address(self, service, evaluator, storage, notifier, account, categories, user):
        await storage.save_user(User(id=user.id, email=None))
        budget = await service.create_budget(user.id, "Groceries", Decimal("10"), 1, start_date=MARCH)
        await spend(storage, user, account, categories["Groceries"], "20")

        assert (await evaluator.evaluate(user.id))[0].action == "alert_failed"
        assert notifier.sent == []
        assert (await storage.get_budget(budget.id)).alert_sent is False

    @pytest.mark.asyncio
    async def test_alert_content(self, service, evaluator, storage, notifier, user, account, categories):
        await service.create_budget(user.id, "Groceries", Decimal("200"), 1, start_date=MARCH)
        await spend(storage, user, account, categories["Groceries"], "170")

        await evaluator.evaluate(user.id)

        alert = notifier.sent[0]
        assert alert.recipient == "ada@example.com"
        assert alert.category_name == "Groceries"
        assert alert.percentage == 85.0
        assert alert.remaining == Decimal("30")
        assert "85%" in alert.subject


class TestSpend:
    """What counts towards a budget."""

    @pytest.mark.asyncio
    async def test_only_expenses_in_window(self, service, evaluator, storage, user, account, categories):
        groceries = categories["Groceries"]
        budget = await service.create_budget(user.id, "Groceries", Decimal("100"), 1, start_date=MARCH)

        await spend(storage, user, account, groceries, "10")
        await spend(storage, user, account, groceries, "99", transaction_type=TransactionType.INCOME)
        await spend(storage, user, account, categories["Travel"], "50")
        await storage.insert_transaction(Transaction(
            user_id=user.id,
            account_id=account.id,
            category_id=groceries.id,
            type=TransactionType.EXPENSE,
            amount=Decimal("40"),
            date=datetime(2024, 2, 28),
            description="Before the window",
        ))

        spent, name = await evaluator.calculate_spent(budget)
        assert spent == Decimal("10")
        assert name == "Groceries"

    @pytest.mark.asyncio
    async def test_window_ends_now(self, service, evaluator, storage, user, account, categories, clock):
        budget = await service.create_budget(user.id, "Groceries", Decimal("100"), 1, start_date=MARCH)
        await spend(storage, user, account, categories["Groceries"], "10", day=20)

        # The clock sits on 15 March
        spent, _ = await evaluator.calculate_spent(budget)
        assert spent == Decimal("0")

    @pytest.mark.asyncio
    async def test_categories_matched_by_name(self, service, evaluator, storage, user, account, categories):
        twin = Category(user_id=user.id, name="Groceries", type=TransactionType.EXPENSE)
        await storage.create_categories([twin])
        budget = await service.create_budget(user.id, "Groceries", Decimal("100"), 1, start_date=MARCH)

        await spend(storage, user, account, categories["Groceries"], "10")
        await spend(storage, user, account, twin, "5")

        spent, _ = await evaluator.calculate_spent(budget)
        assert spent == Decimal("15")

    @pytest.mark.asyncio
    async def test_global_budget(self, service, evaluator, storage, user, account, categories):
        await storage.create_categories([
            Category(user_id=user.id, name="Global", type=TransactionType.EXPENSE)
        ])
        budget = await service.create_budget(user.id, "Global", Decimal("100"), 1, start_date=MARCH)

        await spend(storage, user, account, categories["Groceries"], "10")
        await spend(storage, user, account, categories["Travel"], "20")
        await spend(storage, user, account, None, "5")

        spent, _ = await evaluator.calculate_spent(budget)
        assert spent == Decimal("35")

    @pytest.mark.asyncio
    async def test_inactive_and_out_of_window_budgets_are_skipped(
        self, evaluator, storage, user, categories
    ):
        await storage.save_budget(Budget(
            user_id=user.id,
            category_id=categories["Groceries"].id,
            amount=Decimal("1"),
            start_date=MARCH,
            is_active=False,
        ))
        await storage.save_budget(Budget(
            user_id=user.id,
            category_id=categories["Groceries"].id,
            amount=Decimal("1"),
            start_date=datetime(2024, 1, 1),
            end_date=datetime(2024, 2, 1),
        ))
        assert await evaluator.evaluate(user.id) == []


class TestBudgetService:
    """Budget management."""

    @pytest.mark.asyncio
    async def test_create_from_months(self, service, user, categories):
        budget = await service.create_budget(
            user.id, "Travel", Decimal("1200"), 12, start_date=datetime(2024, 1, 31)
        )
        assert budget.period == BudgetPeriod.YEARLY
        assert budget.end_date == datetime(2025, 1, 31)
        assert budget.category_id == categories["Travel"].id

        short = await service.create_budget(
            user.id, "Travel", Decimal("100"), 1, start_date=datetime(2024, 1, 31)
        )
        assert short.period == BudgetPeriod.MONTHLY
        assert short.end_date == datetime(2024, 2, 29)

    @pytest.mark.asyncio
    async def test_unknown_category_name(self, service, user, categories):
        with pytest.raises(NotFoundError):
            await service.create_budget(user.id, "Yachts", Decimal("100"), 1)

    @pytest.mark.asyncio
    async def test_update_recomputes_window(self, service, user, categories):
        budget = await service.create_budget(user.id, "Travel", Decimal("100"), 1, start_date=MARCH)
        updated = await service.update_budget(user.id, budget.id, period_months=3)
        assert updated.end_date == datetime(2024, 6, 1)

    @pytest.mark.asyncio
    async def test_statuses(self, service, storage, user, account, categories):
        await service.create_budget(user.id, "Groceries", Decimal("100"), 1, start_date=MARCH)
        await spend(storage, user, account, categories["Groceries"], "25")

        status = (await service.list_budget_statuses(user.id))[0]
        assert status.spent == Decimal("25")
        assert status.remaining == Decimal("75")
        assert status.percentage == 25.0

    @pytest.mark.asyncio
    async def test_delete(self, service, storage, user, categories):
        budget = await service.create_budget(user.id, "Travel", Decimal("100"), 1, start_date=MARCH)
        await service.delete_budget(user.id, budget.id)
        assert await storage.get_budget(budget.id) is None

        with pytest.raises(NotFoundError):
            await service.delete_budget(user.id, uuid4())


class TestLoggingNotifier:
    """The fallback channel."""

    @pytest.mark.asyncio
    async def test_reports_delivery(self):
        alert = BudgetAlert(
            budget_id=uuid4(),
            user_id=uuid4(),
            recipient="ada@example.com",
            category_name="Groceries",
            spent=Decimal("90"),
            budget_amount=Decimal("100"),
            percentage=90.0,
        )
        assert await LoggingBudgetNotifier().send_budget_alert(alert) is True
        assert "Remaining: 10.00 EUR" in alert.body()
