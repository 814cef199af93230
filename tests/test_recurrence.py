"""Tests for schedule arithmetic, template management and the scheduler."""

import asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from fintrack.models.audit import AuditEventType
from fintrack.models.ledger import (
    Frequency,
    RecurringTransaction,
    TransactionSource,
    TransactionType,
)
from fintrack.recurrence import (
    RecurrenceScheduler,
    RecurringTemplateService,
    calculate_next_date,
    end_reason,
)
from fintrack.services.storage import NotFoundError


class TestCalculateNextDate:
    """Calendar arithmetic."""

    def test_daily_with_interval(self):
        assert calculate_next_date(datetime(2024, 1, 30), Frequency.DAILY, 3) == datetime(2024, 2, 2)

    def test_weekly(self):
        assert calculate_next_date(datetime(2024, 1, 1), Frequency.WEEKLY, 2) == datetime(2024, 1, 15)

    def test_biweekly_ignores_interval(self):
        assert calculate_next_date(datetime(2024, 1, 1), Frequency.BIWEEKLY, 5) == datetime(2024, 1, 15)

    def test_month_end_clamps_in_leap_year(self):
        assert calculate_next_date(datetime(2024, 1, 31), Frequency.MONTHLY) == datetime(2024, 2, 29)

    def test_month_end_clamps(self):
        assert calculate_next_date(datetime(2023, 1, 31), Frequency.MONTHLY) == datetime(2023, 2, 28)

    def test_day_of_month_is_restored_after_short_month(self):
        assert calculate_next_date(
            datetime(2024, 2, 29), Frequency.MONTHLY, day_of_month=31
        ) == datetime(2024, 3, 31)

    def test_day_of_month_pins(self):
        assert calculate_next_date(
            datetime(2024, 1, 3), Frequency.MONTHLY, day_of_month=15
        ) == datetime(2024, 2, 15)

    def test_quarterly(self):
        assert calculate_next_date(datetime(2024, 11, 30), Frequency.QUARTERLY) == datetime(2025, 2, 28)

    def test_yearly_leap_day(self):
        assert calculate_next_date(datetime(2024, 2, 29), Frequency.YEARLY) == datetime(2025, 2, 28)

    def test_keeps_time_of_day(self):
        assert calculate_next_date(
            datetime(2024, 1, 1, 9, 30), Frequency.DAILY
        ) == datetime(2024, 1, 2, 9, 30)


def template(user_id, account_id, **overrides) -> RecurringTransaction:
    data = dict(
        user_id=user_id,
        account_id=account_id,
        type=TransactionType.EXPENSE,
        amount=Decimal("50.00"),
        description="Gym membership",
        frequency=Frequency.MONTHLY,
        start_date=datetime(2024, 1, 1),
        next_execution_date=datetime(2024, 1, 1),
    )
    data.update(overrides)
    return RecurringTransaction(**data)


class TestEndReason:
    """Pre-check stop conditions."""

    def test_end_date_passed(self):
        recurring = template(uuid4(), uuid4(), end_date=datetime(2024, 1, 10))
        assert end_reason(recurring, datetime(2024, 1, 11)) == "end_date_passed"

    def test_occurrence_limit(self):
        recurring = template(uuid4(), uuid4(), end_after_occurrences=2, occurrence_count=2)
        assert end_reason(recurring, datetime(2024, 1, 11)) == "occurrence_limit_reached"

    def test_still_running(self):
        assert end_reason(template(uuid4(), uuid4()), datetime(2024, 1, 11)) is None


class TestTemplateService:
    """Template CRUD."""

    @pytest.mark.asyncio
    async def test_create(self, storage, user, account):
        service = RecurringTemplateService(storage)
        recurring = await service.create_template(
            user.id,
            account.id,
            type=TransactionType.EXPENSE,
            amount=Decimal("-50"),
            description="Gym",
            frequency=Frequency.MONTHLY,
            start_date=datetime(2024, 1, 31),
        )
        assert recurring.amount == Decimal("50")
        assert recurring.currency == account.currency
        assert recurring.next_execution_date == datetime(2024, 2, 29)

    @pytest.mark.asyncio
    async def test_create_foreign_account(self, storage, user):
        with pytest.raises(NotFoundError):
            await RecurringTemplateService(storage).create_template(
                user.id,
                uuid4(),
                type=TransactionType.EXPENSE,
                amount=Decimal("50"),
                description="Gym",
                frequency=Frequency.MONTHLY,
                start_date=datetime(2024, 1, 1),
            )

    @pytest.mark.asyncio
    async def test_schedule_change_recomputes_next_date(self, storage, user, account):
        service = RecurringTemplateService(storage)
        recurring = await service.create_template(
            user.id,
            account.id,
            type=TransactionType.EXPENSE,
            amount=Decimal("50"),
            description="Gym",
            frequency=Frequency.MONTHLY,
            start_date=datetime(2024, 1, 1),
        )
        updated = await service.update_template(
            user.id, recurring.id, frequency=Frequency.WEEKLY
        )
        assert updated.next_execution_date == datetime(2024, 1, 8)

        # Non-schedule fields leave the date alone
        renamed = await service.update_template(user.id, recurring.id, description="Pool")
        assert renamed.next_execution_date == datetime(2024, 1, 8)
        assert renamed.description == "Pool"

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, storage, user, account):
        service = RecurringTemplateService(storage)
        recurring = await storage.save_recurring(template(user.id, account.id))
        with pytest.raises(ValueError):
            await service.update_template(user.id, recurring.id, occurrence_count=9)

    @pytest.mark.asyncio
    async def test_toggle_and_deactivate(self, storage, user, account):
        service = RecurringTemplateService(storage)
        recurring = await storage.save_recurring(template(user.id, account.id))

        paused = await service.toggle_template(user.id, recurring.id)
        assert paused.is_active is False
        resumed = await service.toggle_template(user.id, recurring.id)
        assert resumed.is_active is True

        await service.deactivate_template(user.id, recurring.id)
        assert await service.list_templates(user.id, active=True) == []
        assert len(await service.list_templates(user.id)) == 1


@pytest.fixture
def scheduler(storage, reconciler, dispatcher, audit_logger, clock):
    return RecurrenceScheduler(
        storage,
        reconciler,
        dispatcher=dispatcher,
        audit_logger=audit_logger,
        clock=clock,
        interval_seconds=0.01,
        run_on_start=True,
    )


class TestScheduler:
    """Materialization and stop conditions."""

    @pytest.mark.asyncio
    async def test_materializes_due_template(self, scheduler, storage, user, account, clock):
        recurring = await storage.save_recurring(template(
            user.id, account.id, next_execution_date=clock.now - timedelta(hours=1)
        ))

        result = await scheduler.run_sweep()

        assert result.materialized == 1
        transaction = (await storage.list_transactions(user.id))[0]
        assert transaction.source == TransactionSource.RECURRING
        assert transaction.is_recurring is True
        assert transaction.recurring_id == recurring.id
        assert transaction.date == clock.now
        assert (await storage.get_account(account.id)).balance == Decimal("-50.00")

        stored = await storage.get_recurring(recurring.id)
        assert stored.occurrence_count == 1
        assert stored.last_execution_date == clock.now
        assert stored.next_execution_date == datetime(2024, 4, 15, 12, 0)

    @pytest.mark.asyncio
    async def test_not_yet_due(self, scheduler, storage, user, account, clock):
        await storage.save_recurring(template(
            user.id, account.id, next_execution_date=clock.now + timedelta(days=1)
        ))
        result = await scheduler.run_sweep()
        assert result.due == 0
        assert await storage.list_transactions(user.id) == []

    @pytest.mark.asyncio
    async def test_end_after_occurrences(self, scheduler, storage, user, account, clock):
        recurring = await storage.save_recurring(template(
            user.id,
            account.id,
            frequency=Frequency.DAILY,
            next_execution_date=clock.now,
            end_after_occurrences=3,
        ))

        for _ in range(5):
            await scheduler.run_sweep()
            clock.now += timedelta(days=1)

        transactions = await storage.list_transactions(user.id)
        assert len(transactions) == 3
        stored = await storage.get_recurring(recurring.id)
        assert stored.occurrence_count == 3
        assert stored.is_active is False
        assert (await storage.get_account(account.id)).balance == Decimal("-150.00")

    @pytest.mark.asyncio
    async def test_end_date_stops_after_last_occurrence(
        self, scheduler, storage, user, account, clock
    ):
        recurring = await storage.save_recurring(template(
            user.id,
            account.id,
            frequency=Frequency.DAILY,
            next_execution_date=clock.now,
            end_date=clock.now + timedelta(hours=12),
        ))

        await scheduler.run_sweep()

        stored = await storage.get_recurring(recurring.id)
        assert stored.occurrence_count == 1
        assert stored.is_active is False

    @pytest.mark.asyncio
    async def test_expired_template_is_stopped_without_transaction(
        self, scheduler, storage, user, account, clock, audit_storage
    ):
        recurring = await storage.save_recurring(template(
            user.id,
            account.id,
            next_execution_date=clock.now - timedelta(days=1),
            end_date=clock.now - timedelta(days=2),
        ))

        result = await scheduler.run_sweep()

        assert result.stopped == 1
        assert result.materialized == 0
        assert await storage.list_transactions(user.id) == []
        assert (await storage.get_recurring(recurring.id)).is_active is False
        assert any(
            e.event_type == AuditEventType.RECURRING_STOPPED for e in audit_storage.events
        )

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, scheduler, storage, user, account, clock):
        # Account missing: this template fails, the other one still runs
        broken = await storage.save_recurring(template(
            user.id, uuid4(), next_execution_date=clock.now - timedelta(hours=2)
        ))
        healthy = await storage.save_recurring(template(
            user.id, account.id, next_execution_date=clock.now - timedelta(hours=1)
        ))

        result = await scheduler.run_sweep()

        assert result.failed == 1
        assert result.materialized == 1
        assert (await storage.get_recurring(healthy.id)).occurrence_count == 1
        assert (await storage.get_recurring(broken.id)).occurrence_count == 0

    @pytest.mark.asyncio
    async def test_start_and_stop(self, scheduler, storage, user, account, clock):
        await storage.save_recurring(template(
            user.id, account.id, next_execution_date=clock.now
        ))

        task = scheduler.start()
        assert scheduler.start() is task
        assert scheduler.is_running

        # Let the startup sweep run
        for _ in range(50):
            if await storage.list_transactions(user.id):
                break
            await asyncio.sleep(0.01)

        await scheduler.stop()

        assert not scheduler.is_running
        assert task.done()
        assert len(await storage.list_transactions(user.id)) == 1

    @pytest.mark.asyncio
    async def test_stop_when_not_started(self, scheduler):
        await scheduler.stop()
        assert not scheduler.is_running
