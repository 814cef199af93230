"""Tests for account management and engine wiring."""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from fintrack.config import AppSettings, get_settings
from fintrack.models.ledger import AccountType, Frequency, TransactionType, User
from fintrack.orchestrator import TransactionFlow, create_engine_components
from fintrack.services.storage import InMemoryLedgerStorage, NotFoundError


@pytest.fixture
def flow(storage, reconciler, audit_logger):
    return TransactionFlow(storage, reconciler, audit_logger=audit_logger)


class TestAccounts:
    """Opening and switching off accounts."""

    @pytest.mark.asyncio
    async def test_open_account_starts_at_zero(self, flow, user):
        account = await flow.open_account(
            user.id, "Savings", account_type=AccountType.SAVINGS, currency="USD"
        )
        assert account.balance == Decimal("0")
        assert account.currency == "USD"
        assert account.is_active is True

    @pytest.mark.asyncio
    async def test_deactivate_keeps_the_account(self, flow, storage, user, account):
        await flow.deactivate_account(user.id, account.id)

        stored = await storage.get_account(account.id)
        assert stored is not None
        assert stored.is_active is False

    @pytest.mark.asyncio
    async def test_deactivate_foreign_account(self, flow, user):
        with pytest.raises(NotFoundError):
            await flow.deactivate_account(user.id, uuid4())


@pytest.fixture
def engine(monkeypatch, notifier, clock):
    monkeypatch.setenv("STORAGE_BACKEND", "memory")
    get_settings.cache_clear()
    yield create_engine_components(notifier=notifier, clock=clock)
    get_settings.cache_clear()


class TestEngineComponents:
    """create_engine_components() wiring."""

    def test_memory_backend(self, engine):
        assert isinstance(engine.storage, InMemoryLedgerStorage)
        assert engine.audit_logger is not None

    @pytest.mark.asyncio
    async def test_end_to_end(self, engine, notifier, clock):
        user = await engine.storage.save_user(User(email="ada@example.com"))
        account = await engine.transactions.open_account(user.id, "Main")

        await engine.templates.create_template(
            user.id,
            account.id,
            type=TransactionType.EXPENSE,
            amount=Decimal("30"),
            description="Phone plan",
            frequency=Frequency.MONTHLY,
            start_date=clock.now - timedelta(days=31),
        )
        result = await engine.scheduler.run_sweep()
        await engine.shutdown()

        assert result.materialized == 1
        assert (await engine.storage.get_account(account.id)).balance == Decimal("-30")
        assert engine.dispatcher.pending == 0


class TestLoggingSettings:
    """Log level selection."""

    def test_debug_mode_forces_debug(self):
        assert AppSettings(debug_mode=True, log_level="WARNING").effective_log_level == "DEBUG"

    def test_log_level_used_otherwise(self):
        assert AppSettings(log_level="warning").effective_log_level == "WARNING"
