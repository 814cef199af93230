"""Tests for the rule-based categorizer."""

import json
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

import pytest

from fintrack.categorization import (
    Categorizer,
    DEFAULT_CATEGORIES,
    load_rules,
    seed_default_categories,
)
from fintrack.models.ledger import Category, DraftTransaction, TransactionType


def draft(description: str, transaction_type=TransactionType.EXPENSE, merchant=None):
    return DraftTransaction(
        date=datetime(2024, 1, 5),
        description=description,
        amount=Decimal("10.00"),
        type=transaction_type,
        merchant_name=merchant,
    )


def make_categories(*names_and_types):
    user_id = uuid4()
    return [
        Category(user_id=user_id, name=name, type=category_type)
        for name, category_type in names_and_types
    ]


@pytest.fixture
def categorizer():
    return Categorizer()


@pytest.fixture
def default_categories():
    user_id = uuid4()
    return [
        Category(user_id=user_id, name=name, type=category_type)
        for name, category_type, _, _ in DEFAULT_CATEGORIES
    ]


class TestPriorities:
    """Each priority level, highest first."""

    def test_income_goes_to_salary(self, categorizer, default_categories):
        result = categorizer.categorize(
            draft("Transfer from ACME", TransactionType.INCOME), default_categories
        )
        assert result.category_name == "Salary"
        assert result.confidence == 0.8
        assert result.rule == "salary"

    def test_income_keyword_without_salary_category(self, categorizer):
        categories = make_categories(
            ("Investment", TransactionType.INCOME),
            ("Other Income", TransactionType.INCOME),
        )
        result = categorizer.categorize(
            draft("Dividend payout", TransactionType.INCOME), categories
        )
        assert result.category_name == "Investment"
        assert result.confidence == 0.75
        assert result.rule == "income_keyword"

    def test_income_keyword_falls_back_to_other_income(self, categorizer):
        categories = make_categories(("Other Income", TransactionType.INCOME))
        result = categorizer.categorize(
            draft("Interest credit", TransactionType.INCOME), categories
        )
        assert result.category_name == "Other Income"
        assert result.confidence == 0.75

    def test_expense_keyword(self, categorizer, default_categories):
        result = categorizer.categorize(draft("LIDL 1234 PARIS"), default_categories)
        assert result.category_name == "Groceries"
        assert result.rule == "keyword:Groceries"
        # 0.7 + (1/7) * 0.2
        assert result.confidence == pytest.approx(0.7 + 0.2 / 7)

    def test_merchant_name_is_searched(self, categorizer, default_categories):
        result = categorizer.categorize(
            draft("CARD 4411", merchant="Starbucks"), default_categories
        )
        assert result.category_name == "Food & Dining"

    def test_higher_score_wins(self, categorizer, default_categories):
        # Entertainment 1/6 vs Subscriptions 1/5
        result = categorizer.categorize(draft("NETFLIX.COM"), default_categories)
        assert result.category_name == "Subscriptions"

    def test_tie_goes_to_first_rule(self, categorizer, default_categories):
        # "uber eats" scores 1/8 for Food & Dining, "uber" 1/8 for Transportation
        result = categorizer.categorize(draft("Uber Eats order"), default_categories)
        assert result.category_name == "Food & Dining"
        assert result.confidence == pytest.approx(0.725)

    def test_confidence_is_capped(self):
        rules = load_rules()
        rules.expense_rules[0].keywords = ["pizza"]
        categories = make_categories(("Food & Dining", TransactionType.EXPENSE))
        result = Categorizer(rules).categorize(draft("Pizza Hut"), categories)
        assert result.confidence == 0.85

    def test_missing_rule_category_falls_through(self, categorizer):
        categories = make_categories(("Other Expense", TransactionType.EXPENSE))
        result = categorizer.categorize(draft("Lidl"), categories)
        assert result.category_name == "Other Expense"
        assert result.confidence == 0.3
        assert result.rule == "fallback"

    def test_fallback_income(self, categorizer):
        categories = make_categories(("Other Income", TransactionType.INCOME))
        result = categorizer.categorize(
            draft("Transfer from Bob", TransactionType.INCOME), categories
        )
        assert result.category_name == "Other Income"
        assert result.confidence == 0.3

    def test_no_categories_at_all(self, categorizer):
        result = categorizer.categorize(draft("Something"), [])
        assert result.category_id is None
        assert result.confidence == 0.3

    def test_manual(self):
        category = make_categories(("Travel", TransactionType.EXPENSE))[0]
        result = Categorizer.manual(category)
        assert result.category_id == category.id
        assert result.confidence == 1.0


class TestDeterminism:
    """The same input always yields the same output."""

    def test_repeatable(self, categorizer, default_categories):
        results = {
            categorizer.categorize(draft("Amazon Marketplace"), default_categories).category_id
            for _ in range(5)
        }
        assert len(results) == 1


class TestRuleLoading:
    """Tests for rule tables as data."""

    def test_default_table_order(self):
        rules = load_rules()
        assert [r.category for r in rules.income_rules] == ["Salary", "Investment", "Other Income"]
        assert rules.expense_rules[0].category == "Food & Dining"
        assert rules.expense_rules[-1].category == "Subscriptions"

    def test_custom_rules_file(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({
            "expense_rules": [{"category": "Pets", "keywords": ["VET", "Pet Food"]}],
        }))
        rules = load_rules(str(path))
        assert rules.expense_rules[0].keywords == ["vet", "pet food"]
        assert rules.expense_fallback == "Other Expense"


class TestSeeding:
    """Tests for the default category set."""

    @pytest.mark.asyncio
    async def test_seed_is_idempotent(self, storage):
        user_id = uuid4()
        first = await seed_default_categories(storage, user_id)
        second = await seed_default_categories(storage, user_id)

        assert len(first) == len(DEFAULT_CATEGORIES)
        assert second == []
        assert len(await storage.list_categories(user_id)) == len(DEFAULT_CATEGORIES)
