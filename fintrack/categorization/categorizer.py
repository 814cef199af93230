"""
Rule-Based Categorizer

DESIGN DECISION: Categorization is deterministic.
The same draft, rule table and category set always produce the same
category and confidence. There is no learning and no external call.

Priority order:
1. Income draft and the user owns an income category named "Salary" -> 0.8
2. Text contains an income keyword -> that rule's income category -> 0.75
3. Best scoring expense rule (matches / keywords) -> 0.7..0.85
4. Fallback category ("Other Expense" / "Other Income") -> 0.3

A user picking a category by hand always yields confidence 1.0.
"""

from typing import Iterable, Optional
from uuid import UUID

import structlog

from fintrack.categorization.rules import RuleTable, load_rules
from fintrack.models.ledger import (
    CategorizationResult,
    Category,
    DraftTransaction,
    TransactionType,
)
from fintrack.services.storage import LedgerStorageInterface


logger = structlog.get_logger(__name__)

SALARY_CONFIDENCE = 0.8
INCOME_KEYWORD_CONFIDENCE = 0.75
RULE_BASE_CONFIDENCE = 0.7
RULE_SCORE_WEIGHT = 0.2
RULE_MAX_CONFIDENCE = 0.85
FALLBACK_CONFIDENCE = 0.3
MANUAL_CONFIDENCE = 1.0


# (name, type, icon, color)
DEFAULT_CATEGORIES = [
    ("Salary", TransactionType.INCOME, "💼", "#10b981"),
    ("Freelance", TransactionType.INCOME, "💻", "#059669"),
    ("Investment", TransactionType.INCOME, "📈", "#34d399"),
    ("Other Income", TransactionType.INCOME, "💰", "#6ee7b7"),
    ("Housing", TransactionType.EXPENSE, "🏠", "#ef4444"),
    ("Transportation", TransactionType.EXPENSE, "🚗", "#f97316"),
    ("Food & Dining", TransactionType.EXPENSE, "🍔", "#f59e0b"),
    ("Groceries", TransactionType.EXPENSE, "🛒", "#eab308"),
    ("Shopping", TransactionType.EXPENSE, "🛍️", "#a855f7"),
    ("Entertainment", TransactionType.EXPENSE, "🎬", "#ec4899"),
    ("Health & Fitness", TransactionType.EXPENSE, "💪", "#14b8a6"),
    ("Utilities", TransactionType.EXPENSE, "💡", "#06b6d4"),
    ("Insurance", TransactionType.EXPENSE, "🛡️", "#3b82f6"),
    ("Education", TransactionType.EXPENSE, "📚", "#6366f1"),
    ("Subscriptions", TransactionType.EXPENSE, "📱", "#8b5cf6"),
    ("Travel", TransactionType.EXPENSE, "✈️", "#d946ef"),
    ("Other Expense", TransactionType.EXPENSE, "💸", "#64748b"),
]


async def seed_default_categories(
    storage: LedgerStorageInterface,
    user_id: UUID,
) -> list[Category]:
    """
    Create the default category set for a user.

    Names the user already owns are skipped, so seeding twice is harmless.
    """
    owned = {c.name for c in await storage.list_categories(user_id)}
    categories = [
        Category(
            user_id=user_id,
            name=name,
            type=category_type,
            icon=icon,
            color=color,
            is_default=True,
        )
        for name, category_type, icon, color in DEFAULT_CATEGORIES
        if name not in owned
    ]
    if categories:
        await storage.create_categories(categories)
        logger.info("default_categories_seeded", user_id=str(user_id), count=len(categories))
    return categories


def _find(
    categories: list[Category],
    name: str,
    category_type: Optional[TransactionType] = None,
) -> Optional[Category]:
    for category in categories:
        if category.name == name and (category_type is None or category.type == category_type):
            return category
    return None


class Categorizer:
    """Applies a RuleTable to drafts."""

    def __init__(self, rules: Optional[RuleTable] = None):
        self._rules = rules or load_rules()

    @property
    def rules(self) -> RuleTable:
        return self._rules

    @staticmethod
    def _result(
        category: Optional[Category],
        confidence: float,
        rule: str,
    ) -> CategorizationResult:
        return CategorizationResult(
            category_id=category.id if category else None,
            category_name=category.name if category else None,
            confidence=confidence,
            rule=rule,
        )

    def _income_keyword(
        self,
        text: str,
        categories: list[Category],
    ) -> Optional[Category]:
        for rule in self._rules.income_rules:
            if not rule.matches(text):
                continue
            return (
                _find(categories, rule.category, TransactionType.INCOME)
                or _find(categories, self._rules.income_fallback, TransactionType.INCOME)
                or next((c for c in categories if c.type == TransactionType.INCOME), None)
            )
        return None

    def categorize(
        self,
        draft: DraftTransaction,
        categories: Iterable[Category],
    ) -> CategorizationResult:
        """Pick a category for `draft` among the user's `categories`."""
        categories = list(categories)

        # 1. Income with a Salary category
        if draft.type == TransactionType.INCOME:
            salary = _find(categories, self._rules.salary_category, TransactionType.INCOME)
            if salary:
                return self._result(salary, SALARY_CONFIDENCE, "salary")

        text = f"{draft.description} {draft.merchant_name or ''}".lower()

        # 2. Income keywords
        income_category = self._income_keyword(text, categories)
        if income_category:
            return self._result(income_category, INCOME_KEYWORD_CONFIDENCE, "income_keyword")

        # 3. Expense keyword scoring; strict > keeps the first rule on ties
        best_rule = None
        best_score = 0.0
        for rule in self._rules.expense_rules:
            score = rule.score(text)
            if score > best_score:
                best_rule, best_score = rule, score

        if best_rule:
            category = _find(categories, best_rule.category)
            if category:
                confidence = min(
                    RULE_MAX_CONFIDENCE,
                    RULE_BASE_CONFIDENCE + best_score * RULE_SCORE_WEIGHT,
                )
                return self._result(category, confidence, f"keyword:{best_rule.category}")

        # 4. Fallback
        if draft.type == TransactionType.INCOME:
            fallback = _find(categories, self._rules.income_fallback, TransactionType.INCOME)
        else:
            fallback = _find(categories, self._rules.expense_fallback, TransactionType.EXPENSE)
        return self._result(fallback, FALLBACK_CONFIDENCE, "fallback")

    @staticmethod
    def manual(category: Category) -> CategorizationResult:
        """A category chosen by the user."""
        return CategorizationResult(
            category_id=category.id,
            category_name=category.name,
            confidence=MANUAL_CONFIDENCE,
            rule="manual",
        )
