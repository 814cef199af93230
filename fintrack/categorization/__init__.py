"""Transaction categorization package."""

from fintrack.categorization.categorizer import (
    DEFAULT_CATEGORIES,
    Categorizer,
    seed_default_categories,
)
from fintrack.categorization.rules import KeywordRule, RuleTable, load_rules

__all__ = [
    "DEFAULT_CATEGORIES",
    "Categorizer",
    "KeywordRule",
    "RuleTable",
    "load_rules",
    "seed_default_categories",
]
