"""
Keyword Rule Table

Categorization rules are data, not code. The packaged table lives in
default_rules.json; a deployment can point `categorization_rules_path`
at its own file with the same shape.
"""

import json
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator


DEFAULT_RULES_PATH = Path(__file__).with_name("default_rules.json")


class KeywordRule(BaseModel):
    """Keywords that point at one category name."""

    category: str = Field(..., min_length=1)
    keywords: list[str] = Field(..., min_length=1)

    @field_validator("keywords")
    @classmethod
    def lowercase_keywords(cls, v: list[str]) -> list[str]:
        keywords = [kw.strip().lower() for kw in v if kw.strip()]
        if not keywords:
            raise ValueError("A rule needs at least one non-blank keyword")
        return keywords

    def matches(self, text: str) -> int:
        """Number of this rule's keywords found in `text`."""
        return sum(1 for keyword in self.keywords if keyword in text)

    def score(self, text: str) -> float:
        return self.matches(text) / len(self.keywords)


class RuleTable(BaseModel):
    """
    Ordered rule set.

    Order matters: ties between expense rules go to the rule declared
    first, and the first matching income rule wins.
    """

    salary_category: str = "Salary"
    income_fallback: str = "Other Income"
    expense_fallback: str = "Other Expense"
    income_rules: list[KeywordRule] = Field(default_factory=list)
    expense_rules: list[KeywordRule] = Field(default_factory=list)


def load_rules(path: Optional[str] = None) -> RuleTable:
    """
    Load a rule table from JSON.

    Args:
        path: Custom rules file. The packaged defaults are used when None.
    """
    rules_path = Path(path) if path else DEFAULT_RULES_PATH
    with rules_path.open(encoding="utf-8") as f:
        return RuleTable.model_validate(json.load(f))
