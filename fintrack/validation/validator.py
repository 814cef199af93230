"""
Two-Stage Validation Pipeline

DESIGN DECISION: Validation happens in two distinct stages:

STAGE 1 - SCHEMA VALIDATION:
- Required field presence
- Type and range checks (amount >= 0, ISO currency code, parsable date)
- Delegated to the DraftTransaction model; pydantic errors become issues

STAGE 2 - SEMANTIC VALIDATION:
- Future date detection (beyond the configured tolerance)
- Absurd amount detection
- Zero amount detection
- These are WARNINGS: a plausible-but-odd row is still a real row

Stage 2 only runs when stage 1 produced a draft.

IMPORTANT: Validation NEVER silently fixes issues.
Errors reject the row (import) or raise ValidationError (manual entry).
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional, Union

import structlog
from pydantic import ValidationError as PydanticValidationError

from fintrack.config import AppSettings, get_settings
from fintrack.models.ledger import (
    DraftTransaction,
    ValidationIssue,
    ValidationResult,
    utcnow,
)


logger = structlog.get_logger(__name__)


class ValidationError(Exception):
    """A transaction payload failed schema validation."""

    def __init__(self, message: str, issues: Optional[list[ValidationIssue]] = None):
        super().__init__(message)
        self.issues = issues or []


class TransactionValidator:
    """
    Validates transaction payloads through a two-stage pipeline.

    Stage 1: Schema validation (builds the DraftTransaction)
    Stage 2: Semantic validation (plausibility warnings)
    """

    def __init__(
        self,
        app_settings: Optional[AppSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._settings = app_settings or get_settings().app
        self._clock = clock

    def _validate_schema(
        self,
        payload: Union[dict, DraftTransaction],
    ) -> tuple[Optional[DraftTransaction], list[ValidationIssue]]:
        """
        Stage 1: Schema validation.

        Returns: (draft or None, list_of_issues)
        """
        if isinstance(payload, DraftTransaction):
            return payload, []

        data = dict(payload)
        data.setdefault("currency", self._settings.default_currency)

        try:
            return DraftTransaction.model_validate(data), []
        except PydanticValidationError as e:
            issues = []
            for error in e.errors():
                field = ".".join(str(part) for part in error["loc"]) or "transaction"
                issues.append(ValidationIssue(
                    field=field,
                    issue_type="missing" if error["type"] == "missing" else "invalid_value",
                    message=f"{field}: {error['msg']}",
                    severity="error",
                ))
            return None, issues

    def _validate_semantic(
        self,
        draft: DraftTransaction,
    ) -> tuple[bool, list[ValidationIssue]]:
        """
        Stage 2: Semantic validation.

        Returns: (is_valid, list_of_issues)
        """
        issues = []

        max_future = self._clock() + timedelta(days=self._settings.future_date_tolerance_days)
        if draft.date > max_future:
            issues.append(ValidationIssue(
                field="date",
                issue_type="future_date",
                message=f"Transaction date ({draft.date.date()}) is in the future",
                severity="warning",
            ))

        max_amount = Decimal(str(self._settings.max_transaction_amount))
        if draft.amount > max_amount:
            issues.append(ValidationIssue(
                field="amount",
                issue_type="suspicious_value",
                message=f"Amount ({draft.amount:,.2f}) seems unusually high",
                severity="warning",
            ))

        if draft.amount == 0:
            issues.append(ValidationIssue(
                field="amount",
                issue_type="suspicious_value",
                message="Amount is zero",
                severity="warning",
            ))

        is_valid = not any(issue.severity == "error" for issue in issues)
        return is_valid, issues

    def validate(
        self,
        payload: Union[dict, DraftTransaction],
    ) -> tuple[ValidationResult, Optional[DraftTransaction]]:
        """
        Run full two-stage validation pipeline.

        Args:
            payload: Raw field mapping (manual entry) or a normalized draft

        Returns:
            The ValidationResult and the draft (None when stage 1 failed)
        """
        draft, issues = self._validate_schema(payload)
        schema_valid = draft is not None

        # Only run stage 2 if stage 1 passes
        semantic_valid = False
        if schema_valid:
            semantic_valid, semantic_issues = self._validate_semantic(draft)
            issues.extend(semantic_issues)

        result = ValidationResult(
            schema_valid=schema_valid,
            semantic_valid=semantic_valid,
            issues=issues,
        )

        if result.warnings:
            logger.info(
                "transaction_validation_warnings",
                warnings=result.warnings,
                row_number=draft.row_number if draft else None,
            )

        return result, draft

    def require_valid(self, payload: Union[dict, DraftTransaction]) -> DraftTransaction:
        """
        Validate and return the draft.

        Raises:
            ValidationError: If either stage reported an error
        """
        result, draft = self.validate(payload)
        if not result.is_valid:
            raise ValidationError(result.error_message(), result.issues)
        return draft
