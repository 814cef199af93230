"""
Statement Normalizer

Turns bank export files and external-feed records into DraftTransactions.

DESIGN DECISION: Parsing is split from mapping.
- parse_file() only turns bytes into header -> value records
- detect_bank_format() picks a dialect from the header row
- normalize_rows() maps each record, collecting bad rows instead of
  aborting the batch

A whole-file problem (wrong type, too large, unreadable, empty) raises
ImportFileError. A single bad row becomes a RowError and the batch
continues.
"""

import re
import zipfile
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from io import BytesIO
from typing import Any, Iterable, Optional

import pandas as pd
import structlog
from dateutil import parser as date_parser
from openpyxl.utils.exceptions import InvalidFileException

from fintrack.config import get_settings
from fintrack.models.ledger import (
    MERCHANT_NAME_MAX_LENGTH,
    BankFormat,
    DraftTransaction,
    RowError,
    TransactionType,
)


logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")

SPREADSHEET_FORMATS = {"xlsx", "xlsm"}

# Header candidates, tried as exact matches first, then as substrings
DATE_COLUMNS = ["date", "transaction date", "datetime", "booking date"]
DESCRIPTION_COLUMNS = ["description", "label", "details", "memo", "payee"]
AMOUNT_COLUMNS = ["amount", "value", "amt"]
CURRENCY_COLUMNS = ["currency"]
MERCHANT_COLUMNS = ["merchant name", "merchant"]
FEE_COLUMNS = ["fee"]

REVOLUT_MARKERS = ("completed date", "started date")


class ImportFileError(Exception):
    """The uploaded file cannot be used at all."""
    pass


# =============================================================================
# FILE PARSING
# =============================================================================

def _extension(filename: str) -> str:
    return filename.rsplit(".", 1)[-1].lower() if "." in filename else ""


def parse_file(
    content: bytes,
    filename: str,
    max_size_bytes: Optional[int] = None,
    supported_formats: Optional[Iterable[str]] = None,
) -> list[dict[str, str]]:
    """
    Parse a statement export into a list of header -> value records.

    Delimited text (.csv, .txt) has its delimiter sniffed; spreadsheets
    (.xlsx, .xlsm) are read with openpyxl. All cells come back as strings,
    blank cells as "".

    Raises:
        ImportFileError: Unsupported type, oversize, unreadable or empty file
    """
    app_settings = get_settings().app
    if max_size_bytes is None:
        max_size_bytes = app_settings.max_upload_size_bytes
    formats = set(supported_formats or app_settings.supported_formats_list)

    ext = _extension(filename)
    if ext not in formats:
        raise ImportFileError(f"Unsupported file format: {ext or filename}")

    if len(content) > max_size_bytes:
        raise ImportFileError(
            f"File too large: {len(content)} bytes (limit {max_size_bytes})"
        )

    if not content.strip():
        raise ImportFileError("No data found in file")

    try:
        if ext in SPREADSHEET_FORMATS:
            df = pd.read_excel(BytesIO(content), engine="openpyxl", dtype=str)
        else:
            df = pd.read_csv(
                BytesIO(content),
                sep=None,
                engine="python",
                dtype=str,
                keep_default_na=False,
                skipinitialspace=True,
            )
    except pd.errors.EmptyDataError:
        raise ImportFileError("No data found in file")
    except (
        pd.errors.ParserError,
        ValueError,
        zipfile.BadZipFile,
        InvalidFileException,
    ) as e:
        raise ImportFileError(f"Could not read {filename}: {e}") from e

    df = df.fillna("")
    df.columns = [str(column).strip() for column in df.columns]

    records = []
    for record in df.to_dict(orient="records"):
        cleaned = {key: str(value).strip() for key, value in record.items()}
        # Skip fully blank lines
        if any(cleaned.values()):
            records.append(cleaned)

    if not records:
        raise ImportFileError("No data found in file")

    logger.info("statement_parsed", filename=filename, rows=len(records))
    return records


# =============================================================================
# FORMAT DETECTION & COLUMN MAPPING
# =============================================================================

def _normalize_header(header: str) -> str:
    return re.sub(r"\s+", " ", str(header)).strip().lower()


def detect_bank_format(headers: Iterable[str]) -> BankFormat:
    """Revolut exports carry Started/Completed Date columns; anything else is generic."""
    normalized = {_normalize_header(h) for h in headers}
    if any(marker in normalized for marker in REVOLUT_MARKERS):
        return BankFormat.REVOLUT
    return BankFormat.GENERIC


def pick_column(headers: Iterable[str], candidates: list[str]) -> Optional[str]:
    """
    Find the header matching one of `candidates`.

    Exact (case-insensitive) matches win over substring matches; within
    each pass the candidate order decides.
    """
    normalized = {header: _normalize_header(header) for header in headers}
    for candidate in candidates:
        for original, norm in normalized.items():
            if candidate == norm:
                return original
    for candidate in candidates:
        for original, norm in normalized.items():
            if candidate in norm:
                return original
    return None


def map_columns(headers: Iterable[str], bank_format: BankFormat) -> dict[str, Optional[str]]:
    """Resolve which source column feeds each draft field."""
    headers = list(headers)
    columns = {
        "description": pick_column(headers, DESCRIPTION_COLUMNS),
        "amount": pick_column(headers, AMOUNT_COLUMNS),
        "currency": pick_column(headers, CURRENCY_COLUMNS),
        "merchant": pick_column(headers, MERCHANT_COLUMNS),
        "fee": None,
        "fallback_date": None,
    }
    if bank_format == BankFormat.REVOLUT:
        columns["date"] = pick_column(headers, ["completed date"])
        columns["fallback_date"] = pick_column(headers, ["started date"])
        columns["fee"] = pick_column(headers, FEE_COLUMNS)
    else:
        columns["date"] = pick_column(headers, DATE_COLUMNS)
    return columns


# =============================================================================
# VALUE PARSING
# =============================================================================

def parse_amount(value: Any) -> Decimal:
    """
    Parse a signed monetary amount.

    Accepts currency symbols, spaces, thousands separators and a decimal
    comma. Parenthesized values are negative.

    Raises:
        ValueError: If the value is missing or not a number
    """
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return Decimal(str(value))

    text = str(value or "").strip()
    if not text:
        raise ValueError("Missing amount")

    negative = text.startswith("(") and text.endswith(")")
    cleaned = re.sub(r"[^\d,.\-+]", "", text)

    if "," in cleaned and "." in cleaned:
        # Whichever separator comes last is the decimal one
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif re.fullmatch(r"[-+]?\d{1,3}(,\d{3})+", cleaned):
        cleaned = cleaned.replace(",", "")
    else:
        cleaned = cleaned.replace(",", ".")

    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {text}")

    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {text}")
    return -abs(amount) if negative else amount


def parse_date(value: Any) -> datetime:
    """
    Parse a date or timestamp into naive UTC.

    Raises:
        ValueError: If the value is missing or unparsable
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value or "").strip()
        if not text:
            raise ValueError("Invalid date")
        try:
            parsed = date_parser.parse(text)
        except (ValueError, OverflowError):
            raise ValueError(f"Invalid date: {text}")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _build_draft(
    date: datetime,
    net: Decimal,
    description: str,
    merchant: str,
    currency: str,
    **extra,
) -> DraftTransaction:
    description = description or "Unknown"
    return DraftTransaction(
        date=date,
        description=description,
        amount=abs(net).quantize(CENTS, rounding=ROUND_HALF_UP),
        type=TransactionType.INCOME if net >= 0 else TransactionType.EXPENSE,
        currency=currency.upper(),
        merchant_name=merchant or description[:MERCHANT_NAME_MAX_LENGTH],
        **extra,
    )


# =============================================================================
# ROW NORMALIZATION
# =============================================================================

def normalize_row(
    row: dict[str, str],
    columns: dict[str, Optional[str]],
    bank_format: BankFormat,
    default_currency: str = "EUR",
    row_number: Optional[int] = None,
) -> DraftTransaction:
    """
    Map one statement record to a DraftTransaction.

    Raises:
        ValueError: Missing/unparsable date or amount, or a field the draft
            model rejects (pydantic errors are ValueErrors)
    """
    def cell(field: str) -> str:
        column = columns.get(field)
        return str(row.get(column, "")).strip() if column else ""

    raw_date = cell("date") or cell("fallback_date")
    date = parse_date(raw_date)

    net = parse_amount(cell("amount"))
    if bank_format == BankFormat.REVOLUT and cell("fee"):
        net -= parse_amount(cell("fee"))

    return _build_draft(
        date=date,
        net=net,
        description=cell("description"),
        merchant=cell("merchant"),
        currency=cell("currency") or default_currency,
        row_number=row_number,
        raw=dict(row),
    )


def normalize_rows(
    rows: list[dict[str, str]],
    bank_format: Optional[BankFormat] = None,
    default_currency: Optional[str] = None,
) -> tuple[list[DraftTransaction], list[RowError]]:
    """
    Normalize a parsed statement.

    Bad rows are collected as RowErrors; the rest of the batch continues.

    Returns:
        (drafts, row_errors)
    """
    if not rows:
        return [], []

    headers = list(rows[0].keys())
    bank_format = bank_format or detect_bank_format(headers)
    default_currency = default_currency or get_settings().app.default_currency
    columns = map_columns(headers, bank_format)

    drafts: list[DraftTransaction] = []
    errors: list[RowError] = []
    for row_number, row in enumerate(rows, start=1):
        try:
            drafts.append(normalize_row(
                row,
                columns,
                bank_format,
                default_currency=default_currency,
                row_number=row_number,
            ))
        except ValueError as e:
            errors.append(RowError(row_number=row_number, row=dict(row), error=str(e)))

    if errors:
        logger.info(
            "statement_rows_rejected",
            bank_format=bank_format.value,
            rejected=len(errors),
            accepted=len(drafts),
        )
    return drafts, errors


def adapt_feed_transaction(
    record: dict[str, Any],
    default_currency: str = "EUR",
) -> DraftTransaction:
    """
    Adapt an external bank-feed record into a DraftTransaction.

    Expected shape: {transactionId, amount (signed), currency, timestamp,
    description, merchantName}; snake_case keys are accepted too.

    Raises:
        ValueError: Missing id, date or amount
    """
    def first(*keys: str) -> Any:
        for key in keys:
            value = record.get(key)
            if value not in (None, ""):
                return value
        return None

    external_id = first("transactionId", "transaction_id", "id")
    if external_id is None:
        raise ValueError("Feed record has no transaction id")

    return _build_draft(
        date=parse_date(first("timestamp", "bookingDate", "date")),
        net=parse_amount(first("amount")),
        description=str(first("description") or "").strip(),
        merchant=str(first("merchantName", "merchant_name") or "").strip(),
        currency=str(first("currency") or default_currency),
        external_id=str(external_id),
        raw=record,
    )
