"""Tests for statement parsing, normalization and feed adaptation."""

from datetime import datetime
from decimal import Decimal
from io import BytesIO

import pytest
from openpyxl import Workbook

from fintrack.ingestion import (
    ImportFileError,
    adapt_feed_transaction,
    detect_bank_format,
    map_columns,
    normalize_rows,
    parse_amount,
    parse_date,
    parse_file,
    pick_column,
)
from fintrack.models.ledger import BankFormat, TransactionType


REVOLUT_CSV = (
    "Type,Product,Started Date,Completed Date,Description,Amount,Fee,Currency,State\n"
    "CARD_PAYMENT,Current,2024-01-05,2024-01-06,Tesco Store,-20.00,0.50,EUR,COMPLETED\n"
    "TOPUP,Current,2024-01-07,,Top up,100.00,1.00,EUR,PENDING\n"
).encode()

GENERIC_CSV = (
    "Date,Description,Amount\n"
    "2024-01-05,Coffee,-4.50\n"
    "2024-01-06,Salary,2500.00\n"
).encode()


class TestParseFile:
    """Tests for turning bytes into records."""

    def test_parses_csv(self):
        rows = parse_file(GENERIC_CSV, "statement.csv")
        assert rows == [
            {"Date": "2024-01-05", "Description": "Coffee", "Amount": "-4.50"},
            {"Date": "2024-01-06", "Description": "Salary", "Amount": "2500.00"},
        ]

    def test_sniffs_semicolon_delimiter(self):
        content = b"Date;Description;Amount\n2024-01-05;Coffee;-4,50\n"
        rows = parse_file(content, "statement.txt")
        assert rows[0]["Amount"] == "-4,50"

    def test_skips_blank_lines(self):
        content = GENERIC_CSV + b",,\n"
        assert len(parse_file(content, "statement.csv")) == 2

    def test_rejects_unsupported_format(self):
        with pytest.raises(ImportFileError, match="Unsupported file format"):
            parse_file(GENERIC_CSV, "statement.pdf")

    def test_rejects_oversize_file(self):
        with pytest.raises(ImportFileError, match="File too large"):
            parse_file(GENERIC_CSV, "statement.csv", max_size_bytes=10)

    def test_rejects_empty_file(self):
        with pytest.raises(ImportFileError, match="No data found"):
            parse_file(b"   \n", "statement.csv")

    def test_rejects_header_only_file(self):
        with pytest.raises(ImportFileError, match="No data found"):
            parse_file(b"Date,Description,Amount\n", "statement.csv")

    def test_parses_spreadsheet(self):
        workbook = Workbook()
        sheet = workbook.active
        sheet.append(["Date", "Description", "Amount"])
        sheet.append([datetime(2024, 3, 1), None, -45.2])
        sheet.append([datetime(2024, 3, 2, 9, 30), "ACME Payroll", 2500])
        buffer = BytesIO()
        workbook.save(buffer)

        rows = parse_file(buffer.getvalue(), "statement.xlsx")
        drafts, errors = normalize_rows(rows)

        assert errors == []
        assert [d.date for d in drafts] == [
            datetime(2024, 3, 1),
            datetime(2024, 3, 2, 9, 30),
        ]
        assert drafts[0].description == "Unknown"
        assert drafts[0].amount == Decimal("45.20")
        assert drafts[0].type == TransactionType.EXPENSE
        assert drafts[1].amount == Decimal("2500.00")
        assert drafts[1].type == TransactionType.INCOME

    def test_rejects_corrupt_spreadsheet(self):
        with pytest.raises(ImportFileError):
            parse_file(b"this is not a zip archive", "statement.xlsx")


class TestColumnMapping:
    """Tests for dialect detection and header matching."""

    def test_detects_revolut(self):
        headers = ["Type", "Started Date", "Completed Date", "Amount"]
        assert detect_bank_format(headers) == BankFormat.REVOLUT

    def test_detects_generic(self):
        assert detect_bank_format(["Date", "Description", "Amount"]) == BankFormat.GENERIC

    def test_exact_match_beats_substring(self):
        headers = ["Transaction Amount", "Amount"]
        assert pick_column(headers, ["amount"]) == "Amount"

    def test_substring_match(self):
        assert pick_column(["Booking Date Local"], ["date"]) == "Booking Date Local"

    def test_revolut_columns(self):
        headers = ["Started Date", "Completed Date", "Description", "Amount", "Fee"]
        columns = map_columns(headers, BankFormat.REVOLUT)
        assert columns["date"] == "Completed Date"
        assert columns["fallback_date"] == "Started Date"
        assert columns["fee"] == "Fee"


class TestValueParsing:
    """Tests for amount and date parsing."""

    @pytest.mark.parametrize("text, expected", [
        ("-4.50", Decimal("-4.50")),
        ("€1,234.56", Decimal("1234.56")),
        ("1.234,56", Decimal("1234.56")),
        ("12,5", Decimal("12.5")),
        ("(30.00)", Decimal("-30.00")),
        ("1,000", Decimal("1000")),
    ])
    def test_parse_amount(self, text, expected):
        assert parse_amount(text) == expected

    @pytest.mark.parametrize("text", ["", "abc", None])
    def test_parse_amount_rejects(self, text):
        with pytest.raises(ValueError):
            parse_amount(text)

    def test_parse_date_converts_to_naive_utc(self):
        assert parse_date("2024-01-05T10:00:00+02:00") == datetime(2024, 1, 5, 8, 0)

    def test_parse_date_rejects_garbage(self):
        with pytest.raises(ValueError, match="Invalid date"):
            parse_date("not a date")


class TestNormalizeRows:
    """Tests for record -> draft mapping."""

    def test_revolut_fee_is_netted(self):
        rows = parse_file(REVOLUT_CSV, "revolut.csv")
        drafts, errors = normalize_rows(rows)

        assert errors == []
        payment, topup = drafts

        # -20.00 - 0.50 fee
        assert payment.amount == Decimal("20.50")
        assert payment.type == TransactionType.EXPENSE
        assert payment.date == datetime(2024, 1, 6)
        assert payment.merchant_name == "Tesco Store"

        # Pending: no completed date, started date is used
        assert topup.amount == Decimal("99.00")
        assert topup.type == TransactionType.INCOME
        assert topup.date == datetime(2024, 1, 7)

    def test_generic_rows(self):
        rows = parse_file(GENERIC_CSV, "statement.csv")
        drafts, errors = normalize_rows(rows, default_currency="GBP")

        assert errors == []
        assert [d.type for d in drafts] == [TransactionType.EXPENSE, TransactionType.INCOME]
        assert drafts[0].amount == Decimal("4.50")
        assert drafts[0].currency == "GBP"
        assert drafts[0].row_number == 1

    def test_bad_row_is_collected(self):
        rows = [
            {"Date": "2024-01-05", "Description": "Coffee", "Amount": "-4.50"},
            {"Date": "2024-01-06", "Description": "Broken", "Amount": "abc"},
            {"Date": "", "Description": "No date", "Amount": "-1.00"},
        ]
        drafts, errors = normalize_rows(rows)

        assert len(drafts) == 1
        assert [e.row_number for e in errors] == [2, 3]
        assert errors[0].row["Description"] == "Broken"

    def test_missing_description_defaults(self):
        rows = [{"Date": "2024-01-05", "Description": "", "Amount": "10"}]
        drafts, _ = normalize_rows(rows)
        assert drafts[0].description == "Unknown"

    def test_amount_rounded_to_cents(self):
        rows = [{"Date": "2024-01-05", "Description": "Fuel", "Amount": "-10.005"}]
        drafts, _ = normalize_rows(rows)
        assert drafts[0].amount == Decimal("10.01")


class TestFeedAdapter:
    """Tests for external feed records."""

    def test_adapts_record(self):
        draft = adapt_feed_transaction({
            "transactionId": "tx-1",
            "amount": -12.34,
            "currency": "eur",
            "timestamp": "2024-02-01T09:30:00Z",
            "description": "NETFLIX",
            "merchantName": "Netflix",
        })
        assert draft.external_id == "tx-1"
        assert draft.amount == Decimal("12.34")
        assert draft.type == TransactionType.EXPENSE
        assert draft.currency == "EUR"
        assert draft.merchant_name == "Netflix"
        assert draft.date == datetime(2024, 2, 1, 9, 30)

    def test_defaults(self):
        draft = adapt_feed_transaction(
            {"transaction_id": "tx-2", "amount": "50", "timestamp": "2024-02-01"},
            default_currency="GBP",
        )
        assert draft.description == "Unknown"
        assert draft.currency == "GBP"
        assert draft.type == TransactionType.INCOME

    def test_requires_id(self):
        with pytest.raises(ValueError, match="no transaction id"):
            adapt_feed_transaction({"amount": "1", "timestamp": "2024-02-01"})
