"""Statement and feed ingestion package."""

from fintrack.ingestion.deduplicator import Deduplicator, compute_import_hash
from fintrack.ingestion.normalizer import (
    ImportFileError,
    adapt_feed_transaction,
    detect_bank_format,
    map_columns,
    normalize_row,
    normalize_rows,
    parse_amount,
    parse_date,
    parse_file,
    pick_column,
)

__all__ = [
    "Deduplicator",
    "ImportFileError",
    "adapt_feed_transaction",
    "compute_import_hash",
    "detect_bank_format",
    "map_columns",
    "normalize_row",
    "normalize_rows",
    "parse_amount",
    "parse_date",
    "parse_file",
    "pick_column",
]
