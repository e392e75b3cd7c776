"""Importer adapter interfaces and concrete implementations."""

from __future__ import annotations

from .stripe_csv import (
    CSVAdapterError,
    CSVHeaderError,
    ImportRow,
    RawPaymentRecord,
    RowParseError,
    StripeCSVAdapter,
    StripeCSVStatistics,
    normalize_record,
    parse_amount,
    parse_created,
    parse_metadata,
    sanitize_text,
)

__all__ = [
    "CSVAdapterError",
    "CSVHeaderError",
    "ImportRow",
    "RawPaymentRecord",
    "RowParseError",
    "StripeCSVAdapter",
    "StripeCSVStatistics",
    "normalize_record",
    "parse_amount",
    "parse_created",
    "parse_metadata",
    "sanitize_text",
]
