"""CSV adapter for processor payment exports.

Validates the export header against the payment contract, streams raw records,
and normalizes each record into a typed ``ImportRow``. Normalization is a pure
transform: it never touches the database, and malformed records surface as
``RowParseError`` carrying the row number so the batch can skip them.
"""

from __future__ import annotations

import csv
import json
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import IO, Iterator, Mapping, Sequence

from donation_app.importer.contracts import (
    METADATA_COLUMN,
    FieldSpec,
    get_stripe_alias_map,
    get_stripe_field_specs,
    get_stripe_required_headers,
    metadata_key_for_header,
    normalize_header,
)

# Header is row 1, so the first data record is row 2 (spreadsheet numbering).
FIRST_DATA_ROW_NUMBER = 2
DEFAULT_CURRENCY = "usd"
ZERO_DECIMAL_CURRENCIES = frozenset({"bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf"})

_DATE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y",
)
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
_WHITESPACE_RE = re.compile(r"\s+")
_AMOUNT_NOISE_RE = re.compile(r"[\s,$€£]")


class CSVAdapterError(Exception):
    """Base exception for CSV adapter failures."""


class CSVHeaderError(CSVAdapterError):
    """Raised when the CSV header row does not meet contract requirements."""

    def __init__(
        self,
        *,
        missing: Sequence[str] | None = None,
        duplicates: Sequence[str] | None = None,
    ) -> None:
        details: list[str] = []
        if missing:
            details.append(f"Missing required columns: {', '.join(sorted(missing))}.")
        if duplicates:
            details.append(
                "Duplicate canonical columns detected: "
                + ", ".join(sorted(duplicates))
                + ". Ensure each canonical field appears only once."
            )

        message = "CSV header validation failed. " + " ".join(details) if details else "CSV header validation failed."
        super().__init__(message)
        self.missing = tuple(missing or ())
        self.duplicates = tuple(duplicates or ())


class RowParseError(CSVAdapterError):
    """Raised when an individual row cannot be parsed."""

    def __init__(self, row_number: int, reason: str) -> None:
        super().__init__(f"Row {row_number}: {reason}")
        self.row_number = row_number
        self.reason = reason


@dataclass(frozen=True)
class HeaderValidationResult:
    raw_headers: tuple[str, ...]
    canonical_headers: tuple[str | None, ...]
    metadata_columns: Mapping[str, str]

    @property
    def has_metadata_columns(self) -> bool:
        return METADATA_COLUMN in self.canonical_headers or bool(self.metadata_columns)


@dataclass(frozen=True)
class RawPaymentRecord:
    """One export line keyed by canonical field names."""

    row_number: int
    values: dict[str, str | None]
    metadata_values: dict[str, str | None] = field(default_factory=dict)

    def as_json(self) -> dict[str, object | None]:
        payload: dict[str, object | None] = dict(self.values)
        if self.metadata_values:
            payload["metadata_columns"] = dict(self.metadata_values)
        return payload


@dataclass(frozen=True)
class ImportRow:
    """
    Typed view of one normalized payment record.

    ``metadata`` is ``None`` when the export carries no metadata at all and a
    (possibly empty) mapping when it does; the two cases resolve differently.
    """

    row_number: int
    amount: int
    currency: str
    created_at: datetime
    raw_status: str
    nickname: str | None = None
    description: str | None = None
    metadata: Mapping[str, str] | None = None
    charge_id: str | None = None
    transaction_id: str | None = None
    subscription_id: str | None = None
    customer_id: str | None = None
    email: str | None = None
    billing_name: str | None = None
    phone: str | None = None
    address_line1: str | None = None
    address_line2: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None

    @property
    def date(self) -> date:
        return self.created_at.date()

    @property
    def has_metadata(self) -> bool:
        return self.metadata is not None

    @property
    def grouping_key(self) -> str | None:
        """Invoice/transaction identifier shared by rows of one payment."""

        return self.transaction_id or self.charge_id

    @property
    def label_candidates(self) -> tuple[str, ...]:
        """Free-text labels to parse, most specific first."""

        return tuple(text for text in (self.nickname, self.description) if text)

    @property
    def label_text(self) -> str | None:
        candidates = self.label_candidates
        return candidates[0] if candidates else None

    def metadata_value(self, *keys: str) -> str | None:
        """Return the first non-blank metadata value among ``keys``."""

        if not self.metadata:
            return None
        for key in keys:
            value = self.metadata.get(key)
            if value is None:
                continue
            token = str(value).strip()
            if token:
                return token
        return None

    @property
    def metadata_child_ref(self) -> str | None:
        return self.metadata_value("child_id", "child_name", "child")

    @property
    def metadata_project_ref(self) -> str | None:
        return self.metadata_value("project_id", "project_title", "project")


def _sanitize_header(header: str | None) -> str:
    token = (header or "").strip()
    return token.lstrip("﻿")


def _validate_headers(raw_headers: Sequence[str]) -> HeaderValidationResult:
    sanitized_headers = tuple(_sanitize_header(header) for header in raw_headers)
    alias_map = get_stripe_alias_map()
    required_headers = set(get_stripe_required_headers())
    duplicates: list[str] = []
    seen: set[str] = set()
    canonical_headers: list[str | None] = []
    metadata_columns: dict[str, str] = {}

    for header in sanitized_headers:
        metadata_key = metadata_key_for_header(header)
        if metadata_key is not None:
            metadata_columns[header] = metadata_key
            canonical_headers.append(None)
            continue
        canonical = alias_map.get(normalize_header(header))
        if canonical is None:
            canonical_headers.append(None)
            continue
        if canonical in seen:
            duplicates.append(canonical)
        else:
            seen.add(canonical)
        canonical_headers.append(canonical)

    missing = sorted(required_headers - seen)
    if missing or duplicates:
        raise CSVHeaderError(missing=missing, duplicates=duplicates)

    return HeaderValidationResult(
        raw_headers=sanitized_headers,
        canonical_headers=tuple(canonical_headers),
        metadata_columns=metadata_columns,
    )


def _row_is_blank(values: Sequence[str | None]) -> bool:
    return all(value is None or value.strip() == "" for value in values)


@dataclass
class StripeCSVStatistics:
    """Accumulated statistics from CSV parsing."""

    rows_read: int = 0
    rows_skipped_blank: int = 0


class StripeCSVAdapter:
    """CSV reader that enforces the payment export contract."""

    def __init__(self, file_obj: IO[str], *, skip_blank_rows: bool = True) -> None:
        self._file_obj = file_obj
        self.skip_blank_rows = skip_blank_rows
        self._header_result: HeaderValidationResult | None = None
        self.statistics = StripeCSVStatistics()

    @property
    def header(self) -> HeaderValidationResult | None:
        return self._header_result

    def iter_records(self) -> Iterator[RawPaymentRecord]:
        reader = csv.reader(self._file_obj)
        try:
            raw_headers = next(reader)
        except StopIteration:
            raise CSVHeaderError(missing=get_stripe_required_headers()) from None

        header_result = _validate_headers(raw_headers)
        self._header_result = header_result

        for offset, cells in enumerate(reader):
            row_number = FIRST_DATA_ROW_NUMBER + offset
            if self.skip_blank_rows and _row_is_blank(cells):
                self.statistics.rows_skipped_blank += 1
                continue
            self.statistics.rows_read += 1
            values: dict[str, str | None] = {}
            metadata_values: dict[str, str | None] = {}
            for index, raw_header in enumerate(header_result.raw_headers):
                cell = cells[index] if index < len(cells) else None
                canonical = header_result.canonical_headers[index]
                if canonical is not None:
                    values[canonical] = cell
                elif raw_header in header_result.metadata_columns:
                    metadata_values[header_result.metadata_columns[raw_header]] = cell
            if not header_result.has_metadata_columns:
                values.pop(METADATA_COLUMN, None)
            elif METADATA_COLUMN not in values:
                values[METADATA_COLUMN] = None
            yield RawPaymentRecord(row_number=row_number, values=values, metadata_values=metadata_values)


def sanitize_text(value: object | None) -> str | None:
    """
    Normalize free text from the export.

    Undecodable bytes become U+FFFD, control characters are dropped and runs
    of whitespace collapse to one space. Blank values become ``None``.
    """

    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode("utf-8", errors="replace")
    token = unicodedata.normalize("NFC", str(value))
    token = _CONTROL_CHARS_RE.sub("", token)
    token = _WHITESPACE_RE.sub(" ", token).strip()
    return token or None


def parse_amount(value: object | None, *, currency: str = DEFAULT_CURRENCY) -> int:
    """
    Convert a major-unit amount string (``"$1,234.50"``, ``"(12.00)"``) to minor units.

    Raises ``ValueError`` when the value cannot be read as a number.
    """

    token = sanitize_text(value)
    if token is None:
        raise ValueError("missing amount")
    negative = token.startswith("(") and token.endswith(")")
    if negative:
        token = token[1:-1]
    cleaned = _AMOUNT_NOISE_RE.sub("", token)
    if cleaned.lower().endswith(currency.lower()):
        cleaned = cleaned[: -len(currency)]
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        raise ValueError(f"unparseable amount '{token}'") from None
    if not amount.is_finite():
        raise ValueError(f"unparseable amount '{token}'")
    exponent = 0 if currency.lower() in ZERO_DECIMAL_CURRENCIES else 2
    minor = (amount * (Decimal(10) ** exponent)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    if negative:
        minor = -minor
    return int(minor)


def parse_created(value: object | None) -> datetime:
    """Parse the export timestamp into an aware UTC datetime."""

    token = sanitize_text(value)
    if token is None:
        raise ValueError("missing date")
    candidate = token[:-1] + "+00:00" if token.endswith("Z") else token
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        parsed = None
    if parsed is None:
        for fmt in _DATE_FORMATS:
            try:
                parsed = datetime.strptime(token, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        raise ValueError(f"unparseable date '{token}'")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_metadata(raw_json: object | None, flattened: Mapping[str, object | None]) -> dict[str, str]:
    """Merge the JSON metadata column with flattened ``(metadata)`` columns."""

    merged: dict[str, str] = {}
    token = raw_json.strip() if isinstance(raw_json, str) else raw_json
    if token:
        try:
            decoded = json.loads(token)
        except (TypeError, ValueError):
            raise ValueError("unparseable metadata JSON") from None
        if not isinstance(decoded, dict):
            raise ValueError("metadata must be a JSON object")
        for key, value in decoded.items():
            if value is None:
                continue
            merged[str(key)] = str(value).strip()
    for key, value in flattened.items():
        text = sanitize_text(value)
        if text is not None and key not in merged:
            merged[key] = text
    return merged


def _clean_identifier(value: object | None) -> str | None:
    if value is None:
        return None
    token = str(value).strip()
    return token or None


def normalize_record(record: RawPaymentRecord) -> ImportRow:
    """
    Build an ``ImportRow`` from a raw record, raising ``RowParseError`` on bad input.
    """

    values = record.values
    specs: dict[str, FieldSpec] = {spec.name: spec for spec in get_stripe_field_specs()}

    def text(name: str) -> str | None:
        raw = values.get(name)
        if specs[name].free_text:
            return sanitize_text(raw)
        return _clean_identifier(raw)

    raw_status = text("status")
    if raw_status is None:
        raise RowParseError(record.row_number, "missing required field 'status'")

    currency = (text("currency") or DEFAULT_CURRENCY).lower()
    try:
        amount = parse_amount(values.get("amount"), currency=currency)
        created_at = parse_created(values.get("created"))
    except ValueError as exc:
        raise RowParseError(record.row_number, str(exc)) from None

    metadata: dict[str, str] | None = None
    if METADATA_COLUMN in values:
        try:
            metadata = parse_metadata(values.get(METADATA_COLUMN), record.metadata_values)
        except ValueError as exc:
            raise RowParseError(record.row_number, str(exc)) from None

    email = text("customer_email") or text("billing_email")

    return ImportRow(
        row_number=record.row_number,
        amount=amount,
        currency=currency,
        created_at=created_at,
        raw_status=raw_status,
        nickname=text("nickname"),
        description=text("description"),
        metadata=metadata,
        charge_id=text("charge_id"),
        transaction_id=text("transaction_id"),
        subscription_id=text("subscription_id"),
        customer_id=text("customer_id"),
        email=email.lower() if email else None,
        billing_name=text("billing_name"),
        phone=text("phone"),
        address_line1=text("address_line1"),
        address_line2=text("address_line2"),
        city=text("city"),
        state=text("state"),
        postal_code=text("postal_code"),
        country=text("country"),
    )
