"""Canonical payment export contract definitions.

Maps the column headers of the processor's unified payments export onto the
canonical field names used by the importer. Stripe exports carry dozens of
columns; only the ones listed here are read, everything else is ignored.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Mapping, Tuple

Normalizer = Callable[[object | None], object | None]

METADATA_COLUMN = "metadata"
_METADATA_SUFFIX_RE = re.compile(r"^(?P<key>.+?)\s*\(metadata\)$", re.IGNORECASE)


def _strip_string(value: object | None) -> object | None:
    if isinstance(value, str):
        return value.strip()
    return value


@dataclass(frozen=True)
class FieldSpec:
    """Metadata describing a canonical ingest field."""

    name: str
    description: str
    required: bool = False
    aliases: Tuple[str, ...] = ()
    normalizer: Normalizer | None = _strip_string
    free_text: bool = False

    def headers(self) -> Tuple[str, ...]:
        """Return the canonical header plus aliases for validation."""

        return (self.name, *self.aliases)


STRIPE_PAYMENT_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec(
        name="amount",
        description="Gross amount in major currency units (e.g. 50.00).",
        required=True,
        aliases=("Amount",),
    ),
    FieldSpec(
        name="created",
        description="Payment creation timestamp.",
        required=True,
        aliases=("Created Formatted", "Created (UTC)", "Created date (UTC)"),
    ),
    FieldSpec(
        name="status",
        description="Processor outcome (succeeded, failed, refunded, canceled).",
        required=True,
        aliases=("Status",),
    ),
    FieldSpec(
        name="currency",
        description="ISO currency code.",
        aliases=("Currency",),
    ),
    FieldSpec(
        name="charge_id",
        description="Processor charge identifier.",
        aliases=("id", "Charge ID"),
    ),
    FieldSpec(
        name="transaction_id",
        description="Invoice/transaction identifier used to group rows.",
        aliases=("Transaction ID", "Invoice ID"),
    ),
    FieldSpec(
        name="customer_id",
        description="Processor customer identifier.",
        aliases=("Cust ID", "Customer ID"),
    ),
    FieldSpec(
        name="subscription_id",
        description="Processor subscription identifier.",
        aliases=("Cust Subscription Data ID", "Subscription ID"),
    ),
    FieldSpec(
        name="nickname",
        description="Subscription plan nickname (short label).",
        aliases=("Cust Subscription Data Plan Nickname", "Plan Nickname"),
        free_text=True,
    ),
    FieldSpec(
        name="description",
        description="Longer payment description.",
        aliases=("Description",),
        free_text=True,
    ),
    FieldSpec(
        name="customer_email",
        description="Customer email address.",
        aliases=("Cust Email", "Customer Email"),
    ),
    FieldSpec(
        name="billing_email",
        description="Billing email, used when the customer email is blank.",
        aliases=("Billing Details Email",),
    ),
    FieldSpec(
        name="billing_name",
        description="Cardholder / donor name.",
        aliases=("Billing Details Name", "Customer Name"),
        free_text=True,
    ),
    FieldSpec(
        name="phone",
        description="Customer phone number.",
        aliases=("Cust Phone", "Customer Phone"),
    ),
    FieldSpec(
        name="address_line1",
        description="Billing address line 1.",
        aliases=("Billing Details Address Line 1",),
        free_text=True,
    ),
    FieldSpec(
        name="address_line2",
        description="Billing address line 2.",
        aliases=("Billing Details Address Line 2",),
        free_text=True,
    ),
    FieldSpec(
        name="city",
        description="Billing city.",
        aliases=("Billing Details Address City",),
        free_text=True,
    ),
    FieldSpec(
        name="state",
        description="Billing state or region.",
        aliases=("Billing Details Address State", "Billing Detail Address State"),
    ),
    FieldSpec(
        name="postal_code",
        description="Billing postal code.",
        aliases=("Billing Details Address Postal Code",),
    ),
    FieldSpec(
        name="country",
        description="Billing country.",
        aliases=("Billing Details Address Country",),
    ),
    FieldSpec(
        name=METADATA_COLUMN,
        description="JSON object of structured metadata (child_id, project_id, ...).",
        aliases=("Metadata",),
        normalizer=None,
    ),
)


def get_stripe_field_specs() -> Tuple[FieldSpec, ...]:
    """Return the canonical payment export field specifications."""

    return STRIPE_PAYMENT_FIELDS


def get_stripe_required_headers() -> Tuple[str, ...]:
    """Headers that must be present in every export."""

    return tuple(field.name for field in STRIPE_PAYMENT_FIELDS if field.required)


def get_stripe_alias_map() -> Mapping[str, str]:
    """Map normalized header tokens to canonical names (includes aliases)."""

    mapping: dict[str, str] = {}
    for field in STRIPE_PAYMENT_FIELDS:
        for header in field.headers():
            mapping[normalize_header(header)] = field.name
    return mapping


def normalize_header(header: str) -> str:
    """Normalize a CSV header for comparison (case/space/underscore agnostic)."""

    token = header.strip().lower()
    for char in (" ", "-", "."):
        token = token.replace(char, "_")
    return token


def metadata_key_for_header(header: str) -> str | None:
    """
    Return the metadata key for a flattened ``"<key> (metadata)"`` column.

    >>> metadata_key_for_header("child_id (metadata)")
    'child_id'
    """

    match = _METADATA_SUFFIX_RE.match(header.strip())
    if match is None:
        return None
    key = match.group("key").strip()
    return key or None
