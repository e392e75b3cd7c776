"""Canonical ingest contract helpers for importer adapters."""

from __future__ import annotations

from .stripe_payment import (
    METADATA_COLUMN,
    STRIPE_PAYMENT_FIELDS,
    FieldSpec,
    get_stripe_alias_map,
    get_stripe_field_specs,
    get_stripe_required_headers,
    metadata_key_for_header,
    normalize_header,
)

__all__ = [
    "FieldSpec",
    "METADATA_COLUMN",
    "STRIPE_PAYMENT_FIELDS",
    "get_stripe_alias_map",
    "get_stripe_field_specs",
    "get_stripe_required_headers",
    "metadata_key_for_header",
    "normalize_header",
]
