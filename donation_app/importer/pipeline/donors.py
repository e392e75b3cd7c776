"""
Deterministic donor matching and contact refresh for payment rows.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from donation_app.importer.adapters import ImportRow
from donation_app.models import ANONYMOUS_DONOR_NAME, Donor

_E164_REGEX = re.compile(r"^\+[1-9]\d{7,14}$")
_PHONE_EXTENSION_RE = re.compile(r"\s*(x|ext|extension|#)\s*\d+.*$", re.IGNORECASE)
_ADDRESS_NOISE_RE = re.compile(r"[^a-z0-9]+")

_CONTACT_FIELDS = (
    ("phone", "phone"),
    ("address_line1", "address_line1"),
    ("address_line2", "address_line2"),
    ("city", "city"),
    ("state", "state"),
    ("zip_code", "postal_code"),
    ("country", "country"),
    ("stripe_customer_id", "customer_id"),
)


def normalize_email(value: object | None) -> str | None:
    """Lower-case and trim an email address; blanks and tokens without ``@`` become ``None``."""

    if value is None:
        return None
    token = str(value).strip().lower()
    if not token or "@" not in token:
        return None
    return token


def normalize_phone(value: object | None) -> str | None:
    """
    Normalize phone numbers to strict E.164 (+<country><number>) format.
    Handles US phone numbers without country code by assuming +1.
    Strips extensions (x, ext, extension) before normalizing.
    """

    if value is None:
        return None
    token = _PHONE_EXTENSION_RE.sub("", str(value).strip()).strip()
    if not token:
        return None

    token = token.replace(" ", "").replace("-", "").replace("(", "").replace(")", "").replace(".", "")
    if token.startswith("00"):
        token = f"+{token[2:]}"

    digits_only = "".join(c for c in token if c.isdigit())
    if token.startswith("+"):
        normalized = f"+{digits_only}"
    elif len(digits_only) == 10:
        normalized = f"+1{digits_only}"
    elif len(digits_only) == 11 and digits_only.startswith("1"):
        normalized = f"+{digits_only}"
    else:
        return None

    if _E164_REGEX.match(normalized):
        return normalized
    return None


def normalize_address(row: ImportRow) -> str | None:
    """Collapse the billing address into a comparison token, or ``None`` without a street line."""

    if not row.address_line1:
        return None
    parts = (row.address_line1, row.address_line2, row.city, row.state, row.postal_code, row.country)
    tokens = [_ADDRESS_NOISE_RE.sub(" ", part.lower()).strip() for part in parts if part]
    return "|".join(token for token in tokens if token) or None


def identity_key_for(row: ImportRow) -> str | None:
    """
    Synthetic identity for a donor without email.

    Phone outranks address, which outranks the processor customer id.
    """

    phone = normalize_phone(row.phone)
    if phone:
        return f"phone:{phone}"
    address = normalize_address(row)
    if address:
        return f"address:{address}"
    if row.customer_id:
        return f"customer:{row.customer_id}"
    return None


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class DonorMatchResult:
    """
    Outcome of donor resolution.

    Attributes:
        outcome: ``email`` or ``identity`` for a match, ``created`` when a new
            donor was inserted.
        donor: The resolved donor.
        refreshed: True when contact fields were updated from the row.
    """

    outcome: Literal["email", "identity", "created"]
    donor: Donor
    refreshed: bool = False

    @property
    def created(self) -> bool:
        return self.outcome == "created"


class DonorResolver:
    def __init__(self, session: Session) -> None:
        self.session = session

    def resolve(self, row: ImportRow) -> DonorMatchResult:
        email = normalize_email(row.email)
        identity_key = None if email else identity_key_for(row)

        donor: Donor | None = None
        outcome: Literal["email", "identity", "created"]
        if email:
            outcome = "email"
            stmt = select(Donor).where(func.lower(Donor.email) == email).order_by(Donor.id)
            donor = self.session.execute(stmt).scalars().first()
        elif identity_key:
            outcome = "identity"
            stmt = select(Donor).where(Donor.identity_key == identity_key).order_by(Donor.id)
            donor = self.session.execute(stmt).scalars().first()

        if donor is None:
            donor = Donor(
                name=row.billing_name or ANONYMOUS_DONOR_NAME,
                email=email,
                identity_key=identity_key,
                phone=normalize_phone(row.phone) or row.phone,
                address_line1=row.address_line1,
                address_line2=row.address_line2,
                city=row.city,
                state=row.state,
                zip_code=row.postal_code,
                country=row.country,
                stripe_customer_id=row.customer_id,
                last_updated_at=row.created_at,
            )
            self.session.add(donor)
            self.session.flush()
            return DonorMatchResult(outcome="created", donor=donor)

        return DonorMatchResult(outcome=outcome, donor=donor, refreshed=self._refresh(donor, row))

    def _refresh(self, donor: Donor, row: ImportRow) -> bool:
        """Copy non-blank contact fields when the row is newer than the donor's last update."""

        last_updated = _as_utc(donor.last_updated_at)
        if last_updated is not None and row.created_at <= last_updated:
            return False
        if row.billing_name:
            donor.name = row.billing_name
        for attribute, row_field in _CONTACT_FIELDS:
            value = getattr(row, row_field)
            if attribute == "phone" and value:
                value = normalize_phone(value) or value
            if value:
                setattr(donor, attribute, value)
        donor.last_updated_at = row.created_at
        return True
