"""
Map processor outcome strings onto the canonical donation status taxonomy.
"""

from __future__ import annotations

from dataclasses import dataclass

from donation_app.models import DonationStatus

_STATUS_MAP: dict[str, DonationStatus] = {
    "succeeded": DonationStatus.SUCCEEDED,
    "failed": DonationStatus.FAILED,
    "refunded": DonationStatus.REFUNDED,
    "canceled": DonationStatus.CANCELED,
    "cancelled": DonationStatus.CANCELED,
}


@dataclass(frozen=True)
class StatusClassification:
    status: DonationStatus
    reason: str | None = None

    @property
    def needs_attention(self) -> bool:
        return self.status == DonationStatus.NEEDS_ATTENTION


def classify_status(raw_status: str | None) -> StatusClassification:
    """
    Classify a vendor status string (case-insensitive, trimmed).

    Unknown values are not errors: they land in the review queue with the
    original text in the reason.
    """

    token = (raw_status or "").strip()
    status = _STATUS_MAP.get(token.lower())
    if status is not None:
        return StatusClassification(status=status)
    return StatusClassification(
        status=DonationStatus.NEEDS_ATTENTION,
        reason=f"unrecognized status: {token}",
    )
