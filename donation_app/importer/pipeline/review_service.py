"""
Query helpers for the needs-attention review queue.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import and_, func
from sqlalchemy.orm import Session

from donation_app.models import Donation, DonationStatus, db

from .association import MAX_RECORD_ID
from .run_service import DEFAULT_PAGE, MAX_PAGE_SIZE, coerce_bool, coerce_positive_int

DEFAULT_REVIEW_PAGE_SIZE = 50


@dataclass(frozen=True)
class ReviewFilters:
    """Filters for the review queue; ``reason`` is a case-insensitive substring match."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_REVIEW_PAGE_SIZE
    run_id: int | None = None
    reason: str | None = None
    duplicates_only: bool = False

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        run_id: int | str | None = None,
        reason: str | None = None,
        duplicates_only: str | bool | None = None,
        default_page_size: int = DEFAULT_REVIEW_PAGE_SIZE,
    ) -> "ReviewFilters":
        resolved_run_id = None
        if run_id not in (None, ""):
            resolved_run_id = _coerce_run_id(run_id)
        resolved_reason = reason.strip() if isinstance(reason, str) and reason.strip() else None
        return cls(
            page=coerce_positive_int(page, fallback=DEFAULT_PAGE),
            page_size=min(coerce_positive_int(page_size, fallback=default_page_size), MAX_PAGE_SIZE),
            run_id=resolved_run_id,
            reason=resolved_reason,
            duplicates_only=coerce_bool(duplicates_only, default=False),
        )


@dataclass(slots=True)
class ReviewPage:
    items: list[dict[str, Any]]
    total: int
    page: int
    page_size: int
    total_pages: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "items": self.items,
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
        }


def serialize_review_item(donation: Donation) -> dict[str, Any]:
    return {
        "id": donation.id,
        "amount": donation.amount,
        "date": donation.date.isoformat(),
        "status": donation.status.value,
        "reason": donation.needs_attention_reason,
        "duplicate_flag": donation.duplicate_flag,
        "donor": {"id": donation.donor_id, "name": donation.donor.name if donation.donor else None},
        "child": donation.child.name if donation.child else None,
        "project": donation.project.title if donation.project else None,
        "import_run_id": donation.import_run_id,
        "row_number": donation.import_row_number,
        "stripe_invoice_id": donation.stripe_invoice_id,
        "stripe_charge_id": donation.stripe_charge_id,
    }


class ReviewQueueService:
    """Donations waiting for a human decision, oldest import rows first."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def list_queue(self, filters: ReviewFilters) -> ReviewPage:
        predicates = [Donation.status == DonationStatus.NEEDS_ATTENTION]
        if filters.run_id is not None:
            predicates.append(Donation.import_run_id == filters.run_id)
        if filters.duplicates_only:
            predicates.append(Donation.duplicate_flag.is_(True))
        if filters.reason:
            predicates.append(func.lower(Donation.needs_attention_reason).contains(filters.reason.lower()))

        query = self.session.query(Donation).filter(and_(*predicates))
        total = query.count()
        items = (
            query.order_by(Donation.import_run_id.asc(), Donation.import_row_number.asc(), Donation.id.asc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
            .all()
        )
        total_pages = (total + filters.page_size - 1) // filters.page_size if total else 0
        return ReviewPage(
            items=[serialize_review_item(donation) for donation in items],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            total_pages=total_pages,
        )


def _coerce_run_id(candidate: int | str) -> int:
    if isinstance(candidate, str) and candidate.strip().isascii() and candidate.strip().isdigit():
        candidate = int(candidate.strip())
    if isinstance(candidate, int) and not isinstance(candidate, bool) and 1 <= candidate <= MAX_RECORD_ID:
        return candidate
    raise ValueError(f"Invalid run_id '{candidate}'.")
