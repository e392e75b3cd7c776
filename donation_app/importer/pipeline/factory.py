"""
Turn a resolved payment row into persisted donation records.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Literal

from sqlalchemy import select
from sqlalchemy.orm import Session

from donation_app.importer.adapters import ImportRow
from donation_app.models import (
    ArchivableMixin,
    Child,
    Donation,
    DonationStatus,
    Donor,
    PaymentMethod,
    Sponsorship,
    StripeInvoice,
)

from .association import Association
from .donors import DonorResolver
from .duplicates import DuplicateGuard
from .status import StatusClassification

AllocationPolicy = Literal["full", "split"]
ALLOCATION_POLICIES: tuple[str, ...] = ("full", "split")
NON_POSITIVE_AMOUNT = "non-positive amount"


def allocate_amount(amount: int, parts: int, policy: AllocationPolicy = "full") -> list[int]:
    """
    Amount carried by each of ``parts`` donations fanned out from one row.

    ``full`` repeats the row amount for every child (per-child subscription
    plans); ``split`` divides it evenly in minor units with the remainder on
    the first child.
    """

    if parts < 1:
        raise ValueError("parts must be at least 1")
    if policy not in ALLOCATION_POLICIES:
        raise ValueError(f"Unknown allocation policy '{policy}'")
    if policy == "full" or parts == 1 or amount <= 0:
        return [amount] * parts
    share, remainder = divmod(amount, parts)
    return [share + remainder] + [share] * (parts - 1)


def child_key(child: Child) -> str:
    return child.name.strip().lower()


def reactivate(entities: Iterable[ArchivableMixin | None]) -> int:
    """Restore every archived entity a new financial record points at; return how many were restored."""

    restored = 0
    seen: set[int] = set()
    for entity in entities:
        if entity is None or id(entity) in seen:
            continue
        seen.add(id(entity))
        if entity.restore():
            restored += 1
    return restored


@dataclass
class FactoryResult:
    donations: list[Donation] = field(default_factory=list)
    donor: Donor | None = None
    donor_created: bool = False
    entities_restored: int = 0
    sponsorships_created: int = 0
    invoice_created: bool = False


class DonationFactory:
    def __init__(
        self,
        session: Session,
        *,
        donor_resolver: DonorResolver | None = None,
        allocation: AllocationPolicy = "full",
        import_run_id: int | None = None,
    ) -> None:
        if allocation not in ALLOCATION_POLICIES:
            raise ValueError(f"Unknown allocation policy '{allocation}'")
        self.session = session
        self.donor_resolver = donor_resolver or DonorResolver(session)
        self.allocation = allocation
        self.import_run_id = import_run_id

    def build(
        self,
        row: ImportRow,
        classification: StatusClassification,
        association: Association,
        *,
        duplicates: DuplicateGuard | None = None,
    ) -> FactoryResult:
        result = FactoryResult()
        donor_match = self.donor_resolver.resolve(row)
        result.donor = donor_match.donor
        result.donor_created = donor_match.created

        targets = association.targets
        result.entities_restored = reactivate(
            [donor_match.donor]
            + [target.child for target in targets]
            + [target.project for target in targets]
        )

        invoice_id = None
        if row.grouping_key:
            invoice, result.invoice_created = self._find_or_create_invoice(row)
            invoice_id = invoice.stripe_invoice_id

        amounts = allocate_amount(row.amount, len(targets), self.allocation)
        for target, amount in zip(targets, amounts):
            # A split can leave a zero share even when the row amount is positive.
            reasons: list[str] = []
            if classification.reason:
                reasons.append(classification.reason)
            if amount <= 0:
                reasons.append(NON_POSITIVE_AMOUNT)
            reasons.extend(association.reasons)
            duplicate = None
            if duplicates is not None and target.child is not None:
                duplicate = duplicates.reason_for(row.grouping_key, row.row_number, child_key(target.child))
            if duplicate:
                reasons.append(duplicate)

            status = DonationStatus.NEEDS_ATTENTION if reasons else classification.status
            sponsorship = None
            if status == DonationStatus.SUCCEEDED and target.child is not None and row.subscription_id:
                sponsorship, created = self._find_or_create_sponsorship(
                    donor_match.donor, target.child, target.project, amount, row
                )
                result.sponsorships_created += int(created)

            donation = Donation(
                amount=amount,
                date=row.date,
                status=status,
                payment_method=PaymentMethod.STRIPE,
                description=row.description or row.nickname,
                donor=donor_match.donor,
                project=target.project,
                child=target.child,
                sponsorship=sponsorship,
                import_run_id=self.import_run_id,
                stripe_charge_id=row.charge_id,
                stripe_customer_id=row.customer_id,
                stripe_subscription_id=row.subscription_id,
                stripe_invoice_id=invoice_id,
                import_row_number=row.row_number,
                duplicate_flag=duplicate is not None,
                needs_attention_reason="; ".join(reasons) if reasons else None,
            )
            self.session.add(donation)
            result.donations.append(donation)

        self.session.flush()
        return result

    def _find_or_create_invoice(self, row: ImportRow) -> tuple[StripeInvoice, bool]:
        stmt = select(StripeInvoice).where(StripeInvoice.stripe_invoice_id == row.grouping_key)
        invoice = self.session.execute(stmt).scalars().first()
        if invoice is not None:
            return invoice, False
        invoice = StripeInvoice(
            stripe_invoice_id=row.grouping_key,
            stripe_charge_id=row.charge_id,
            stripe_customer_id=row.customer_id,
            stripe_subscription_id=row.subscription_id,
            total_amount_cents=row.amount,
            invoice_date=row.date,
        )
        self.session.add(invoice)
        self.session.flush()
        return invoice, True

    def _find_or_create_sponsorship(self, donor, child, project, amount: int, row: ImportRow) -> tuple[Sponsorship, bool]:
        if donor.id is not None and child.id is not None:
            stmt = (
                select(Sponsorship)
                .where(
                    Sponsorship.donor_id == donor.id,
                    Sponsorship.child_id == child.id,
                    Sponsorship.end_date.is_(None),
                )
                .order_by(Sponsorship.id)
            )
            existing = self.session.execute(stmt).scalars().first()
            if existing is not None:
                return existing, False
        sponsorship = Sponsorship(
            donor=donor,
            child=child,
            project=project,
            monthly_amount=amount,
            start_date=row.date,
        )
        self.session.add(sponsorship)
        self.session.flush()
        return sponsorship, True
