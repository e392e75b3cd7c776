# donation_app/models/donation.py

from __future__ import annotations

import enum
import datetime as dt

from sqlalchemy import Enum, ForeignKey, Index, event
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db


class DonationStatus(str, enum.Enum):
    """Canonical payment outcomes."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELED = "canceled"
    NEEDS_ATTENTION = "needs_attention"


class PaymentMethod(str, enum.Enum):
    STRIPE = "stripe"
    CHECK = "check"
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"


class Donation(BaseModel):
    """A single financial contribution with a classified outcome."""

    __tablename__ = "donations"

    id: Mapped[int] = mapped_column(primary_key=True)
    amount: Mapped[int] = mapped_column(db.Integer, nullable=False, comment="Minor currency units (cents).")
    date: Mapped[dt.date] = mapped_column(db.Date, nullable=False, index=True)
    status: Mapped[DonationStatus] = mapped_column(
        Enum(DonationStatus, name="donation_status_enum"),
        nullable=False,
        default=DonationStatus.SUCCEEDED,
        index=True,
    )
    payment_method: Mapped[PaymentMethod] = mapped_column(
        Enum(PaymentMethod, name="payment_method_enum"),
        nullable=False,
        default=PaymentMethod.STRIPE,
        index=True,
    )
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    donor_id: Mapped[int] = mapped_column(ForeignKey("donors.id"), nullable=False, index=True)
    project_id: Mapped[int | None] = mapped_column(ForeignKey("projects.id"), nullable=True, index=True)
    child_id: Mapped[int | None] = mapped_column(ForeignKey("children.id"), nullable=True, index=True)
    sponsorship_id: Mapped[int | None] = mapped_column(ForeignKey("sponsorships.id"), nullable=True, index=True)
    import_run_id: Mapped[int | None] = mapped_column(
        ForeignKey("import_runs.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    stripe_charge_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    stripe_invoice_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    import_row_number: Mapped[int | None] = mapped_column(db.Integer, nullable=True)

    duplicate_flag: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    needs_attention_reason: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    donor = relationship("Donor", back_populates="donations")
    project = relationship("Project", back_populates="donations")
    child = relationship("Child", back_populates="donations")
    sponsorship = relationship("Sponsorship", back_populates="donations")
    import_run = relationship("ImportRun", back_populates="donations")

    __table_args__ = (
        Index("idx_donations_project_date", "project_id", "date"),
        Index("idx_donations_run_status", "import_run_id", "status"),
    )

    def __repr__(self):
        return f"<Donation {self.amount} {self.status.value} donor={self.donor_id}>"

    @property
    def needs_attention(self) -> bool:
        return self.status == DonationStatus.NEEDS_ATTENTION

    def check_review_invariants(self) -> None:
        """
        Raise ``ValueError`` when review fields contradict each other.

        A duplicate must be queued for review, and anything queued for review
        must say why.
        """

        if self.duplicate_flag and self.status != DonationStatus.NEEDS_ATTENTION:
            raise ValueError("Duplicate donations must have status needs_attention")
        if self.status == DonationStatus.NEEDS_ATTENTION and not (self.needs_attention_reason or "").strip():
            raise ValueError("needs_attention donations require a reason")


@event.listens_for(Donation, "before_insert")
@event.listens_for(Donation, "before_update")
def _validate_donation(mapper, connection, target: Donation) -> None:  # pragma: no cover - exercised via flush
    target.check_review_invariants()
