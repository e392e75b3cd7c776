# donation_app/models/donor.py

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Index, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import ArchivableMixin, BaseModel, db

ANONYMOUS_DONOR_NAME = "Anonymous"


class Donor(ArchivableMixin, BaseModel):
    """
    A person or organization giving to the nonprofit.

    Donors are matched by email. Anonymous donors (no email) carry a synthetic
    ``identity_key`` derived from phone/address so that distinct anonymous
    givers are never collapsed into one record.
    """

    __tablename__ = "donors"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(db.String(255), nullable=False, default=ANONYMOUS_DONOR_NAME)
    email: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    identity_key: Mapped[str | None] = mapped_column(db.String(128), nullable=True, index=True)
    phone: Mapped[str | None] = mapped_column(db.String(32), nullable=True)
    address_line1: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    address_line2: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    city: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    state: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    zip_code: Mapped[str | None] = mapped_column(db.String(32), nullable=True)
    country: Mapped[str | None] = mapped_column(db.String(64), nullable=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    last_updated_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    donations = relationship("Donation", back_populates="donor")
    sponsorships = relationship("Sponsorship", back_populates="donor")

    __table_args__ = (Index("idx_donors_email_lower", func.lower(email)),)

    def __repr__(self):
        return f"<Donor {self.name} ({self.email or self.identity_key or 'anonymous'})>"

    @property
    def is_anonymous(self) -> bool:
        return not self.email
