# donation_app/models/sponsorship.py

from __future__ import annotations

from datetime import date

from sqlalchemy import CheckConstraint, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import BaseModel, db


class Sponsorship(BaseModel):
    """A recurring pledge by one donor supporting one child through a dedicated project."""

    __tablename__ = "sponsorships"

    id: Mapped[int] = mapped_column(primary_key=True)
    donor_id: Mapped[int] = mapped_column(ForeignKey("donors.id"), nullable=False, index=True)
    child_id: Mapped[int] = mapped_column(ForeignKey("children.id"), nullable=False, index=True)
    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id"), nullable=False, index=True)
    monthly_amount: Mapped[int] = mapped_column(db.Integer, nullable=False)
    start_date: Mapped[date | None] = mapped_column(db.Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(db.Date, nullable=True, index=True)

    donor = relationship("Donor", back_populates="sponsorships")
    child = relationship("Child", back_populates="sponsorships")
    project = relationship("Project", back_populates="sponsorships")
    donations = relationship("Donation", back_populates="sponsorship")

    __table_args__ = (
        CheckConstraint("monthly_amount > 0", name="ck_sponsorships_monthly_amount_positive"),
        Index("idx_sponsorships_donor_child", "donor_id", "child_id", "end_date"),
    )

    def __repr__(self):
        return f"<Sponsorship donor={self.donor_id} child={self.child_id}>"

    @property
    def is_active(self) -> bool:
        return self.end_date is None
