# donation_app/models/child.py

from __future__ import annotations

from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import ArchivableMixin, BaseModel, db


class Child(ArchivableMixin, BaseModel):
    """A sponsored child. Name is the matching key for imports."""

    __tablename__ = "children"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(db.String(200), nullable=False, index=True)
    gender: Mapped[str | None] = mapped_column(db.String(32), nullable=True)

    sponsorships = relationship("Sponsorship", back_populates="child")
    donations = relationship("Donation", back_populates="child")

    def __repr__(self):
        return f"<Child {self.name}>"

    def can_be_deleted(self) -> bool:
        return not self.sponsorships
