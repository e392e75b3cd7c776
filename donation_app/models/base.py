# donation_app/models/base.py
"""
Shared SQLAlchemy base classes.
"""

from __future__ import annotations

from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.orm import Mapped, mapped_column

db = SQLAlchemy()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BaseModel(db.Model):
    """Abstract base providing audit timestamps for every table."""

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )


class ArchivableMixin:
    """
    Soft-delete support via an ``archived_at`` timestamp.

    Archived rows stay in place so history (donations, sponsorships) keeps
    pointing at them; ``restore`` clears the marker.
    """

    archived_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True, index=True)

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None

    def archive(self, *, archived_at: datetime | None = None) -> None:
        if self.archived_at is None:
            self.archived_at = archived_at or _utcnow()

    def restore(self) -> bool:
        """Clear the archive marker, returning True when the row was archived."""

        if self.archived_at is None:
            return False
        self.archived_at = None
        return True
