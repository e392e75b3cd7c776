"""
SQLAlchemy models for importer bookkeeping.

An ``ImportRun`` records one execution of the payment import; row-level
failures are kept in ``import_row_errors`` so operators can review them
after the run finishes.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


class ImportRunStatus(str, enum.Enum):
    """Lifecycle states for an import run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ImportRun(BaseModel):
    """Metadata describing a single importer execution."""

    __tablename__ = "import_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(db.String(100), nullable=False, index=True)
    adapter: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    status: Mapped[ImportRunStatus] = mapped_column(
        Enum(ImportRunStatus, name="import_run_status_enum"),
        nullable=False,
        default=ImportRunStatus.PENDING,
        index=True,
    )
    dry_run: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    counts_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    metrics_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    ingest_params_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Stored parameters for retry support (file_path, dry_run, keep_file)",
    )

    row_errors = relationship(
        "ImportRowError",
        back_populates="import_run",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ImportRowError.row_number",
    )
    donations = relationship("Donation", back_populates="import_run", passive_deletes=True)

    __table_args__ = (Index("idx_import_runs_source_status", "source", "status"),)

    def __repr__(self):
        return f"<ImportRun {self.id} {self.source} {self.status.value}>"

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


class ImportRowError(BaseModel):
    """A row the importer could not turn into donations."""

    __tablename__ = "import_row_errors"

    id: Mapped[int] = mapped_column(primary_key=True)
    run_id: Mapped[int] = mapped_column(
        ForeignKey("import_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    row_number: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    message: Mapped[str] = mapped_column(db.Text, nullable=False)
    raw_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    import_run = relationship("ImportRun", back_populates="row_errors")

    __table_args__ = (Index("idx_import_row_errors_run_row", "run_id", "row_number"),)

    def as_dict(self) -> dict[str, object]:
        return {"row_number": self.row_number, "message": self.message}
