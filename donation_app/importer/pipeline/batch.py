"""
Batch orchestration for payment export imports.

The orchestrator reads the whole file once, normalizes every record and builds
the duplicate index, then processes rows strictly in file order. Each row is
its own transaction: a failing row is rolled back and recorded while the rest
of the file keeps going. Only an unreadable file, a broken header or a file
with no parseable rows aborts the batch.
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Sequence

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from donation_app.importer.adapters import (
    ImportRow,
    RawPaymentRecord,
    RowParseError,
    StripeCSVAdapter,
    normalize_record,
)
from donation_app.importer.metrics import record_batch, record_donation_status, record_row_outcome
from donation_app.models import DonationStatus, ImportRowError, ImportRun, ImportRunStatus, db
from donation_app.utils.importer import get_allocation_policy, get_default_project_title

from .association import (
    DEFAULT_PROJECT_TITLE,
    DEFAULT_STRATEGIES,
    AssociationResolver,
    ExtractionStrategy,
    SQLAlchemyAssociationRepository,
)
from .duplicates import DuplicateGuard
from .factory import AllocationPolicy, DonationFactory, FactoryResult
from .status import classify_status

CSV_ENCODING = "utf-8-sig"


class ImporterError(Exception):
    """Base exception for importer failures."""


class ImportAbortedError(ImporterError):
    """Raised when a batch cannot proceed at all."""


@dataclass(frozen=True)
class RowError:
    row_number: int
    message: str

    def as_dict(self) -> dict[str, object]:
        return {"row_number": self.row_number, "message": self.message}


@dataclass
class BatchSummary:
    """Aggregate outcome of one payment import batch."""

    dry_run: bool = False
    rows_read: int = 0
    rows_processed: int = 0
    rows_skipped: int = 0
    rows_skipped_blank: int = 0
    donations_created: int = 0
    status_counts: Counter = field(default_factory=Counter)
    duplicates_flagged: int = 0
    donors_created: int = 0
    children_created: int = 0
    projects_created: int = 0
    sponsorships_created: int = 0
    invoices_created: int = 0
    entities_restored: int = 0
    errors: list[RowError] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> int:
        return self.status_counts[DonationStatus.SUCCEEDED.value]

    @property
    def failed(self) -> int:
        return self.status_counts[DonationStatus.FAILED.value]

    @property
    def refunded(self) -> int:
        return self.status_counts[DonationStatus.REFUNDED.value]

    @property
    def canceled(self) -> int:
        return self.status_counts[DonationStatus.CANCELED.value]

    @property
    def needs_attention(self) -> int:
        return self.status_counts[DonationStatus.NEEDS_ATTENTION.value]

    def record_error(self, row_number: int, message: str) -> None:
        self.rows_skipped += 1
        self.errors.append(RowError(row_number=row_number, message=message))

    def record_result(
        self,
        result: FactoryResult,
        outcomes: Sequence[tuple[str, bool]],
        *,
        children_created: int,
        projects_created: int,
    ) -> None:
        """Fold one committed row into the totals. ``outcomes`` holds ``(status, duplicate_flag)`` per donation."""

        self.rows_processed += 1
        self.donations_created += len(outcomes)
        for status, duplicate in outcomes:
            self.status_counts[status] += 1
            if duplicate:
                self.duplicates_flagged += 1
        self.donors_created += int(result.donor_created)
        self.children_created += children_created
        self.projects_created += projects_created
        self.sponsorships_created += result.sponsorships_created
        self.invoices_created += int(result.invoice_created)
        self.entities_restored += result.entities_restored

    def as_dict(self) -> dict[str, object]:
        return {
            "dry_run": self.dry_run,
            "rows_read": self.rows_read,
            "rows_processed": self.rows_processed,
            "rows_skipped": self.rows_skipped,
            "rows_skipped_blank": self.rows_skipped_blank,
            "donations_created": self.donations_created,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "refunded": self.refunded,
            "canceled": self.canceled,
            "needs_attention": self.needs_attention,
            "duplicates_flagged": self.duplicates_flagged,
            "donors_created": self.donors_created,
            "children_created": self.children_created,
            "projects_created": self.projects_created,
            "sponsorships_created": self.sponsorships_created,
            "invoices_created": self.invoices_created,
            "entities_restored": self.entities_restored,
            "duration_seconds": round(self.duration_seconds, 3),
            "errors": [error.as_dict() for error in self.errors],
        }

    def format_text(self, *, max_errors: int = 20) -> str:
        lines = [
            f"  rows_read          : {self.rows_read}",
            f"  rows_processed     : {self.rows_processed}",
            f"  rows_skipped       : {self.rows_skipped}",
            f"  donations_created  : {self.donations_created}",
            f"  succeeded          : {self.succeeded}",
            f"  failed             : {self.failed}",
            f"  refunded           : {self.refunded}",
            f"  canceled           : {self.canceled}",
            f"  needs_attention    : {self.needs_attention}",
            f"  duplicates_flagged : {self.duplicates_flagged}",
            f"  donors_created     : {self.donors_created}",
            f"  children_created   : {self.children_created}",
            f"  projects_created   : {self.projects_created}",
            f"  sponsorships_new   : {self.sponsorships_created}",
            f"  entities_restored  : {self.entities_restored}",
        ]
        if self.errors:
            lines.append("  errors:")
            lines.extend(f"    row {error.row_number}: {error.message}" for error in self.errors[:max_errors])
            if len(self.errors) > max_errors:
                lines.append(f"    ... {len(self.errors) - max_errors} more")
        return "\n".join(lines)


@dataclass
class _PreparedRow:
    record: RawPaymentRecord
    row: ImportRow | None = None
    error: RowParseError | None = None


class BatchOrchestrator:
    """Drive the per-row pipeline over one payment export."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        import_run: ImportRun | None = None,
        dry_run: bool = False,
        allocation: AllocationPolicy = "full",
        default_project_title: str = DEFAULT_PROJECT_TITLE,
        strategies: Sequence[ExtractionStrategy] = DEFAULT_STRATEGIES,
    ) -> None:
        self.session: Session = session or db.session
        self.import_run_id = import_run.id if import_run is not None else None
        self.dry_run = dry_run
        self.resolver = AssociationResolver(
            SQLAlchemyAssociationRepository(self.session),
            default_project_title=default_project_title,
            strategies=strategies,
        )
        self.factory = DonationFactory(
            self.session,
            allocation=allocation,
            import_run_id=None if dry_run else self.import_run_id,
        )
        self.raw_rows: dict[int, dict[str, object | None]] = {}

    def run_path(self, path: Path | str) -> BatchSummary:
        with Path(path).open("r", encoding=CSV_ENCODING, errors="replace", newline="") as handle:
            return self.run(handle)

    def run(self, file_obj: IO[str]) -> BatchSummary:
        started = time.monotonic()
        summary = BatchSummary(dry_run=self.dry_run)
        adapter = StripeCSVAdapter(file_obj)
        prepared = self._prepare(adapter)
        summary.rows_read = adapter.statistics.rows_read
        summary.rows_skipped_blank = adapter.statistics.rows_skipped_blank

        if prepared and all(item.row is None for item in prepared):
            raise ImportAbortedError(f"No parseable rows in file ({len(prepared)} rows rejected).")

        guard = self._build_duplicate_guard(prepared)

        for item in prepared:
            if item.error is not None:
                summary.record_error(item.error.row_number, item.error.reason)
                record_row_outcome("parse_error")
                continue
            self._process_row(item.row, guard, summary)

        summary.duration_seconds = time.monotonic() - started
        return summary

    def _prepare(self, adapter: StripeCSVAdapter) -> list[_PreparedRow]:
        prepared: list[_PreparedRow] = []
        for record in adapter.iter_records():
            self.raw_rows[record.row_number] = record.as_json()
            try:
                prepared.append(_PreparedRow(record=record, row=normalize_record(record)))
            except RowParseError as exc:
                prepared.append(_PreparedRow(record=record, error=exc))
        return prepared

    def _build_duplicate_guard(self, prepared: list[_PreparedRow]) -> DuplicateGuard:
        guard = DuplicateGuard()
        # Names label rows create earlier in the file; dry runs discard them per row.
        pending_names: set[str] = set()
        for item in prepared:
            row = item.row
            if row is None:
                continue
            try:
                keys = self.resolver.child_key_for(row, pending_names=pending_names)
                if not self.dry_run and row.metadata_child_ref is None:
                    pending_names.update(keys)
            except (SQLAlchemyError, ValueError, OverflowError) as exc:
                self.session.rollback()
                keys = []
                current_app.logger.warning(
                    "Importer duplicate pre-pass skipped row",
                    extra={"importer_run_id": self.import_run_id, "importer_row_number": row.row_number, "importer_error": str(exc)},
                )
            guard.register(row.grouping_key, row.row_number, keys)
        return guard

    def _process_row(self, row: ImportRow, guard: DuplicateGuard, summary: BatchSummary) -> None:
        try:
            association = self.resolver.resolve(row)
            classification = classify_status(row.raw_status)
            result = self.factory.build(row, classification, association, duplicates=guard)
            outcomes = [(donation.status.value, bool(donation.duplicate_flag)) for donation in result.donations]
            if self.dry_run:
                self.session.rollback()
            else:
                self.session.commit()
        except (SQLAlchemyError, ValueError, OverflowError) as exc:
            self.session.rollback()
            summary.record_error(row.row_number, f"row could not be saved: {exc}")
            record_row_outcome("failed")
            current_app.logger.warning(
                "Importer row failed",
                extra={"importer_run_id": self.import_run_id, "importer_row_number": row.row_number, "importer_error": str(exc)},
            )
            return

        summary.record_result(
            result,
            outcomes,
            children_created=association.children_created,
            projects_created=association.projects_created,
        )
        record_row_outcome("processed")
        for status, count in Counter(status for status, _ in outcomes).items():
            record_donation_status(status, count)


def persist_batch_summary(import_run: ImportRun, summary: BatchSummary, raw_rows: dict[int, dict] | None = None) -> None:
    """Store counts and row errors on the run; the caller commits."""

    counts = dict(import_run.counts_json or {})
    counts["stripe"] = summary.as_dict()
    import_run.counts_json = counts
    import_run.metrics_json = {"duration_seconds": round(summary.duration_seconds, 3)}
    raw_rows = raw_rows or {}
    for error in summary.errors:
        import_run.row_errors.append(
            ImportRowError(row_number=error.row_number, message=error.message, raw_json=raw_rows.get(error.row_number))
        )


def execute_import_run(
    run: ImportRun,
    csv_path: Path,
    *,
    dry_run: bool = False,
    allocation: AllocationPolicy | None = None,
    default_project_title: str | None = None,
) -> BatchSummary:
    """
    Run a full import for ``run`` and keep its lifecycle columns in step.

    Fatal errors mark the run ``FAILED`` with an ``error_summary`` and propagate.
    """

    run_id = run.id
    run.status = ImportRunStatus.RUNNING
    run.started_at = datetime.now(timezone.utc)
    db.session.commit()

    started = time.monotonic()
    try:
        orchestrator = BatchOrchestrator(
            db.session,
            import_run=run,
            dry_run=dry_run,
            allocation=allocation or get_allocation_policy(),
            default_project_title=default_project_title or get_default_project_title(),
        )
        summary = orchestrator.run_path(csv_path)
    except Exception as exc:
        db.session.rollback()
        record_batch(status="failure", duration_seconds=time.monotonic() - started)
        recovery_run = db.session.get(ImportRun, run_id)
        if recovery_run is None:
            raise
        recovery_run.status = ImportRunStatus.FAILED
        recovery_run.error_summary = str(exc)
        recovery_run.finished_at = datetime.now(timezone.utc)
        db.session.commit()
        current_app.logger.exception(
            "Importer run failed",
            extra={"importer_run_id": run_id, "importer_error": str(exc)},
        )
        raise

    run = db.session.get(ImportRun, run_id)
    run.status = ImportRunStatus.PARTIALLY_FAILED if summary.errors else ImportRunStatus.SUCCEEDED
    run.finished_at = datetime.now(timezone.utc)
    if summary.errors:
        run.error_summary = f"{len(summary.errors)} row(s) skipped"
    persist_batch_summary(run, summary, orchestrator.raw_rows)
    db.session.commit()
    record_batch(status="success", duration_seconds=summary.duration_seconds)
    current_app.logger.info(
        "Importer run completed",
        extra={
            "importer_run_id": run_id,
            "importer_status": run.status.value,
            "importer_dry_run": dry_run,
            "importer_rows_processed": summary.rows_processed,
            "importer_rows_skipped": summary.rows_skipped,
            "importer_donations_created": summary.donations_created,
            "importer_needs_attention": summary.needs_attention,
        },
    )
    return summary
