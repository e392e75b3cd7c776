"""
Service helpers for importer run querying, filtering, and serialization.

The runs endpoints consume these helpers to provide paginated listings and
detail payloads while keeping SQLAlchemy logic centralized and easily
testable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping

from sqlalchemy import and_
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from donation_app.models import ImportRun, ImportRunStatus, db

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100
DEFAULT_SORT = "-started_at"

VALID_SORT_FIELDS = {
    "id": ImportRun.id,
    "run_id": ImportRun.id,
    "source": ImportRun.source,
    "status": ImportRun.status,
    "started_at": ImportRun.started_at,
    "finished_at": ImportRun.finished_at,
    "created_at": ImportRun.created_at,
}


@dataclass(frozen=True)
class RunFilters:
    """Canonical set of filter options applied to importer runs queries."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    sort: str = DEFAULT_SORT
    statuses: tuple[ImportRunStatus, ...] = field(default_factory=tuple)
    include_dry_runs: bool = True

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        sort: str | None = None,
        statuses: Iterable[str] | None = None,
        include_dry_runs: str | bool | None = None,
    ) -> "RunFilters":
        """
        Coerce mixed user input into a validated ``RunFilters`` instance.
        """

        resolved_page = coerce_positive_int(page, fallback=DEFAULT_PAGE)
        resolved_size = min(coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)

        resolved_sort = sort or DEFAULT_SORT
        sort_key = resolved_sort.lstrip("-")
        if sort_key not in VALID_SORT_FIELDS:
            raise ValueError(f"Unsupported sort field '{sort_key}'.")

        resolved_statuses: list[ImportRunStatus] = []
        for value in statuses or ():
            if value is None or value == "":
                continue
            resolved_statuses.append(_coerce_status(value))

        return cls(
            page=resolved_page,
            page_size=resolved_size,
            sort=resolved_sort,
            statuses=tuple(resolved_statuses),
            include_dry_runs=coerce_bool(include_dry_runs, default=True),
        )


@dataclass(slots=True)
class RunSummary:
    """Summarized representation of an importer run."""

    id: int
    source: str
    adapter: str | None
    status: str
    dry_run: bool
    started_at: datetime | None
    finished_at: datetime | None
    duration_seconds: float | None
    rows_processed: int
    rows_skipped: int
    donations_created: int
    needs_attention: int
    error_summary: str | None
    can_retry: bool
    counts: Mapping[str, Any]

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "adapter": self.adapter,
            "status": self.status,
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
            "rows_processed": self.rows_processed,
            "rows_skipped": self.rows_skipped,
            "donations_created": self.donations_created,
            "needs_attention": self.needs_attention,
            "error_summary": self.error_summary,
            "can_retry": self.can_retry,
            "counts": dict(self.counts),
        }


@dataclass(slots=True)
class RunListResult:
    """Paginated result set for importer runs."""

    items: list[RunSummary]
    total: int
    page: int
    page_size: int
    total_pages: int


class ImportRunService:
    """Facade for querying importer runs with consistent filtering semantics."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def list_runs(self, filters: RunFilters) -> RunListResult:
        query = self._apply_filters(self.session.query(ImportRun), filters)

        total = query.count()
        if total == 0:
            return RunListResult(items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0)

        paginated = (
            query.order_by(_resolve_sort_expression(filters.sort), ImportRun.id.desc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
            .all()
        )
        total_pages = (total + filters.page_size - 1) // filters.page_size
        return RunListResult(
            items=[self.summarize(run) for run in paginated],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            total_pages=total_pages,
        )

    def get_run(self, run_id: int) -> ImportRun:
        run = self.session.get(ImportRun, run_id)
        if run is None:
            raise NoResultFound(f"Import run {run_id} not found.")
        return run

    def summarize(self, run: ImportRun) -> RunSummary:
        counts = dict((run.counts_json or {}).get("stripe") or {})

        duration_seconds: float | None = None
        if run.started_at:
            finished = run.finished_at or datetime.now(timezone.utc)
            duration_seconds = (_as_utc(finished) - _as_utc(run.started_at)).total_seconds()

        return RunSummary(
            id=run.id,
            source=run.source,
            adapter=run.adapter,
            status=run.status.value if isinstance(run.status, ImportRunStatus) else str(run.status),
            dry_run=run.dry_run,
            started_at=run.started_at,
            finished_at=run.finished_at,
            duration_seconds=duration_seconds,
            rows_processed=int(counts.get("rows_processed", 0) or 0),
            rows_skipped=int(counts.get("rows_skipped", 0) or 0),
            donations_created=int(counts.get("donations_created", 0) or 0),
            needs_attention=int(counts.get("needs_attention", 0) or 0),
            error_summary=run.error_summary,
            can_retry=can_retry(run),
            counts=counts,
        )

    def _apply_filters(self, query, filters: RunFilters):
        predicates = []
        if filters.statuses:
            predicates.append(ImportRun.status.in_(filters.statuses))
        if not filters.include_dry_runs:
            predicates.append(ImportRun.dry_run.is_(False))
        if predicates:
            query = query.filter(and_(*predicates))
        return query


def coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.isascii() and candidate.isdigit():
        return max(1, int(candidate))
    raise ValueError(f"Expected positive integer for pagination, received '{candidate}'.")


def coerce_bool(candidate: str | bool | None, *, default: bool) -> bool:
    if candidate is None:
        return default
    if isinstance(candidate, bool):
        return candidate
    normalized = candidate.strip().lower()
    if normalized in ("1", "true", "yes", "y", "on"):
        return True
    if normalized in ("0", "false", "no", "n", "off"):
        return False
    return default


def _coerce_status(value: str | ImportRunStatus) -> ImportRunStatus:
    if isinstance(value, ImportRunStatus):
        return value
    normalized = str(value).strip().lower()
    try:
        return ImportRunStatus(normalized)
    except ValueError:
        raise ValueError(f"Unsupported status filter '{value}'.") from None


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _resolve_sort_expression(sort: str):
    descending = sort.startswith("-")
    expression = VALID_SORT_FIELDS.get(sort.lstrip("-"))
    if expression is None:
        raise ValueError(f"Unsupported sort field '{sort}'.")
    return expression.desc() if descending else expression.asc()


def can_retry(run: ImportRun) -> bool:
    """A run can be retried when its stored upload is still on disk."""

    params = run.ingest_params_json
    if not params:
        return False
    file_path = params.get("file_path")
    if not params.get("keep_file", False) or not file_path:
        return False
    try:
        return Path(file_path).exists()
    except (TypeError, ValueError):
        return False
