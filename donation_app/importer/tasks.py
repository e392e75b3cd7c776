"""
Importer Celery tasks.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from celery import shared_task

from donation_app.importer.pipeline import execute_import_run
from donation_app.importer.utils import cleanup_upload
from donation_app.models import ImportRun, ImportRunStatus, db

from .celery_app import INGEST_TASK_NAME


@shared_task(name="importer.healthcheck", bind=True)
def importer_healthcheck(self) -> dict[str, Any]:
    """
    Simple heartbeat task used by worker health checks.
    """
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name=INGEST_TASK_NAME, bind=True)
def ingest_stripe_csv(self, *, run_id: int, file_path: str, dry_run: bool = False, keep_file: bool = False) -> dict[str, Any]:
    """
    Import a payment export for an existing ``ImportRun`` on the worker.
    """

    run = db.session.get(ImportRun, run_id)
    if run is None:
        raise ValueError(f"Import run {run_id} not found.")

    path = Path(file_path)
    if not path.exists():
        run.status = ImportRunStatus.FAILED
        run.error_summary = f"CSV file not found: {file_path}"
        run.finished_at = datetime.now(timezone.utc)
        db.session.commit()
        raise FileNotFoundError(f"CSV file not found: {file_path}")

    try:
        summary = execute_import_run(run, path, dry_run=dry_run)
    finally:
        if not keep_file:
            cleanup_upload(path)

    payload = summary.as_dict()
    payload["run_id"] = run_id
    return payload
