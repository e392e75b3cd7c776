"""
CLI commands for the payment importer.

``flask importer run --file export.csv`` is the main entry point; runs can
also be queued on the Celery worker and retried from their stored parameters.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from donation_app.importer.celery_app import DEFAULT_QUEUE_NAME, INGEST_TASK_NAME, get_celery_app
from donation_app.importer.pipeline import BatchSummary, execute_import_run
from donation_app.importer.utils import cleanup_stale_uploads, resolve_upload_directory
from donation_app.models import Donation, ImportRun, ImportRunStatus, Sponsorship, StripeInvoice, db
from donation_app.utils.importer import get_importer_adapters, is_importer_enabled

SOURCE_NAME = "stripe"
ADAPTER_NAME = "stripe_csv"


@click.group(name="importer", invoke_without_command=True)
@click.pass_context
def importer_cli(ctx):
    """
    Payment importer commands.

    Displays configured adapters when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_importer_enabled(app):
        raise click.ClickException(
            "Importer is disabled via IMPORTER_ENABLED=false. Enable it to run importer CLI commands."
        )
    if ctx.invoked_subcommand is None:
        adapters = get_importer_adapters(app)
        if not adapters:
            click.echo("No importer adapters configured.")
        else:
            click.echo("Enabled importer adapters:")
            for adapter in adapters:
                click.echo(f"  - {adapter}")


def get_disabled_importer_group() -> click.Group:
    """
    Return a minimal command group that informs the operator the importer is disabled.
    """

    @click.group(name="importer", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Importer commands are unavailable because IMPORTER_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Importer Celery app is unavailable. Ensure IMPORTER_ENABLED=true and the "
            "importer package initialises before running worker commands."
        )
    return celery_app


def _is_production(app) -> bool:
    return str(app.config.get("ENV_NAME", "")).lower() == "production"


def clear_existing_records() -> dict[str, int]:
    """Delete imported financial records (donations, sponsorships, invoices); the caller commits."""

    counts = {
        "donations": db.session.query(Donation).delete(synchronize_session=False),
        "sponsorships": db.session.query(Sponsorship).delete(synchronize_session=False),
        "stripe_invoices": db.session.query(StripeInvoice).delete(synchronize_session=False),
    }
    return counts


def _format_summary(run: ImportRun, summary: BatchSummary) -> str:
    status_value = run.status.value if hasattr(run.status, "value") else str(run.status)
    return f"Run {run.id} completed with status {status_value} (dry_run={summary.dry_run}).\n" + summary.format_text()


@importer_cli.command("run")
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="Path to the payment export CSV.",
)
@click.option(
    "--clear-existing",
    is_flag=True,
    help="Delete all donations, sponsorships and invoice records before importing.",
)
@click.option("--yes", "assume_yes", is_flag=True, help="Skip the --clear-existing confirmation prompt.")
@click.option("--dry-run", is_flag=True, help="Resolve and count every row, then roll back all writes.")
@click.option(
    "--inline/--no-inline",
    default=True,
    help="Run inline within the CLI process (default) or queue the run on the Celery worker.",
)
@click.option(
    "--summary-json",
    is_flag=True,
    help="Emit a machine-readable summary payload after completion (inline runs only).",
)
@click.pass_context
def importer_run(
    ctx,
    file_path: Path,
    clear_existing: bool,
    assume_yes: bool,
    dry_run: bool,
    inline: bool,
    summary_json: bool,
):
    """Import a Stripe payment export."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if summary_json and not inline:
        raise click.ClickException("--summary-json is only available for --inline runs.")

    csv_path = file_path.resolve()

    if clear_existing:
        if _is_production(app):
            raise click.ClickException("--clear-existing is refused in production.")
        if dry_run:
            raise click.ClickException("--clear-existing cannot be combined with --dry-run.")
        if not assume_yes:
            click.confirm("Delete ALL donations, sponsorships and invoice records before importing?", abort=True)
        cleared = clear_existing_records()
        db.session.commit()
        app.logger.warning("Importer cleared existing financial records", extra={"importer_cleared": cleared})
        click.echo(
            "Cleared {donations} donation(s), {sponsorships} sponsorship(s), "
            "{stripe_invoices} invoice record(s).".format(**cleared)
        )

    run = ImportRun(
        source=SOURCE_NAME,
        adapter=ADAPTER_NAME,
        dry_run=dry_run,
        status=ImportRunStatus.PENDING,
        notes=f"CLI ingest from {csv_path}",
        counts_json={},
        metrics_json={},
        ingest_params_json={
            "file_path": str(csv_path),
            "dry_run": dry_run,
            "keep_file": True,
        },
    )
    db.session.add(run)
    db.session.commit()
    run_id = run.id

    if not inline:
        celery_app = _resolve_celery(app)
        try:
            async_result = celery_app.send_task(
                INGEST_TASK_NAME,
                kwargs={"run_id": run_id, "file_path": str(csv_path), "dry_run": dry_run, "keep_file": True},
            )
        except Exception as exc:
            recovery_run = db.session.get(ImportRun, run_id)
            if recovery_run is not None:
                recovery_run.status = ImportRunStatus.FAILED
                recovery_run.error_summary = str(exc)
                recovery_run.finished_at = datetime.now(timezone.utc)
                db.session.commit()
            raise click.ClickException(f"Failed to enqueue importer run {run_id}: {exc}") from exc

        app.logger.info(
            "Importer run queued via CLI",
            extra={"importer_run_id": run_id, "importer_task_id": async_result.id, "importer_dry_run": dry_run},
        )
        click.echo(json.dumps({"run_id": run_id, "task_id": async_result.id, "status": "queued", "dry_run": dry_run}))
        return

    try:
        summary = execute_import_run(run, csv_path, dry_run=dry_run)
    except Exception as exc:
        raise click.ClickException(f"Import run {run_id} failed: {exc}") from exc

    run = db.session.get(ImportRun, run_id)
    click.echo(_format_summary(run, summary))
    if summary_json:
        payload = summary.as_dict()
        payload["run_id"] = run_id
        click.echo(json.dumps(payload, indent=2, sort_keys=True))


@importer_cli.command("retry")
@click.option("--run-id", required=True, type=int, help="ID of the import run to retry.")
@click.option("--inline/--no-inline", default=True, help="Run inline (default) or queue on the worker.")
@click.pass_context
def importer_retry(ctx, run_id: int, inline: bool):
    """Re-run an import from its stored parameters."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()

    run = db.session.get(ImportRun, run_id)
    if run is None:
        raise click.ClickException(f"Import run {run_id} not found.")

    params = run.ingest_params_json or {}
    file_path = params.get("file_path")
    if not file_path:
        raise click.ClickException(f"Import run {run_id} cannot be retried: file_path missing from stored parameters.")
    path = Path(file_path)
    if not path.exists():
        raise click.ClickException(
            f"Import run {run_id} cannot be retried: file not found at {file_path}. The upload may have been cleaned up."
        )
    dry_run = bool(params.get("dry_run", False))

    run.status = ImportRunStatus.PENDING
    run.started_at = None
    run.finished_at = None
    run.error_summary = None
    run.counts_json = {}
    run.metrics_json = {}
    run.row_errors.clear()
    db.session.commit()

    if not inline:
        celery_app = _resolve_celery(app)
        async_result = celery_app.send_task(
            INGEST_TASK_NAME,
            kwargs={"run_id": run_id, "file_path": str(path), "dry_run": dry_run, "keep_file": True},
        )
        app.logger.info(
            "Import run retried via CLI",
            extra={"importer_run_id": run_id, "importer_task_id": async_result.id},
        )
        click.echo(json.dumps({"run_id": run_id, "task_id": async_result.id, "status": "queued"}))
        return

    try:
        summary = execute_import_run(run, path, dry_run=dry_run)
    except Exception as exc:
        raise click.ClickException(f"Import run {run_id} failed: {exc}") from exc
    click.echo(_format_summary(db.session.get(ImportRun, run_id), summary))


@importer_cli.command("cleanup-uploads")
@click.option(
    "--max-age-hours",
    default=72,
    show_default=True,
    type=int,
    help="Remove importer uploads older than the specified number of hours.",
)
@click.pass_context
def importer_cleanup_uploads(ctx, max_age_hours: int):
    """
    Delete stale importer upload files from the configured storage directory.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    uploads_dir = resolve_upload_directory(app)
    removed, _ = cleanup_stale_uploads(app, max_age_hours=max_age_hours)
    click.echo(f"Removed {removed} upload file(s) older than {max_age_hours} hours from {uploads_dir}.")


@importer_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the importer background worker."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not app.config.get("IMPORTER_WORKER_ENABLED"):
        click.echo(
            "Warning: IMPORTER_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list to consume.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """
    Start the Celery worker in the current process.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    click.echo(f"Starting importer worker (queues: {queues}, loglevel: {loglevel})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """
    Validate worker connectivity by executing the heartbeat task.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("importer.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'importer.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc

    click.echo(json.dumps(payload, indent=2))
