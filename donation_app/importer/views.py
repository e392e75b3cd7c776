"""
Importer blueprint endpoints: health, uploads, run history and the review queue.
"""

from __future__ import annotations

from http import HTTPStatus
from pathlib import Path

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import NoResultFound

from donation_app.importer.pipeline import execute_import_run
from donation_app.importer.pipeline.review_service import ReviewFilters, ReviewQueueService
from donation_app.importer.pipeline.run_service import ImportRunService, RunFilters, coerce_bool
from donation_app.models import ImportRun, ImportRunStatus, db
from donation_app.utils.importer import is_importer_enabled

from .celery_app import DEFAULT_QUEUE_NAME, INGEST_TASK_NAME, get_celery_app
from .registry import AdapterDescriptor
from .utils import persist_upload, validate_upload

importer_blueprint = Blueprint("importer", __name__, url_prefix="/importer")


def _serialize_adapter(adapter: AdapterDescriptor) -> dict:
    return {
        "name": adapter.name,
        "title": adapter.title,
        "summary": adapter.summary,
        "optional_dependencies": list(adapter.optional_dependencies),
    }


def _json_error(message: str, status: HTTPStatus):
    return jsonify({"error": message}), status


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@importer_blueprint.before_request
def _ensure_importer_enabled():
    if not is_importer_enabled(current_app):
        return _json_error("Importer is disabled.", HTTPStatus.NOT_FOUND)
    return None


@importer_blueprint.get("/health")
def importer_healthcheck():
    """
    Lightweight health endpoint proving the importer blueprint mounted correctly.
    """
    importer_state = current_app.extensions.get("importer", {})
    adapters = importer_state.get("active_adapters", ())
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": importer_state.get("enabled", False),
                "worker_enabled": importer_state.get("worker_enabled", False),
                "adapters": [_serialize_adapter(adapter) for adapter in adapters],
            }
        ),
        HTTPStatus.OK,
    )


@importer_blueprint.post("/stripe-payments")
def importer_upload_stripe_payments():
    """
    Accept a payment export upload.

    Inline runs (``inline=true`` or no worker) return the batch summary;
    otherwise the run is queued and its id returned.
    """
    file_storage = request.files.get("file")
    try:
        validate_upload(file_storage, current_app)
    except OverflowError as exc:
        return _json_error(str(exc), HTTPStatus.REQUEST_ENTITY_TOO_LARGE)
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    dry_run = coerce_bool(request.form.get("dry_run"), default=False)
    worker_enabled = bool(current_app.config.get("IMPORTER_WORKER_ENABLED", False))
    inline = coerce_bool(request.form.get("inline"), default=not worker_enabled)

    stored_path: Path = persist_upload(file_storage, current_app)
    run = ImportRun(
        source="stripe",
        adapter="stripe_csv",
        dry_run=dry_run,
        status=ImportRunStatus.PENDING,
        notes=f"Upload {file_storage.filename}",
        counts_json={},
        metrics_json={},
        ingest_params_json={"file_path": str(stored_path), "dry_run": dry_run, "keep_file": True},
    )
    db.session.add(run)
    db.session.commit()
    run_id = run.id

    if inline:
        try:
            summary = execute_import_run(run, stored_path, dry_run=dry_run)
        except Exception as exc:
            current_app.logger.warning(
                "Importer upload run failed", extra={"importer_run_id": run_id, "importer_error": str(exc)}
            )
            return (
                jsonify({"run_id": run_id, "status": ImportRunStatus.FAILED.value, "error": str(exc)}),
                HTTPStatus.UNPROCESSABLE_ENTITY,
            )
        payload = summary.as_dict()
        payload.update({"run_id": run_id, "status": db.session.get(ImportRun, run_id).status.value})
        return jsonify(payload), HTTPStatus.OK

    celery_app = get_celery_app(current_app)
    if celery_app is None:
        return _json_error("Importer worker is not configured.", HTTPStatus.SERVICE_UNAVAILABLE)
    async_result = celery_app.send_task(
        INGEST_TASK_NAME,
        kwargs={"run_id": run_id, "file_path": str(stored_path), "dry_run": dry_run, "keep_file": True},
    )
    current_app.logger.info(
        "Importer run enqueued from upload",
        extra={"importer_run_id": run_id, "importer_task_id": async_result.id, "importer_dry_run": dry_run},
    )
    return (
        jsonify({"run_id": run_id, "task_id": async_result.id, "status": "queued", "queue": DEFAULT_QUEUE_NAME}),
        HTTPStatus.ACCEPTED,
    )


@importer_blueprint.get("/runs")
def importer_runs_list():
    raw = request.args
    try:
        filters = RunFilters.coerce(
            page=raw.get("page"),
            page_size=raw.get("per_page") or raw.get("page_size"),
            sort=raw.get("sort"),
            statuses=_split_csv(raw.get("status")),
            include_dry_runs=raw.get("include_dry_runs"),
        )
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    result = ImportRunService().list_runs(filters)
    return (
        jsonify(
            {
                "runs": [item.as_dict() for item in result.items],
                "total": result.total,
                "page": result.page,
                "page_size": result.page_size,
                "total_pages": result.total_pages,
            }
        ),
        HTTPStatus.OK,
    )


@importer_blueprint.get("/runs/<int:run_id>")
def importer_run_detail(run_id: int):
    service = ImportRunService()
    try:
        run = service.get_run(run_id)
    except NoResultFound as exc:
        return _json_error(str(exc), HTTPStatus.NOT_FOUND)

    payload = service.summarize(run).as_dict()
    payload["notes"] = run.notes
    payload["row_errors"] = [error.as_dict() for error in run.row_errors]
    return jsonify(payload), HTTPStatus.OK


@importer_blueprint.get("/review")
def importer_review_queue():
    raw = request.args
    try:
        filters = ReviewFilters.coerce(
            page=raw.get("page"),
            page_size=raw.get("per_page") or raw.get("page_size"),
            run_id=raw.get("run_id"),
            reason=raw.get("reason"),
            duplicates_only=raw.get("duplicates_only"),
            default_page_size=current_app.config.get("IMPORTER_REVIEW_PAGE_SIZE", 50),
        )
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    page = ReviewQueueService().list_queue(filters)
    return jsonify(page.as_dict()), HTTPStatus.OK
