import json
import os
import time
from unittest.mock import Mock, patch

from donation_app.importer.utils import resolve_upload_directory
from donation_app.models import Donation, ImportRun, ImportRunStatus, Sponsorship, db


def _json_tail(output: str) -> dict:
    return json.loads(output[output.index("{") :])


def test_importer_group_lists_adapters(runner):
    result = runner.invoke(args=["importer"])

    assert result.exit_code == 0, result.output
    assert "stripe_csv" in result.output


def test_importer_run_inline_with_summary_json(runner, stripe_csv, payment_row):
    path = stripe_csv([payment_row(), payment_row(Status="disputed"), payment_row(Amount="abc")])

    result = runner.invoke(args=["importer", "run", "--file", str(path), "--summary-json"])

    assert result.exit_code == 0, result.output
    assert "completed with status partially_failed" in result.output
    payload = _json_tail(result.output)
    assert payload["donations_created"] == 2
    assert payload["needs_attention"] == 1
    assert payload["rows_skipped"] == 1

    run = db.session.get(ImportRun, payload["run_id"])
    assert run.source == "stripe"
    assert run.adapter == "stripe_csv"
    assert run.status == ImportRunStatus.PARTIALLY_FAILED
    assert run.ingest_params_json["file_path"] == str(path.resolve())
    assert db.session.query(Donation).count() == 2


def test_importer_run_dry_run(runner, stripe_csv, payment_row):
    path = stripe_csv([payment_row()])

    result = runner.invoke(args=["importer", "run", "--file", str(path), "--dry-run", "--summary-json"])

    assert result.exit_code == 0, result.output
    payload = _json_tail(result.output)
    assert payload["dry_run"] is True
    assert payload["donations_created"] == 1
    assert db.session.query(Donation).count() == 0
    assert db.session.get(ImportRun, payload["run_id"]).dry_run is True


def test_importer_run_clear_existing(runner, stripe_csv, payment_row):
    sponsorship_row = payment_row(
        **{"Cust Subscription Data Plan Nickname": "Sponsorship for Ana", "Cust Subscription Data ID": "sub_1"}
    )
    path = stripe_csv([sponsorship_row])
    assert runner.invoke(args=["importer", "run", "--file", str(path)]).exit_code == 0
    assert db.session.query(Sponsorship).count() == 1

    result = runner.invoke(args=["importer", "run", "--file", str(path), "--clear-existing", "--yes"])

    assert result.exit_code == 0, result.output
    assert "Cleared 1 donation(s), 1 sponsorship(s), 1 invoice record(s)." in result.output
    assert db.session.query(Donation).count() == 1
    assert db.session.query(Sponsorship).count() == 1


def test_importer_run_clear_existing_requires_confirmation(runner, stripe_csv, payment_row):
    path = stripe_csv([payment_row()])
    runner.invoke(args=["importer", "run", "--file", str(path)])

    result = runner.invoke(args=["importer", "run", "--file", str(path), "--clear-existing"], input="n\n")

    assert result.exit_code == 1
    assert db.session.query(Donation).count() == 1


def test_importer_run_clear_existing_refused_in_production(app, runner, stripe_csv, payment_row):
    app.config["ENV_NAME"] = "production"
    path = stripe_csv([payment_row()])

    result = runner.invoke(args=["importer", "run", "--file", str(path), "--clear-existing", "--yes"])

    assert result.exit_code != 0
    assert "refused in production" in result.output
    assert db.session.query(ImportRun).count() == 0


def test_importer_run_clear_existing_conflicts_with_dry_run(runner, stripe_csv, payment_row):
    path = stripe_csv([payment_row()])

    result = runner.invoke(args=["importer", "run", "--file", str(path), "--clear-existing", "--yes", "--dry-run"])

    assert result.exit_code != 0
    assert "cannot be combined with --dry-run" in result.output


def test_importer_run_reports_fatal_errors(runner, tmp_path):
    path = tmp_path / "broken.csv"
    path.write_text("Foo,Bar\n1,2\n", encoding="utf-8")

    result = runner.invoke(args=["importer", "run", "--file", str(path)])

    assert result.exit_code != 0
    assert "failed: CSV header validation failed" in result.output
    run = db.session.query(ImportRun).one()
    assert run.status == ImportRunStatus.FAILED


def test_importer_run_can_queue_on_worker(runner, stripe_csv, payment_row):
    path = stripe_csv([payment_row()])
    async_result = Mock()
    async_result.id = "celery-task-123"
    celery_app = Mock()
    celery_app.send_task.return_value = async_result

    with patch("donation_app.importer.cli._resolve_celery", return_value=celery_app):
        result = runner.invoke(args=["importer", "run", "--file", str(path), "--no-inline"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output.strip())
    assert payload["status"] == "queued"
    assert payload["task_id"] == "celery-task-123"
    kwargs = celery_app.send_task.call_args.kwargs["kwargs"]
    assert kwargs["run_id"] == payload["run_id"]
    assert db.session.get(ImportRun, payload["run_id"]).status == ImportRunStatus.PENDING


def test_summary_json_requires_inline(runner, stripe_csv, payment_row):
    path = stripe_csv([payment_row()])

    with patch("donation_app.importer.cli._resolve_celery") as mock_resolve:
        result = runner.invoke(args=["importer", "run", "--file", str(path), "--no-inline", "--summary-json"])

    assert result.exit_code != 0
    assert "--summary-json is only available for --inline runs." in result.output
    mock_resolve.assert_not_called()


def test_importer_retry_reruns_stored_file(runner, tmp_path, stripe_csv, payment_row):
    path = tmp_path / "payments.csv"
    path.write_text("Foo,Bar\n1,2\n", encoding="utf-8")
    runner.invoke(args=["importer", "run", "--file", str(path)])
    run = db.session.query(ImportRun).one()
    assert run.status == ImportRunStatus.FAILED

    stripe_csv([payment_row()], name="payments.csv")
    result = runner.invoke(args=["importer", "retry", "--run-id", str(run.id)])

    assert result.exit_code == 0, result.output
    run = db.session.get(ImportRun, run.id)
    assert run.status == ImportRunStatus.SUCCEEDED
    assert run.error_summary is None
    assert db.session.query(Donation).count() == 1


def test_importer_retry_unknown_run(runner):
    result = runner.invoke(args=["importer", "retry", "--run-id", "999"])

    assert result.exit_code != 0
    assert "Import run 999 not found." in result.output


def test_cleanup_uploads_removes_stale_files(app, runner):
    upload_dir = resolve_upload_directory(app)
    stale = upload_dir / "old.csv"
    fresh = upload_dir / "new.csv"
    stale.write_text("x", encoding="utf-8")
    fresh.write_text("x", encoding="utf-8")
    old = time.time() - 100 * 3600
    os.utime(stale, (old, old))

    result = runner.invoke(args=["importer", "cleanup-uploads", "--max-age-hours", "72"])

    assert result.exit_code == 0, result.output
    assert "Removed 1 upload file(s)" in result.output
    assert not stale.exists()
    assert fresh.exists()
