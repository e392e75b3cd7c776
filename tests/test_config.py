import json
import logging

import pytest

from config.base import _coerce_bool, _coerce_int, _parse_adapter_list
from config.validation import validate_environment
from donation_app.utils.importer import get_allocation_policy, get_default_project_title
from donation_app.utils.logging_config import JsonFormatter


class TestConfigParsing:
    """Environment value coercion"""

    def test_parse_adapter_list_dedupes_and_lowercases(self):
        assert _parse_adapter_list(" Stripe_CSV, ,stripe_csv,other ") == ("stripe_csv", "other")
        assert _parse_adapter_list("") == ()

    def test_coerce_helpers(self):
        assert _coerce_bool("YES") is True
        assert _coerce_bool("off", default=True) is False
        assert _coerce_bool("unknown", default=True) is True
        assert _coerce_int("12", 5) == 12
        assert _coerce_int("twelve", 5) == 5


class TestImporterSettings:
    def test_allocation_policy(self, app):
        assert get_allocation_policy(app) == "full"

        app.config["IMPORTER_MULTI_CHILD_ALLOCATION"] = " Split "
        assert get_allocation_policy(app) == "split"

        app.config["IMPORTER_MULTI_CHILD_ALLOCATION"] = "half"
        with pytest.raises(ValueError, match="must be one of full, split"):
            get_allocation_policy(app)

    def test_default_project_title_falls_back(self, app):
        app.config["IMPORTER_DEFAULT_PROJECT_TITLE"] = "   "
        assert get_default_project_title(app) == "General Donation"

        app.config["IMPORTER_DEFAULT_PROJECT_TITLE"] = "Where Needed Most"
        assert get_default_project_title(app) == "Where Needed Most"


class TestValidateEnvironment:
    def test_development_passes(self, monkeypatch):
        monkeypatch.delenv("IMPORTER_MULTI_CHILD_ALLOCATION", raising=False)

        assert validate_environment("development") == (True, [])

    def test_bad_allocation_is_reported_everywhere(self, monkeypatch):
        monkeypatch.setenv("IMPORTER_MULTI_CHILD_ALLOCATION", "proportional")

        is_valid, errors = validate_environment("testing")

        assert is_valid is False
        assert "IMPORTER_MULTI_CHILD_ALLOCATION" in errors[0]

    def test_production_requires_secrets(self, monkeypatch):
        monkeypatch.delenv("IMPORTER_MULTI_CHILD_ALLOCATION", raising=False)
        monkeypatch.setenv("SECRET_KEY", "your-secret-key")
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.setenv("IMPORTER_WORKER_ENABLED", "true")
        monkeypatch.delenv("CELERY_BROKER_URL", raising=False)

        is_valid, errors = validate_environment("production")

        assert is_valid is False
        assert len(errors) == 3
        assert any("SECRET_KEY" in error for error in errors)
        assert any("DATABASE_URL" in error for error in errors)
        assert any("CELERY_BROKER_URL" in error for error in errors)


def test_json_formatter_keeps_extra_fields():
    record = logging.LogRecord("donation_app", logging.INFO, __file__, 10, "Run %s done", (7,), None)
    record.importer_run_id = 7
    record.importer_status = "succeeded"

    payload = json.loads(JsonFormatter("Donation Tracker").format(record))

    assert payload["message"] == "Run 7 done"
    assert payload["level"] == "INFO"
    assert payload["app"] == "Donation Tracker"
    assert payload["importer_run_id"] == 7
    assert payload["importer_status"] == "succeeded"
    assert "exception" not in payload


def test_metrics_endpoint_respects_monitoring_flag(app, client):
    assert client.get("/metrics").status_code == 404

    app.config["MONITORING_ENABLED"] = True
    try:
        response = client.get("/metrics")
    finally:
        app.config["MONITORING_ENABLED"] = False

    assert response.status_code == 200
    assert response.content_type.startswith("text/plain")
    assert b"importer_stripe_rows_total" in response.data
