# conftest.py

import csv
import os
from datetime import date, datetime, timezone

import pytest

# Set testing environment BEFORE importing app so app.py loads TestingConfig
os.environ["FLASK_ENV"] = "testing"

from app import app as flask_app  # noqa: E402
from donation_app.importer.adapters import ImportRow  # noqa: E402
from donation_app.models import Child, Donor, Project, ProjectType, Sponsorship, db  # noqa: E402

STRIPE_HEADER = (
    "id,Created Formatted,Amount,Currency,Status,Description,Cust Subscription Data Plan Nickname,"
    "Transaction ID,Cust ID,Cust Subscription Data ID,Cust Email,Billing Details Email,Billing Details Name,"
    "Cust Phone,Metadata"
)


@pytest.fixture(scope="function")
def app(tmp_path):
    """Create and configure a test Flask application"""
    flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": False,
            "LOG_LEVEL": "WARNING",
            "IMPORTER_ENABLED": True,
            "IMPORTER_ADAPTERS": ("stripe_csv",),
            "IMPORTER_WORKER_ENABLED": False,
            "IMPORTER_UPLOAD_DIR": str(tmp_path / "uploads"),
            "IMPORTER_MULTI_CHILD_ALLOCATION": "full",
            "IMPORTER_DEFAULT_PROJECT_TITLE": "General Donation",
            "ENV_NAME": "testing",
        }
    )
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


@pytest.fixture
def stripe_csv(tmp_path):
    """
    Write a payment export and return its path.

    Rows are dicts keyed by the Stripe header names; missing columns are blank.
    """

    def _write(rows, *, header=STRIPE_HEADER, name="payments.csv"):
        columns = header.split(",")
        path = tmp_path / name
        with path.open("w", encoding="utf-8", newline="") as handle:
            writer = csv.writer(handle)
            writer.writerow(columns)
            for row in rows:
                writer.writerow([row.get(column, "") for column in columns])
        return path

    return _write


@pytest.fixture
def payment_row():
    """Factory for a succeeded one-off payment row."""

    counter = {"value": 0}

    def _row(**overrides):
        counter["value"] += 1
        row = {
            "id": f"ch_{counter['value']}",
            "Created Formatted": "2024-03-01 10:00:00",
            "Amount": "50.00",
            "Currency": "usd",
            "Status": "succeeded",
            "Description": "",
            "Cust Subscription Data Plan Nickname": "",
            "Transaction ID": f"in_{counter['value']}",
            "Cust ID": "cus_1",
            "Cust Email": "donor@example.com",
            "Billing Details Name": "Pat Donor",
        }
        row.update(overrides)
        return row

    return _row


@pytest.fixture
def sponsored_child(app):
    """A child with an active sponsorship on a sponsorship project."""

    donor = Donor(name="Existing Sponsor", email="sponsor@example.com")
    child = Child(name="Maria")
    project = Project(title="Sponsor Maria", project_type=ProjectType.SPONSORSHIP)
    db.session.add_all([donor, child, project])
    db.session.flush()
    db.session.add(
        Sponsorship(donor=donor, child=child, project=project, monthly_amount=5000, start_date=date(2024, 1, 1))
    )
    db.session.commit()
    return child


@pytest.fixture
def import_row():
    """Factory for normalized rows, bypassing the CSV layer."""

    def _build(**overrides):
        values = {
            "row_number": 2,
            "amount": 5000,
            "currency": "usd",
            "created_at": datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc),
            "raw_status": "succeeded",
            "customer_id": "cus_1",
            "email": "donor@example.com",
            "billing_name": "Pat Donor",
        }
        values.update(overrides)
        return ImportRow(**values)

    return _build


def pytest_configure(config):
    """Ensure the testing environment and register markers"""
    os.environ["FLASK_ENV"] = "testing"
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")
