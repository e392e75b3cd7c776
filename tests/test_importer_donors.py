from datetime import datetime, timezone

import pytest

from donation_app.importer.pipeline import DonorResolver, identity_key_for, normalize_email, normalize_phone
from donation_app.models import Donor, db


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("(415) 555-0101", "+14155550101"),
        ("1-415-555-0101", "+14155550101"),
        ("415.555.0101 ext 12", "+14155550101"),
        ("+44 20 7946 0958", "+442079460958"),
        ("0044 20 7946 0958", "+442079460958"),
        ("555-0101", None),
        ("", None),
        (None, None),
    ],
)
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


def test_normalize_email():
    assert normalize_email("  Donor@Example.COM ") == "donor@example.com"
    assert normalize_email("not-an-email") is None
    assert normalize_email("") is None


def test_identity_key_prefers_phone_then_address_then_customer(import_row):
    assert identity_key_for(import_row(email=None, phone="415-555-0101")) == "phone:+14155550101"
    assert (
        identity_key_for(import_row(email=None, address_line1="12 Main St.", city="Springfield", postal_code="12345"))
        == "address:12 main st|springfield|12345"
    )
    assert identity_key_for(import_row(email=None, customer_id="cus_9")) == "customer:cus_9"
    assert identity_key_for(import_row(email=None, customer_id=None)) is None


def test_matches_existing_donor_by_email_case_insensitively(import_row):
    donor = Donor(name="Pat", email="Donor@Example.com")
    db.session.add(donor)
    db.session.commit()

    result = DonorResolver(db.session).resolve(import_row(email="donor@example.com"))

    assert result.outcome == "email"
    assert result.donor.id == donor.id
    assert result.created is False


def test_creates_donor_with_synthetic_identity(import_row):
    resolver = DonorResolver(db.session)
    row = import_row(email=None, phone="(415) 555-0101", billing_name="Anon Giver")

    first = resolver.resolve(row)
    second = resolver.resolve(row)

    assert first.created is True
    assert first.donor.identity_key == "phone:+14155550101"
    assert first.donor.phone == "+14155550101"
    assert first.donor.email is None
    assert second.outcome == "identity"
    assert second.donor.id == first.donor.id


def test_rows_without_any_identity_always_create_donors(import_row):
    resolver = DonorResolver(db.session)
    row = import_row(email=None, customer_id=None, billing_name=None)

    first = resolver.resolve(row)
    second = resolver.resolve(row)

    assert first.created and second.created
    assert first.donor.id != second.donor.id
    assert first.donor.name == "Anonymous"


def test_newer_row_refreshes_contact_fields(import_row):
    donor = Donor(
        name="Old Name",
        email="donor@example.com",
        city="Old Town",
        last_updated_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )
    db.session.add(donor)
    db.session.commit()

    result = DonorResolver(db.session).resolve(
        import_row(billing_name="New Name", city="New Town", phone="4155550101")
    )

    assert result.refreshed is True
    assert donor.name == "New Name"
    assert donor.city == "New Town"
    assert donor.phone == "+14155550101"
    assert donor.last_updated_at.replace(tzinfo=timezone.utc) == datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)


def test_older_row_does_not_refresh(import_row):
    donor = Donor(name="Current", email="donor@example.com", last_updated_at=datetime(2024, 6, 1, tzinfo=timezone.utc))
    db.session.add(donor)
    db.session.commit()

    result = DonorResolver(db.session).resolve(import_row(billing_name="Stale"))

    assert result.refreshed is False
    assert donor.name == "Current"


def test_refresh_never_blanks_the_name(import_row):
    donor = Donor(name="Keep Me", email="donor@example.com")
    db.session.add(donor)
    db.session.commit()

    result = DonorResolver(db.session).resolve(import_row(billing_name=None, city="Austin"))

    assert result.refreshed is True
    assert donor.name == "Keep Me"
    assert donor.city == "Austin"
