import io
import json
from unittest.mock import patch

import pytest

from donation_app.importer.adapters import CSVHeaderError
from donation_app.importer.pipeline import BatchOrchestrator, ImportAbortedError, execute_import_run
from donation_app.models import (
    Child,
    Donation,
    DonationStatus,
    ImportRun,
    ImportRunStatus,
    Project,
    ProjectType,
    StripeInvoice,
    db,
)


def _run(path, **kwargs):
    return BatchOrchestrator(db.session, **kwargs).run_path(path)


def _donation_for_row(row_number):
    return db.session.query(Donation).filter_by(import_row_number=row_number).one()


def test_sponsorship_label_creates_child_project_and_donation(stripe_csv, payment_row):
    path = stripe_csv(
        [
            payment_row(
                Amount="50.00",
                Status="succeeded",
                **{
                    "Cust Subscription Data Plan Nickname": "Monthly Sponsorship Donation for Sangwan",
                    "Cust Subscription Data ID": "sub_1",
                },
            )
        ]
    )

    summary = _run(path)

    donation = db.session.query(Donation).one()
    assert donation.amount == 5000
    assert donation.status == DonationStatus.SUCCEEDED
    assert donation.child.name == "Sangwan"
    assert donation.project.title == "Sponsor Sangwan"
    assert donation.project.project_type == ProjectType.SPONSORSHIP
    assert donation.sponsorship is not None
    assert summary.rows_processed == 1
    assert summary.succeeded == 1
    assert summary.children_created == 1
    assert summary.projects_created == 1
    assert summary.sponsorships_created == 1
    assert summary.invoices_created == 1
    assert summary.donors_created == 1
    assert summary.errors == []


def test_label_resolves_maria(stripe_csv, payment_row):
    path = stripe_csv([payment_row(Description="Monthly Sponsorship Donation for Maria")])

    _run(path)

    assert db.session.query(Donation).one().child.name == "Maria"


def test_metadata_child_wins_over_label(stripe_csv, payment_row, sponsored_child):
    path = stripe_csv(
        [
            payment_row(
                Metadata=json.dumps({"child_id": sponsored_child.id}),
                **{"Cust Subscription Data Plan Nickname": "Monthly Sponsorship Donation for OtherChild"},
            )
        ]
    )

    _run(path)

    donation = db.session.query(Donation).one()
    assert donation.child_id == sponsored_child.id
    assert db.session.query(Child).filter_by(name="OtherChild").count() == 0


def test_unresolved_metadata_reference_is_kept_for_review(stripe_csv, payment_row):
    path = stripe_csv([payment_row(Metadata='{"child_id": "4242"}')])

    summary = _run(path)

    donation = db.session.query(Donation).one()
    assert donation.status == DonationStatus.NEEDS_ATTENTION
    assert donation.needs_attention_reason == "metadata child reference not found"
    assert summary.needs_attention == 1


def test_unrecognized_status_needs_attention(stripe_csv, payment_row):
    path = stripe_csv([payment_row(Status="disputed")])

    _run(path)

    donation = db.session.query(Donation).one()
    assert donation.status == DonationStatus.NEEDS_ATTENTION
    assert donation.needs_attention_reason == "unrecognized status: disputed"


def test_failed_payment_is_recorded_without_review(stripe_csv, payment_row):
    path = stripe_csv([payment_row(Status="failed")])

    summary = _run(path)

    donation = db.session.query(Donation).one()
    assert donation.status == DonationStatus.FAILED
    assert donation.duplicate_flag is False
    assert donation.needs_attention_reason is None
    assert summary.failed == 1


def test_same_invoice_duplicates_are_both_flagged(stripe_csv, payment_row):
    rows = [payment_row(Description="$25 - General Monthly Donation") for _ in range(11)]
    for index in (8, 10):
        rows[index].update(
            {"Transaction ID": "inv_1", "Cust Subscription Data Plan Nickname": "Monthly Sponsorship Donation for Maria"}
        )
    path = stripe_csv(rows)

    summary = _run(path)

    tenth, twelfth = _donation_for_row(10), _donation_for_row(12)
    for donation in (tenth, twelfth):
        assert donation.status == DonationStatus.NEEDS_ATTENTION
        assert donation.duplicate_flag is True
        assert donation.child.name == "Maria"
    assert tenth.needs_attention_reason == "duplicate child reference in same invoice, see row 12"
    assert twelfth.needs_attention_reason == "duplicate child reference in same invoice, see row 10"
    assert summary.duplicates_flagged == 2
    assert summary.donations_created == 11
    assert db.session.query(StripeInvoice).filter_by(stripe_invoice_id="inv_1").count() == 1


def test_same_child_in_different_invoices_is_not_a_duplicate(stripe_csv, payment_row):
    label = {"Cust Subscription Data Plan Nickname": "Monthly Sponsorship Donation for Maria"}
    path = stripe_csv([payment_row(**label), payment_row(**label)])

    summary = _run(path)

    assert summary.duplicates_flagged == 0
    assert summary.succeeded == 2


def test_multi_child_row_fans_out_under_one_invoice(stripe_csv, payment_row):
    nickname = "Monthly Sponsorship Donation for Wan,Monthly Sponsorship Donation for Orawan"
    path = stripe_csv([payment_row(**{"Cust Subscription Data Plan Nickname": nickname})])

    summary = _run(path)

    donations = db.session.query(Donation).order_by(Donation.id).all()
    assert [donation.child.name for donation in donations] == ["Wan", "Orawan"]
    assert [donation.amount for donation in donations] == [5000, 5000]
    assert summary.invoices_created == 1
    assert db.session.query(StripeInvoice).count() == 1


def test_split_allocation_divides_the_row_amount(stripe_csv, payment_row):
    path = stripe_csv([payment_row(Amount="100.01", Description="Sponsorship for Ana and Luis")])

    _run(path, allocation="split")

    amounts = [donation.amount for donation in db.session.query(Donation).order_by(Donation.id)]
    assert amounts == [5001, 5000]


def test_project_label_on_nickname_keeps_row_out_of_duplicate_check(stripe_csv, payment_row):
    path = stripe_csv(
        [
            payment_row(
                Description="Monthly Sponsorship Donation for Maria",
                **{"Transaction ID": "inv_1", "Cust Subscription Data Plan Nickname": "General Monthly Donation"},
            ),
            payment_row(Description="Monthly Sponsorship Donation for Maria", **{"Transaction ID": "inv_1"}),
        ]
    )

    summary = _run(path)

    general, sponsorship = _donation_for_row(2), _donation_for_row(3)
    assert general.child is None
    assert general.project.title == "General Donation"
    assert general.status == DonationStatus.SUCCEEDED
    assert sponsorship.child.name == "Maria"
    assert sponsorship.status == DonationStatus.SUCCEEDED
    assert sponsorship.duplicate_flag is False
    assert summary.duplicates_flagged == 0


def test_metadata_name_matches_child_created_earlier_in_file(stripe_csv, payment_row):
    path = stripe_csv(
        [
            payment_row(Description="Monthly Sponsorship Donation for Maria", **{"Transaction ID": "inv_1"}),
            payment_row(Metadata=json.dumps({"child_name": "Maria"}), **{"Transaction ID": "inv_1"}),
        ]
    )

    summary = _run(path)

    second, third = _donation_for_row(2), _donation_for_row(3)
    assert second.child_id == third.child_id
    assert second.needs_attention_reason == "duplicate child reference in same invoice, see row 3"
    assert third.needs_attention_reason == "duplicate child reference in same invoice, see row 2"
    assert summary.duplicates_flagged == 2
    assert db.session.query(Child).filter_by(name="Maria").count() == 1


def test_dry_run_metadata_name_does_not_see_discarded_child(stripe_csv, payment_row):
    path = stripe_csv(
        [
            payment_row(Description="Monthly Sponsorship Donation for Maria", **{"Transaction ID": "inv_1"}),
            payment_row(Metadata=json.dumps({"child_name": "Maria"}), **{"Transaction ID": "inv_1"}),
        ]
    )

    summary = _run(path, dry_run=True)

    assert summary.duplicates_flagged == 0
    assert summary.succeeded == 1
    assert summary.needs_attention == 1


@pytest.mark.parametrize("child_ref", ["²", "99999999999999999999999"])
def test_unusable_metadata_id_only_affects_its_row(stripe_csv, payment_row, child_ref):
    path = stripe_csv(
        [
            payment_row(Metadata=json.dumps({"child_id": child_ref})),
            payment_row(Description="Monthly Sponsorship Donation for Maria"),
        ]
    )

    summary = _run(path)

    flagged = _donation_for_row(2)
    assert flagged.status == DonationStatus.NEEDS_ATTENTION
    assert flagged.needs_attention_reason == "metadata child reference not found"
    assert _donation_for_row(3).child.name == "Maria"
    assert summary.errors == []
    assert summary.rows_processed == 2


def test_invalid_utf8_bytes_are_replaced_and_row_imports(tmp_path):
    path = tmp_path / "payments.csv"
    path.write_bytes(
        b"id,Created Formatted,Amount,Status,Description,Transaction ID,Cust Email\n"
        b"ch_1,2024-03-01,50.00,succeeded,Gift \xff note,in_1,a@example.com\n"
    )

    summary = _run(path)

    donation = db.session.query(Donation).one()
    assert donation.description == "Gift \ufffd note"
    assert donation.status == DonationStatus.SUCCEEDED
    assert summary.rows_processed == 1
    assert summary.errors == []


def test_rerun_is_additive(stripe_csv, payment_row):
    path = stripe_csv([payment_row(), payment_row(Status="failed"), payment_row(Description="Sponsorship for Ana")])

    _run(path)
    before = db.session.query(Donation).count()
    _run(path)

    assert db.session.query(Donation).count() == before + 3
    assert db.session.query(Child).filter_by(name="Ana").count() == 1


def test_runs_reuse_the_existing_sponsorship_project(stripe_csv, payment_row, sponsored_child):
    label = {"Cust Subscription Data Plan Nickname": "Monthly Sponsorship Donation for Maria"}
    first = stripe_csv([payment_row(**label)], name="first.csv")
    second = stripe_csv([payment_row(**label)], name="second.csv")

    _run(first)
    _run(second)

    project_ids = {donation.project_id for donation in db.session.query(Donation)}
    assert len(project_ids) == 1
    assert project_ids == {sponsored_child.sponsorships[0].project_id}
    assert db.session.query(Project).filter_by(project_type=ProjectType.SPONSORSHIP).count() == 1


def test_parse_errors_skip_the_row_and_continue(stripe_csv, payment_row):
    path = stripe_csv([payment_row(), payment_row(Amount="abc"), payment_row()])

    summary = _run(path)

    assert summary.rows_read == 3
    assert summary.rows_processed == 2
    assert summary.rows_skipped == 1
    assert [error.as_dict() for error in summary.errors] == [{"row_number": 3, "message": "unparseable amount 'abc'"}]
    assert db.session.query(Donation).count() == 2


def test_failing_row_is_rolled_back_and_recorded(stripe_csv, payment_row):
    path = stripe_csv([payment_row(Description="Sponsorship for Ghost"), payment_row()])
    orchestrator = BatchOrchestrator(db.session)
    real_build = orchestrator.factory.build

    def flaky_build(row, *args, **kwargs):
        if row.row_number == 2:
            raise ValueError("boom")
        return real_build(row, *args, **kwargs)

    with patch.object(orchestrator.factory, "build", side_effect=flaky_build):
        summary = orchestrator.run_path(path)

    assert [error.as_dict() for error in summary.errors] == [{"row_number": 2, "message": "row could not be saved: boom"}]
    assert summary.rows_processed == 1
    assert db.session.query(Donation).count() == 1
    assert db.session.query(Child).filter_by(name="Ghost").count() == 0


def test_file_without_parseable_rows_aborts(stripe_csv, payment_row):
    path = stripe_csv([payment_row(Amount="abc"), payment_row(Status="")])

    with pytest.raises(ImportAbortedError):
        _run(path)

    assert db.session.query(Donation).count() == 0


def test_header_only_file_is_an_empty_batch(stripe_csv):
    summary = _run(stripe_csv([]))

    assert summary.rows_read == 0
    assert summary.donations_created == 0


def test_broken_header_propagates():
    with pytest.raises(CSVHeaderError):
        BatchOrchestrator(db.session).run(io.StringIO("Foo,Bar\n1,2\n"))


def test_dry_run_counts_but_persists_nothing(stripe_csv, payment_row):
    path = stripe_csv([payment_row(Description="Sponsorship for Ana"), payment_row(Status="disputed")])

    summary = _run(path, dry_run=True)

    assert summary.dry_run is True
    assert summary.donations_created == 2
    assert summary.needs_attention == 1
    assert db.session.query(Donation).count() == 0
    assert db.session.query(Child).count() == 0
    assert db.session.query(StripeInvoice).count() == 0


def test_summary_serialization(stripe_csv, payment_row):
    summary = _run(stripe_csv([payment_row(), payment_row(Amount="abc")]))

    payload = summary.as_dict()
    assert payload["rows_processed"] == 1
    assert payload["succeeded"] == 1
    assert payload["errors"] == [{"row_number": 3, "message": "unparseable amount 'abc'"}]
    text = summary.format_text()
    assert "donations_created  : 1" in text
    assert "row 3: unparseable amount 'abc'" in text


def _new_run(path, *, dry_run=False):
    run = ImportRun(source="stripe", adapter="stripe_csv", dry_run=dry_run, ingest_params_json={"file_path": str(path)})
    db.session.add(run)
    db.session.commit()
    return run


def test_execute_import_run_records_lifecycle(stripe_csv, payment_row):
    path = stripe_csv([payment_row(), payment_row(Amount="abc")])
    run = _new_run(path)

    summary = execute_import_run(run, path)

    run = db.session.get(ImportRun, run.id)
    assert run.status == ImportRunStatus.PARTIALLY_FAILED
    assert run.error_summary == "1 row(s) skipped"
    assert run.started_at is not None and run.finished_at is not None
    assert run.counts_json["stripe"]["donations_created"] == summary.donations_created == 1
    assert [error.as_dict() for error in run.row_errors] == [{"row_number": 3, "message": "unparseable amount 'abc'"}]
    assert run.row_errors[0].raw_json["amount"] == "abc"
    assert db.session.query(Donation).one().import_run_id == run.id


def test_execute_import_run_success(stripe_csv, payment_row):
    path = stripe_csv([payment_row()])
    run = _new_run(path)

    execute_import_run(run, path)

    run = db.session.get(ImportRun, run.id)
    assert run.status == ImportRunStatus.SUCCEEDED
    assert run.error_summary is None
    assert run.metrics_json["duration_seconds"] >= 0


def test_execute_import_run_marks_fatal_errors(tmp_path):
    path = tmp_path / "broken.csv"
    path.write_text("Foo,Bar\n1,2\n", encoding="utf-8")
    run = _new_run(path)

    with pytest.raises(CSVHeaderError):
        execute_import_run(run, path)

    run = db.session.get(ImportRun, run.id)
    assert run.status == ImportRunStatus.FAILED
    assert "Missing required columns" in run.error_summary


def test_execute_import_run_rejects_unknown_allocation(app, stripe_csv, payment_row):
    path = stripe_csv([payment_row()])
    run = _new_run(path)
    app.config["IMPORTER_MULTI_CHILD_ALLOCATION"] = "proportional"

    with pytest.raises(ValueError):
        execute_import_run(run, path)

    assert db.session.get(ImportRun, run.id).status == ImportRunStatus.FAILED


def test_execute_import_run_dry_run_leaves_no_donations(stripe_csv, payment_row):
    path = stripe_csv([payment_row()])
    run = _new_run(path, dry_run=True)

    summary = execute_import_run(run, path, dry_run=True)

    assert summary.donations_created == 1
    assert db.session.query(Donation).count() == 0
    assert db.session.get(ImportRun, run.id).status == ImportRunStatus.SUCCEEDED


def test_split_cent_across_children_keeps_the_row(stripe_csv, payment_row):
    path = stripe_csv(
        [payment_row(Amount="0.01", Description="Sponsorship for Ana, Ben", **{"Cust Subscription Data ID": "sub_1"})]
    )

    summary = _run(path, allocation="split")

    ana, ben = db.session.query(Donation).order_by(Donation.id).all()
    assert (ana.amount, ana.status) == (1, DonationStatus.SUCCEEDED)
    assert (ben.amount, ben.status) == (0, DonationStatus.NEEDS_ATTENTION)
    assert ben.needs_attention_reason == "non-positive amount"
    assert ben.sponsorship is None
    assert summary.errors == []
    assert summary.sponsorships_created == 1
