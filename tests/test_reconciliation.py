"""Tests for reconciliation runs, outcome queries and manual resolution."""

from datetime import datetime
from decimal import Decimal

import pytest

from src.engine.errors import JobNotFoundError, PreconditionError, StaleRunError, ValidationRejection
from src.engine.matcher import ReconciliationEngine
from src.engine.models import Actor, AuditAction, JobStatus, OutcomeStatus
from src.engine.rules import MatchingRules
from src.pipeline.ingestion import IngestionPipeline
from src.pipeline.reconciliation import ReconciliationService
from src.pipeline.uploads import UploadService
from src.store.sqlite_store import StateStore


@pytest.fixture
def ingested_job(seeded_store, upload_csv, mapping):
    job, _ = UploadService(seeded_store).register_upload(upload_csv)
    IngestionPipeline(seeded_store).ingest(job.id, job.file_path, mapping)
    return seeded_store.get_job(job.id)


@pytest.fixture
def service(seeded_store) -> ReconciliationService:
    return ReconciliationService(seeded_store)


def outcomes_by_txn(store, job_id):
    outcomes, _ = store.get_outcomes(job_id)
    records = store.get_records([o.uploaded_record_id for o in outcomes])
    by_txn = {}
    for outcome in outcomes:
        by_txn.setdefault(records[outcome.uploaded_record_id].transaction_id, []).append(outcome)
    return by_txn


class TestReconcile:
    """Test a full reconciliation run."""

    def test_classifies_every_uploaded_record(self, service, ingested_job, seeded_store):
        summary = service.reconcile(ingested_job.id)

        assert summary.total == 5
        assert summary.matched == 1
        assert summary.partially_matched == 1
        assert summary.duplicate == 2
        assert summary.not_matched == 1
        assert summary.accuracy == 40.0

        by_txn = outcomes_by_txn(seeded_store, ingested_job.id)
        exact = by_txn["TXN00001"][0]
        assert exact.status == OutcomeStatus.MATCHED
        assert seeded_store.get_record(exact.system_record_id).transaction_id == "TXN00001"

        partial = by_txn["TXN99999"][0]
        assert partial.status == OutcomeStatus.PARTIALLY_MATCHED
        assert partial.match_score == 98
        assert [m.field for m in partial.mismatched_fields] == ["transactionId", "amount"]
        assert partial.mismatched_fields[1].uploaded_value == "3468.00"

        assert [o.status for o in by_txn["DUP1"]] == [OutcomeStatus.DUPLICATE] * 2
        assert by_txn["NOPE1"][0].system_record_id is None

    def test_marks_job_reconciled(self, service, ingested_job, seeded_store):
        service.reconcile(ingested_job.id)
        assert seeded_store.get_job(ingested_job.id).reconciled is True

    def test_rerun_replaces_outcomes(self, service, ingested_job, seeded_store):
        first = service.reconcile(ingested_job.id)
        second = service.reconcile(ingested_job.id)

        assert second == first
        assert seeded_store.get_outcomes(ingested_job.id)[1] == 5

    def test_wider_tolerance_changes_only_new_run(self, seeded_store, ingested_job):
        ReconciliationService(seeded_store).reconcile(ingested_job.id)
        strict = ReconciliationService(seeded_store, rules=MatchingRules().with_tolerance("0"))

        summary = strict.reconcile(ingested_job.id)

        assert summary.partially_matched == 0
        assert summary.not_matched == 2
        assert seeded_store.outcome_counts(ingested_job.id) == summary

    def test_reconcile_is_audited(self, service, ingested_job, seeded_store):
        service.reconcile(ingested_job.id, actor=Actor("u1", "Ana"))

        event = seeded_store.get_audit_events(entity_id=ingested_job.id)[0]
        assert event.action == AuditAction.RECONCILE
        assert event.user_name == "Ana"
        assert event.new_value == {
            "totalRecords": 5,
            "matched": 1,
            "partiallyMatched": 1,
            "notMatched": 1,
            "duplicate": 2,
            "rulesVersion": 1,
        }

    def test_empty_system_set(self, store, upload_csv, mapping):
        job, _ = UploadService(store).register_upload(upload_csv)
        IngestionPipeline(store).ingest(job.id, job.file_path, mapping)

        summary = ReconciliationService(store).reconcile(job.id)

        assert summary.not_matched == 3
        assert summary.duplicate == 2


class TestPreconditions:
    """Test runs that must be refused without touching state."""

    def test_pending_job(self, service, seeded_store, upload_csv):
        job, _ = UploadService(seeded_store).register_upload(upload_csv)
        with pytest.raises(PreconditionError, match="completed"):
            service.reconcile(job.id)
        assert seeded_store.get_job(job.id).status == JobStatus.PENDING

    def test_failed_job(self, service, seeded_store, upload_csv, mapping):
        job, _ = UploadService(seeded_store).register_upload(upload_csv)
        upload_csv.unlink()
        IngestionPipeline(seeded_store).ingest(job.id, job.file_path, mapping)

        with pytest.raises(PreconditionError):
            service.reconcile(job.id)

    def test_completed_job_without_records(self, service, seeded_store, tmp_path, mapping):
        csv_file = tmp_path / "all_bad.csv"
        csv_file.write_text("Txn ID,Amount,Ref,Date,Memo\nT1,abc,R1,2024-01-01,\n")
        job, _ = UploadService(seeded_store).register_upload(csv_file)
        IngestionPipeline(seeded_store).ingest(job.id, job.file_path, mapping)

        with pytest.raises(PreconditionError, match="No uploaded records"):
            service.reconcile(job.id)
        assert seeded_store.get_job(job.id).reconciled is False

    def test_unknown_job(self, service):
        with pytest.raises(JobNotFoundError):
            service.reconcile("does-not-exist")

    def test_previous_outcomes_survive_refused_run(self, service, ingested_job, seeded_store, mapping):
        service.reconcile(ingested_job.id)
        seeded_store.update_job(ingested_job.id, status=JobStatus.PROCESSING)

        with pytest.raises(PreconditionError):
            service.reconcile(ingested_job.id)
        assert seeded_store.get_outcomes(ingested_job.id)[1] == 5


class ReingestingEngine(ReconciliationEngine):
    """Engine that re-ingests the job through another connection while matching."""

    def __init__(self, db_path, file_path, mapping):
        super().__init__()
        self.pipeline = IngestionPipeline(StateStore(db_path))
        self.file_path = file_path
        self.mapping = mapping

    def match(self, job_id, uploaded_records, index):
        outcomes = super().match(job_id, uploaded_records, index)
        assert self.pipeline.ingest(job_id, self.file_path, self.mapping).succeeded
        return outcomes


class TestConcurrentReingestion:
    """Test a reconcile run racing a re-ingestion from another process."""

    def test_stale_outcomes_are_not_committed(self, service, ingested_job, seeded_store, mapping):
        service.reconcile(ingested_job.id)
        service.engine = ReingestingEngine(seeded_store.db_path, ingested_job.file_path, mapping)

        with pytest.raises(StaleRunError):
            service.reconcile(ingested_job.id)

        job = seeded_store.get_job(ingested_job.id)
        assert job.status == JobStatus.COMPLETED
        assert job.reconciled is False
        assert seeded_store.get_outcomes(ingested_job.id)[1] == 0

    def test_reconcile_after_reingestion_links_live_records(self, service, ingested_job, seeded_store, mapping):
        service.engine = ReingestingEngine(seeded_store.db_path, ingested_job.file_path, mapping)
        with pytest.raises(StaleRunError):
            service.reconcile(ingested_job.id)

        service.engine = ReconciliationEngine()
        summary = service.reconcile(ingested_job.id)

        assert summary.total == 5
        live = {r.id for r in seeded_store.get_upload_records(ingested_job.id)}
        outcomes, _ = seeded_store.get_outcomes(ingested_job.id)
        assert {o.uploaded_record_id for o in outcomes} == live


class TestResults:
    """Test outcome paging and filtering."""

    def test_paging(self, service, ingested_job):
        service.reconcile(ingested_job.id)

        page = service.results(ingested_job.id, page=2, limit=2)

        assert page.total == 5
        assert page.total_pages == 3
        assert len(page.items) == 2

    def test_filter_by_status(self, service, ingested_job):
        service.reconcile(ingested_job.id)

        page = service.results(ingested_job.id, status="duplicate")

        assert page.total == 2
        assert all(o.status == OutcomeStatus.DUPLICATE for o in page.items)

    def test_invalid_page(self, service, ingested_job):
        with pytest.raises(ValueError):
            service.results(ingested_job.id, page=0)

    def test_summary(self, service, ingested_job):
        service.reconcile(ingested_job.id)
        assert service.summary(ingested_job.id).to_dict()["accuracy"] == 40.0


class TestResolve:
    """Test manual resolution of outcomes."""

    def test_resolve_with_correction(self, service, ingested_job, seeded_store):
        service.reconcile(ingested_job.id)
        outcome = service.results(ingested_job.id, status=OutcomeStatus.PARTIALLY_MATCHED).items[0]

        resolved = service.resolve(
            outcome.id,
            new_status=OutcomeStatus.MATCHED,
            corrected_fields={"amount": "3400.00"},
            actor=Actor("u1", "Ana"),
        )

        assert resolved.status == OutcomeStatus.MATCHED
        assert resolved.manually_resolved is True
        assert resolved.resolved_by == "u1"
        assert seeded_store.get_record(outcome.uploaded_record_id).amount == Decimal("3400.00")

        record_event = seeded_store.get_audit_events(
            entity_id=str(outcome.uploaded_record_id), entity_type="record"
        )[0]
        assert record_event.action == AuditAction.UPDATE
        assert record_event.old_value["amount"] == "3468.00"

        outcome_event = seeded_store.get_audit_events(
            entity_id=str(outcome.id), entity_type="reconciliation_result"
        )[0]
        assert outcome_event.action == AuditAction.MANUAL_RESOLVE
        assert outcome_event.old_value["status"] == "partially_matched"

    def test_resolve_keeps_status_when_not_given(self, service, ingested_job):
        service.reconcile(ingested_job.id)
        outcome = service.results(ingested_job.id, status="not_matched").items[0]

        resolved = service.resolve(outcome.id)

        assert resolved.status == OutcomeStatus.NOT_MATCHED
        assert resolved.manually_resolved is True

    def test_date_correction_is_parsed(self, service, ingested_job, seeded_store):
        service.reconcile(ingested_job.id)
        outcome = service.results(ingested_job.id, status="not_matched").items[0]

        service.resolve(
            outcome.id,
            corrected_fields={"date": "15/01/2024", "referenceNumber": " REF00001 "},
        )

        record = seeded_store.get_record(outcome.uploaded_record_id)
        assert record.date == datetime(2024, 1, 15)
        assert record.reference_number == "REF00001"

        event = seeded_store.get_audit_events(
            entity_id=str(outcome.uploaded_record_id), entity_type="record"
        )[0]
        assert event.new_value == {"date": "2024-01-15T00:00:00", "referenceNumber": "REF00001"}

        # The corrected record still loads and reconciles
        assert service.reconcile(ingested_job.id).total == 5

    @pytest.mark.parametrize("corrected", [
        {"amount": "lots"},
        {"amount": "1,234"},
        {"date": "someday"},
        {"transactionId": "   "},
        {"iban": "X"},
        {"description": "ok", "referenceNumber": ""},
    ])
    def test_invalid_correction_writes_nothing(self, service, ingested_job, seeded_store, corrected):
        service.reconcile(ingested_job.id)
        outcome = service.results(ingested_job.id).items[0]
        before = seeded_store.get_record(outcome.uploaded_record_id)
        events = seeded_store.count_audit_events()

        with pytest.raises(ValidationRejection):
            service.resolve(outcome.id, corrected_fields=corrected)

        assert seeded_store.get_record(outcome.uploaded_record_id) == before
        assert seeded_store.get_outcome(outcome.id).manually_resolved is False
        assert seeded_store.count_audit_events() == events

    def test_unknown_outcome(self, service):
        with pytest.raises(LookupError):
            service.resolve(12345)
