"""Tests for upload registration and the ingestion pipeline."""

import pytest

from src.engine.errors import MappingError, PersistenceError, UnsupportedFormatError
from src.engine.models import Actor, AuditAction, JobStatus
from src.pipeline.ingestion import IngestionPipeline
from src.pipeline.tracker import JobTracker
from src.pipeline.uploads import UploadService, compute_file_hash
from src.store.sqlite_store import StateStore


class FailingStore(StateStore):
    """Store that loses all but the first record of every insert."""

    def insert_records(self, records, expected_run=None):
        super().insert_records(records[:1], expected_run=expected_run)
        raise PersistenceError("disk full", inserted=1)


@pytest.fixture
def uploads(store) -> UploadService:
    return UploadService(store)


@pytest.fixture
def job(uploads, upload_csv):
    job, _ = uploads.register_upload(upload_csv)
    return job


class TestRegisterUpload:
    """Test job creation and content-hash idempotency."""

    def test_creates_pending_job(self, uploads, upload_csv, store):
        job, created = uploads.register_upload(upload_csv, actor=Actor("u1", "Ana"))

        assert created is True
        assert job.status == JobStatus.PENDING
        assert job.file_name == "upload.csv"
        assert job.content_hash == compute_file_hash(upload_csv)
        assert job.uploaded_by == "u1"

        events = store.get_audit_events(entity_id=job.id)
        assert [e.action for e in events] == [AuditAction.CREATE]
        assert events[0].user_name == "Ana"

    def test_same_bytes_return_existing_job(self, uploads, upload_csv, tmp_path):
        copy = tmp_path / "renamed.csv"
        copy.write_bytes(upload_csv.read_bytes())

        first, _ = uploads.register_upload(upload_csv)
        second, created = uploads.register_upload(copy)

        assert created is False
        assert second.id == first.id

    def test_unsupported_format_creates_nothing(self, uploads, tmp_path, store):
        txt_file = tmp_path / "data.txt"
        txt_file.write_text("a,b\n1,2\n")

        with pytest.raises(UnsupportedFormatError):
            uploads.register_upload(txt_file)
        assert store.list_jobs()[1] == 0

    def test_missing_file(self, uploads, tmp_path):
        with pytest.raises(FileNotFoundError):
            uploads.register_upload(tmp_path / "nope.csv")

    def test_copies_into_upload_dir(self, store, upload_csv, tmp_path):
        upload_dir = tmp_path / "uploads"
        job, _ = UploadService(store, upload_dir=upload_dir).register_upload(upload_csv)

        stored = upload_dir / f"{job.content_hash}.csv"
        assert stored.exists()
        assert job.file_path == str(stored.resolve())

    def test_preview(self, uploads, job):
        preview = uploads.preview(job.id, rows=2)
        assert preview.total_rows == 6
        assert len(preview.rows) == 2

    def test_submit_mapping(self, uploads, job, mapping, store):
        task = uploads.submit_mapping(job.id, mapping)

        assert task.job_id == job.id
        assert task.column_mapping["transactionId"] == "Txn ID"
        assert store.get_audit_events(entity_id=job.id)[0].action == AuditAction.UPDATE
        # Job state only changes once a worker runs the task
        assert store.get_job(job.id).status == JobStatus.PENDING

    def test_submit_invalid_mapping(self, uploads, job, mapping):
        del mapping["date"]
        with pytest.raises(MappingError):
            uploads.submit_mapping(job.id, mapping)


class TestIngestionPipeline:
    """Test parsing, canonicalization and progress of a job."""

    def test_ingest_counts_rejected_rows_as_processed(self, store, job, mapping):
        result = IngestionPipeline(store).ingest(job.id, job.file_path, mapping)

        assert result.succeeded
        assert result.total_records == 6
        assert result.processed_records == 6
        assert result.accepted == 5
        assert result.rejected == 1

        stored = store.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.processed_records == stored.total_records == 6
        assert stored.completed_at is not None
        assert stored.column_mapping == mapping
        assert store.count_upload_records(job.id) == 5

    def test_progress_callback_per_batch(self, store, job, mapping):
        seen = []
        IngestionPipeline(store, batch_size=2).ingest(
            job.id, job.file_path, mapping, progress_callback=seen.append
        )
        assert seen == pytest.approx([2 / 6, 4 / 6, 1.0])

    def test_header_only_file(self, store, uploads, tmp_path, mapping):
        csv_file = tmp_path / "headers.csv"
        csv_file.write_text("Txn ID,Amount,Ref,Date,Memo\n")
        job, _ = uploads.register_upload(csv_file)

        seen = []
        result = IngestionPipeline(store).ingest(
            job.id, job.file_path, mapping, progress_callback=seen.append
        )

        assert result.succeeded
        assert result.total_records == 0
        assert seen == [1.0]

    def test_reprocessing_replaces_records(self, store, job, mapping):
        pipeline = IngestionPipeline(store)
        pipeline.ingest(job.id, job.file_path, mapping)
        pipeline.ingest(job.id, job.file_path, mapping)

        assert store.count_upload_records(job.id) == 5
        assert store.get_job(job.id).processed_records == 6

    def test_invalid_mapping_leaves_job_untouched(self, store, job, mapping):
        del mapping["amount"]
        with pytest.raises(MappingError):
            IngestionPipeline(store).ingest(job.id, job.file_path, mapping)

        stored = store.get_job(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.column_mapping == {}

    def test_unreadable_file_fails_job(self, store, job, mapping, upload_csv):
        upload_csv.unlink()

        result = IngestionPipeline(store).ingest(job.id, job.file_path, mapping)

        assert result.status == JobStatus.FAILED
        stored = store.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.error_message

        last_event = store.get_audit_events(entity_id=job.id)[0]
        assert last_event.action == AuditAction.UPLOAD
        assert last_event.new_value["status"] == "failed"

    def test_failed_job_can_be_resubmitted(self, store, job, mapping, upload_csv):
        content = upload_csv.read_bytes()
        upload_csv.unlink()
        pipeline = IngestionPipeline(store)
        pipeline.ingest(job.id, job.file_path, mapping)

        upload_csv.write_bytes(content)
        result = pipeline.ingest(job.id, job.file_path, mapping)

        assert result.succeeded
        assert store.get_job(job.id).error_message is None

    def test_persistence_failure_still_advances_progress(self, tmp_path, upload_csv, mapping):
        store = FailingStore(tmp_path / "failing.db")
        job, _ = UploadService(store).register_upload(upload_csv)

        result = IngestionPipeline(store).ingest(job.id, job.file_path, mapping)

        assert result.status == JobStatus.FAILED
        assert result.error_message == "disk full"
        assert result.processed_records == 6
        assert result.accepted == 1
        assert store.get_job(job.id).processed_records == 6

    def test_completion_is_audited(self, store, job, mapping):
        IngestionPipeline(store).ingest(job.id, job.file_path, mapping, actor=Actor("u1", "Ana"))

        event = store.get_audit_events(entity_id=job.id)[0]
        assert event.action == AuditAction.UPLOAD
        assert event.user_id == "u1"
        assert event.new_value["accepted"] == 5
        assert event.new_value["rejected"] == 1


class TestConcurrentRuns:
    """Test two runs of the same job from separate store connections."""

    def test_older_run_yields_to_newer(self, store, job, mapping):
        other = StateStore(store.db_path)
        claimed = []

        def restart_elsewhere(fraction):
            if not claimed:
                claimed.append(JobTracker(other).start(job.id, mapping))

        result = IngestionPipeline(store, batch_size=2).ingest(
            job.id, job.file_path, mapping, progress_callback=restart_elsewhere
        )

        assert result.status == JobStatus.FAILED
        assert "restarted" in result.error_message

        stored = store.get_job(job.id)
        assert stored.run_generation == claimed[0].run_generation
        assert stored.status == JobStatus.PROCESSING
        assert stored.error_message is None
        assert stored.processed_records == 0
        assert store.count_upload_records(job.id) == 0

    def test_newer_run_completes_after_older_yields(self, store, job, mapping):
        other = StateStore(store.db_path)
        results = []

        def run_elsewhere(fraction):
            if not results:
                results.append(IngestionPipeline(other).ingest(job.id, job.file_path, mapping))

        stale = IngestionPipeline(store, batch_size=2).ingest(
            job.id, job.file_path, mapping, progress_callback=run_elsewhere
        )

        assert stale.status == JobStatus.FAILED
        assert results[0].succeeded
        stored = store.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.processed_records == 6
        assert store.count_upload_records(job.id) == 5
