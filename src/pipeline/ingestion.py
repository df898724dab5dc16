"""Ingestion pipeline: parse, canonicalize, batch-persist, track progress."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional

from src.engine.errors import PersistenceError, StaleRunError
from src.engine.models import Actor, AuditAction, ColumnMapping, JobStatus
from src.parsers.canonicalizer import Canonicalizer
from src.parsers.file_parser import FileParser
from src.pipeline.audit import AuditTrail
from src.pipeline.tracker import JobTracker
from src.store.sqlite_store import StateStore

logger = logging.getLogger(__name__)

BATCH_SIZE = 1000

ProgressCallback = Callable[[float], None]


@dataclass
class IngestionResult:
    """What happened to one ingestion run."""
    job_id: str
    status: JobStatus
    total_records: int = 0
    processed_records: int = 0
    accepted: int = 0
    rejected: int = 0
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.COMPLETED


class IngestionPipeline:
    """
    Load one uploaded file into canonical records for a job.

    The pipeline holds no per-job state between calls. Every run claims the
    job with a new run generation; a run that another run has since claimed
    stops at its next write and leaves the job to the newer run.
    """

    def __init__(
        self,
        store: StateStore,
        parser: Optional[FileParser] = None,
        batch_size: int = BATCH_SIZE,
    ):
        if batch_size < 1:
            raise ValueError("Batch size must be at least 1")
        self.store = store
        self.tracker = JobTracker(store)
        self.audit = AuditTrail(store)
        self.parser = parser or FileParser()
        self.batch_size = batch_size

    def ingest(
        self,
        job_id: str,
        file_path: str | Path,
        column_mapping: ColumnMapping | Dict[str, str],
        actor: Optional[Actor] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> IngestionResult:
        """
        Run the pipeline for a job. Leaves the job completed or failed, unless a
        newer run took it over first.

        Args:
            job_id: Job to ingest into.
            file_path: Uploaded file.
            column_mapping: System field -> source column mapping.
            actor: User on whose behalf the job runs, for the audit trail.
            progress_callback: Called with processed/total after every batch.

        Returns:
            IngestionResult describing the run.

        Raises:
            MappingError: If the mapping is invalid; the job is left untouched.
            JobNotFoundError: If the job doesn't exist.
        """
        mapping = ColumnMapping.from_dict(column_mapping)
        job = self.tracker.start(job_id, mapping.to_dict())
        run = job.run_generation

        result = IngestionResult(job_id=job_id, status=JobStatus.PROCESSING)
        try:
            self._run(job_id, run, Path(file_path), mapping, result, progress_callback)
            self.tracker.transition(job_id, JobStatus.COMPLETED, expected_run=run)
        except StaleRunError as e:
            return self._superseded(job_id, run, result, e)
        except Exception as e:
            logger.exception("Ingestion of job %s failed", job_id)
            return self._fail(job_id, run, result, e, actor)

        result.status = JobStatus.COMPLETED
        logger.info(
            "Job %s completed: %d rows, %d accepted, %d rejected",
            job_id, result.total_records, result.accepted, result.rejected,
        )
        self.audit.log(
            "upload_job",
            job_id,
            AuditAction.UPLOAD,
            new_value={
                "status": JobStatus.COMPLETED.value,
                "totalRecords": result.total_records,
                "processedRecords": result.processed_records,
                "accepted": result.accepted,
                "rejected": result.rejected,
            },
            actor=actor,
        )
        return result

    def _run(
        self,
        job_id: str,
        run: int,
        file_path: Path,
        mapping: ColumnMapping,
        result: IngestionResult,
        progress_callback: Optional[ProgressCallback],
    ) -> None:
        parsed = self.parser.parse(file_path)
        result.total_records = parsed.total_rows
        self.tracker.set_total(job_id, parsed.total_rows, expected_run=run)

        if parsed.total_rows == 0 and progress_callback:
            progress_callback(1.0)

        canonicalizer = Canonicalizer(mapping, upload_job_id=job_id)

        for start in range(0, parsed.total_rows, self.batch_size):
            batch = parsed.rows[start:start + self.batch_size]
            records, rejections = canonicalizer.canonicalize_batch(batch, start_row=start + 1)
            result.rejected += len(rejections)

            try:
                result.accepted += self.store.insert_records(records, expected_run=run)
            except PersistenceError as e:
                result.accepted += e.inserted
                result.rejected += len(records) - e.inserted
                self._advance(job_id, run, len(batch), result, progress_callback)
                raise

            self._advance(job_id, run, len(batch), result, progress_callback)

    def _advance(
        self,
        job_id: str,
        run: int,
        rows: int,
        result: IngestionResult,
        progress_callback: Optional[ProgressCallback],
    ) -> None:
        result.processed_records = self.tracker.advance(job_id, rows, expected_run=run)
        fraction = result.processed_records / result.total_records if result.total_records else 1.0
        logger.debug("Job %s progress: %d/%d", job_id, result.processed_records, result.total_records)
        if progress_callback:
            progress_callback(fraction)

    def _fail(
        self,
        job_id: str,
        run: int,
        result: IngestionResult,
        error: Exception,
        actor: Optional[Actor],
    ) -> IngestionResult:
        message = str(error) or error.__class__.__name__
        try:
            self.tracker.transition(
                job_id, JobStatus.FAILED, error_message=message, expected_run=run
            )
        except StaleRunError as e:
            return self._superseded(job_id, run, result, e)
        result.status = JobStatus.FAILED
        result.error_message = message
        self.audit.log(
            "upload_job",
            job_id,
            AuditAction.UPLOAD,
            new_value={"status": JobStatus.FAILED.value, "error": message},
            actor=actor,
        )
        return result

    def _superseded(
        self,
        job_id: str,
        run: int,
        result: IngestionResult,
        error: StaleRunError,
    ) -> IngestionResult:
        """Another run took the job over; leave its state alone."""
        logger.warning("Abandoning run %d of job %s: %s", run, job_id, error)
        result.status = JobStatus.FAILED
        result.error_message = str(error)
        return result
