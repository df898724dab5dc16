"""Ingestion job lifecycle and progress tracking."""

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional, Sequence

from src.engine.errors import PreconditionError, StaleRunError
from src.engine.models import IngestionJob, JobStatus, ReconciliationOutcome
from src.store.sqlite_store import StateStore, utcnow

logger = logging.getLogger(__name__)

# Allowed status transitions. A job may be restarted from any settled state;
# "processing -> processing" covers a restart after a worker died mid-run.
TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset({JobStatus.PROCESSING}),
    JobStatus.FAILED: frozenset({JobStatus.PROCESSING}),
}


@dataclass
class JobProgress:
    """Progress snapshot returned to pollers."""
    status: JobStatus
    total_records: Optional[int]
    processed_records: int
    error_message: Optional[str]
    reconciled: bool = False

    @property
    def fraction(self) -> float:
        if not self.total_records:
            return 1.0 if self.status == JobStatus.COMPLETED else 0.0
        return self.processed_records / self.total_records

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "totalRecords": self.total_records,
            "processedRecords": self.processed_records,
            "errorMessage": self.error_message,
            "reconciled": self.reconciled,
        }


class JobTracker:
    """Owns status transitions and progress counters of ingestion jobs."""

    def __init__(self, store: StateStore):
        self.store = store

    def get(self, job_id: str) -> IngestionJob:
        return self.store.get_job(job_id)

    def progress(self, job_id: str) -> JobProgress:
        job = self.store.get_job(job_id)
        return JobProgress(
            status=job.status,
            total_records=job.total_records,
            processed_records=job.processed_records,
            error_message=job.error_message,
            reconciled=job.reconciled,
        )

    def transition(
        self,
        job_id: str,
        status: JobStatus,
        error_message: Optional[str] = None,
        expected_run: Optional[int] = None,
    ) -> IngestionJob:
        """
        Move a job to a new status.

        Args:
            job_id: Job to move.
            status: Target status.
            error_message: Stored when moving to failed.
            expected_run: If given, only move the job while this run still owns it.

        Raises:
            PreconditionError: If the transition is not allowed from the current status.
            StaleRunError: If another run has claimed the job since ``expected_run``.
        """
        job = self.store.get_job(job_id)
        if expected_run is not None and job.run_generation != expected_run:
            raise StaleRunError(
                f"Job {job_id} was restarted (run {job.run_generation}, expected {expected_run})"
            )
        if status not in TRANSITIONS[job.status]:
            raise PreconditionError(
                f"Cannot move job {job_id} from {job.status.value} to {status.value}"
            )

        fields = {"status": status}
        if status == JobStatus.COMPLETED:
            fields["completed_at"] = utcnow()
            fields["error_message"] = None
        elif status == JobStatus.FAILED:
            fields["error_message"] = error_message or "Unknown error"
        elif status == JobStatus.PROCESSING:
            fields["error_message"] = None
            fields["completed_at"] = None

        logger.info("Job %s: %s -> %s", job_id, job.status.value, status.value)
        return self.store.update_job(job_id, expected_run=expected_run, **fields)

    def start(self, job_id: str, column_mapping: Dict[str, str]) -> IngestionJob:
        """
        Claim the job for a new ingestion run.

        Purges whatever an earlier run left behind, resets counters, records
        the mapping and moves to processing. The returned job's
        ``run_generation`` identifies the run.
        """
        allowed = [s for s, targets in TRANSITIONS.items() if JobStatus.PROCESSING in targets]
        job, purged, cleared = self.store.begin_run(job_id, column_mapping, allowed)
        if purged or cleared:
            logger.info(
                "Reprocessing job %s: purged %d uploaded records and %d outcomes",
                job_id, purged, cleared,
            )
        logger.info("Job %s: run %d started", job_id, job.run_generation)
        return job

    def set_total(self, job_id: str, total_records: int, expected_run: Optional[int] = None) -> None:
        self.store.update_job(job_id, expected_run=expected_run, total_records=total_records)

    def advance(self, job_id: str, rows: int, expected_run: Optional[int] = None) -> int:
        """Atomically add processed rows; returns the new processed count."""
        return self.store.increment_processed(job_id, rows, expected_run=expected_run)

    def mark_reconciled(
        self,
        job_id: str,
        outcomes: Sequence[ReconciliationOutcome],
        expected_run: int,
        batch_size: int = 1000,
    ) -> int:
        """
        Publish a run's outcomes and flag the job reconciled, in one transaction.

        Returns:
            Number of earlier outcomes that were replaced.

        Raises:
            StaleRunError: If the job is no longer completed under ``expected_run``.
        """
        cleared = self.store.replace_outcomes(
            job_id, outcomes, expected_run=expected_run, batch_size=batch_size
        )
        logger.info("Job %s: reconciled with %d outcomes", job_id, len(outcomes))
        return cleared
