"""Reconciliation runs, outcome queries and manual resolution."""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from src.engine.errors import PreconditionError
from src.engine.index import RecordIndex
from src.engine.matcher import FIELD_ATTRS, ReconciliationEngine
from src.engine.models import (
    Actor,
    AuditAction,
    AuditSource,
    JobStatus,
    OutcomeStatus,
    ReconciliationOutcome,
    ReconciliationSummary,
)
from src.engine.rules import MatchingRules
from src.parsers.canonicalizer import Canonicalizer
from src.pipeline.audit import AuditTrail
from src.pipeline.ingestion import BATCH_SIZE
from src.pipeline.tracker import JobTracker
from src.pipeline.worker import JobLocks
from src.store.sqlite_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class OutcomePage:
    """One page of reconciliation outcomes."""
    items: List[ReconciliationOutcome] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


class ReconciliationService:
    """
    Runs the matching engine for a job and stores its outcomes.

    A run swaps every prior outcome of the job for the new ones in a single
    transaction, so re-running is idempotent and never leaves stale results
    behind. If the job is re-ingested while outcomes are being computed,
    even from another process, the run fails with ``StaleRunError`` and the
    previous outcomes stay in place.
    """

    def __init__(
        self,
        store: StateStore,
        rules: Optional[MatchingRules] = None,
        locks: Optional[JobLocks] = None,
        batch_size: int = BATCH_SIZE,
    ):
        self.store = store
        self.engine = ReconciliationEngine(rules)
        self.tracker = JobTracker(store)
        self.locks = locks or JobLocks()
        self.audit = AuditTrail(store)
        self.batch_size = batch_size

    @property
    def rules(self) -> MatchingRules:
        return self.engine.rules

    def reconcile(self, job_id: str, actor: Optional[Actor] = None) -> ReconciliationSummary:
        """
        Classify every uploaded record of a completed job.

        Raises:
            JobNotFoundError: If the job doesn't exist.
            PreconditionError: If the job isn't completed or has no uploaded records.
            StaleRunError: If the job was re-ingested during the run.
        """
        with self.locks.hold(job_id):
            job = self.store.get_job(job_id)
            if job.status != JobStatus.COMPLETED:
                raise PreconditionError("Upload must be completed before reconciliation")

            uploaded = self.store.get_upload_records(job_id)
            if not uploaded:
                raise PreconditionError("No uploaded records found for this job")

            index = RecordIndex.build(self.store.get_system_records(), self.engine.lookup_fields)
            outcomes = self.engine.match(job_id, uploaded, index)

            cleared = self.tracker.mark_reconciled(
                job_id, outcomes, expected_run=job.run_generation, batch_size=self.batch_size
            )

        summary = ReconciliationSummary.from_outcomes(outcomes)
        logger.info(
            "Reconciled job %s against %d system records (replaced %d outcomes): %s",
            job_id, index.size, cleared, summary.to_dict(),
        )
        self.audit.log(
            "upload_job",
            job_id,
            AuditAction.RECONCILE,
            new_value={
                "totalRecords": summary.total,
                "matched": summary.matched,
                "partiallyMatched": summary.partially_matched,
                "notMatched": summary.not_matched,
                "duplicate": summary.duplicate,
                "rulesVersion": self.rules.version,
            },
            actor=actor,
        )
        return summary

    def results(
        self,
        job_id: str,
        status: Optional[OutcomeStatus | str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> OutcomePage:
        """Paged outcomes of a job, optionally filtered by status."""
        if page < 1 or limit < 1:
            raise ValueError("Page and limit must be positive")
        self.store.get_job(job_id)
        status = OutcomeStatus(status) if status else None
        items, total = self.store.get_outcomes(job_id, status=status, page=page, limit=limit)
        return OutcomePage(items=items, total=total, page=page, limit=limit)

    def summary(self, job_id: str) -> ReconciliationSummary:
        """Per-status counts of the stored outcomes of a job."""
        self.store.get_job(job_id)
        return self.store.outcome_counts(job_id)

    def resolve(
        self,
        outcome_id: int,
        new_status: Optional[OutcomeStatus | str] = None,
        corrected_fields: Optional[Dict[str, Any]] = None,
        actor: Optional[Actor] = None,
    ) -> ReconciliationOutcome:
        """
        Manually resolve an outcome, optionally correcting the uploaded record.

        Corrections are keyed by field name (``amount``, ``date``, ...) and
        parsed exactly like uploaded file cells; nothing is written unless
        every correction is valid.

        Raises:
            LookupError: If the outcome doesn't exist.
            ValidationRejection: If a correction is not a valid canonical value.
        """
        outcome = self.store.get_outcome(outcome_id)
        if outcome is None:
            raise LookupError(f"Reconciliation outcome not found: {outcome_id}")

        old_value = {
            "status": outcome.status.value,
            "mismatchedFields": [m.to_dict() for m in outcome.mismatched_fields],
            "manuallyResolved": outcome.manually_resolved,
        }

        if corrected_fields:
            cleaned = Canonicalizer.clean_fields(corrected_fields)
            before = self.store.get_record(outcome.uploaded_record_id)
            self.store.update_record(outcome.uploaded_record_id, **cleaned)
            self.audit.log(
                "record",
                outcome.uploaded_record_id,
                AuditAction.UPDATE,
                old_value={
                    "transactionId": before.transaction_id,
                    "amount": before.amount,
                    "referenceNumber": before.reference_number,
                    "date": before.date,
                    "description": before.description,
                } if before else None,
                new_value={name: cleaned[FIELD_ATTRS[name]] for name in corrected_fields},
                actor=actor,
                source=AuditSource.MANUAL,
            )

        status = OutcomeStatus(new_status) if new_status else outcome.status
        resolved_by = actor.user_id or actor.user_name if actor else None
        resolved = self.store.resolve_outcome(outcome_id, status, resolved_by)

        self.audit.log(
            "reconciliation_result",
            outcome_id,
            AuditAction.MANUAL_RESOLVE,
            old_value=old_value,
            new_value={
                "status": resolved.status.value,
                "manuallyResolved": True,
                "resolvedBy": actor.user_name if actor else None,
                "correctedFields": corrected_fields or None,
            },
            actor=actor,
            source=AuditSource.MANUAL,
        )
        return resolved
