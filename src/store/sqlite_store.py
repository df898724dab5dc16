"""
SQLite-backed persistence for jobs, records, outcomes and the audit trail.

Tables:
- ingestion_jobs: uploaded files and their ingestion state
- records: canonical records, both system and uploaded
- reconciliation_outcomes: one row per uploaded record per reconciliation run
- audit_log: append-only audit events

Every public method runs in its own transaction and commits before returning,
so progress written by one thread is visible to readers in another.

Each ingestion run bumps the job's ``run_generation``. Writers pass the
generation they started under and the write is refused with
``StaleRunError`` once another run (in any process) has taken the job over.
"""

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from src.engine.errors import (
    JobNotFoundError,
    PersistenceError,
    PreconditionError,
    StaleRunError,
)
from src.engine.models import (
    AuditAction,
    AuditEvent,
    AuditSource,
    CanonicalRecord,
    IngestionJob,
    JobStatus,
    MismatchedField,
    OutcomeStatus,
    ReconciliationOutcome,
    ReconciliationSummary,
    RecordSource,
)

logger = logging.getLogger(__name__)


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (JobStatus, OutcomeStatus, RecordSource)):
        return value.value
    return str(value)


def to_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=_json_default)


def from_json(value: Optional[str]) -> Any:
    if value is None:
        return None
    return json.loads(value)


def job_from_row(row: sqlite3.Row) -> IngestionJob:
    return IngestionJob(
        id=row["id"],
        file_name=row["file_name"],
        file_path=row["file_path"],
        content_hash=row["content_hash"],
        status=JobStatus(row["status"]),
        total_records=row["total_records"],
        processed_records=row["processed_records"],
        column_mapping=from_json(row["column_mapping"]) or {},
        error_message=row["error_message"],
        reconciled=bool(row["reconciled"]),
        run_generation=row["run_generation"],
        uploaded_by=row["uploaded_by"],
        created_at=row["created_at"],
        completed_at=row["completed_at"],
    )


def record_from_row(row: sqlite3.Row) -> CanonicalRecord:
    return CanonicalRecord(
        id=row["id"],
        transaction_id=row["transaction_id"],
        amount=Decimal(row["amount"]),
        reference_number=row["reference_number"],
        date=datetime.fromisoformat(row["date"]),
        description=row["description"] or "",
        source=RecordSource(row["source"]),
        upload_job_id=row["upload_job_id"],
        raw_original=from_json(row["raw_original"]) or {},
        created_at=row["created_at"],
    )


def outcome_from_row(row: sqlite3.Row) -> ReconciliationOutcome:
    mismatches = [
        MismatchedField(
            field=item["field"],
            uploaded_value=item["uploadedValue"],
            system_value=item["systemValue"],
        )
        for item in from_json(row["mismatched_fields"]) or []
    ]
    return ReconciliationOutcome(
        id=row["id"],
        uploaded_record_id=row["uploaded_record_id"],
        system_record_id=row["system_record_id"],
        status=OutcomeStatus(row["status"]),
        mismatched_fields=mismatches,
        match_score=row["match_score"],
        ingestion_job_id=row["ingestion_job_id"],
        manually_resolved=bool(row["manually_resolved"]),
        resolved_by=row["resolved_by"],
        resolved_at=row["resolved_at"],
    )


def audit_from_row(row: sqlite3.Row) -> AuditEvent:
    return AuditEvent(
        id=row["id"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        action=AuditAction(row["action"]),
        old_value=from_json(row["old_value"]),
        new_value=from_json(row["new_value"]),
        user_id=row["user_id"],
        user_name=row["user_name"],
        source=AuditSource(row["source"]),
        timestamp=row["timestamp"],
    )


class StateStore:
    """
    SQLite-based store for the ingestion and reconciliation pipeline.

    Safe to share between worker threads: each call opens its own connection.
    Within one process ``src.pipeline.worker.JobLocks`` serializes runs of a
    job; across processes the run generation checks below do.
    """

    SCHEMA_VERSION = 2

    def __init__(self, db_path: Path | str, timeout: float = 30.0):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait on a locked database before failing
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.timeout = timeout
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """
        Context manager for database transactions.

        ``immediate`` takes the write lock up front so that reads made inside
        the transaction stay valid until commit, even against other processes.
        """
        conn = self._get_connection()
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )
            conn.execute(
                "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
                (self.SCHEMA_VERSION,),
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ingestion_jobs (
                    id TEXT PRIMARY KEY,
                    file_name TEXT NOT NULL,
                    file_path TEXT NOT NULL,
                    content_hash TEXT NOT NULL UNIQUE,
                    status TEXT NOT NULL,
                    total_records INTEGER,
                    processed_records INTEGER NOT NULL DEFAULT 0,
                    column_mapping TEXT,  -- JSON object
                    error_message TEXT,
                    reconciled INTEGER NOT NULL DEFAULT 0,
                    run_generation INTEGER NOT NULL DEFAULT 0,
                    uploaded_by TEXT,
                    created_at TEXT NOT NULL,
                    completed_at TEXT
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    transaction_id TEXT NOT NULL,
                    amount TEXT NOT NULL,  -- Decimal as text
                    reference_number TEXT NOT NULL,
                    date TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    source TEXT NOT NULL,
                    upload_job_id TEXT,
                    raw_original TEXT,  -- JSON object
                    created_at TEXT NOT NULL,
                    CHECK (
                        (source = 'upload' AND upload_job_id IS NOT NULL)
                        OR (source = 'system' AND upload_job_id IS NULL)
                    ),
                    FOREIGN KEY (upload_job_id) REFERENCES ingestion_jobs(id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS reconciliation_outcomes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    uploaded_record_id INTEGER NOT NULL,
                    system_record_id INTEGER,
                    status TEXT NOT NULL,
                    mismatched_fields TEXT NOT NULL,  -- JSON array
                    match_score INTEGER NOT NULL CHECK (match_score BETWEEN 0 AND 100),
                    ingestion_job_id TEXT NOT NULL,
                    manually_resolved INTEGER NOT NULL DEFAULT 0,
                    resolved_by TEXT,
                    resolved_at TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (ingestion_job_id) REFERENCES ingestion_jobs(id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    old_value TEXT,  -- JSON
                    new_value TEXT,  -- JSON
                    user_id TEXT,
                    user_name TEXT,
                    source TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                )
            """
            )

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_records_txn_source ON records(transaction_id, source)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_records_ref_source ON records(reference_number, source)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_records_job ON records(upload_job_id, source)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_outcomes_job_status "
                "ON reconciliation_outcomes(ingestion_job_id, status)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_log(entity_id)")

            # Version 1 databases predate run generations
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(ingestion_jobs)")}
            if "run_generation" not in columns:
                conn.execute(
                    "ALTER TABLE ingestion_jobs "
                    "ADD COLUMN run_generation INTEGER NOT NULL DEFAULT 0"
                )

    # ---- Ingestion jobs ----

    def create_job(
        self,
        file_name: str,
        file_path: str,
        content_hash: str,
        uploaded_by: Optional[str] = None,
    ) -> IngestionJob:
        """Create a pending job. The content hash must be unique."""
        job_id = uuid.uuid4().hex
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO ingestion_jobs
                    (id, file_name, file_path, content_hash, status, created_at, uploaded_by)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
                (job_id, file_name, file_path, content_hash, JobStatus.PENDING.value,
                 utcnow(), uploaded_by),
            )
        return self.get_job(job_id)

    def get_job(self, job_id: str) -> IngestionJob:
        """
        Raises:
            JobNotFoundError: If no job has this id.
        """
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM ingestion_jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise JobNotFoundError(f"Ingestion job not found: {job_id}")
        return job_from_row(row)

    def find_job_by_hash(self, content_hash: str) -> Optional[IngestionJob]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM ingestion_jobs WHERE content_hash = ?", (content_hash,)
            ).fetchone()
        return job_from_row(row) if row else None

    def list_jobs(self, page: int = 1, limit: int = 20) -> Tuple[List[IngestionJob], int]:
        """Jobs newest first, with the total count."""
        with self._transaction() as conn:
            total = conn.execute("SELECT COUNT(*) FROM ingestion_jobs").fetchone()[0]
            rows = conn.execute(
                "SELECT * FROM ingestion_jobs ORDER BY created_at DESC, id LIMIT ? OFFSET ?",
                (limit, (page - 1) * limit),
            ).fetchall()
        return [job_from_row(r) for r in rows], total

    def update_job(
        self,
        job_id: str,
        expected_run: Optional[int] = None,
        **fields: Any,
    ) -> IngestionJob:
        """
        Set arbitrary job columns in one statement.

        Raises:
            JobNotFoundError: If no job has this id.
            StaleRunError: If ``expected_run`` is given and another run owns the job.
        """
        if not fields:
            return self.get_job(job_id)

        values: Dict[str, Any] = {}
        for key, value in fields.items():
            if key == "column_mapping":
                value = to_json(value)
            elif key == "status":
                value = JobStatus(value).value
            elif key == "reconciled":
                value = int(bool(value))
            values[key] = value

        assignments = ", ".join(f"{key} = ?" for key in values)
        with self._transaction(immediate=expected_run is not None) as conn:
            self._check_run(conn, job_id, expected_run)
            conn.execute(
                f"UPDATE ingestion_jobs SET {assignments} WHERE id = ?",
                (*values.values(), job_id),
            )
        return self.get_job(job_id)

    def increment_processed(
        self,
        job_id: str,
        count: int,
        expected_run: Optional[int] = None,
    ) -> int:
        """Atomically add ``count`` to processed_records and return the new value."""
        with self._transaction(immediate=True) as conn:
            self._check_run(conn, job_id, expected_run)
            conn.execute(
                "UPDATE ingestion_jobs SET processed_records = processed_records + ? WHERE id = ?",
                (count, job_id),
            )
            row = conn.execute(
                "SELECT processed_records FROM ingestion_jobs WHERE id = ?", (job_id,)
            ).fetchone()
        return row[0]

    def begin_run(
        self,
        job_id: str,
        column_mapping: Dict[str, str],
        allowed_from: Iterable[JobStatus],
    ) -> Tuple[IngestionJob, int, int]:
        """
        Claim a job for a new ingestion run.

        In one write transaction: check the current status, purge uploaded
        records and outcomes of any earlier run, reset the counters and bump
        the run generation.

        Returns:
            Tuple of (job, purged records, purged outcomes).

        Raises:
            JobNotFoundError: If no job has this id.
            PreconditionError: If the job's status does not allow a new run.
        """
        allowed = {JobStatus(s) for s in allowed_from}
        with self._transaction(immediate=True) as conn:
            row = conn.execute(
                "SELECT status FROM ingestion_jobs WHERE id = ?", (job_id,)
            ).fetchone()
            if row is None:
                raise JobNotFoundError(f"Ingestion job not found: {job_id}")
            status = JobStatus(row["status"])
            if status not in allowed:
                raise PreconditionError(
                    f"Cannot start a run of job {job_id} while it is {status.value}"
                )

            purged = cleared = 0
            if status != JobStatus.PENDING:
                cleared = conn.execute(
                    "DELETE FROM reconciliation_outcomes WHERE ingestion_job_id = ?", (job_id,)
                ).rowcount
                purged = conn.execute(
                    "DELETE FROM records WHERE upload_job_id = ? AND source = ?",
                    (job_id, RecordSource.UPLOAD.value),
                ).rowcount

            conn.execute(
                """
                UPDATE ingestion_jobs
                SET status = ?, column_mapping = ?, total_records = NULL,
                    processed_records = 0, reconciled = 0, error_message = NULL,
                    completed_at = NULL, run_generation = run_generation + 1
                WHERE id = ?
            """,
                (JobStatus.PROCESSING.value, to_json(column_mapping), job_id),
            )
        return self.get_job(job_id), purged, cleared

    def _check_run(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        expected_run: Optional[int],
        expected_status: Optional[JobStatus] = None,
    ) -> None:
        """Raise unless the job exists and still belongs to ``expected_run``."""
        row = conn.execute(
            "SELECT status, run_generation FROM ingestion_jobs WHERE id = ?", (job_id,)
        ).fetchone()
        if row is None:
            raise JobNotFoundError(f"Ingestion job not found: {job_id}")
        if expected_run is not None and row["run_generation"] != expected_run:
            raise StaleRunError(
                f"Job {job_id} was restarted (run {row['run_generation']}, expected {expected_run})"
            )
        if expected_status is not None and row["status"] != expected_status.value:
            raise StaleRunError(
                f"Job {job_id} is {row['status']}, expected {expected_status.value}"
            )

    # ---- Records ----

    def insert_records(
        self,
        records: Sequence[CanonicalRecord],
        expected_run: Optional[int] = None,
    ) -> int:
        """
        Insert records row by row inside a single transaction.

        A row rejected by a constraint does not prevent the other rows of the
        batch from being committed.

        Args:
            records: Records to insert; uploaded records all belong to one job.
            expected_run: Run generation the uploaded records were produced under.

        Returns:
            Number of rows inserted.

        Raises:
            PersistenceError: If any row failed, or the database itself failed.
            StaleRunError: If another run has claimed the job; nothing is written.
        """
        if not records:
            return 0

        job_id = records[0].upload_job_id
        now = utcnow()
        inserted = 0
        failures: List[str] = []
        try:
            with self._transaction(immediate=expected_run is not None) as conn:
                if expected_run is not None and job_id is not None:
                    self._check_run(conn, job_id, expected_run)
                for record in records:
                    try:
                        conn.execute(
                            """
                            INSERT INTO records
                                (transaction_id, amount, reference_number, date, description,
                                 source, upload_job_id, raw_original, created_at)
                            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                            (
                                record.transaction_id,
                                str(record.amount),
                                record.reference_number,
                                record.date.isoformat(),
                                record.description,
                                record.source.value,
                                record.upload_job_id,
                                to_json(record.raw_original),
                                now,
                            ),
                        )
                        inserted += 1
                    except sqlite3.IntegrityError as e:
                        failures.append(f"{record.transaction_id}: {e}")
        except sqlite3.Error as e:
            raise PersistenceError(f"Bulk insert failed: {e}", inserted=0) from e

        if failures:
            raise PersistenceError(
                f"{len(failures)} of {len(records)} records failed to persist "
                f"(first: {failures[0]})",
                inserted=inserted,
            )
        return inserted

    def get_upload_records(self, job_id: str) -> List[CanonicalRecord]:
        """Uploaded records of a job in file order."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM records WHERE upload_job_id = ? AND source = ? ORDER BY id",
                (job_id, RecordSource.UPLOAD.value),
            ).fetchall()
        return [record_from_row(r) for r in rows]

    def count_upload_records(self, job_id: str) -> int:
        with self._transaction() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM records WHERE upload_job_id = ? AND source = ?",
                (job_id, RecordSource.UPLOAD.value),
            ).fetchone()[0]

    def get_system_records(self) -> List[CanonicalRecord]:
        """System records ordered by creation time, then id."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM records WHERE source = ? ORDER BY created_at, id",
                (RecordSource.SYSTEM.value,),
            ).fetchall()
        return [record_from_row(r) for r in rows]

    def get_record(self, record_id: int) -> Optional[CanonicalRecord]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM records WHERE id = ?", (record_id,)).fetchone()
        return record_from_row(row) if row else None

    def get_records(self, record_ids: Sequence[int]) -> Dict[int, CanonicalRecord]:
        ids = [i for i in set(record_ids) if i is not None]
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM records WHERE id IN ({placeholders})", ids
            ).fetchall()
        return {row["id"]: record_from_row(row) for row in rows}

    def update_record(self, record_id: int, **fields: Any) -> CanonicalRecord:
        """
        Apply an operator correction to a record, in place.

        Values must already be canonical: a finite ``Decimal`` amount, a
        ``datetime`` date and non-blank identifiers. Text input goes through
        ``Canonicalizer.clean_fields`` first.

        Raises:
            ValueError: If a field is unknown or a value is not canonical.
            LookupError: If the record doesn't exist.
        """
        allowed = {"transaction_id", "amount", "reference_number", "date", "description"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Cannot update record fields: {', '.join(sorted(unknown))}")

        values = {}
        for key, value in fields.items():
            if key == "amount":
                if not isinstance(value, Decimal) or not value.is_finite():
                    raise ValueError(f"Invalid amount: {value!r}")
                value = str(value)
            elif key == "date":
                if not isinstance(value, datetime) or value.tzinfo is not None:
                    raise ValueError(f"Invalid date: {value!r}")
                value = value.isoformat()
            elif key in ("transaction_id", "reference_number"):
                if not isinstance(value, str) or not value.strip():
                    raise ValueError(f"Empty value for {key}")
                value = value.strip()
            else:
                value = "" if value is None else str(value).strip()
            values[key] = value

        if values:
            assignments = ", ".join(f"{key} = ?" for key in values)
            with self._transaction() as conn:
                conn.execute(
                    f"UPDATE records SET {assignments} WHERE id = ?",
                    (*values.values(), record_id),
                )
        record = self.get_record(record_id)
        if record is None:
            raise LookupError(f"Record not found: {record_id}")
        return record

    def delete_system_records(self) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM records WHERE source = ?", (RecordSource.SYSTEM.value,)
            )
        return cursor.rowcount

    # ---- Reconciliation outcomes ----

    def replace_outcomes(
        self,
        job_id: str,
        outcomes: Sequence[ReconciliationOutcome],
        expected_run: int,
        batch_size: int = 1000,
    ) -> int:
        """
        Swap a job's outcomes for a new set and mark the job reconciled.

        Runs as one write transaction that first re-checks the job is still
        completed under ``expected_run``, so outcomes computed from records a
        concurrent re-ingestion has since replaced are never committed.

        Returns:
            Number of outcomes that were replaced.

        Raises:
            StaleRunError: If the job was restarted or left the completed state.
            PersistenceError: If the outcomes could not be written.
        """
        now = utcnow()
        rows = [
            (
                o.uploaded_record_id,
                o.system_record_id,
                o.status.value,
                to_json([m.to_dict() for m in o.mismatched_fields]),
                o.match_score,
                o.ingestion_job_id,
                now,
            )
            for o in outcomes
        ]
        try:
            with self._transaction(immediate=True) as conn:
                self._check_run(conn, job_id, expected_run, expected_status=JobStatus.COMPLETED)
                cleared = conn.execute(
                    "DELETE FROM reconciliation_outcomes WHERE ingestion_job_id = ?", (job_id,)
                ).rowcount
                for start in range(0, len(rows), batch_size):
                    conn.executemany(
                        """
                        INSERT INTO reconciliation_outcomes
                            (uploaded_record_id, system_record_id, status, mismatched_fields,
                             match_score, ingestion_job_id, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                        rows[start:start + batch_size],
                    )
                conn.execute("UPDATE ingestion_jobs SET reconciled = 1 WHERE id = ?", (job_id,))
        except sqlite3.Error as e:
            raise PersistenceError(f"Outcome insert failed: {e}") from e
        return cleared

    def get_outcomes(
        self,
        job_id: str,
        status: Optional[OutcomeStatus] = None,
        page: Optional[int] = None,
        limit: int = 20,
    ) -> Tuple[List[ReconciliationOutcome], int]:
        """
        Outcomes of a job in uploaded-record order, optionally filtered and paged.

        Returns:
            Tuple of (outcomes, total matching the filter).
        """
        where = "WHERE ingestion_job_id = ?"
        params: List[Any] = [job_id]
        if status is not None:
            where += " AND status = ?"
            params.append(OutcomeStatus(status).value)

        query = f"SELECT * FROM reconciliation_outcomes {where} ORDER BY uploaded_record_id, id"
        page_params = list(params)
        if page is not None:
            query += " LIMIT ? OFFSET ?"
            page_params.extend([limit, (page - 1) * limit])

        with self._transaction() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM reconciliation_outcomes {where}", params
            ).fetchone()[0]
            rows = conn.execute(query, page_params).fetchall()
        return [outcome_from_row(r) for r in rows], total

    def get_outcome(self, outcome_id: int) -> Optional[ReconciliationOutcome]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM reconciliation_outcomes WHERE id = ?", (outcome_id,)
            ).fetchone()
        return outcome_from_row(row) if row else None

    def resolve_outcome(
        self,
        outcome_id: int,
        status: OutcomeStatus,
        resolved_by: Optional[str],
    ) -> ReconciliationOutcome:
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE reconciliation_outcomes
                SET status = ?, manually_resolved = 1, resolved_by = ?, resolved_at = ?
                WHERE id = ?
            """,
                (OutcomeStatus(status).value, resolved_by, utcnow(), outcome_id),
            )
        outcome = self.get_outcome(outcome_id)
        if outcome is None:
            raise LookupError(f"Reconciliation outcome not found: {outcome_id}")
        return outcome

    def outcome_counts(self, job_id: str) -> ReconciliationSummary:
        summary = ReconciliationSummary()
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT status, COUNT(*) AS count FROM reconciliation_outcomes
                WHERE ingestion_job_id = ? GROUP BY status
            """,
                (job_id,),
            ).fetchall()
        for row in rows:
            summary.add(OutcomeStatus(row["status"]), row["count"])
        return summary

    # ---- Audit log ----

    def append_audit_event(self, event: AuditEvent) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO audit_log
                    (entity_type, entity_id, action, old_value, new_value,
                     user_id, user_name, source, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    event.entity_type,
                    str(event.entity_id),
                    AuditAction(event.action).value,
                    to_json(event.old_value),
                    to_json(event.new_value),
                    event.user_id,
                    event.user_name,
                    AuditSource(event.source).value,
                    event.timestamp or utcnow(),
                ),
            )
        return cursor.lastrowid

    def get_audit_events(
        self,
        entity_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        user_id: Optional[str] = None,
        since: Optional[datetime | str] = None,
        until: Optional[datetime | str] = None,
        page: Optional[int] = None,
        limit: int = 50,
    ) -> List[AuditEvent]:
        """
        Audit events newest first, optionally filtered and paged.

        ``since`` is inclusive and ``until`` exclusive. Naive datetimes are
        taken as UTC.
        """
        where, params = self._audit_filters(entity_id, entity_type, user_id, since, until)
        query = f"SELECT * FROM audit_log {where} ORDER BY timestamp DESC, id DESC"
        if page is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, (page - 1) * limit])
        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return [audit_from_row(r) for r in rows]

    def count_audit_events(
        self,
        entity_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        user_id: Optional[str] = None,
        since: Optional[datetime | str] = None,
        until: Optional[datetime | str] = None,
    ) -> int:
        where, params = self._audit_filters(entity_id, entity_type, user_id, since, until)
        with self._transaction() as conn:
            return conn.execute(f"SELECT COUNT(*) FROM audit_log {where}", params).fetchone()[0]

    @staticmethod
    def _audit_filters(
        entity_id: Optional[str],
        entity_type: Optional[str],
        user_id: Optional[str],
        since: Optional[datetime | str],
        until: Optional[datetime | str],
    ) -> Tuple[str, List[Any]]:
        def as_timestamp(value: datetime | str) -> str:
            if isinstance(value, datetime):
                if value.tzinfo is None:
                    value = value.replace(tzinfo=timezone.utc)
                return value.astimezone(timezone.utc).isoformat()
            return value

        clauses = []
        params: List[Any] = []
        if entity_id is not None:
            clauses.append("entity_id = ?")
            params.append(str(entity_id))
        if entity_type is not None:
            clauses.append("entity_type = ?")
            params.append(entity_type)
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if since is not None:
            clauses.append("timestamp >= ?")
            params.append(as_timestamp(since))
        if until is not None:
            clauses.append("timestamp < ?")
            params.append(as_timestamp(until))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params
