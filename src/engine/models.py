"""Data models for ingestion and reconciliation."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from src.engine.errors import MappingError


class RecordSource(str, Enum):
    """Where a canonical record came from."""
    SYSTEM = "system"
    UPLOAD = "upload"


class JobStatus(str, Enum):
    """Lifecycle status of an ingestion job."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class OutcomeStatus(str, Enum):
    """Classification of an uploaded record after reconciliation."""
    MATCHED = "matched"
    PARTIALLY_MATCHED = "partially_matched"
    NOT_MATCHED = "not_matched"
    DUPLICATE = "duplicate"


class AuditAction(str, Enum):
    """Actions recorded in the audit trail."""
    CREATE = "create"
    UPLOAD = "upload"
    UPDATE = "update"
    RECONCILE = "reconcile"
    MANUAL_RESOLVE = "manual_resolve"


class AuditSource(str, Enum):
    """Whether an audited change was made by the system or by an operator."""
    SYSTEM = "system"
    MANUAL = "manual"


@dataclass(frozen=True)
class ColumnMapping:
    """Maps system field names to column names of an uploaded file."""
    transaction_id: str
    amount: str
    reference_number: str
    date: str
    description: Optional[str] = None

    # Boundary key -> attribute name
    FIELDS = {
        "transactionId": "transaction_id",
        "amount": "amount",
        "referenceNumber": "reference_number",
        "date": "date",
        "description": "description",
    }
    REQUIRED = ("transactionId", "amount", "referenceNumber", "date")

    @classmethod
    def from_dict(cls, mapping: Optional[Dict[str, Any]]) -> "ColumnMapping":
        """
        Build a mapping from ``{systemField: sourceColumn}``.

        Raises:
            MappingError: If any required field is missing or blank.
        """
        if isinstance(mapping, ColumnMapping):
            return mapping
        if not isinstance(mapping, dict):
            raise MappingError("Column mapping must be a mapping of field names to columns")

        missing = [
            key for key in cls.REQUIRED
            if not isinstance(mapping.get(key), str) or not mapping[key].strip()
        ]
        if missing:
            raise MappingError(
                "Mapping must include transactionId, amount, referenceNumber, and date "
                f"(missing: {', '.join(missing)})"
            )

        description = mapping.get("description")
        if isinstance(description, str):
            description = description.strip() or None
        else:
            description = None

        return cls(
            transaction_id=mapping["transactionId"].strip(),
            amount=mapping["amount"].strip(),
            reference_number=mapping["referenceNumber"].strip(),
            date=mapping["date"].strip(),
            description=description,
        )

    def to_dict(self) -> Dict[str, str]:
        """Return the mapping keyed by boundary field names."""
        result = {}
        for key, attr in self.FIELDS.items():
            value = getattr(self, attr)
            if value:
                result[key] = value
        return result


@dataclass(frozen=True)
class CanonicalRecord:
    """A validated transaction record, either from the system or an upload."""
    transaction_id: str
    amount: Decimal
    reference_number: str
    date: datetime
    description: str = ""
    source: RecordSource = RecordSource.UPLOAD
    upload_job_id: Optional[str] = None
    raw_original: Dict[str, Any] = field(default_factory=dict, compare=False)
    id: Optional[int] = None
    created_at: Optional[str] = None

    def __post_init__(self):
        if self.source == RecordSource.UPLOAD and not self.upload_job_id:
            raise ValueError("Uploaded records must carry an upload_job_id")
        if self.source == RecordSource.SYSTEM and self.upload_job_id is not None:
            raise ValueError("System records cannot belong to an upload job")

    def __repr__(self) -> str:
        return (
            f"CanonicalRecord(id={self.id!r}, txn={self.transaction_id!r}, "
            f"ref={self.reference_number!r}, amount={self.amount}, "
            f"date={self.date.strftime('%Y-%m-%d')})"
        )


@dataclass
class IngestionJob:
    """An uploaded file and the state of its ingestion."""
    id: str
    file_name: str
    file_path: str
    content_hash: str
    status: JobStatus = JobStatus.PENDING
    total_records: Optional[int] = None
    processed_records: int = 0
    column_mapping: Dict[str, str] = field(default_factory=dict)
    error_message: Optional[str] = None
    reconciled: bool = False
    # Bumped every time an ingestion run claims the job
    run_generation: int = 0
    uploaded_by: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def progress(self) -> float:
        """Fraction of parsed rows already processed."""
        if not self.total_records:
            return 1.0 if self.status == JobStatus.COMPLETED else 0.0
        return self.processed_records / self.total_records


@dataclass(frozen=True)
class MismatchedField:
    """One field that differs between an uploaded and a system record."""
    field: str
    uploaded_value: Any
    system_value: Any

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "uploadedValue": self.uploaded_value,
            "systemValue": self.system_value,
        }


@dataclass
class ReconciliationOutcome:
    """Result of classifying one uploaded record."""
    uploaded_record_id: int
    ingestion_job_id: str
    status: OutcomeStatus
    system_record_id: Optional[int] = None
    mismatched_fields: List[MismatchedField] = field(default_factory=list)
    match_score: int = 0
    id: Optional[int] = None
    manually_resolved: bool = False
    resolved_by: Optional[str] = None
    resolved_at: Optional[str] = None

    @property
    def is_matched(self) -> bool:
        """Check if the uploaded record was linked to a system record."""
        return self.status in (OutcomeStatus.MATCHED, OutcomeStatus.PARTIALLY_MATCHED)


@dataclass
class ReconciliationSummary:
    """Per-status counts for one reconciliation run."""
    total: int = 0
    matched: int = 0
    partially_matched: int = 0
    not_matched: int = 0
    duplicate: int = 0

    @classmethod
    def from_outcomes(cls, outcomes: List[ReconciliationOutcome]) -> "ReconciliationSummary":
        summary = cls()
        for outcome in outcomes:
            summary.add(outcome.status)
        return summary

    def add(self, status: OutcomeStatus, count: int = 1) -> None:
        self.total += count
        setattr(self, status.value, getattr(self, status.value) + count)

    @property
    def accuracy(self) -> float:
        """Share of matched and partially matched records as a percentage."""
        if self.total == 0:
            return 0.0
        return round((self.matched + self.partially_matched) / self.total * 100, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "matched": self.matched,
            "partially_matched": self.partially_matched,
            "not_matched": self.not_matched,
            "duplicate": self.duplicate,
            "accuracy": self.accuracy,
        }


@dataclass(frozen=True)
class Actor:
    """Who triggered an operation, for the audit trail."""
    user_id: Optional[str] = None
    user_name: str = "system"


SYSTEM_ACTOR = Actor()


@dataclass
class AuditEvent:
    """An append-only audit log entry."""
    entity_type: str
    entity_id: str
    action: AuditAction
    old_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None
    user_id: Optional[str] = None
    user_name: Optional[str] = None
    source: AuditSource = AuditSource.SYSTEM
    timestamp: Optional[str] = None
    id: Optional[int] = None
