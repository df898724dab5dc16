"""Upload registration, preview and column-mapping submission."""

import hashlib
import logging
import shutil
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

from src.engine.models import Actor, AuditAction, AuditSource, ColumnMapping, IngestionJob
from src.parsers.file_parser import FileParser, ParsedFile
from src.pipeline.audit import AuditTrail
from src.store.sqlite_store import StateStore

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 1024 * 1024


def compute_file_hash(file_path: str | Path) -> str:
    """SHA-256 hex digest of a file's bytes, read in chunks."""
    digest = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(frozen=True)
class IngestionTask:
    """A unit of work for the ingestion worker pool."""
    job_id: str
    file_path: str
    column_mapping: Dict[str, str]
    actor: Optional[Actor] = None


class UploadService:
    """Entry points used when a user uploads a file and maps its columns."""

    def __init__(
        self,
        store: StateStore,
        upload_dir: Optional[str | Path] = None,
        parser: Optional[FileParser] = None,
    ):
        """
        Args:
            store: State store.
            upload_dir: If set, uploaded files are copied here under their content hash.
            parser: File parser used for previews.
        """
        self.store = store
        self.upload_dir = Path(upload_dir) if upload_dir else None
        self.parser = parser or FileParser()
        self.audit = AuditTrail(store)

    def register_upload(
        self,
        file_path: str | Path,
        original_name: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> Tuple[IngestionJob, bool]:
        """
        Create a pending job for a file, or return the existing job for identical bytes.

        Returns:
            Tuple of (job, created). ``created`` is False when the file was already uploaded.

        Raises:
            FileNotFoundError: If the file doesn't exist.
            UnsupportedFormatError: If the extension is not supported; no job is created.
        """
        file_path = Path(file_path)
        if not file_path.exists():
            raise FileNotFoundError(f"File not found: {file_path}")
        suffix = FileParser.resolve_format(original_name or file_path)

        content_hash = compute_file_hash(file_path)
        existing = self.store.find_job_by_hash(content_hash)
        if existing:
            logger.info("File %s already uploaded as job %s", file_path.name, existing.id)
            return existing, False

        stored_path = file_path
        if self.upload_dir:
            self.upload_dir.mkdir(parents=True, exist_ok=True)
            stored_path = self.upload_dir / f"{content_hash}{suffix}"
            if not stored_path.exists():
                shutil.copyfile(file_path, stored_path)

        try:
            job = self.store.create_job(
                file_name=original_name or file_path.name,
                file_path=str(stored_path.resolve()),
                content_hash=content_hash,
                uploaded_by=actor.user_id if actor else None,
            )
        except sqlite3.IntegrityError:
            # Lost a race with a concurrent upload of the same bytes
            existing = self.store.find_job_by_hash(content_hash)
            if existing is None:
                raise
            return existing, False
        logger.info("Registered upload %s as job %s", job.file_name, job.id)
        self.audit.log(
            "upload_job",
            job.id,
            AuditAction.CREATE,
            new_value={"fileName": job.file_name, "fileHash": content_hash},
            actor=actor,
            source=AuditSource.MANUAL,
        )
        return job, True

    def preview(self, job_id: str, rows: int = 20) -> ParsedFile:
        """First rows of the job's file plus the total row count."""
        job = self.store.get_job(job_id)
        return self.parser.preview(job.file_path, rows=rows)

    def submit_mapping(
        self,
        job_id: str,
        column_mapping: ColumnMapping | Dict[str, str],
        actor: Optional[Actor] = None,
    ) -> IngestionTask:
        """
        Validate a mapping and build the ingestion task for it.

        The job itself is reset and purged by the pipeline once a worker
        holds the job's lock.

        Raises:
            MappingError: If a required field is missing.
            JobNotFoundError: If the job doesn't exist.
        """
        mapping = ColumnMapping.from_dict(column_mapping)
        job = self.store.get_job(job_id)

        self.audit.log(
            "upload_job",
            job.id,
            AuditAction.UPDATE,
            old_value={"columnMapping": job.column_mapping or None},
            new_value={"columnMapping": mapping.to_dict()},
            actor=actor,
            source=AuditSource.MANUAL,
        )
        return IngestionTask(
            job_id=job.id,
            file_path=job.file_path,
            column_mapping=mapping.to_dict(),
            actor=actor,
        )
