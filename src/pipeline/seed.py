"""Loading the system (reference) record set."""

import logging
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Tuple

from src.engine.models import CanonicalRecord, ColumnMapping, RecordSource
from src.parsers.canonicalizer import Canonicalizer
from src.parsers.file_parser import FileParser
from src.pipeline.ingestion import BATCH_SIZE
from src.store.sqlite_store import StateStore

logger = logging.getLogger(__name__)

# Fixed amounts so sample uploads produce predictable reconciliation results
SAMPLE_AMOUNTS = [
    "1250.50", "3400.00", "780.25", "5600.00", "920.75",
    "2150.00", "445.30", "8900.00", "1100.00", "3250.50",
    "670.00", "4500.00", "1890.25", "7200.00", "550.00",
    "1325.00", "2980.75", "4120.00", "6300.50", "815.25",
]


def generate_sample_system_records(count: int = 200) -> List[CanonicalRecord]:
    """Deterministic reference records TXN00001/REF00001 ... spread over 2024."""
    records: List[CanonicalRecord] = []
    for i in range(1, count + 1):
        month = (i - 1) % 12 + 1
        day = (i - 1) % 28 + 1
        records.append(CanonicalRecord(
            transaction_id=f"TXN{i:05d}",
            amount=Decimal(SAMPLE_AMOUNTS[(i - 1) % len(SAMPLE_AMOUNTS)]),
            reference_number=f"REF{i:05d}",
            date=datetime(2024, month, day),
            description=f"System transaction #{i}",
            source=RecordSource.SYSTEM,
        ))
    return records


def insert_system_records(
    store: StateStore,
    records: List[CanonicalRecord],
    replace: bool = False,
    batch_size: int = BATCH_SIZE,
) -> int:
    """Persist system records in batches, optionally clearing the existing set first."""
    if replace:
        removed = store.delete_system_records()
        logger.info("Cleared %d existing system records", removed)

    inserted = 0
    for start in range(0, len(records), batch_size):
        inserted += store.insert_records(records[start:start + batch_size])
    logger.info("Inserted %d system records", inserted)
    return inserted


def load_system_records(
    store: StateStore,
    file_path: str | Path,
    column_mapping: ColumnMapping | Dict[str, str],
    replace: bool = False,
    parser: FileParser | None = None,
) -> Tuple[int, int]:
    """
    Load system records from a CSV/Excel file.

    Returns:
        Tuple of (inserted, rejected) row counts.
    """
    parsed = (parser or FileParser()).parse(file_path)
    canonicalizer = Canonicalizer(column_mapping, source=RecordSource.SYSTEM)
    records, rejections = canonicalizer.canonicalize_batch(parsed.rows)
    inserted = insert_system_records(store, records, replace=replace)
    return inserted, len(rejections)
