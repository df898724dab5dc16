"""Shared fixtures."""

from pathlib import Path

import pytest

from src.pipeline.seed import generate_sample_system_records, insert_system_records
from src.store.sqlite_store import StateStore

MAPPING = {
    "transactionId": "Txn ID",
    "amount": "Amount",
    "referenceNumber": "Ref",
    "date": "Date",
    "description": "Memo",
}


@pytest.fixture
def store(tmp_path) -> StateStore:
    """Fresh SQLite store in a temp directory."""
    return StateStore(tmp_path / "recon.db")


@pytest.fixture
def seeded_store(store) -> StateStore:
    """Store holding the 200 sample system records."""
    insert_system_records(store, generate_sample_system_records())
    return store


@pytest.fixture
def mapping() -> dict:
    return dict(MAPPING)


@pytest.fixture
def upload_csv(tmp_path) -> Path:
    """Upload file with one exact match, one partial match, a duplicate pair, one miss and one bad row."""
    csv_content = """Txn ID,Amount,Ref,Date,Memo
TXN00001,1250.50,REF00001,2024-01-01,Exact
TXN99999,3468.00,REF00002,2024-02-02,Within 2%
DUP1,100.00,REF77777,2024-03-03,First copy
DUP1,100.00,REF77777,2024-03-03,Second copy
NOPE1,42.00,NOREF,2024-04-04,Unknown
BAD1,abc,REF00003,2024-05-05,Bad amount
"""
    csv_file = tmp_path / "upload.csv"
    csv_file.write_text(csv_content)
    return csv_file
