"""Error taxonomy for ingestion and reconciliation."""

from typing import Optional


class ReconciliationError(Exception):
    """Base class for all errors raised by the reconciliation core."""


class UnsupportedFormatError(ReconciliationError, ValueError):
    """File extension is not a supported tabular format."""


class ParseError(ReconciliationError, ValueError):
    """File content could not be read as a table."""


class ValidationRejection(ReconciliationError, ValueError):
    """A single row could not be turned into a canonical record."""

    def __init__(self, reason: str, row_number: Optional[int] = None):
        self.reason = reason
        self.row_number = row_number
        prefix = f"Row {row_number}: " if row_number is not None else ""
        super().__init__(f"{prefix}{reason}")


class PreconditionError(ReconciliationError):
    """Operation requested on a job that is not in a state to accept it."""


class MappingError(PreconditionError, ValueError):
    """Column mapping is missing required fields or is malformed."""


class JobNotFoundError(PreconditionError, LookupError):
    """No ingestion job exists with the given id."""


class PersistenceError(ReconciliationError):
    """A bulk write to the store failed."""

    def __init__(self, message: str, inserted: int = 0):
        self.inserted = inserted
        super().__init__(message)


class StaleRunError(PreconditionError):
    """The job was restarted by another run while this one was writing to it."""
