"""Turn raw file rows into canonical records through a column mapping."""

import logging
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Tuple

import pandas as pd

from src.engine.errors import ValidationRejection
from src.engine.models import CanonicalRecord, ColumnMapping, RecordSource

logger = logging.getLogger(__name__)

# 1,234 or -12,500: a lone comma before exactly three digits reads as either
# a thousands separator or a decimal comma
AMBIGUOUS_COMMA = re.compile(r"[+-]?\d{1,3},\d{3}")


class Canonicalizer:
    """Validate raw rows and convert them into CanonicalRecord objects."""

    # Common date formats to try after ISO 8601
    DATE_FORMATS = [
        "%Y-%m-%d",
        "%d/%m/%Y",
        "%m/%d/%Y",
        "%d-%m-%Y",
        "%Y/%m/%d",
        "%d.%m.%Y",
    ]

    def __init__(
        self,
        column_mapping: ColumnMapping | Dict[str, str],
        source: RecordSource = RecordSource.UPLOAD,
        upload_job_id: Optional[str] = None,
    ):
        """
        Initialize the canonicalizer.

        Args:
            column_mapping: Mapping of system field names to source column names.
                          Example: {"transactionId": "Txn", "amount": "Valor", ...}
            source: Source stamped on every produced record.
            upload_job_id: Job the records belong to; required for uploads.

        Raises:
            MappingError: If the mapping lacks a required field.
        """
        self.mapping = ColumnMapping.from_dict(column_mapping)
        self.source = source
        self.upload_job_id = upload_job_id

    def canonicalize(self, row: Dict[str, Any], row_number: Optional[int] = None) -> CanonicalRecord:
        """
        Convert a single raw row.

        Raises:
            ValidationRejection: If a mandatory field is missing or unparseable.
        """
        transaction_id = self._required(row, "transactionId", self.mapping.transaction_id, row_number)
        amount_text = self._required(row, "amount", self.mapping.amount, row_number)
        reference = self._required(row, "referenceNumber", self.mapping.reference_number, row_number)
        date_text = self._required(row, "date", self.mapping.date, row_number)

        try:
            amount = self._parse_amount(amount_text)
        except (ValueError, InvalidOperation):
            raise ValidationRejection(f"Invalid amount: {amount_text!r}", row_number) from None

        try:
            txn_date = self._parse_date(date_text)
        except ValueError:
            raise ValidationRejection(f"Invalid date: {date_text!r}", row_number) from None

        description = ""
        if self.mapping.description:
            description = self._text(row.get(self.mapping.description))

        return CanonicalRecord(
            transaction_id=transaction_id,
            amount=amount,
            reference_number=reference,
            date=txn_date,
            description=description,
            source=self.source,
            upload_job_id=self.upload_job_id if self.source == RecordSource.UPLOAD else None,
            raw_original=dict(row),
        )

    def canonicalize_batch(
        self,
        rows: Iterable[Dict[str, Any]],
        start_row: int = 1,
    ) -> Tuple[List[CanonicalRecord], List[ValidationRejection]]:
        """
        Convert a batch of rows, collecting rejections instead of raising.

        Args:
            rows: Raw rows in file order.
            start_row: 1-based row number of the first row, for messages.

        Returns:
            Tuple of (accepted records, rejections).
        """
        records: List[CanonicalRecord] = []
        rejections: List[ValidationRejection] = []

        for offset, row in enumerate(rows):
            try:
                records.append(self.canonicalize(row, start_row + offset))
            except ValidationRejection as e:
                # Log warning but continue processing
                logger.warning("Skipping row %s: %s", e.row_number, e.reason)
                rejections.append(e)

        return records, rejections

    def _required(
        self,
        row: Dict[str, Any],
        field_name: str,
        column: str,
        row_number: Optional[int],
    ) -> str:
        if column not in row:
            raise ValidationRejection(
                f"Missing column {column!r} mapped to {field_name}", row_number
            )
        value = self._text(row[column])
        if not value:
            raise ValidationRejection(f"Empty value for {field_name}", row_number)
        return value

    @staticmethod
    def _text(value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, float) and pd.isna(value):
            return ""
        return str(value).strip()

    @classmethod
    def clean_fields(cls, values: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate individual field values the way file cells are validated.

        Args:
            values: Values keyed by field name, e.g. ``{"date": "15/01/2024"}``.

        Returns:
            Parsed values keyed by CanonicalRecord attribute name.

        Raises:
            ValidationRejection: On an unknown field, a blank mandatory value,
                or an amount or date that doesn't parse.
        """
        cleaned: Dict[str, Any] = {}
        for name, value in values.items():
            attr = ColumnMapping.FIELDS.get(name)
            if attr is None:
                raise ValidationRejection(f"Unknown field {name!r}")
            if name == "description":
                cleaned[attr] = cls._text(value)
                continue

            if not isinstance(value, (datetime, Decimal, int, float)):
                value = cls._text(value)
                if not value:
                    raise ValidationRejection(f"Empty value for {name}")
            try:
                if name == "amount":
                    cleaned[attr] = cls._parse_amount(value)
                elif name == "date":
                    cleaned[attr] = cls._parse_date(value)
                else:
                    cleaned[attr] = str(value)
            except (ValueError, InvalidOperation):
                raise ValidationRejection(f"Invalid {name}: {value!r}") from None
        return cleaned

    @classmethod
    def _parse_date(cls, value: Any) -> datetime:
        """Parse a date into a timezone-naive datetime."""
        if isinstance(value, pd.Timestamp):
            value = value.to_pydatetime()
        if isinstance(value, datetime):
            parsed = value
        else:
            str_value = str(value).strip()
            parsed = None
            iso_value = str_value
            if iso_value[-1:] in ("Z", "z"):
                iso_value = iso_value[:-1] + "+00:00"
            try:
                parsed = datetime.fromisoformat(iso_value)
            except ValueError:
                for fmt in cls.DATE_FORMATS:
                    try:
                        parsed = datetime.strptime(str_value, fmt)
                        break
                    except ValueError:
                        continue
            if parsed is None:
                raise ValueError(f"Could not parse date: {value!r}")

        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed

    @classmethod
    def _parse_amount(cls, value: Any) -> Decimal:
        """
        Parse a signed amount handling various number formats.

        A lone comma followed by exactly three digits (``1,234``) is rejected
        rather than guessed at.
        """
        if isinstance(value, Decimal):
            amount = value
        elif isinstance(value, (int, float)):
            amount = Decimal(str(value))
        else:
            str_value = str(value).strip()

            # Remove currency symbols and whitespace
            for symbol in ("R$", "$", "€", "£"):
                str_value = str_value.replace(symbol, "")
            str_value = str_value.strip()

            # Handle European format: 1.234,56
            if "," in str_value and "." in str_value:
                if str_value.rindex(",") > str_value.rindex("."):
                    str_value = str_value.replace(".", "").replace(",", ".")
                else:
                    str_value = str_value.replace(",", "")

            # Handle comma as decimal separator: 1234,56
            elif "," in str_value:
                if AMBIGUOUS_COMMA.fullmatch(str_value):
                    raise ValueError(f"Ambiguous thousands or decimal comma: {value!r}")
                str_value = str_value.replace(",", ".")

            amount = Decimal(str_value)

        if not amount.is_finite():
            raise ValueError(f"Amount is not finite: {value!r}")
        return amount
