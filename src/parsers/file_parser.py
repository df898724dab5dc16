"""CSV/TSV/Excel file parser producing raw rows."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Dict, List, Optional, Union

import pandas as pd

from src.engine.errors import ParseError, UnsupportedFormatError

logger = logging.getLogger(__name__)

Source = Union[str, Path, BinaryIO]


@dataclass
class ParsedFile:
    """Headers and rows of a tabular file. Every cell is text."""
    headers: List[str] = field(default_factory=list)
    rows: List[Dict[str, str]] = field(default_factory=list)
    total_rows: int = 0


class FileParser:
    """Read delimited-text or spreadsheet files into ordered raw rows."""

    DELIMITERS: Dict[str, str] = {
        ".csv": ",",
        ".tsv": "\t",
    }
    SPREADSHEET_FORMATS = (".xlsx", ".xls")

    @classmethod
    def supported_formats(cls) -> List[str]:
        return list(cls.DELIMITERS) + list(cls.SPREADSHEET_FORMATS)

    @classmethod
    def resolve_format(cls, source: Source, file_format: Optional[str] = None) -> str:
        """
        Determine the file format from an explicit hint or the file extension.

        Raises:
            UnsupportedFormatError: If the format is not one we can read.
        """
        if file_format:
            suffix = file_format.lower()
            if not suffix.startswith("."):
                suffix = f".{suffix}"
        elif isinstance(source, (str, Path)):
            suffix = Path(source).suffix.lower()
        else:
            suffix = Path(getattr(source, "name", "")).suffix.lower()

        if suffix not in cls.supported_formats():
            raise UnsupportedFormatError(
                f"Unsupported file format: {suffix or '(none)'}. "
                f"Use {', '.join(cls.supported_formats())}"
            )
        return suffix

    def parse(self, source: Source, file_format: Optional[str] = None) -> ParsedFile:
        """
        Parse the whole file.

        Args:
            source: Path to the file, or a binary stream.
            file_format: Extension hint such as ``".csv"``; required for streams without a name.

        Returns:
            ParsedFile with all rows materialized.

        Raises:
            FileNotFoundError: If a path is given and doesn't exist.
            UnsupportedFormatError: If the extension is not supported.
            ParseError: If the content cannot be read as a table.
        """
        return self._load(source, file_format)

    def preview(
        self,
        source: Source,
        rows: int = 20,
        file_format: Optional[str] = None,
    ) -> ParsedFile:
        """Return the first ``rows`` rows along with the total row count."""
        return self._load(source, file_format, limit=rows)

    def _load(
        self,
        source: Source,
        file_format: Optional[str],
        limit: Optional[int] = None,
    ) -> ParsedFile:
        suffix = self.resolve_format(source, file_format)

        if isinstance(source, (str, Path)) and not Path(source).exists():
            raise FileNotFoundError(f"File not found: {source}")

        df = self._read_frame(source, suffix)
        headers = [str(col) for col in df.columns]
        df.columns = headers
        total = len(df.index)
        if limit is not None:
            df = df.head(limit)

        return ParsedFile(
            headers=headers,
            rows=df.to_dict(orient="records"),
            total_rows=total,
        )

    def _read_frame(self, source: Source, suffix: str) -> pd.DataFrame:
        """Read file based on format, with every cell as a string."""
        try:
            if suffix in self.DELIMITERS:
                df = pd.read_csv(
                    source,
                    sep=self.DELIMITERS[suffix],
                    dtype=str,
                    keep_default_na=False,
                    skip_blank_lines=True,
                    encoding="utf-8-sig",
                )
            else:
                df = pd.read_excel(source, sheet_name=0, dtype=str)
        except Exception as e:
            raise ParseError(f"Failed to parse {suffix} file: {e}") from e

        df = df.fillna("")
        logger.debug("Read %d rows with columns %s", len(df.index), list(df.columns))
        return df
