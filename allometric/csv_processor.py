"""
Biomass table reader.
Reads a 1-based line range of data rows from a tree-biomass CSV with chunked
row counting and typed errors.
"""

import logging
from pathlib import Path
from typing import Optional, Tuple, Union

import pandas as pd

logger = logging.getLogger(__name__)


class TableReadError(Exception):
    """Base exception for biomass table read errors."""

    pass


class InvalidRangeError(TableReadError):
    """Raised when an invalid data-row range is requested."""

    pass


class FileAccessError(TableReadError):
    """Raised when the table cannot be accessed or parsed."""

    pass


class BiomassTableReader:
    """
    Reads slices of a biomass CSV (one row per measured tree).

    Line numbers are 1-based and count data rows only; the header row is always
    kept so downstream header mapping can rename columns.
    """

    def __init__(self, file_path: Union[str, Path]) -> None:
        """
        Args:
            file_path: Path to the CSV table

        Raises:
            FileNotFoundError: If the file does not exist
            FileAccessError: If the path is not a regular file
        """
        self.file_path = Path(file_path)
        if not self.file_path.exists():
            raise FileNotFoundError(f"CSV file not found: {self.file_path}")
        if not self.file_path.is_file():
            raise FileAccessError(f"Path is not a file: {self.file_path}")
        if self.file_path.suffix.lower() != ".csv":
            logger.warning(f"File does not have .csv extension: {self.file_path}")

    def get_total_rows(self) -> int:
        """
        Count data rows (header excluded) without loading the whole table.

        Raises:
            FileAccessError: If the file cannot be read
        """
        try:
            total_rows = 0
            for chunk in pd.read_csv(self.file_path, chunksize=10000):
                total_rows += len(chunk)
            return total_rows
        except pd.errors.EmptyDataError:
            return 0
        except Exception as e:
            raise FileAccessError(f"Error reading CSV file: {e}") from e

    def _validate_range(
        self, start_line: Optional[int], end_line: Optional[int] = None
    ) -> Tuple[int, int]:
        """
        Normalize a (start_line, end_line) request against the table length.
        None means "first row" / "last row"; end_line past the end is clamped.

        Raises:
            InvalidRangeError: For non-positive bounds, start past the end, or end < start
        """
        total_rows = self.get_total_rows()

        if start_line is None:
            start_line = 1
        elif not isinstance(start_line, int) or start_line <= 0:
            raise InvalidRangeError(
                f"Start line must be a positive integer or None, got: {start_line}"
            )

        if end_line is None:
            end_line = total_rows
        elif not isinstance(end_line, int) or end_line <= 0:
            raise InvalidRangeError(
                f"End line must be a positive integer or None, got: {end_line}"
            )

        if start_line > total_rows:
            raise InvalidRangeError(
                f"Start line {start_line} exceeds total data rows {total_rows}"
            )
        if end_line < start_line:
            raise InvalidRangeError(
                f"End line {end_line} must be greater than or equal to start line {start_line}"
            )

        return start_line, min(end_line, total_rows)

    def read_range(
        self, start_line: Optional[int] = None, end_line: Optional[int] = None
    ) -> pd.DataFrame:
        """
        Read data rows start_line..end_line (inclusive) with the header preserved.
        Cells such as "NA" or blanks load as NaN, the table's missing-value marker.

        Raises:
            InvalidRangeError: If the range is invalid
            FileAccessError: If the file cannot be parsed
        """
        start_line, end_line = self._validate_range(start_line, end_line)
        n_rows = end_line - start_line + 1
        skiprows = None if start_line <= 1 else range(1, start_line)
        try:
            return pd.read_csv(
                self.file_path, header=0, skiprows=skiprows, nrows=n_rows
            )
        except pd.errors.EmptyDataError:
            return pd.DataFrame()
        except Exception as e:
            raise FileAccessError(f"Error reading CSV range: {e}") from e

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        pass
