"""Header extraction and streaming row iteration for CSV and XLSX sources."""

from __future__ import annotations

import csv
import io
import logging
import zipfile
from pathlib import PurePosixPath
from typing import Any, Iterator, Sequence

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from product_importer.core.errors import SourceFileError

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = (".csv", ".xlsx")


def file_kind(filename: str | None) -> str:
    """Return ``csv`` or ``xlsx`` based on the file extension."""
    suffix = PurePosixPath(filename or "").suffix.lower()
    if suffix not in SUPPORTED_EXTENSIONS:
        raise SourceFileError(
            f"Unsupported file type '{suffix or filename}'; upload a .csv or .xlsx file",
            code="unsupported_file_type",
            details={"filename": filename, "allowed": list(SUPPORTED_EXTENSIONS)},
        )
    return suffix[1:]


def is_blank_record(values: Sequence[Any]) -> bool:
    """True when every cell is empty or whitespace; such rows are not data rows."""
    return not any(str(value).strip() for value in values if value is not None)


def _decode(content: bytes) -> str:
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise SourceFileError(f"File encoding error: {e}", code="invalid_encoding") from e


def _csv_records(content: bytes) -> Iterator[list[str]]:
    reader = csv.reader(io.StringIO(_decode(content), newline=""))
    try:
        for record in reader:
            if is_blank_record(record):
                continue
            yield record
    except csv.Error as e:
        raise SourceFileError(f"CSV parsing error: {e}", code="invalid_csv") from e


def _xlsx_records(content: bytes) -> Iterator[list[Any]]:
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, ValueError) as e:
        raise SourceFileError(f"Could not open workbook: {e}", code="invalid_xlsx") from e
    try:
        sheet = workbook.worksheets[0]
        for values in sheet.iter_rows(values_only=True):
            cells = ["" if value is None else value for value in values]
            if is_blank_record(cells):
                continue
            yield cells
    finally:
        workbook.close()


def _records(content: bytes, kind: str) -> Iterator[list[Any]]:
    if kind == "xlsx":
        return _xlsx_records(content)
    return _csv_records(content)


def read_headers(content: bytes, kind: str) -> list[str]:
    """Return the trimmed header row; raises when the file has none."""
    for record in _records(content, kind):
        headers = [str(cell).strip() for cell in record]
        if any(headers):
            return headers
    raise SourceFileError("File has no header row", code="missing_header")


def count_rows(content: bytes, kind: str) -> int:
    """Number of non-empty data rows after the header."""
    records = _records(content, kind)
    if next(records, None) is None:
        raise SourceFileError("File has no header row", code="missing_header")
    return sum(1 for _ in records)


def iter_rows(content: bytes, kind: str) -> Iterator[tuple[int, list[Any]]]:
    """Yield ``(row_index, cells)`` in file order, 1-based from the first data row."""
    records = _records(content, kind)
    if next(records, None) is None:
        raise SourceFileError("File has no header row", code="missing_header")
    for row_index, record in enumerate(records, start=1):
        yield row_index, [cell.strip() if isinstance(cell, str) else cell for cell in record]
