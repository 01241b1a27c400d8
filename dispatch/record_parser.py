"""
Contact record parsing for bulk task uploads.

Turns an uploaded CSV or spreadsheet into candidate records. Rows missing a
person or phone value are dropped silently; only a file that cannot be read
at all is an error.
"""

from __future__ import annotations

import csv
import io
import zipfile
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from dispatch.errors import ApiError

KIND_CSV = "csv"
KIND_SPREADSHEET = "spreadsheet"

_LEGACY_EXCEL_MIME = "application/vnd.ms-excel"
_ZIP_SIGNATURE = b"PK\x03\x04"
_OLE2_SIGNATURE = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"

_CONTENT_KINDS: dict[str, str] = {
    "csv": KIND_CSV,
    "text/csv": KIND_CSV,
    "application/csv": KIND_CSV,
    "text/plain": KIND_CSV,
    "xlsx": KIND_SPREADSHEET,
    "spreadsheet": KIND_SPREADSHEET,
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": KIND_SPREADSHEET,
    _LEGACY_EXCEL_MIME: KIND_SPREADSHEET,
}

PERSON_COLUMN = "firstname"
PHONE_COLUMN = "phone"
NOTES_COLUMN = "notes"


@dataclass(frozen=True)
class CandidateRecord:
    contact_name: str
    phone: str
    notes: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"contactName": self.contact_name, "phone": self.phone, "notes": self.notes}


@dataclass
class ParseResult:
    records: list[CandidateRecord] = field(default_factory=list)
    total_rows: int = 0

    @property
    def rejected_rows(self) -> int:
        return self.total_rows - len(self.records)


def _unsupported(message: str) -> ApiError:
    return ApiError(
        code="UPLOAD_FORMAT_UNSUPPORTED",
        message=message,
        error_class="validation",
        retryable=False,
        http_status=400,
    )


def _parse_failure(message: str) -> ApiError:
    return ApiError(
        code="UPLOAD_PARSE_FAILED",
        message=message,
        error_class="permanent",
        retryable=False,
        http_status=500,
    )


def _normalized(content_kind: str | None) -> str:
    return (content_kind or "").split(";", maxsplit=1)[0].strip().lower()


def resolve_content_kind(content_kind: str | None) -> str:
    """Map a MIME type or short name onto one of the two supported encodings."""
    raw = _normalized(content_kind)
    kind = _CONTENT_KINDS.get(raw)
    if kind is None:
        raise _unsupported(f"unsupported content kind: {raw or '<empty>'}")
    return kind


def _sniff_spreadsheet(file_bytes: bytes, content_kind: str | None) -> str:
    """Browsers label both .csv and .xls uploads as application/vnd.ms-excel."""
    if file_bytes.startswith(_OLE2_SIGNATURE):
        raise _unsupported("legacy .xls workbooks are not supported; save the file as .xlsx or .csv")
    if _normalized(content_kind) == _LEGACY_EXCEL_MIME and not file_bytes.startswith(_ZIP_SIGNATURE):
        return KIND_CSV
    return KIND_SPREADSHEET


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _column_index(header: Iterable[Any]) -> dict[str, int]:
    index: dict[str, int] = {}
    for pos, name in enumerate(header):
        key = _cell_text(name).lower()
        if key in {PERSON_COLUMN, PHONE_COLUMN, NOTES_COLUMN} and key not in index:
            index[key] = pos
    return index


def _to_record(row: list[Any], columns: dict[str, int]) -> CandidateRecord | None:
    def _get(column: str) -> str:
        pos = columns.get(column)
        if pos is None or pos >= len(row):
            return ""
        return _cell_text(row[pos])

    contact_name = _get(PERSON_COLUMN)
    phone = _get(PHONE_COLUMN)
    if not contact_name or not phone:
        return None
    return CandidateRecord(contact_name=contact_name, phone=phone, notes=_get(NOTES_COLUMN))


def _collect(rows: Iterator[list[Any]]) -> ParseResult:
    header = next(rows, None)
    if header is None:
        return ParseResult()
    columns = _column_index(header)
    result = ParseResult()
    for row in rows:
        if not any(_cell_text(cell) for cell in row):
            continue
        result.total_rows += 1
        record = _to_record(row, columns)
        if record is not None:
            result.records.append(record)
    return result


def _iter_csv_rows(file_bytes: bytes) -> Iterator[list[Any]]:
    text = io.TextIOWrapper(io.BytesIO(file_bytes), encoding="utf-8-sig", newline="")
    yield from csv.reader(text)


def parse_csv_bytes(file_bytes: bytes) -> ParseResult:
    try:
        return _collect(_iter_csv_rows(file_bytes))
    except UnicodeDecodeError:
        raise _parse_failure("csv upload is not valid UTF-8") from None
    except csv.Error as exc:
        raise _parse_failure(f"csv upload is malformed: {exc}") from None


def parse_spreadsheet_bytes(file_bytes: bytes) -> ParseResult:
    """Read the first worksheet; the first row is the header."""
    try:
        workbook = load_workbook(io.BytesIO(file_bytes), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, ValueError, OSError) as exc:
        raise _parse_failure(f"spreadsheet upload could not be opened: {exc}") from None

    try:
        if not workbook.worksheets:
            return ParseResult()
        sheet = workbook.worksheets[0]
        rows = (list(row) for row in sheet.iter_rows(values_only=True))
        return _collect(rows)
    finally:
        workbook.close()


def parse_records(file_bytes: bytes, content_kind: str | None) -> ParseResult:
    kind = resolve_content_kind(content_kind)
    if kind == KIND_SPREADSHEET:
        kind = _sniff_spreadsheet(file_bytes, content_kind)
    if kind == KIND_CSV:
        return parse_csv_bytes(file_bytes)
    return parse_spreadsheet_bytes(file_bytes)
