from __future__ import annotations

import io

import pytest
from openpyxl import Workbook

from dispatch.errors import ApiError
from dispatch.record_parser import (
    CandidateRecord,
    KIND_CSV,
    KIND_SPREADSHEET,
    parse_records,
    resolve_content_kind,
)

XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def _xlsx_bytes(rows: list[list[object]]) -> bytes:
    wb = Workbook()
    ws = wb.active
    for row in rows:
        ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def test_csv_rows_are_trimmed_and_notes_default_to_empty():
    raw = b"FirstName,Phone,Notes\n  Ann , 555-1111 ,\nBob,555-2222,  urgent \n"
    result = parse_records(raw, "text/csv")

    assert result.records == [
        CandidateRecord(contact_name="Ann", phone="555-1111", notes=""),
        CandidateRecord(contact_name="Bob", phone="555-2222", notes="urgent"),
    ]
    assert result.total_rows == 2


def test_csv_headers_match_case_insensitively_and_extra_columns_are_ignored():
    raw = b"firstname,PHONE,City,notes\nAnn,555-1111,Oslo,call after 5\n"
    result = parse_records(raw, "csv")

    assert result.records == [CandidateRecord(contact_name="Ann", phone="555-1111", notes="call after 5")]


def test_csv_without_notes_column_still_accepts_rows():
    result = parse_records(b"FirstName,Phone\nAnn,555-1111\n", "text/csv; charset=utf-8")
    assert result.records == [CandidateRecord(contact_name="Ann", phone="555-1111")]


def test_rows_missing_person_or_phone_are_rejected_not_fatal():
    raw = (
        b"FirstName,Phone,Notes\n"
        b"Ann,555-1111,\n"
        b",555-0000,no name\n"
        b"Carl,,no phone\n"
        b"   ,   ,whitespace only\n"
        b"Dana,555-3333,\n"
    )
    result = parse_records(raw, "text/csv")

    assert [r.contact_name for r in result.records] == ["Ann", "Dana"]
    assert result.total_rows == 5
    assert result.rejected_rows == 3


def test_blank_lines_are_not_counted():
    result = parse_records(b"FirstName,Phone\nAnn,1\n\n,\nBob,2\n", "text/csv")
    assert result.total_rows == 2
    assert len(result.records) == 2


def test_csv_with_utf8_bom_reads_first_header():
    raw = "\ufeffFirstName,Phone\nÅse,555-9999\n".encode("utf-8")
    result = parse_records(raw, "text/csv")
    assert result.records == [CandidateRecord(contact_name="Åse", phone="555-9999")]


def test_header_only_and_empty_files_yield_no_records():
    assert parse_records(b"FirstName,Phone,Notes\n", "text/csv").records == []
    assert parse_records(b"", "text/csv").total_rows == 0


def test_undecodable_csv_is_a_parse_failure():
    with pytest.raises(ApiError) as exc:
        parse_records(b"FirstName,Phone\n\xff\xfe\xfa,555\n", "text/csv")

    assert exc.value.code == "UPLOAD_PARSE_FAILED"
    assert exc.value.http_status == 500


def test_unsupported_content_kind_is_rejected():
    with pytest.raises(ApiError) as exc:
        parse_records(b"{}", "application/json")

    assert exc.value.code == "UPLOAD_FORMAT_UNSUPPORTED"
    assert exc.value.http_status == 400


@pytest.mark.parametrize(
    ("declared", "expected"),
    [
        ("text/csv", KIND_CSV),
        ("TEXT/CSV; charset=utf-8", KIND_CSV),
        ("xlsx", KIND_SPREADSHEET),
        (XLSX_MIME, KIND_SPREADSHEET),
        ("application/vnd.ms-excel", KIND_SPREADSHEET),
    ],
)
def test_resolve_content_kind(declared, expected):
    assert resolve_content_kind(declared) == expected


def test_resolve_content_kind_rejects_missing_kind():
    with pytest.raises(ApiError) as exc:
        resolve_content_kind(None)
    assert exc.value.code == "UPLOAD_FORMAT_UNSUPPORTED"


def test_spreadsheet_rows_are_parsed_from_first_sheet():
    raw = _xlsx_bytes(
        [
            ["FirstName", "Phone", "Notes", "Ignored"],
            ["Ann", 5551111, None, "x"],
            ["Bob", "555-2222", "urgent", None],
            [None, "555-0000", "no name", None],
        ]
    )
    result = parse_records(raw, XLSX_MIME)

    assert result.records == [
        CandidateRecord(contact_name="Ann", phone="5551111", notes=""),
        CandidateRecord(contact_name="Bob", phone="555-2222", notes="urgent"),
    ]
    assert result.total_rows == 3


def test_spreadsheet_integral_float_phone_has_no_decimal_suffix():
    raw = _xlsx_bytes([["firstname", "phone"], ["Ann", 5551111.0]])
    assert parse_records(raw, "xlsx").records[0].phone == "5551111"


def test_corrupt_spreadsheet_is_a_parse_failure():
    with pytest.raises(ApiError) as exc:
        parse_records(b"FirstName,Phone\nAnn,555\n", XLSX_MIME)

    assert exc.value.code == "UPLOAD_PARSE_FAILED"


def test_legacy_excel_mime_with_csv_bytes_is_parsed_as_csv():
    result = parse_records(b"FirstName,Phone,Notes\nAnn,555-1111,\n", "application/vnd.ms-excel")
    assert result.records == [CandidateRecord(contact_name="Ann", phone="555-1111")]


def test_legacy_excel_mime_with_xlsx_bytes_is_parsed_as_spreadsheet():
    raw = _xlsx_bytes([["FirstName", "Phone"], ["Bob", "555-2222"]])
    result = parse_records(raw, "application/vnd.ms-excel")
    assert result.records == [CandidateRecord(contact_name="Bob", phone="555-2222")]


def test_legacy_xls_workbook_is_unsupported_not_a_server_error():
    ole2 = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1" + b"\x00" * 64
    with pytest.raises(ApiError) as exc:
        parse_records(ole2, "application/vnd.ms-excel")

    assert exc.value.code == "UPLOAD_FORMAT_UNSUPPORTED"
    assert exc.value.http_status == 400
