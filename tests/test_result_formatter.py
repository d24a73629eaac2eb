from __future__ import annotations

import csv
import io
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

import openpyxl
import pytest

from backoffice.reporting.catalog import build_field_catalog
from backoffice.reporting.errors import ExportTooLargeError, UnsupportedFormatError
from backoffice.reporting.formatter import (
    EXPORT_FORMATS,
    ExportArtifact,
    OutputFormat,
    ReportColumn,
    ResultFormatter,
    export_filename,
    parse_format,
    report_columns,
    sanitize_formula,
)
from backoffice.reporting.query import QueryBuilder
from backoffice.reporting.schemas import ReportDefinitionIn
from backoffice.reporting.scope import merge
from backoffice.reporting.validator import ReportDefinitionValidator


COLUMNS = [
    ReportColumn("first_name", "First Name", "string"),
    ReportColumn("department", "Department", "string"),
    ReportColumn("is_active", "Active", "boolean"),
    ReportColumn("created_at", "Created Date", "date"),
    ReportColumn("amount", "Amount", "number"),
]

ROWS = [
    {
        "first_name": "Ada",
        "department": 'Research, "Analytical" Engines',
        "is_active": True,
        "created_at": date(2026, 3, 1),
        "amount": Decimal("125.50"),
    },
    {
        "first_name": "Grace",
        "department": "Line one\nline two",
        "is_active": False,
        "created_at": None,
        "amount": Decimal("0.00"),
    },
]


@pytest.fixture()
def formatter() -> ResultFormatter:
    return ResultFormatter(export_max_rows=100)


def test_json_payload_keeps_column_order(formatter: ResultFormatter) -> None:
    rows = [{"amount": 1, "first_name": "Ada", "ignored": "x", "department": None, "is_active": True, "created_at": None}]
    payload = formatter.format(rows, COLUMNS, "json", total=7)

    assert isinstance(payload, dict)
    assert payload["total"] == 7
    assert list(payload["data"][0]) == ["first_name", "department", "is_active", "created_at", "amount"]
    assert payload["columns"][0] == {"key": "first_name", "label": "First Name", "type": "string", "aggregate": None}


def test_csv_round_trip_preserves_quotes_commas_and_newlines(formatter: ResultFormatter) -> None:
    artifact = formatter.export(ROWS, COLUMNS, OutputFormat.CSV, name="Donor List")

    parsed = list(csv.reader(io.StringIO(artifact.content.decode("utf-8"))))
    assert parsed[0] == ["First Name", "Department", "Active", "Created Date", "Amount"]
    assert parsed[1] == ["Ada", 'Research, "Analytical" Engines', "true", "2026-03-01", "125.50"]
    assert parsed[2] == ["Grace", "Line one\nline two", "false", "", "0.00"]
    assert len(parsed) == 3

    assert b'"Research, ""Analytical"" Engines"' in artifact.content
    assert artifact.media_type == "text/csv; charset=utf-8"
    assert artifact.row_count == 2
    assert artifact.filename.startswith("donor-list-")
    assert artifact.filename.endswith(".csv")


def test_csv_with_no_rows_has_header_only(formatter: ResultFormatter) -> None:
    content = formatter.to_csv([], COLUMNS).decode("utf-8")
    assert content.strip() == "First Name,Department,Active,Created Date,Amount"


def test_xlsx_has_styled_header_and_column_order(formatter: ResultFormatter) -> None:
    rows = ROWS + [
        {
            "first_name": str(uuid.UUID(int=1)),
            "department": None,
            "is_active": True,
            "created_at": datetime(2026, 3, 2, 15, 30, tzinfo=timezone.utc),
            "amount": Decimal("9.99"),
        }
    ]
    artifact = formatter.export(rows, COLUMNS, OutputFormat.XLSX, name="Quarterly: Donors/2026")

    workbook = openpyxl.load_workbook(io.BytesIO(artifact.content))
    sheet = workbook.active
    header = [cell.value for cell in sheet[1]]

    assert len(workbook.worksheets) == 1
    assert sheet.title == "Quarterly  Donors 2026"
    assert header == ["First Name", "Department", "Active", "Created Date", "Amount"]
    assert sheet["A1"].font.bold
    assert sheet["A1"].fill.fgColor.rgb.endswith("2F5496")
    assert not sheet["A2"].font.bold
    assert sheet.freeze_panes == "A2"
    assert sheet["A2"].value == "Ada"
    assert sheet["B2"].value == 'Research, "Analytical" Engines'
    assert sheet["E2"].value == pytest.approx(125.5)
    assert sheet["D4"].value == datetime(2026, 3, 2, 15, 30)
    assert sheet.max_row == 4
    assert artifact.media_type == "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    assert artifact.filename.endswith(".xlsx")


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ('=HYPERLINK("http://evil","x")', '\'=HYPERLINK("http://evil","x")'),
        ("+1 555 0100", "'+1 555 0100"),
        ("-2+3", "'-2+3"),
        ("@SUM(A1)", "'@SUM(A1)"),
        ("  =1+1", "'  =1+1"),
        ("Ada Lovelace", "Ada Lovelace"),
        ("", ""),
    ],
)
def test_sanitize_formula(value: str, expected: str) -> None:
    assert sanitize_formula(value) == expected


def test_csv_escapes_formula_text_but_not_numbers(formatter: ResultFormatter) -> None:
    columns = [ReportColumn("note", "Note", "string"), ReportColumn("amount", "Amount", "number")]
    rows = [{"note": '=HYPERLINK("http://evil","x")', "amount": Decimal("-12.50")}]

    parsed = list(csv.reader(io.StringIO(formatter.to_csv(rows, columns).decode("utf-8"))))

    assert parsed[1] == ['\'=HYPERLINK("http://evil","x")', "-12.50"]


def test_xlsx_escapes_formulas_and_strips_control_characters(formatter: ResultFormatter) -> None:
    columns = [ReportColumn("note", "Note", "string"), ReportColumn("amount", "Amount", "number")]
    rows = [
        {"note": "Ada\x0bLovelace", "amount": Decimal("-3")},
        {"note": "@cmd", "amount": None},
    ]

    artifact = formatter.export(rows, columns, OutputFormat.XLSX, name="Notes\x07")

    sheet = openpyxl.load_workbook(io.BytesIO(artifact.content)).active
    assert sheet.title == "Notes"
    assert sheet["A2"].value == "AdaLovelace"
    assert sheet["B2"].value == -3
    assert sheet["A3"].value == "'@cmd"


def test_export_too_large(formatter: ResultFormatter) -> None:
    rows = [{"first_name": str(index)} for index in range(101)]

    with pytest.raises(ExportTooLargeError) as exc_info:
        formatter.export(rows, COLUMNS[:1], OutputFormat.CSV)

    assert exc_info.value.status_code == 413
    assert exc_info.value.details == {"row_count": 101, "max_rows": 100}


@pytest.mark.parametrize("raw", ["pdf", "", None, "docx"])
def test_unsupported_export_format(raw: str | None) -> None:
    with pytest.raises(UnsupportedFormatError) as exc_info:
        parse_format(raw, allowed=EXPORT_FORMATS)

    assert exc_info.value.message == "Invalid format. Supported formats: csv, xlsx"


def test_json_is_not_an_export_format() -> None:
    with pytest.raises(UnsupportedFormatError):
        parse_format("json", allowed=EXPORT_FORMATS)
    assert parse_format(" CSV ", allowed=EXPORT_FORMATS) == OutputFormat.CSV
    assert parse_format("json") == OutputFormat.JSON


def test_format_dispatches_to_export(formatter: ResultFormatter) -> None:
    artifact = formatter.format(ROWS, COLUMNS, "csv", total=2, name="people")
    assert isinstance(artifact, ExportArtifact)
    assert artifact.row_count == 2


def test_export_filename_is_sanitized_and_bounded() -> None:
    moment = datetime(2026, 10, 17, 9, 5, 0, tzinfo=timezone.utc)

    assert export_filename("Monthly Donor Summary!", "csv", now=moment) == "monthly-donor-summary-20261017T090500Z.csv"
    assert export_filename("../../etc/passwd", "xlsx", now=moment) == "etc-passwd-20261017T090500Z.xlsx"
    assert export_filename(None, "csv", now=moment) == "report-20261017T090500Z.csv"
    assert export_filename("***", "csv", now=moment) == "report-20261017T090500Z.csv"
    assert len(export_filename("x" * 500, "xlsx", now=moment)) <= 80


def test_report_columns_describe_grouped_output() -> None:
    catalog = build_field_catalog()
    validated = ReportDefinitionValidator(catalog).validate(
        ReportDefinitionIn.model_validate(
            {
                "entity": "donations",
                "fields": ["payment_status", "amount"],
                "groupBy": ["payment_status", "campaign_name"],
                "aggregations": [
                    {"field": "id", "function": "count", "alias": "gifts"},
                    {"field": "donation_date", "function": "max"},
                ],
            }
        )
    )
    plan = QueryBuilder().plan(validated, merge(None, (), entity=validated.entity), limit_ceiling=1000)

    columns = report_columns(validated, plan)
    assert [(column.key, column.label, column.type, column.aggregate) for column in columns] == [
        ("payment_status", "Payment Status", "enum", None),
        ("amount", "Amount (sum)", "number", "sum"),
        ("campaign_name", "Campaign", "string", None),
        ("gifts", "Count of Donation ID", "number", "count"),
        ("max_donation_date", "Max of Donation Date", "date", "max"),
    ]
