from __future__ import annotations

import csv
import io
import re
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import StrEnum
from typing import Any

import openpyxl
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from backoffice.reporting.errors import ExportTooLargeError, UnsupportedFormatError
from backoffice.reporting.query import QueryPlan
from backoffice.reporting.validator import ValidatedReportDefinition


class OutputFormat(StrEnum):
    JSON = "json"
    CSV = "csv"
    XLSX = "xlsx"


OUTPUT_FORMATS = tuple(item.value for item in OutputFormat)
EXPORT_FORMATS = (OutputFormat.CSV.value, OutputFormat.XLSX.value)

MEDIA_TYPES = {
    OutputFormat.CSV: "text/csv; charset=utf-8",
    OutputFormat.XLSX: "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

_SLUG_RE = re.compile(r"[^a-z0-9]+")
_SHEET_INVALID_RE = re.compile(r"[\[\]:*?/\\]")
_MAX_COLUMN_WIDTH = 60
FORMULA_PREFIXES = ("=", "+", "-", "@")
FORMULA_ESCAPE_PREFIX = "'"


@dataclass(frozen=True, slots=True)
class ReportColumn:
    key: str
    label: str
    type: str
    aggregate: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"key": self.key, "label": self.label, "type": self.type, "aggregate": self.aggregate}


@dataclass(frozen=True, slots=True)
class ExportArtifact:
    content: bytes
    media_type: str
    filename: str
    row_count: int


def parse_format(raw: str | None, *, allowed: Sequence[str] = OUTPUT_FORMATS) -> OutputFormat:
    value = (raw or "").strip().lower()
    if value not in allowed:
        raise UnsupportedFormatError(raw, tuple(allowed))
    return OutputFormat(value)


def report_columns(validated: ValidatedReportDefinition, plan: QueryPlan) -> list[ReportColumn]:
    """Describe the output columns of a planned report in select order."""

    fields = {item.id: item for item in validated.fields}
    fields.update({item.id: item for item in validated.group_by})
    aggregations = {item.alias: item for item in validated.aggregations}

    columns: list[ReportColumn] = []
    for selection in plan.selections:
        aggregation = aggregations.get(selection.key)
        if aggregation is not None:
            column_type = "number" if aggregation.function.value in {"sum", "avg", "count"} else aggregation.field.type.value
            columns.append(ReportColumn(selection.key, aggregation.label, column_type, aggregation.function.value))
            continue
        definition = fields[selection.key]
        if selection.aggregate is not None:
            label = f"{definition.label} ({selection.aggregate.value})"
            columns.append(ReportColumn(selection.key, label, definition.type.value, selection.aggregate.value))
            continue
        columns.append(ReportColumn(selection.key, definition.label, definition.type.value))
    return columns


def sanitize_formula(value: str) -> str:
    """Escape text a spreadsheet would otherwise evaluate as a formula."""

    stripped = value.lstrip()
    if stripped and stripped[0] in FORMULA_PREFIXES:
        return f"{FORMULA_ESCAPE_PREFIX}{value}"
    return value


def export_filename(name: str | None, extension: str, *, now: datetime | None = None) -> str:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%SZ")
    slug = _SLUG_RE.sub("-", (name or "report").lower()).strip("-")[:56] or "report"
    return f"{slug}-{stamp}.{extension}"


class ResultFormatter:
    """Renders report rows as a JSON payload or an export file."""

    def __init__(self, *, export_max_rows: int) -> None:
        self.export_max_rows = export_max_rows

    def ensure_exportable(self, row_count: int) -> None:
        if row_count > self.export_max_rows:
            raise ExportTooLargeError(row_count, self.export_max_rows)

    def format(
        self,
        rows: Sequence[dict[str, Any]],
        columns: Sequence[ReportColumn],
        target: str,
        *,
        total: int,
        name: str | None = None,
    ) -> dict[str, Any] | ExportArtifact:
        output_format = parse_format(target)
        if output_format == OutputFormat.JSON:
            return self.to_payload(rows, columns, total=total)
        return self.export(rows, columns, output_format, name=name)

    def to_payload(self, rows: Sequence[dict[str, Any]], columns: Sequence[ReportColumn], *, total: int) -> dict[str, Any]:
        keys = [column.key for column in columns]
        return {
            "data": [{key: row.get(key) for key in keys} for row in rows],
            "total": total,
            "columns": [column.as_dict() for column in columns],
        }

    def export(
        self,
        rows: Sequence[dict[str, Any]],
        columns: Sequence[ReportColumn],
        output_format: OutputFormat,
        *,
        name: str | None = None,
    ) -> ExportArtifact:
        if output_format not in MEDIA_TYPES:
            raise UnsupportedFormatError(output_format.value, EXPORT_FORMATS)
        self.ensure_exportable(len(rows))
        if output_format == OutputFormat.CSV:
            content = self.to_csv(rows, columns)
        else:
            content = self.to_xlsx(rows, columns, sheet_name=name or "Report")
        return ExportArtifact(
            content=content,
            media_type=MEDIA_TYPES[output_format],
            filename=export_filename(name, output_format.value),
            row_count=len(rows),
        )

    def to_csv(self, rows: Iterable[dict[str, Any]], columns: Sequence[ReportColumn]) -> bytes:
        buffer = io.StringIO()
        writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL)
        writer.writerow([column.label for column in columns])
        for row in rows:
            writer.writerow([_csv_value(row.get(column.key)) for column in columns])
        return buffer.getvalue().encode("utf-8")

    def to_xlsx(self, rows: Iterable[dict[str, Any]], columns: Sequence[ReportColumn], *, sheet_name: str) -> bytes:
        workbook = openpyxl.Workbook()
        worksheet = workbook.active
        worksheet.title = _sheet_title(sheet_name)

        header_font = Font(bold=True, color="FFFFFF", size=11, name="Calibri")
        header_fill = PatternFill(start_color="2F5496", end_color="2F5496", fill_type="solid")
        header_alignment = Alignment(horizontal="center", vertical="center", wrap_text=True)

        widths = [len(column.label) for column in columns]
        for col_num, column in enumerate(columns, 1):
            cell = worksheet.cell(row=1, column=col_num, value=column.label)
            cell.font = header_font
            cell.fill = header_fill
            cell.alignment = header_alignment

        for row_num, row in enumerate(rows, 2):
            for col_num, column in enumerate(columns, 1):
                value = _xlsx_value(row.get(column.key))
                cell = worksheet.cell(row=row_num, column=col_num, value=value)
                if isinstance(value, datetime):
                    cell.number_format = "yyyy-mm-dd hh:mm:ss"
                elif isinstance(value, date):
                    cell.number_format = "yyyy-mm-dd"
                widths[col_num - 1] = max(widths[col_num - 1], len(str(value)) if value is not None else 0)

        for col_num, width in enumerate(widths, 1):
            worksheet.column_dimensions[get_column_letter(col_num)].width = min(width + 2, _MAX_COLUMN_WIDTH)
        worksheet.freeze_panes = "A2"

        output = io.BytesIO()
        workbook.save(output)
        return output.getvalue()


def _csv_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, str):
        return sanitize_formula(value)
    return str(value)


def _xlsx_value(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, str):
        return sanitize_formula(ILLEGAL_CHARACTERS_RE.sub("", value))
    return value


def _sheet_title(name: str) -> str:
    cleaned = _SHEET_INVALID_RE.sub(" ", ILLEGAL_CHARACTERS_RE.sub("", name)).strip()
    return cleaned[:31] or "Report"
