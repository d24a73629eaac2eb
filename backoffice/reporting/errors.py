from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from fastapi import status


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    field: str | None
    code: str
    message: str

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class ReportError(Exception):
    """Base class for report failures that map onto an HTTP error envelope."""

    code = "REPORT_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, *, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class ReportValidationError(ReportError):
    code = "VALIDATION_ERROR"

    def __init__(self, issues: list[ValidationIssue]) -> None:
        self.issues = issues
        message = issues[0].message if issues else "Invalid report definition"
        super().__init__(message, details=[issue.as_dict() for issue in issues])


class UnknownEntityError(ReportError):
    code = "UNKNOWN_ENTITY"

    def __init__(self, entity: str | None) -> None:
        self.entity = entity
        super().__init__("Invalid entity type", details={"entity": entity})


class UnsupportedOperationError(ReportError):
    code = "UNSUPPORTED_OPERATION"


class UnsupportedFormatError(ReportError):
    code = "UNSUPPORTED_FORMAT"

    def __init__(self, requested: str | None, supported: tuple[str, ...]) -> None:
        self.requested = requested
        self.supported = supported
        super().__init__(
            f"Invalid format. Supported formats: {', '.join(supported)}",
            details={"format": requested, "supported": list(supported)},
        )


class ExportTooLargeError(ReportError):
    code = "EXPORT_TOO_LARGE"
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE

    def __init__(self, row_count: int, max_rows: int) -> None:
        self.row_count = row_count
        self.max_rows = max_rows
        super().__init__(
            f"Export of {row_count} rows exceeds the limit of {max_rows} rows; narrow the report filters",
            details={"row_count": row_count, "max_rows": max_rows},
        )


class ReportNotFoundError(ReportError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, message: str = "Saved report not found") -> None:
        super().__init__(message)


class SharingTransitionError(ReportError):
    code = "SHARING_CONFLICT"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move saved report from '{current}' to '{target}'",
            details={"from_state": current, "to_state": target},
        )


class ReportExecutionError(ReportError):
    code = "REPORT_QUERY_FAILED"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "Failed to generate report") -> None:
        super().__init__(message)
