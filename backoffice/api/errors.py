from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backoffice.context import get_correlation_id
from backoffice.platform.security.errors import AuthorizationError, ForbiddenFieldError
from backoffice.reporting.errors import ReportError


logger = logging.getLogger("backoffice.request")


@dataclass
class ErrorEnvelope:
    error: str
    code: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        error=message,
        code=code,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload.__dict__))


def report_error_response(request: Request, exc: ReportError | AuthorizationError) -> JSONResponse:
    if isinstance(exc, ReportError):
        return error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )
    details = {"forbidden_fields": exc.fields} if isinstance(exc, ForbiddenFieldError) else None
    return error_response(
        request,
        status_code=status.HTTP_403_FORBIDDEN,
        code="FORBIDDEN",
        message=str(exc),
        details=details,
    )


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    issues = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body") or None,
            "code": error.get("type", "invalid"),
            "message": error.get("msg", "Invalid value"),
        }
        for error in errors
    ]
    message = "Invalid request body"
    if issues:
        first = issues[0]
        message = f"{first['field']}: {first['message']}" if first["field"] else first["message"]
    return error_response(
        request,
        status_code=status.HTTP_400_BAD_REQUEST,
        code="VALIDATION_ERROR",
        message=message,
        details=issues,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "http.unhandled_error",
        extra={"method": request.method, "path": request.url.path, "error": str(exc)[:500]},
    )
    return error_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
