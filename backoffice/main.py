from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from backoffice.api.errors import request_validation_exception_handler, unhandled_exception_handler
from backoffice.api.routes import router as api_router
from backoffice.core.config import Settings, get_settings
from backoffice.core.context import RequestContextMiddleware
from backoffice.logging import configure_logging
from backoffice.middleware.correlation_id import CorrelationIdMiddleware
from backoffice.middleware.request_logging import RequestLoggingMiddleware
from backoffice.otel import get_fastapi_server_request_hook, setup_otel
from backoffice.platform.security.policies import InMemoryPolicyBackend
from backoffice.reporting.catalog import build_field_catalog
from backoffice.reporting.formatter import ResultFormatter
from backoffice.reporting.query import QueryBuilder
from backoffice.reporting.repository import (
    ReportRepository,
    ReportTemplateRepository,
    SavedReportRepository,
    ScheduledReportRepository,
)
from backoffice.reporting.saved_reports import SavedReportService
from backoffice.reporting.schedules import ScheduledReportService
from backoffice.reporting.service import ReportService
from backoffice.reporting.templates import TemplateService, build_template_registry
from backoffice.reporting.validator import ReportDefinitionValidator


configure_logging()
logger = logging.getLogger("backoffice.lifecycle")


def build_report_services(app: FastAPI, settings: Settings) -> None:
    catalog = build_field_catalog()
    policy = InMemoryPolicyBackend(settings.report_role_permissions, default_allow=settings.authz_default_allow)
    report_service = ReportService(
        catalog=catalog,
        validator=ReportDefinitionValidator(catalog),
        builder=QueryBuilder(),
        formatter=ResultFormatter(export_max_rows=settings.report_export_max_rows),
        repository=ReportRepository(policy),
        max_limit=settings.report_max_limit,
        export_max_rows=settings.report_export_max_rows,
        statement_timeout_ms=settings.report_statement_timeout_ms,
    )
    app.state.field_catalog = catalog
    app.state.policy_backend = policy
    app.state.report_service = report_service
    saved_report_service = SavedReportService(
        report_service=report_service,
        repository=SavedReportRepository(policy),
        public_token_bytes=settings.report_public_link_token_bytes,
    )
    app.state.saved_report_service = saved_report_service
    app.state.template_service = TemplateService(
        registry=build_template_registry(),
        repository=ReportTemplateRepository(policy),
        report_service=report_service,
    )
    app.state.scheduled_report_service = ScheduledReportService(
        saved_reports=saved_report_service,
        repository=ScheduledReportRepository(policy),
        batch_size=settings.report_schedule_batch_size,
        stale_after_minutes=settings.report_schedule_stale_minutes,
        run_history_limit=settings.report_schedule_run_history_limit,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    build_report_services(app, settings)
    logger.info("system.started", extra={"total": len(app.state.field_catalog.entities()), "limit": settings.report_max_limit})
    yield


app = FastAPI(title="Nonprofit Back Office API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("reports-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
