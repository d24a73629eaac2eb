from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

report_runs_total = Counter(
    "report_runs_total",
    "Total report runs by entity, output format and outcome",
    ["entity", "format", "outcome"],
)

report_query_duration_seconds = Histogram(
    "report_query_duration_seconds",
    "Report query duration in seconds",
    ["entity"],
)

report_rows_returned = Histogram(
    "report_rows_returned",
    "Rows returned per report run",
    ["entity", "format"],
    buckets=(0, 1, 10, 50, 100, 250, 500, 1000, 5000, 10000),
)

report_export_rejected_total = Counter(
    "report_export_rejected_total",
    "Report exports rejected before execution",
    ["entity", "reason"],
)

report_scoped_queries_total = Counter(
    "report_scoped_queries_total",
    "Report queries restricted by a caller data scope",
    ["entity", "dimension"],
)

report_scope_empty_total = Counter(
    "report_scope_empty_total",
    "Report queries whose data scope resolved to no rows",
    ["entity", "dimension"],
)

saved_report_transitions_total = Counter(
    "saved_report_transitions_total",
    "Saved report sharing state transitions",
    ["from_state", "to_state"],
)

scheduled_report_runs_total = Counter(
    "scheduled_report_runs_total",
    "Scheduled report runs by trigger and final status",
    ["trigger", "status"],
)

fls_masked_fields_count = Counter(
    "fls_masked_fields_count",
    "Total FLS-masked fields",
    ["resource", "operation"],
)

fls_denied_fields_count = Counter(
    "fls_denied_fields_count",
    "Total FLS-denied fields",
    ["resource", "operation"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_TOKEN_PATH_RE = re.compile(r"^/reports/public/[^/]+")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    if path == "/reports/fields/{entity}":
        return path
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_tokens = _TOKEN_PATH_RE.sub("/reports/public/{token}", path)
    without_uuids = _UUID_RE.sub("{id}", without_tokens)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_report_run(entity: str, output_format: str, outcome: str) -> None:
    report_runs_total.labels(entity=entity, format=output_format, outcome=outcome).inc()


def observe_report_query(entity: str, duration: float, output_format: str, row_count: int) -> None:
    report_query_duration_seconds.labels(entity=entity).observe(duration)
    report_rows_returned.labels(entity=entity, format=output_format).observe(row_count)


def observe_report_export_rejected(entity: str, reason: str) -> None:
    report_export_rejected_total.labels(entity=entity, reason=reason).inc()


def observe_report_scope(entity: str, dimension: str, *, empty: bool) -> None:
    report_scoped_queries_total.labels(entity=entity, dimension=dimension).inc()
    if empty:
        report_scope_empty_total.labels(entity=entity, dimension=dimension).inc()


def observe_saved_report_transition(from_state: str, to_state: str) -> None:
    saved_report_transitions_total.labels(from_state=from_state, to_state=to_state).inc()


def observe_scheduled_report_run(trigger: str, status: str) -> None:
    scheduled_report_runs_total.labels(trigger=trigger, status=status).inc()


def observe_fls_field_counts(resource: str, operation: str, masked_count: int, denied_count: int) -> None:
    if masked_count > 0:
        fls_masked_fields_count.labels(resource=resource, operation=operation).inc(masked_count)
    if denied_count > 0:
        fls_denied_fields_count.labels(resource=resource, operation=operation).inc(denied_count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
