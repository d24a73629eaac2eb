from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from backoffice.api.errors import report_error_response
from backoffice.context import get_correlation_id, set_actor_user_id
from backoffice.core.auth import AuthUser, get_current_user as get_auth_user
from backoffice.core.database import get_db
from backoffice.platform.security.context import AuthContext
from backoffice.platform.security.errors import AuthorizationError
from backoffice.platform.security.scope import resolve_data_scope
from backoffice.reporting.errors import ReportError
from backoffice.reporting.formatter import ExportArtifact
from backoffice.reporting.saved_reports import SavedReportService
from backoffice.reporting.schedules import ScheduledReportService
from backoffice.reporting.schemas import (
    AuditRead,
    EntityRead,
    ExportRequest,
    FieldDefinitionRead,
    PublicLinkRead,
    PublicLinkRequest,
    PublicReportRead,
    ReportDefinitionIn,
    ReportResultRead,
    ReportTemplateCreate,
    ReportTemplateRead,
    SavedReportCreate,
    SavedReportRead,
    SavedReportRunRequest,
    SavedReportUpdate,
    ScheduledReportCreate,
    ScheduledReportRead,
    ScheduledReportRunRead,
    ScheduledReportToggle,
    ScheduledReportUpdate,
    ScheduleProcessRead,
    ShareRequest,
    TemplateInstantiateRequest,
    UnshareRequest,
)
from backoffice.reporting.service import ReportService
from backoffice.reporting.templates import TemplateService


router = APIRouter(prefix="/reports", tags=["reports"])
saved_router = APIRouter(prefix="/reports/saved", tags=["reports.saved"])
templates_router = APIRouter(prefix="/reports/templates", tags=["reports.templates"])
scheduled_router = APIRouter(prefix="/reports/scheduled", tags=["reports.scheduled"])

ReportFailure = (ReportError, AuthorizationError)


def get_report_service(request: Request) -> ReportService:
    return request.app.state.report_service


def get_saved_report_service(request: Request) -> SavedReportService:
    return request.app.state.saved_report_service


def get_template_service(request: Request) -> TemplateService:
    return request.app.state.template_service


def get_scheduled_report_service(request: Request) -> ScheduledReportService:
    return request.app.state.scheduled_report_service


async def get_report_auth_context(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> AuthContext:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    roles = [str(item) for item in auth_user.roles]
    normalized = {item.lower() for item in roles}
    is_super_admin = "admin" in normalized or "system.admin" in normalized
    set_actor_user_id(auth_user.sub)

    return AuthContext(
        user_id=auth_user.sub,
        correlation_id=correlation_id,
        is_super_admin=is_super_admin,
        roles=roles,
        permissions=roles,
        data_scope=resolve_data_scope(
            user_id=auth_user.sub,
            roles=roles,
            permissions=roles,
            headers=request.headers,
            is_super_admin=is_super_admin,
        ),
    )


def _file_response(artifact: ExportArtifact) -> Response:
    return Response(
        content=artifact.content,
        media_type=artifact.media_type,
        headers={
            "Content-Disposition": f'attachment; filename="{artifact.filename}"',
            "X-Report-Row-Count": str(artifact.row_count),
        },
    )


@router.post("/generate", response_model=ReportResultRead)
def generate_report(
    request: Request,
    definition: ReportDefinitionIn,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: ReportService = Depends(get_report_service),
) -> ReportResultRead | JSONResponse:
    try:
        return service.generate(db, ctx, definition)
    except ReportFailure as exc:
        return report_error_response(request, exc)


@router.get("/entities", response_model=list[EntityRead])
def list_entities(
    ctx: AuthContext = Depends(get_report_auth_context),
    service: ReportService = Depends(get_report_service),
) -> list[EntityRead]:
    return service.list_entities(ctx)


@router.get("/fields/{entity}", response_model=list[FieldDefinitionRead], response_model_exclude_none=True)
def list_fields(
    request: Request,
    entity: str,
    ctx: AuthContext = Depends(get_report_auth_context),
    service: ReportService = Depends(get_report_service),
) -> list[FieldDefinitionRead] | JSONResponse:
    try:
        return service.list_fields(ctx, entity)
    except ReportFailure as exc:
        return report_error_response(request, exc)


@router.post("/export", response_model=None)
def export_report(
    request: Request,
    dto: ExportRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: ReportService = Depends(get_report_service),
) -> Response:
    try:
        artifact = service.export(db, ctx, dto.definition, dto.format)
    except ReportFailure as exc:
        return report_error_response(request, exc)
    return _file_response(artifact)


@router.get("/public/{token}", response_model=PublicReportRead)
def get_public_report(
    request: Request,
    token: str,
    db: Session = Depends(get_db),
    service: SavedReportService = Depends(get_saved_report_service),
) -> PublicReportRead | JSONResponse:
    try:
        return service.get_by_public_token(db, token)
    except ReportFailure as exc:
        return report_error_response(request, exc)


@saved_router.post("", response_model=SavedReportRead, status_code=status.HTTP_201_CREATED)
def create_saved_report(
    request: Request,
    dto: SavedReportCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: SavedReportService = Depends(get_saved_report_service),
) -> SavedReportRead | JSONResponse:
    try:
        return service.create(db, ctx, dto)
    except ReportFailure as exc:
        return report_error_response(request, exc)


@saved_router.get("", response_model=list[SavedReportRead])
def list_saved_reports(
    request: Request,
    entity: str | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: SavedReportService = Depends(get_saved_report_service),
) -> list[SavedReportRead] | JSONResponse:
    try:
        return service.list_reports(db, ctx, entity=entity)
    except ReportFailure as exc:
        return report_error_response(request, exc)


@saved_router.get("/{report_id}", response_model=SavedReportRead)
def get_saved_report(
    request: Request,
    report_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: SavedReportService = Depends(get_saved_report_service),
) -> SavedReportRead | JSONResponse:
    try:
        return service.get(db, ctx, report_id)
    except ReportFailure as exc:
        return report_error_response(request, exc)


@saved_router.patch("/{report_id}", response_model=SavedReportRead)
def update_saved_report(
    request: Request,
    report_id: uuid.UUID,
    dto: SavedReportUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: SavedReportService = Depends(get_saved_report_service),
) -> SavedReportRead | JSONResponse:
    try:
        return service.update(db, ctx, report_id, dto)
    except ReportFailure as exc:
        return report_error_response(request, exc)


@saved_router.delete("/{report_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_saved_report(
    request: Request,
    report_id: uuid.UUID,
    hard: bool = Query(default=False),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: SavedReportService = Depends(get_saved_report_service),
) -> Response:
    try:
        service.delete(db, ctx, report_id, hard=hard)
    except ReportFailure as exc:
        return report_error_response(request, exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@saved_router.post("/{report_id}/share", response_model=SavedReportRead)
def share_saved_report(
    request: Request,
    report_id: uuid.UUID,
    dto: ShareRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: SavedReportService = Depends(get_saved_report_service),
) -> SavedReportRead | JSONResponse:
    try:
        return service.share(db, ctx, report_id, dto)
    except ReportFailure as exc:
        return report_error_response(request, exc)


@saved_router.post("/{report_id}/unshare", response_model=SavedReportRead)
def unshare_saved_report(
    request: Request,
    report_id: uuid.UUID,
    dto: UnshareRequest,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: SavedReportService = Depends(get_saved_report_service),
) -> SavedReportRead | JSONResponse:
    try:
        return service.unshare(db, ctx, report_id, dto)
    except ReportFailure as exc:
        return report_error_response(request, exc)


@saved_router.post("/{report_id}/public-link", response_model=PublicLinkRead)
def publish_saved_report(
    request: Request,
    report_id: uuid.UUID,
    dto: PublicLinkRequest | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: SavedReportService = Depends(get_saved_report_service),
) -> PublicLinkRead | JSONResponse:
    try:
        return service.publish(db, ctx, report_id, dto or PublicLinkRequest())
    except ReportFailure as exc:
        return report_error_response(request, exc)


@saved_router.delete("/{report_id}/public-link", response_model=SavedReportRead)
def revoke_saved_report(
    request: Request,
    report_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: SavedReportService = Depends(get_saved_report_service),
) -> SavedReportRead | JSONResponse:
    try:
        return service.revoke(db, ctx, report_id)
    except ReportFailure as exc:
        return report_error_response(request, exc)


@saved_router.post("/{report_id}/private", response_model=SavedReportRead)
def make_saved_report_private(
    request: Request,
    report_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: SavedReportService = Depends(get_saved_report_service),
) -> SavedReportRead | JSONResponse:
    try:
        return service.make_private(db, ctx, report_id)
    except ReportFailure as exc:
        return report_error_response(request, exc)


@saved_router.post("/{report_id}/run", response_model=ReportResultRead)
def run_saved_report(
    request: Request,
    report_id: uuid.UUID,
    dto: SavedReportRunRequest | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: SavedReportService = Depends(get_saved_report_service),
) -> ReportResultRead | JSONResponse:
    try:
        return service.run(db, ctx, report_id, dto)
    except ReportFailure as exc:
        return report_error_response(request, exc)


@saved_router.post("/{report_id}/export", response_model=None)
def export_saved_report(
    request: Request,
    report_id: uuid.UUID,
    format: str | None = Query(default=None),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: SavedReportService = Depends(get_saved_report_service),
) -> Response:
    try:
        artifact = service.export(db, ctx, report_id, format)
    except ReportFailure as exc:
        return report_error_response(request, exc)
    return _file_response(artifact)


@saved_router.get("/{report_id}/audit", response_model=list[AuditRead])
def saved_report_audit(
    request: Request,
    report_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: SavedReportService = Depends(get_saved_report_service),
) -> list[AuditRead] | JSONResponse:
    try:
        return service.audit_trail(db, ctx, report_id)
    except ReportFailure as exc:
        return report_error_response(request, exc)


@templates_router.get("", response_model=list[ReportTemplateRead])
def list_templates(
    category: str | None = Query(default=None),
    db: Session = Depends(get_db),
    service: TemplateService = Depends(get_template_service),
) -> list[ReportTemplateRead]:
    return [template.as_read() for template in service.list_templates(db, category)]


@templates_router.post("", response_model=ReportTemplateRead, status_code=status.HTTP_201_CREATED)
def create_template(
    request: Request,
    dto: ReportTemplateCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: TemplateService = Depends(get_template_service),
) -> ReportTemplateRead | JSONResponse:
    try:
        return service.create(db, ctx, dto).as_read()
    except ReportFailure as exc:
        return report_error_response(request, exc)


@templates_router.get("/{template_id}", response_model=ReportTemplateRead)
def get_template(
    request: Request,
    template_id: str,
    db: Session = Depends(get_db),
    service: TemplateService = Depends(get_template_service),
) -> ReportTemplateRead | JSONResponse:
    try:
        return service.get_template(db, template_id).as_read()
    except ReportFailure as exc:
        return report_error_response(request, exc)


@templates_router.delete("/{template_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_template(
    request: Request,
    template_id: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: TemplateService = Depends(get_template_service),
) -> Response:
    try:
        service.delete(db, ctx, template_id)
    except ReportFailure as exc:
        return report_error_response(request, exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@templates_router.post("/{template_id}/instantiate", response_model=ReportDefinitionIn, response_model_exclude_none=True)
def instantiate_template(
    request: Request,
    template_id: str,
    dto: TemplateInstantiateRequest | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: TemplateService = Depends(get_template_service),
) -> ReportDefinitionIn | JSONResponse:
    try:
        return service.instantiate(db, ctx, template_id, (dto or TemplateInstantiateRequest()).parameters)
    except ReportFailure as exc:
        return report_error_response(request, exc)


@scheduled_router.get("", response_model=list[ScheduledReportRead])
def list_scheduled_reports(
    request: Request,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: ScheduledReportService = Depends(get_scheduled_report_service),
) -> list[ScheduledReportRead] | JSONResponse:
    try:
        return service.list_schedules(db, ctx)
    except ReportFailure as exc:
        return report_error_response(request, exc)


@scheduled_router.post("", response_model=ScheduledReportRead, status_code=status.HTTP_201_CREATED)
def create_scheduled_report(
    request: Request,
    dto: ScheduledReportCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: ScheduledReportService = Depends(get_scheduled_report_service),
) -> ScheduledReportRead | JSONResponse:
    try:
        return service.create(db, ctx, dto)
    except ReportFailure as exc:
        return report_error_response(request, exc)


@scheduled_router.post("/process-due", response_model=ScheduleProcessRead)
def process_due_scheduled_reports(
    request: Request,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: ScheduledReportService = Depends(get_scheduled_report_service),
) -> ScheduleProcessRead | JSONResponse:
    try:
        return service.process_due(db, ctx)
    except ReportFailure as exc:
        return report_error_response(request, exc)


@scheduled_router.get("/{schedule_id}", response_model=ScheduledReportRead)
def get_scheduled_report(
    request: Request,
    schedule_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: ScheduledReportService = Depends(get_scheduled_report_service),
) -> ScheduledReportRead | JSONResponse:
    try:
        return service.get(db, ctx, schedule_id)
    except ReportFailure as exc:
        return report_error_response(request, exc)


@scheduled_router.patch("/{schedule_id}", response_model=ScheduledReportRead)
def update_scheduled_report(
    request: Request,
    schedule_id: uuid.UUID,
    dto: ScheduledReportUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: ScheduledReportService = Depends(get_scheduled_report_service),
) -> ScheduledReportRead | JSONResponse:
    try:
        return service.update(db, ctx, schedule_id, dto)
    except ReportFailure as exc:
        return report_error_response(request, exc)


@scheduled_router.delete("/{schedule_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_scheduled_report(
    request: Request,
    schedule_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: ScheduledReportService = Depends(get_scheduled_report_service),
) -> Response:
    try:
        service.delete(db, ctx, schedule_id)
    except ReportFailure as exc:
        return report_error_response(request, exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@scheduled_router.post("/{schedule_id}/toggle", response_model=ScheduledReportRead)
def toggle_scheduled_report(
    request: Request,
    schedule_id: uuid.UUID,
    dto: ScheduledReportToggle | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: ScheduledReportService = Depends(get_scheduled_report_service),
) -> ScheduledReportRead | JSONResponse:
    try:
        return service.toggle(db, ctx, schedule_id, dto or ScheduledReportToggle())
    except ReportFailure as exc:
        return report_error_response(request, exc)


@scheduled_router.post("/{schedule_id}/run", response_model=ScheduledReportRunRead)
def run_scheduled_report(
    request: Request,
    schedule_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: ScheduledReportService = Depends(get_scheduled_report_service),
) -> ScheduledReportRunRead | JSONResponse:
    try:
        return service.run_now(db, ctx, schedule_id)
    except ReportFailure as exc:
        return report_error_response(request, exc)


@scheduled_router.get("/{schedule_id}/runs", response_model=list[ScheduledReportRunRead])
def list_scheduled_report_runs(
    request: Request,
    schedule_id: uuid.UUID,
    limit: int | None = Query(default=None, ge=1, le=100),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_report_auth_context),
    service: ScheduledReportService = Depends(get_scheduled_report_service),
) -> list[ScheduledReportRunRead] | JSONResponse:
    try:
        return service.list_runs(db, ctx, schedule_id, limit=limit)
    except ReportFailure as exc:
        return report_error_response(request, exc)
