from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from backoffice.core.auth import AuthUser, get_current_user
from backoffice.core.config import get_settings
from backoffice.metrics import generate_metrics_payload, metrics_content_type
from backoffice.reporting.api import router as reports_router
from backoffice.reporting.api import saved_router as saved_reports_router
from backoffice.reporting.api import scheduled_router as scheduled_reports_router
from backoffice.reporting.api import templates_router as report_templates_router

router = APIRouter()
router.include_router(reports_router)
router.include_router(saved_reports_router)
router.include_router(report_templates_router)
router.include_router(scheduled_reports_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str]]:
    return {
        "sub": user.sub,
        "roles": user.roles,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
