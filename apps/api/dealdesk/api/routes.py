from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from dealdesk.core.auth import AuthUser, get_current_user
from dealdesk.core.config import get_settings
from dealdesk.metrics import generate_metrics_payload, metrics_content_type
from dealdesk.pipeline.api import (
    assignments_router,
    challenge_tokens_router,
    companies_router,
    contacts_router,
    leads_router,
    stages_router,
    users_router,
)

router = APIRouter()
router.include_router(users_router)
router.include_router(companies_router)
router.include_router(contacts_router)
router.include_router(leads_router)
router.include_router(stages_router)
router.include_router(assignments_router)
router.include_router(challenge_tokens_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing role: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
