from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from leaddesk.core.config import get_settings
from leaddesk.crm.api import (
    api_keys_router,
    get_current_user,
    leads_router,
    notifications_router,
    questions_router,
    rules_router,
    statuses_router,
    users_router,
)
from leaddesk.crm.hierarchy import Role
from leaddesk.crm.service import ActorUser
from leaddesk.intake.api import router as intake_router
from leaddesk.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(intake_router)
router.include_router(users_router)
router.include_router(api_keys_router)
router.include_router(rules_router)
router.include_router(leads_router)
router.include_router(notifications_router)
router.include_router(statuses_router)
router.include_router(questions_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
def me(user: ActorUser = Depends(get_current_user)) -> dict[str, str | None]:
    if user.profile is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
    return {
        "sub": user.user_id,
        "full_name": user.profile.full_name,
        "role": user.profile.role.value,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: ActorUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if user.role is not Role.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Requires role: admin")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
