from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from commercial_api.core.auth import AuthUser, get_current_user
from commercial_api.core.config import get_settings
from commercial_api.metrics import generate_metrics_payload, metrics_content_type
from commercial_api.pipeline.api import router as pipeline_router
from commercial_api.pipeline.permissions import GLOBAL_ROLES, parse_role

router = APIRouter()
router.include_router(pipeline_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | None]:
    return {
        "sub": user.sub,
        "role": user.role,
        "name": user.name,
        "community_id": user.community_id,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if parse_role(user.role) not in GLOBAL_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="metrics require an administrative role")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
