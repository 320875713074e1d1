from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.core.config import get_settings
from app.core.rbac import require_admin
from app.crm.api import activity_router, customers_router, dashboard_router, leads_router, tasks_router
from app.identity.api import agents_router, auth_router, users_router
from app.metrics import generate_metrics_payload, metrics_content_type
from app.platform.security.context import AuthContext

router = APIRouter()
router.include_router(auth_router)
router.include_router(users_router)
router.include_router(agents_router)
router.include_router(leads_router)
router.include_router(customers_router)
router.include_router(tasks_router)
router.include_router(activity_router)
router.include_router(dashboard_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics(_actor: AuthContext = Depends(require_admin)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
