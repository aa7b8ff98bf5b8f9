from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from funnelcrm.core.auth import AuthUser, get_current_user
from funnelcrm.core.config import get_settings
from funnelcrm.core.database import get_db
from funnelcrm.crm.api import funnels_router, leads_router, stages_router, transactions_router
from funnelcrm.metrics import generate_metrics_payload, metrics_content_type

METRICS_ROLE = "system.metrics.read"

router = APIRouter()
for crm_router in (funnels_router, stages_router, leads_router, transactions_router):
    router.include_router(crm_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.app_env,
    }


@router.get("/health/ready", tags=["system"], response_model=None)
def readiness(db: Session = Depends(get_db)) -> dict[str, str] | JSONResponse:
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"status": "unavailable"})
    return {"status": "ready"}


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | int | list[str] | None]:
    return {"sub": user.sub, "company_id": user.company_id, "roles": user.roles}


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if METRICS_ROLE not in user.grants:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {METRICS_ROLE}")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
