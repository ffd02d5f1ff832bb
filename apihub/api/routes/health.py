from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from apihub.core.config import get_settings
from apihub.core.lifecycle import get_readiness

router = APIRouter(tags=["health"])


@router.get("/health")
def get_health() -> dict[str, object]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.environment,
        "nodeAddress": settings.effective_node_address,
        "timestamp": datetime.now(tz=timezone.utc),
    }


@router.get("/ready")
def get_ready() -> JSONResponse:
    if not get_readiness().is_ready():
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"status": "starting"})
    return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "ready"})
