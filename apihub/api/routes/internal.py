from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from apihub.api.schemas.internal import LogLevelRequest, LogLevelResponse
from apihub.core.errors import invalid_parameter_value
from apihub.core.logging import get_log_level_handle
from apihub.ws.runtime import get_load_balancer

router = APIRouter(prefix="/internal", tags=["internal"])


@router.get("/websocket/loadbalancer")
def get_load_balancer_state() -> dict[str, Any]:
    return get_load_balancer().debug_state()


@router.get("/logs/level", response_model=LogLevelResponse)
def get_log_level() -> LogLevelResponse:
    return LogLevelResponse(level=get_log_level_handle().get())


@router.put("/logs/level", response_model=LogLevelResponse)
def set_log_level(request: LogLevelRequest) -> LogLevelResponse:
    try:
        level = get_log_level_handle().set(request.level)
    except ValueError as exc:
        raise invalid_parameter_value("level", request.level) from exc
    return LogLevelResponse(level=level)
