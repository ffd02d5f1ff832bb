from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import Response

from apihub.api.routes.publish import get_build_service, get_builder_coordinator
from apihub.api.schemas.builds import BuildListResponse, BuildResponse, PruneBuildsRequest
from apihub.builds.coordinator import BuilderCoordinator
from apihub.builds.service import BuildService
from apihub.builds.types import snapshot_to_dict
from apihub.core.errors import invalid_parameter_value
from apihub.db.models import BuildStatus

router = APIRouter(tags=["builders"])

ARCHIVE_MEDIA_TYPE = "application/zip"


@router.get("/builders/free-build")
def pull_free_build(
    builder_id: str = Query(default="", alias="builderId"),
    coordinator: BuilderCoordinator = Depends(get_builder_coordinator),
) -> Response:
    archive = coordinator.pull_free_build(builder_id)
    if archive is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return Response(
        content=archive,
        media_type=ARCHIVE_MEDIA_TYPE,
        headers={"Content-Disposition": 'attachment; filename="build.zip"'},
    )


@router.get("/builds", response_model=BuildListResponse)
def list_builds(
    package_id: str | None = Query(default=None, alias="packageId"),
    build_status: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    cursor: str | None = None,
    service: BuildService = Depends(get_build_service),
) -> BuildListResponse:
    parsed_status = None
    if build_status:
        try:
            parsed_status = BuildStatus(build_status)
        except ValueError as exc:
            raise invalid_parameter_value("status", build_status) from exc
    result = service.list_builds(package_id=package_id, status=parsed_status, limit=limit, cursor=cursor)
    return BuildListResponse(
        items=[BuildResponse.model_validate(snapshot_to_dict(item)) for item in result.items],
        next_cursor=result.next_cursor,
    )


@router.get("/builds/{build_id}", response_model=BuildResponse)
def get_build(build_id: str, service: BuildService = Depends(get_build_service)) -> BuildResponse:
    return BuildResponse.model_validate(snapshot_to_dict(service.get_build(build_id)))


@router.post("/builds/recover-stale")
def recover_stale_builds(service: BuildService = Depends(get_build_service)) -> dict[str, int]:
    return {"expired": service.expire_overdue_builds(), "recovered": service.recover_stale_builds()}


@router.post("/builds/prune")
def prune_builds(request: PruneBuildsRequest, service: BuildService = Depends(get_build_service)) -> dict[str, int]:
    older_than = timedelta(days=request.older_than_days) if request.older_than_days else None
    return {"pruned": service.prune_builds(older_than=older_than)}
