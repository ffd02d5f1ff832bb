from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool

from apihub.api.multipart import (
    form_bool,
    form_json,
    form_text,
    is_base64_transfer,
    read_form,
    read_upload,
)
from apihub.api.schemas.builds import BuildStatusesRequest, BuildStatusResponse
from apihub.api.security import get_security_context
from apihub.builds.config import PublishConfig, parse_build_config
from apihub.builds.coordinator import BuilderCoordinator
from apihub.builds.service import BuildNotFoundError, BuildService
from apihub.builds.types import BuildSnapshot
from apihub.core.config import get_settings
from apihub.core.context import SecurityContext
from apihub.core.errors import BadRequestError, ErrorCode, invalid_parameter_value, required_params_missing
from apihub.db.models import BuildStatus
from apihub.db.session import get_session_factory

router = APIRouter(prefix="/packages/{package_id}/publish", tags=["publish"])


def get_build_service() -> BuildService:
    return BuildService(settings=get_settings(), session_factory=get_session_factory())


def get_builder_coordinator() -> BuilderCoordinator:
    return BuilderCoordinator(settings=get_settings(), session_factory=get_session_factory())


def status_to_response(build: BuildSnapshot) -> BuildStatusResponse:
    message = build.details if build.status == BuildStatus.ERROR else None
    return BuildStatusResponse(publish_id=build.id, status=build.status.value, message=message)


def _require_package_build(build: BuildSnapshot, package_id: str) -> BuildSnapshot:
    if build.package_id != package_id:
        raise BuildNotFoundError(build.id)
    return build


def _parse_publish_config(raw: dict[str, Any], package_id: str) -> PublishConfig:
    config_package_id = raw.get("packageId")
    if config_package_id and config_package_id != package_id:
        raise BadRequestError(
            ErrorCode.PACKAGE_ID_MISMATCH,
            "Package id $configPackageId from config doesn't match $packageId from path",
            params={"configPackageId": config_package_id, "packageId": package_id},
        )
    config = parse_build_config({**raw, "packageId": package_id})
    if not isinstance(config, PublishConfig):
        raise invalid_parameter_value("buildType", raw.get("buildType"), debug="only publish builds are accepted here")
    return config


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def submit_publish(
    package_id: str,
    request: Request,
    ctx: SecurityContext = Depends(get_security_context),
    service: BuildService = Depends(get_build_service),
) -> Response:
    settings = get_settings()
    form = await read_form(request, settings.publish_archive_size_limit_bytes, settings.publish_archive_size_limit_mb)

    raw_config = form_json(form, "config", expect=dict)
    if raw_config is None:
        raise required_params_missing("config")
    config = _parse_publish_config(raw_config, package_id)
    sources = await read_upload(
        form.get("sources"),
        limit_bytes=settings.publish_archive_size_limit_bytes,
        limit_mb=settings.publish_archive_size_limit_mb,
        base64_encoded=is_base64_transfer(request),
    )
    dependencies = form_json(form, "dependencies", expect=list) or []
    client_build = form_bool(form, "clientBuild")

    submission = await run_in_threadpool(
        service.submit_publish,
        ctx,
        config,
        sources=sources or None,
        client_build=client_build,
        builder_id=form_text(form, "builderId"),
        dependencies=[str(item) for item in dependencies],
        resolve_refs=form_bool(form, "resolveRefs", default=True),
        resolve_conflicts=form_bool(form, "resolveConflicts", default=True),
    )
    if submission.reused:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    if client_build:
        return JSONResponse(
            status_code=status.HTTP_201_CREATED,
            content={**submission.config, "buildId": submission.build_id},
        )
    build = await run_in_threadpool(service.get_status, submission.build_id)
    state = "error" if build.status == BuildStatus.ERROR else "running"
    content: dict[str, Any] = {"publishId": build.id, "status": state}
    if build.status == BuildStatus.ERROR and build.details:
        content["message"] = build.details
    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=content)


@router.get("/{publish_id}/status", response_model=BuildStatusResponse)
def get_publish_status(
    package_id: str,
    publish_id: str,
    service: BuildService = Depends(get_build_service),
) -> BuildStatusResponse:
    return status_to_response(_require_package_build(service.get_status(publish_id), package_id))


@router.post("/statuses", response_model=list[BuildStatusResponse])
def get_publish_statuses(
    package_id: str,
    request: BuildStatusesRequest,
    service: BuildService = Depends(get_build_service),
) -> list[BuildStatusResponse]:
    builds = service.get_statuses(request.publish_ids)
    return [status_to_response(_require_package_build(build, package_id)) for build in builds]


@router.post("/{publish_id}/status", status_code=status.HTTP_204_NO_CONTENT)
async def report_publish_status(
    package_id: str,
    publish_id: str,
    request: Request,
    ctx: SecurityContext = Depends(get_security_context),
    service: BuildService = Depends(get_build_service),
    coordinator: BuilderCoordinator = Depends(get_builder_coordinator),
) -> Response:
    settings = get_settings()
    form = await read_form(request, settings.publish_archive_size_limit_bytes, settings.publish_archive_size_limit_mb)

    build = await run_in_threadpool(service.get_build, publish_id)
    _require_package_build(build, package_id)

    report_status = form_text(form, "status")
    if not report_status:
        raise required_params_missing("status")
    data = await read_upload(
        form.get("data"),
        limit_bytes=settings.publish_archive_size_limit_bytes,
        limit_mb=settings.publish_archive_size_limit_mb,
        base64_encoded=is_base64_transfer(request),
    )
    await run_in_threadpool(
        coordinator.report_status,
        ctx,
        publish_id,
        form_text(form, "builderId") or "",
        report_status,
        details=form_text(form, "errors"),
        result=data,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
