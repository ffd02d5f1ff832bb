from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from apihub.api.schemas.packages import (
    CreatePackageRequest,
    MovePackageRequest,
    OperationListResponse,
    PackageResponse,
    PatchVersionRequest,
    ReferenceListResponse,
    TransitionResponse,
    VersionListResponse,
    VersionResponse,
)
from apihub.api.security import get_security_context
from apihub.core.config import get_settings
from apihub.core.context import SecurityContext
from apihub.core.errors import invalid_parameter_value
from apihub.db.models import VersionStatus
from apihub.db.session import get_session_factory
from apihub.packages.service import PackageService
from apihub.packages.transitions import PackageTransitionService
from apihub.packages.types import package_to_dict, transition_to_dict, version_to_dict

router = APIRouter(prefix="/packages", tags=["packages"])


def get_package_service() -> PackageService:
    return PackageService(settings=get_settings(), session_factory=get_session_factory())


def get_transition_service() -> PackageTransitionService:
    return PackageTransitionService(settings=get_settings(), session_factory=get_session_factory())


@router.post("", response_model=PackageResponse, status_code=status.HTTP_201_CREATED)
def create_package(
    request: CreatePackageRequest,
    ctx: SecurityContext = Depends(get_security_context),
    service: PackageService = Depends(get_package_service),
) -> PackageResponse:
    package = service.create_package(
        ctx,
        package_id=request.package_id,
        name=request.name,
        kind=request.kind,
        release_version_pattern=request.release_version_pattern,
    )
    return PackageResponse.model_validate(package_to_dict(package))


@router.get("/{package_id}", response_model=PackageResponse)
def get_package(package_id: str, service: PackageService = Depends(get_package_service)) -> PackageResponse:
    return PackageResponse.model_validate(package_to_dict(service.get_package(package_id)))


@router.post("/{package_id}/move", response_model=TransitionResponse)
def move_package(
    package_id: str,
    request: MovePackageRequest,
    ctx: SecurityContext = Depends(get_security_context),
    service: PackageTransitionService = Depends(get_transition_service),
) -> TransitionResponse:
    transition = service.move_package(ctx, package_id, request.new_package_id)
    return TransitionResponse.model_validate(transition_to_dict(transition))


@router.get("/{package_id}/versions", response_model=VersionListResponse)
def list_versions(
    package_id: str,
    version_status: str | None = Query(default=None, alias="status"),
    service: PackageService = Depends(get_package_service),
) -> VersionListResponse:
    parsed_status = None
    if version_status:
        try:
            parsed_status = VersionStatus(version_status)
        except ValueError as exc:
            raise invalid_parameter_value("status", version_status) from exc
    versions = service.list_versions(package_id, status=parsed_status)
    return VersionListResponse(versions=[VersionResponse.model_validate(version_to_dict(item)) for item in versions])


@router.get("/{package_id}/versions/{version}", response_model=VersionResponse)
def get_version(package_id: str, version: str, service: PackageService = Depends(get_package_service)) -> VersionResponse:
    return VersionResponse.model_validate(version_to_dict(service.get_version(package_id, version)))


@router.patch("/{package_id}/versions/{version}", response_model=VersionResponse)
def patch_version(
    package_id: str,
    version: str,
    request: PatchVersionRequest,
    ctx: SecurityContext = Depends(get_security_context),
    service: PackageService = Depends(get_package_service),
) -> VersionResponse:
    snapshot = service.patch_version(
        ctx,
        package_id,
        version,
        status=request.status,
        labels=request.version_labels,
    )
    return VersionResponse.model_validate(version_to_dict(snapshot))


@router.get("/{package_id}/versions/{version}/operations", response_model=OperationListResponse)
def list_operations(
    package_id: str,
    version: str,
    api_type: str | None = Query(default=None, alias="apiType"),
    service: PackageService = Depends(get_package_service),
) -> OperationListResponse:
    return OperationListResponse(operations=service.list_operations(package_id, version, api_type=api_type))


@router.get("/{package_id}/versions/{version}/references", response_model=ReferenceListResponse)
def list_references(
    package_id: str,
    version: str,
    recursive: bool = False,
    service: PackageService = Depends(get_package_service),
) -> ReferenceListResponse:
    return ReferenceListResponse(references=service.list_references(package_id, version, recursive=recursive))
