from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import Response
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import FormData

from apihub.api.multipart import (
    form_json,
    form_text,
    read_form,
    read_upload,
    upload_filename,
)
from apihub.api.outcomes import outcome_response
from apihub.api.schemas.packages import OperationGroupListResponse, OperationGroupResponse
from apihub.api.security import get_security_context
from apihub.core.config import get_settings
from apihub.core.context import SecurityContext
from apihub.core.errors import required_params_missing
from apihub.db.session import get_session_factory
from apihub.packages.groups import ARCHIVE_FORMAT, OperationGroupService
from apihub.packages.types import group_to_dict

router = APIRouter(prefix="/packages/{package_id}/versions/{version}", tags=["groups"])

GROUP_PATH = "/{api_type}/groups/{group_name}"
TRANSFORMATION_PATH = GROUP_PATH + "/transformation/{build_type}"


def get_group_service() -> OperationGroupService:
    return OperationGroupService(settings=get_settings(), session_factory=get_session_factory())


async def _read_group_form(request: Request) -> tuple[FormData, bytes | None, str | None]:
    settings = get_settings()
    form = await read_form(request, settings.publish_file_size_limit_bytes, settings.publish_file_size_limit_mb)
    template_part = form.get("template")
    template = await read_upload(
        template_part,
        limit_bytes=settings.publish_file_size_limit_bytes,
        limit_mb=settings.publish_file_size_limit_mb,
    )
    return form, template, upload_filename(template_part)


def _operation_ids(form: FormData) -> list[str] | None:
    raw = form_json(form, "operationIds", expect=list)
    return None if raw is None else [str(item) for item in raw]


@router.get("/groups", response_model=OperationGroupListResponse)
def list_groups(
    package_id: str,
    version: str,
    api_type: str | None = Query(default=None, alias="apiType"),
    service: OperationGroupService = Depends(get_group_service),
) -> OperationGroupListResponse:
    groups = service.list_groups(package_id, version, api_type)
    return OperationGroupListResponse(
        operation_groups=[OperationGroupResponse.model_validate(group_to_dict(item)) for item in groups]
    )


@router.post("/{api_type}/groups", response_model=OperationGroupResponse, status_code=status.HTTP_201_CREATED)
async def create_group(
    package_id: str,
    version: str,
    api_type: str,
    request: Request,
    ctx: SecurityContext = Depends(get_security_context),
    service: OperationGroupService = Depends(get_group_service),
) -> OperationGroupResponse:
    form, template, template_filename = await _read_group_form(request)
    group_name = (form_text(form, "groupName") or "").strip()
    if not group_name:
        raise required_params_missing("groupName")
    group = await run_in_threadpool(
        service.create_group,
        ctx,
        package_id,
        version,
        api_type,
        group_name,
        description=form_text(form, "description") or "",
        operation_ids=_operation_ids(form),
        template=template or None,
        template_filename=template_filename,
    )
    return OperationGroupResponse.model_validate(group_to_dict(group))


@router.get(GROUP_PATH, response_model=OperationGroupResponse)
def get_group(
    package_id: str,
    version: str,
    api_type: str,
    group_name: str,
    service: OperationGroupService = Depends(get_group_service),
) -> OperationGroupResponse:
    return OperationGroupResponse.model_validate(group_to_dict(service.get_group(package_id, version, api_type, group_name)))


@router.patch(GROUP_PATH, response_model=OperationGroupResponse)
async def update_group(
    package_id: str,
    version: str,
    api_type: str,
    group_name: str,
    request: Request,
    ctx: SecurityContext = Depends(get_security_context),
    service: OperationGroupService = Depends(get_group_service),
) -> OperationGroupResponse:
    form, template, template_filename = await _read_group_form(request)
    new_name = (form_text(form, "groupName") or "").strip() or None
    group = await run_in_threadpool(
        service.update_group,
        ctx,
        package_id,
        version,
        api_type,
        group_name,
        new_name=new_name,
        description=form_text(form, "description"),
        operation_ids=_operation_ids(form),
        template=template,
        template_filename=template_filename,
    )
    return OperationGroupResponse.model_validate(group_to_dict(group))


@router.delete(GROUP_PATH, status_code=status.HTTP_204_NO_CONTENT)
def delete_group(
    package_id: str,
    version: str,
    api_type: str,
    group_name: str,
    service: OperationGroupService = Depends(get_group_service),
) -> Response:
    service.delete_group(package_id, version, api_type, group_name)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(GROUP_PATH + "/template")
def get_group_template(
    package_id: str,
    version: str,
    api_type: str,
    group_name: str,
    service: OperationGroupService = Depends(get_group_service),
) -> Response:
    template = service.get_template(package_id, version, api_type, group_name)
    if template is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    filename, content = template
    return Response(
        content=content,
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post(TRANSFORMATION_PATH)
def ensure_transformation(
    package_id: str,
    version: str,
    api_type: str,
    group_name: str,
    build_type: str,
    doc_format: str | None = Query(default=None, alias="format"),
    builder_id: str | None = Query(default=None, alias="builderId"),
    client_build: bool = Query(default=False, alias="clientBuild"),
    re_calculate: bool = Query(default=False, alias="reCalculate"),
    ctx: SecurityContext = Depends(get_security_context),
    service: OperationGroupService = Depends(get_group_service),
) -> Response:
    outcome = service.ensure_transformed_documents(
        ctx,
        package_id,
        version,
        api_type,
        group_name,
        build_type,
        doc_format=doc_format,
        re_calculate=re_calculate,
        client_build=client_build,
        builder_id=builder_id,
    )
    return outcome_response(outcome)


@router.get(TRANSFORMATION_PATH + "/documents")
def get_transformed_documents(
    package_id: str,
    version: str,
    api_type: str,
    group_name: str,
    build_type: str,
    doc_format: str | None = Query(default=None, alias="format"),
    service: OperationGroupService = Depends(get_group_service),
) -> Response:
    content = service.get_transformed_documents(
        package_id,
        version,
        api_type,
        group_name,
        build_type,
        doc_format=doc_format,
    )
    headers: dict[str, Any] = {
        "Content-Disposition": f'attachment; filename="{group_name}_{build_type}.{ARCHIVE_FORMAT}"'
    }
    return Response(content=content, media_type="application/zip", headers=headers)
