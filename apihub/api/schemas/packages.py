from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from apihub.db.models import PackageKind, VersionStatus


class CreatePackageRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    package_id: str = Field(min_length=1, max_length=255)
    name: str = Field(min_length=1, max_length=255)
    kind: PackageKind = PackageKind.PACKAGE
    release_version_pattern: str | None = None


class PatchVersionRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    status: VersionStatus | None = None
    version_labels: list[str] | None = None


class MovePackageRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    new_package_id: str = Field(min_length=1, max_length=255)


class PackageResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    package_id: str
    name: str
    kind: str
    release_version_pattern: str | None
    created_by: str
    created_at: datetime


class VersionResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    package_id: str
    version: str
    revision: int
    status: str
    previous_version: str
    previous_version_package_id: str
    version_labels: list[str]
    publish_id: str | None
    created_by: str
    published_at: datetime


class VersionListResponse(BaseModel):
    versions: list[VersionResponse]


class OperationListResponse(BaseModel):
    operations: list[dict[str, Any]]


class ReferenceListResponse(BaseModel):
    references: list[dict[str, Any]]


class TransitionResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    old_package_id: str
    new_package_id: str
    moved_by: str
    moved_at: datetime


class OperationGroupResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    package_id: str
    version: str
    api_type: str
    group_name: str
    description: str
    operation_ids: list[str]
    operations_count: int
    export_template_file_name: str | None
    has_export_template: bool


class OperationGroupListResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    operation_groups: list[OperationGroupResponse]
