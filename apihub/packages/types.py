from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from apihub.db.models import PackageKind, VersionStatus


@dataclass(slots=True)
class PackageSnapshot:
    id: str
    name: str
    kind: PackageKind
    release_version_pattern: str | None
    created_by: str
    created_at: datetime


@dataclass(slots=True)
class VersionSnapshot:
    package_id: str
    version: str
    revision: int
    status: VersionStatus
    previous_version: str | None
    previous_version_package_id: str | None
    labels: list[str]
    build_id: str | None
    created_by: str
    published_at: datetime

    @property
    def version_ref(self) -> str:
        return f"{self.version}@{self.revision}"


@dataclass(slots=True)
class OperationGroupSnapshot:
    package_id: str
    version: str
    revision: int
    api_type: str
    group_name: str
    description: str
    operation_ids: list[str]
    template_filename: str | None
    has_template: bool


@dataclass(slots=True)
class TransitionSnapshot:
    old_package_id: str
    new_package_id: str
    moved_by: str
    moved_at: datetime


def package_to_dict(snapshot: PackageSnapshot) -> dict[str, Any]:
    return {
        "packageId": snapshot.id,
        "name": snapshot.name,
        "kind": snapshot.kind.value,
        "releaseVersionPattern": snapshot.release_version_pattern,
        "createdBy": snapshot.created_by,
        "createdAt": snapshot.created_at,
    }


def version_to_dict(snapshot: VersionSnapshot) -> dict[str, Any]:
    return {
        "packageId": snapshot.package_id,
        "version": snapshot.version_ref,
        "revision": snapshot.revision,
        "status": snapshot.status.value,
        "previousVersion": snapshot.previous_version or "",
        "previousVersionPackageId": snapshot.previous_version_package_id or "",
        "versionLabels": snapshot.labels,
        "publishId": snapshot.build_id,
        "createdBy": snapshot.created_by,
        "publishedAt": snapshot.published_at,
    }


def group_to_dict(snapshot: OperationGroupSnapshot) -> dict[str, Any]:
    return {
        "packageId": snapshot.package_id,
        "version": f"{snapshot.version}@{snapshot.revision}",
        "apiType": snapshot.api_type,
        "groupName": snapshot.group_name,
        "description": snapshot.description,
        "operationIds": snapshot.operation_ids,
        "operationsCount": len(snapshot.operation_ids),
        "exportTemplateFileName": snapshot.template_filename,
        "hasExportTemplate": snapshot.has_template,
    }


def transition_to_dict(snapshot: TransitionSnapshot) -> dict[str, Any]:
    return {
        "oldPackageId": snapshot.old_package_id,
        "newPackageId": snapshot.new_package_id,
        "movedBy": snapshot.moved_by,
        "movedAt": snapshot.moved_at,
    }
