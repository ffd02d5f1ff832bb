from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from apihub.builds.config import (
    SUPPORTED_API_TYPES,
    DocumentGroupConfig,
    MergedSpecificationConfig,
    ReducedSourceConfig,
    parse_build_type,
    validate_format_for_build_type,
)
from apihub.builds.service import BuildService
from apihub.builds.types import BuildOutcome
from apihub.core.config import Settings
from apihub.core.context import SecurityContext
from apihub.core.errors import (
    BadRequestError,
    ConflictError,
    ErrorCode,
    NotFoundError,
    invalid_parameter_value,
)
from apihub.db.models import BuildType, OperationGroup, PublishedOperation, TransformedDocuments
from apihub.packages.service import PackageService
from apihub.packages.types import OperationGroupSnapshot
from apihub.storage.artifacts import ArtifactStore

logger = logging.getLogger(__name__)

GROUP_CONFIG_TYPES = {
    BuildType.DOCUMENT_GROUP: DocumentGroupConfig,
    BuildType.MERGED_SPECIFICATION: MergedSpecificationConfig,
    BuildType.REDUCED_SOURCE_SPECIFICATIONS: ReducedSourceConfig,
}
ARCHIVE_FORMAT = "zip"


def stored_format(doc_format: str | None) -> str:
    return doc_format or ARCHIVE_FORMAT


def operation_group_not_found(group_name: str, package_id: str, version: str) -> NotFoundError:
    return NotFoundError(
        ErrorCode.OPERATION_GROUP_NOT_FOUND,
        "Operation group $groupName not found in $packageId:$version",
        params={"groupName": group_name, "packageId": package_id, "version": version},
    )


def _validate_api_type(api_type: str) -> str:
    normalized = api_type.strip().lower()
    if normalized not in SUPPORTED_API_TYPES:
        raise BadRequestError(
            ErrorCode.UNSUPPORTED_API_TYPE,
            "Api type $apiType is not supported",
            params={"apiType": api_type},
        )
    return normalized


class OperationGroupService:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        artifacts: ArtifactStore | None = None,
        build_service: BuildService | None = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._artifacts = artifacts or ArtifactStore.from_settings(settings)
        self._packages = PackageService(settings, session_factory)
        self._builds = build_service or BuildService(settings, session_factory, self._artifacts)

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def require_group(
        self,
        session: Session,
        package_id: str,
        version: str,
        revision: int,
        api_type: str,
        group_name: str,
    ) -> OperationGroup:
        group = session.scalar(
            select(OperationGroup).where(
                OperationGroup.package_id == package_id,
                OperationGroup.version == version,
                OperationGroup.revision == revision,
                OperationGroup.api_type == api_type,
                OperationGroup.group_name == group_name,
            )
        )
        if group is None:
            raise operation_group_not_found(group_name, package_id, f"{version}@{revision}")
        return group

    def _validate_operation_ids(
        self, session: Session, version_row_id: int, api_type: str, operation_ids: list[str]
    ) -> list[str]:
        unique_ids = list(dict.fromkeys(op_id.strip() for op_id in operation_ids if op_id.strip()))
        if not unique_ids:
            return []
        known = set(
            session.scalars(
                select(PublishedOperation.operation_id).where(
                    PublishedOperation.version_ref_id == version_row_id,
                    PublishedOperation.api_type == api_type,
                    PublishedOperation.operation_id.in_(unique_ids),
                )
            ).all()
        )
        unknown = [op_id for op_id in unique_ids if op_id not in known]
        if unknown:
            raise invalid_parameter_value("operationIds", ",".join(unknown), debug="operations not found in version")
        return unique_ids

    def create_group(
        self,
        ctx: SecurityContext,
        package_id: str,
        version_ref: str,
        api_type: str,
        group_name: str,
        *,
        description: str = "",
        operation_ids: list[str] | None = None,
        template: bytes | None = None,
        template_filename: str | None = None,
    ) -> OperationGroupSnapshot:
        api_type = _validate_api_type(api_type)
        group_name = group_name.strip()
        if not group_name:
            raise invalid_parameter_value("groupName", group_name)
        template_ref = self._artifacts.put_bytes(template) if template else None

        with self._session_factory() as session:
            version_row = self._packages.require_version(session, package_id, version_ref)
            ids = self._validate_operation_ids(session, version_row.id, api_type, operation_ids or [])
            group = OperationGroup(
                package_id=package_id,
                version=version_row.version,
                revision=version_row.revision,
                api_type=api_type,
                group_name=group_name,
                description=description,
                operation_ids=ids,
                template_ref=template_ref,
                template_filename=template_filename if template_ref else None,
                created_by=ctx.user_id,
                updated_at=self._now(),
            )
            session.add(group)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(
                    ErrorCode.OPERATION_GROUP_ALREADY_EXISTS,
                    "Operation group $groupName already exists",
                    params={"groupName": group_name},
                ) from exc
            logger.info("Created operation group %s for %s@%s", group_name, package_id, version_row.version)
            return self._to_snapshot(group)

    def update_group(
        self,
        ctx: SecurityContext,
        package_id: str,
        version_ref: str,
        api_type: str,
        group_name: str,
        *,
        new_name: str | None = None,
        description: str | None = None,
        operation_ids: list[str] | None = None,
        template: bytes | None = None,
        template_filename: str | None = None,
    ) -> OperationGroupSnapshot:
        """Patch a group. ``template=None`` keeps the template, ``b""`` removes it."""
        api_type = _validate_api_type(api_type)
        template_ref = self._artifacts.put_bytes(template) if template else None

        with self._session_factory() as session:
            version_row = self._packages.require_version(session, package_id, version_ref)
            group = self.require_group(
                session, package_id, version_row.version, version_row.revision, api_type, group_name
            )
            content_changed = False
            if new_name is not None and new_name.strip() and new_name.strip() != group.group_name:
                group.group_name = new_name.strip()
                content_changed = True
            if description is not None:
                group.description = description
            if operation_ids is not None:
                ids = self._validate_operation_ids(session, version_row.id, api_type, operation_ids)
                if ids != list(group.operation_ids or []):
                    group.operation_ids = ids
                    content_changed = True
            if template is not None:
                group.template_ref = template_ref
                group.template_filename = template_filename if template_ref else None
                content_changed = True
            group.updated_at = self._now()
            if content_changed:
                self._invalidate_transformed(session, group, previous_name=group_name)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(
                    ErrorCode.OPERATION_GROUP_ALREADY_EXISTS,
                    "Operation group $groupName already exists",
                    params={"groupName": new_name or group_name},
                ) from exc
            return self._to_snapshot(group)

    def delete_group(self, package_id: str, version_ref: str, api_type: str, group_name: str) -> None:
        api_type = _validate_api_type(api_type)
        with self._session_factory() as session:
            version_row = self._packages.require_version(session, package_id, version_ref)
            group = self.require_group(
                session, package_id, version_row.version, version_row.revision, api_type, group_name
            )
            self._invalidate_transformed(session, group, previous_name=group_name)
            session.delete(group)
            session.commit()

    def get_group(self, package_id: str, version_ref: str, api_type: str, group_name: str) -> OperationGroupSnapshot:
        api_type = _validate_api_type(api_type)
        with self._session_factory() as session:
            version_row = self._packages.require_version(session, package_id, version_ref)
            return self._to_snapshot(
                self.require_group(
                    session, package_id, version_row.version, version_row.revision, api_type, group_name
                )
            )

    def list_groups(self, package_id: str, version_ref: str, api_type: str | None = None) -> list[OperationGroupSnapshot]:
        with self._session_factory() as session:
            version_row = self._packages.require_version(session, package_id, version_ref)
            stmt = (
                select(OperationGroup)
                .where(
                    OperationGroup.package_id == package_id,
                    OperationGroup.version == version_row.version,
                    OperationGroup.revision == version_row.revision,
                )
                .order_by(OperationGroup.api_type, OperationGroup.group_name)
            )
            if api_type is not None:
                stmt = stmt.where(OperationGroup.api_type == _validate_api_type(api_type))
            return [self._to_snapshot(group) for group in session.scalars(stmt).all()]

    def get_template(
        self, package_id: str, version_ref: str, api_type: str, group_name: str
    ) -> tuple[str, bytes] | None:
        api_type = _validate_api_type(api_type)
        with self._session_factory() as session:
            version_row = self._packages.require_version(session, package_id, version_ref)
            group = self.require_group(
                session, package_id, version_row.version, version_row.revision, api_type, group_name
            )
            if group.template_ref is None:
                return None
            filename = group.template_filename or "template"
            ref = group.template_ref
        return filename, self._artifacts.get_bytes(ref)

    def _invalidate_transformed(self, session: Session, group: OperationGroup, *, previous_name: str) -> None:
        result = session.execute(
            delete(TransformedDocuments).where(
                TransformedDocuments.package_id == group.package_id,
                TransformedDocuments.version == group.version,
                TransformedDocuments.revision == group.revision,
                TransformedDocuments.api_type == group.api_type,
                TransformedDocuments.group_name.in_({previous_name, group.group_name}),
            )
        )
        if result.rowcount:
            logger.info("Dropped %d transformed documents of group %s", result.rowcount, previous_name)

    # transformations

    def _resolve_transformation(
        self, build_type_raw: str, doc_format: str | None
    ) -> tuple[BuildType, str | None]:
        build_type = parse_build_type(build_type_raw)
        if build_type not in GROUP_CONFIG_TYPES:
            raise invalid_parameter_value("buildType", build_type_raw, debug="not a group transformation")
        return build_type, validate_format_for_build_type(build_type, doc_format or None)

    def _find_transformed(
        self,
        session: Session,
        package_id: str,
        version: str,
        revision: int,
        api_type: str,
        group_name: str,
        build_type: BuildType,
        doc_format: str | None,
    ) -> TransformedDocuments | None:
        return session.scalar(
            select(TransformedDocuments).where(
                TransformedDocuments.package_id == package_id,
                TransformedDocuments.version == version,
                TransformedDocuments.revision == revision,
                TransformedDocuments.api_type == api_type,
                TransformedDocuments.group_name == group_name,
                TransformedDocuments.build_type == build_type,
                TransformedDocuments.doc_format == stored_format(doc_format),
            )
        )

    def ensure_transformed_documents(
        self,
        ctx: SecurityContext,
        package_id: str,
        version_ref: str,
        api_type: str,
        group_name: str,
        build_type: str,
        *,
        doc_format: str | None = None,
        re_calculate: bool = False,
        client_build: bool = False,
        builder_id: str | None = None,
    ) -> BuildOutcome:
        api_type = _validate_api_type(api_type)
        kind, effective_format = self._resolve_transformation(build_type, doc_format)
        with self._session_factory() as session:
            version_row = self._packages.require_version(session, package_id, version_ref)
            self.require_group(session, package_id, version_row.version, version_row.revision, api_type, group_name)
            existing = self._find_transformed(
                session,
                package_id,
                version_row.version,
                version_row.revision,
                api_type,
                group_name,
                kind,
                effective_format,
            )
            version, revision = version_row.version, version_row.revision

        config_cls: Any = GROUP_CONFIG_TYPES[kind]
        payload: dict[str, Any] = {
            "package_id": package_id,
            "version": f"{version}@{revision}",
            "api_type": api_type,
            "group_name": group_name,
            "created_by": ctx.user_id,
        }
        if effective_format is not None:
            payload["format"] = effective_format
        config = config_cls(**payload)
        return self._builds.ensure_build(
            ctx,
            config,
            result_exists=existing is not None,
            re_calculate=re_calculate,
            client_build=client_build,
            builder_id=builder_id,
        )

    def get_transformed_documents(
        self,
        package_id: str,
        version_ref: str,
        api_type: str,
        group_name: str,
        build_type: str,
        *,
        doc_format: str | None = None,
    ) -> bytes:
        api_type = _validate_api_type(api_type)
        kind, effective_format = self._resolve_transformation(build_type, doc_format)
        with self._session_factory() as session:
            version_row = self._packages.require_version(session, package_id, version_ref)
            row = self._find_transformed(
                session,
                package_id,
                version_row.version,
                version_row.revision,
                api_type,
                group_name,
                kind,
                effective_format,
            )
            if row is None:
                raise NotFoundError(
                    ErrorCode.TRANSFORMED_DOCUMENTS_NOT_FOUND,
                    "Transformed documents for group $groupName not found",
                    params={"groupName": group_name},
                )
            ref = row.result_ref
        return self._artifacts.get_bytes(ref)

    def _to_snapshot(self, group: OperationGroup) -> OperationGroupSnapshot:
        return OperationGroupSnapshot(
            package_id=group.package_id,
            version=group.version,
            revision=group.revision,
            api_type=group.api_type,
            group_name=group.group_name,
            description=group.description,
            operation_ids=list(group.operation_ids or []),
            template_filename=group.template_filename,
            has_template=group.template_ref is not None,
        )
