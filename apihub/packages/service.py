from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from apihub.builds.config import VERSION_FORBIDDEN_CHARS
from apihub.core.config import Settings
from apihub.core.context import RoleService, SecurityContext
from apihub.core.errors import (
    BadRequestError,
    ConflictError,
    ErrorCode,
    NotFoundError,
    insufficient_privileges,
    invalid_parameter_value,
    package_not_found,
)
from apihub.db.models import (
    Package,
    PackageKind,
    PublishedDocument,
    PublishedOperation,
    PublishedVersion,
    VersionReference,
    VersionStatus,
)
from apihub.packages.types import PackageSnapshot, VersionSnapshot

PACKAGE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,254}$")


def split_version_ref(raw: str) -> tuple[str, int | None]:
    """Split ``version@revision`` into its parts; the revision is optional."""
    version, sep, revision = raw.partition("@")
    if not version:
        raise invalid_parameter_value("version", raw)
    if not sep:
        return version, None
    if not revision.isdigit() or int(revision) < 1:
        raise invalid_parameter_value("version", raw, debug="revision must be a positive integer")
    return version, int(revision)


def validate_version_name(param: str, version: str) -> None:
    if any(char in version for char in VERSION_FORBIDDEN_CHARS):
        raise BadRequestError(
            ErrorCode.ALIAS_CONTAINS_FORBIDDEN_CHARS,
            "$param '$value' contains forbidden characters",
            params={"param": param, "value": version},
        )


def published_version_not_found(package_id: str, version: str) -> NotFoundError:
    return NotFoundError(
        ErrorCode.PUBLISHED_PACKAGE_VERSION_NOT_FOUND,
        "Published version $version not found for package $packageId",
        params={"version": version, "packageId": package_id},
    )


class PackageService:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory
        self._roles = RoleService(settings)

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def create_package(
        self,
        ctx: SecurityContext,
        *,
        package_id: str,
        name: str,
        kind: PackageKind = PackageKind.PACKAGE,
        release_version_pattern: str | None = None,
    ) -> PackageSnapshot:
        if not PACKAGE_ID_PATTERN.match(package_id):
            raise invalid_parameter_value("packageId", package_id)
        if release_version_pattern:
            try:
                re.compile(release_version_pattern)
            except re.error as exc:
                raise invalid_parameter_value("releaseVersionPattern", release_version_pattern, str(exc)) from exc

        with self._session_factory() as session:
            package = Package(
                id=package_id,
                name=name,
                kind=kind,
                release_version_pattern=release_version_pattern or None,
                created_by=ctx.user_id,
                created_at=self._now(),
            )
            session.add(package)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(
                    ErrorCode.PACKAGE_ALREADY_EXISTS,
                    "Package with packageId = $packageId already exists",
                    params={"packageId": package_id},
                ) from exc
            return self._to_package_snapshot(package)

    def get_package(self, package_id: str) -> PackageSnapshot:
        with self._session_factory() as session:
            return self._to_package_snapshot(self.require_package(session, package_id))

    def require_package(self, session: Session, package_id: str) -> Package:
        package = session.get(Package, package_id)
        if package is None:
            raise package_not_found(package_id)
        return package

    def latest_revision(self, session: Session, package_id: str, version: str) -> int:
        latest = session.scalar(
            select(func.max(PublishedVersion.revision)).where(
                PublishedVersion.package_id == package_id,
                PublishedVersion.version == version,
            )
        )
        return int(latest or 0)

    def find_version(
        self, session: Session, package_id: str, version: str, revision: int | None = None
    ) -> PublishedVersion | None:
        stmt = select(PublishedVersion).where(
            PublishedVersion.package_id == package_id,
            PublishedVersion.version == version,
        )
        if revision is not None:
            stmt = stmt.where(PublishedVersion.revision == revision)
        else:
            stmt = stmt.order_by(PublishedVersion.revision.desc()).limit(1)
        return session.scalar(stmt)

    def require_version(self, session: Session, package_id: str, version_ref: str) -> PublishedVersion:
        version, revision = split_version_ref(version_ref)
        self.require_package(session, package_id)
        row = self.find_version(session, package_id, version, revision)
        if row is None:
            raise published_version_not_found(package_id, version_ref)
        return row

    def get_version(self, package_id: str, version_ref: str) -> VersionSnapshot:
        with self._session_factory() as session:
            return self._to_version_snapshot(self.require_version(session, package_id, version_ref))

    def list_versions(self, package_id: str, *, status: VersionStatus | None = None) -> list[VersionSnapshot]:
        with self._session_factory() as session:
            self.require_package(session, package_id)
            latest = (
                select(PublishedVersion.version, func.max(PublishedVersion.revision).label("revision"))
                .where(PublishedVersion.package_id == package_id)
                .group_by(PublishedVersion.version)
                .subquery()
            )
            stmt = (
                select(PublishedVersion)
                .join(
                    latest,
                    (PublishedVersion.version == latest.c.version) & (PublishedVersion.revision == latest.c.revision),
                )
                .where(PublishedVersion.package_id == package_id)
                .order_by(PublishedVersion.published_at.desc(), PublishedVersion.id.desc())
            )
            if status is not None:
                stmt = stmt.where(PublishedVersion.status == status)
            return [self._to_version_snapshot(row) for row in session.scalars(stmt).all()]

    def patch_version(
        self,
        ctx: SecurityContext,
        package_id: str,
        version_ref: str,
        *,
        status: VersionStatus | None = None,
        labels: list[str] | None = None,
    ) -> VersionSnapshot:
        """Update status and labels of the latest revision in place.

        Neither field affects version content, so comparisons stay valid.
        """
        with self._session_factory() as session:
            row = self.require_version(session, package_id, version_ref)
            latest = self.latest_revision(session, package_id, row.version)
            if row.revision != latest:
                raise invalid_parameter_value("version", version_ref, debug="only the latest revision can be patched")
            if status is not None and status != row.status:
                available = self._roles.available_publish_statuses(ctx, package_id)
                if status.value not in available or row.status.value not in available:
                    raise insufficient_privileges(debug=f"allowed statuses: {available}")
                row.status = status
            if labels is not None:
                row.labels = sorted({label.strip() for label in labels if label.strip()})
            session.commit()
            session.refresh(row)
            return self._to_version_snapshot(row)

    def list_operations(self, package_id: str, version_ref: str, *, api_type: str | None = None) -> list[dict[str, Any]]:
        with self._session_factory() as session:
            row = self.require_version(session, package_id, version_ref)
            return self.operations_for_version(session, row.id, api_type=api_type)

    def operations_for_version(
        self, session: Session, version_row_id: int, *, api_type: str | None = None
    ) -> list[dict[str, Any]]:
        stmt = (
            select(PublishedOperation)
            .where(PublishedOperation.version_ref_id == version_row_id)
            .order_by(PublishedOperation.operation_id.asc())
        )
        if api_type is not None:
            stmt = stmt.where(PublishedOperation.api_type == api_type)
        return [
            {
                "operationId": op.operation_id,
                "apiType": op.api_type,
                "title": op.title,
                "method": op.method,
                "path": op.path,
                "documentSlug": op.document_slug,
                "deprecated": op.deprecated,
                "dataHash": op.data_hash,
            }
            for op in session.scalars(stmt).all()
        ]

    def documents_for_version(self, session: Session, version_row_id: int) -> list[PublishedDocument]:
        return list(
            session.scalars(
                select(PublishedDocument)
                .where(PublishedDocument.version_ref_id == version_row_id)
                .order_by(PublishedDocument.slug.asc())
            ).all()
        )

    def list_references(self, package_id: str, version_ref: str, *, recursive: bool = False) -> list[dict[str, Any]]:
        """List referenced versions; recursive traversal tolerates cycles."""
        with self._session_factory() as session:
            root = self.require_version(session, package_id, version_ref)
            visited: set[tuple[str, str, int]] = {(root.package_id, root.version, root.revision)}
            pending = [root]
            result: list[dict[str, Any]] = []
            while pending:
                current = pending.pop(0)
                edges = session.scalars(
                    select(VersionReference)
                    .where(VersionReference.version_ref_id == current.id)
                    .order_by(VersionReference.ref_package_id, VersionReference.ref_version)
                ).all()
                for edge in edges:
                    key = (edge.ref_package_id, edge.ref_version, edge.ref_revision)
                    if key in visited:
                        continue
                    visited.add(key)
                    result.append(
                        {
                            "packageId": edge.ref_package_id,
                            "version": f"{edge.ref_version}@{edge.ref_revision}",
                            "parentPackageId": current.package_id,
                            "parentVersion": f"{current.version}@{current.revision}",
                        }
                    )
                    if recursive:
                        target = self.find_version(session, edge.ref_package_id, edge.ref_version, edge.ref_revision)
                        if target is not None:
                            pending.append(target)
            return result

    def _to_package_snapshot(self, package: Package) -> PackageSnapshot:
        return PackageSnapshot(
            id=package.id,
            name=package.name,
            kind=package.kind,
            release_version_pattern=package.release_version_pattern,
            created_by=package.created_by,
            created_at=package.created_at,
        )

    def _to_version_snapshot(self, row: PublishedVersion) -> VersionSnapshot:
        return VersionSnapshot(
            package_id=row.package_id,
            version=row.version,
            revision=row.revision,
            status=row.status,
            previous_version=row.previous_version,
            previous_version_package_id=row.previous_version_package_id,
            labels=list(row.labels or []),
            build_id=row.build_id,
            created_by=row.created_by,
            published_at=row.published_at,
        )
