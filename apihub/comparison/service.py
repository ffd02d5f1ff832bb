from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from apihub.builds.config import ChangelogConfig
from apihub.builds.service import BuildService
from apihub.builds.types import BuildOutcome
from apihub.comparison.keys import make_comparison_id
from apihub.core.config import Settings
from apihub.core.context import SecurityContext
from apihub.core.errors import BadRequestError, ErrorCode, NotFoundError
from apihub.db.models import PackageKind, PublishedVersion, VersionComparison, VersionReference
from apihub.packages.service import PackageService
from apihub.storage.artifacts import ArtifactStore

logger = logging.getLogger(__name__)


def comparison_not_found(package_id: str, version: str, previous_package_id: str, previous_version: str) -> NotFoundError:
    return NotFoundError(
        ErrorCode.COMPARISON_NOT_FOUND,
        "Comparison of $packageId:$version with $previousPackageId:$previousVersion not found",
        params={
            "packageId": package_id,
            "version": version,
            "previousPackageId": previous_package_id,
            "previousVersion": previous_version,
        },
    )


class ComparisonService:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        artifacts: ArtifactStore | None = None,
        build_service: BuildService | None = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._packages = PackageService(settings, session_factory)
        self._builds = build_service or BuildService(settings, session_factory, artifacts)

    def _resolve_pair(
        self,
        session: Session,
        package_id: str,
        version_ref: str,
        previous_package_id: str | None,
        previous_version_ref: str | None,
    ) -> tuple[PublishedVersion, PublishedVersion]:
        current = self._packages.require_version(session, package_id, version_ref)
        if not previous_version_ref:
            if not current.previous_version:
                raise BadRequestError(
                    ErrorCode.NO_PREVIOUS_VERSION,
                    "Version $version of $packageId has no previous version",
                    params={"version": version_ref, "packageId": package_id},
                )
            previous_version_ref = current.previous_version
            previous_package_id = previous_package_id or current.previous_version_package_id
        previous = self._packages.require_version(session, previous_package_id or package_id, previous_version_ref)
        return current, previous

    def _find_valid(self, session: Session, current: PublishedVersion, previous: PublishedVersion) -> VersionComparison | None:
        row = session.get(
            VersionComparison,
            make_comparison_id(
                current.package_id,
                current.version,
                current.revision,
                previous.package_id,
                previous.version,
                previous.revision,
            ),
        )
        if row is None or not row.valid:
            return None
        return row

    def ensure_comparison(
        self,
        ctx: SecurityContext,
        package_id: str,
        version: str,
        previous_version_package_id: str | None = None,
        previous_version: str | None = None,
        *,
        re_calculate: bool = False,
        client_build: bool = False,
        builder_id: str | None = None,
    ) -> BuildOutcome:
        with self._session_factory() as session:
            current, previous = self._resolve_pair(
                session, package_id, version, previous_version_package_id, previous_version
            )
            exists = self._find_valid(session, current, previous) is not None
            config = ChangelogConfig(
                package_id=current.package_id,
                version=current.version,
                previous_version=previous.version,
                previous_version_package_id=previous.package_id,
                comparison_revision=current.revision,
                comparison_prev_revision=previous.revision,
                created_by=ctx.user_id,
            )
        outcome = self._builds.ensure_build(
            ctx,
            config,
            result_exists=exists,
            re_calculate=re_calculate,
            client_build=client_build,
            builder_id=builder_id,
        )
        logger.debug(
            "Comparison %s@%d vs %s:%s@%d -> %s",
            config.version,
            current.revision,
            previous.package_id,
            previous.version,
            previous.revision,
            outcome.state.value,
        )
        return outcome

    def get_summary(
        self,
        package_id: str,
        version: str,
        previous_version_package_id: str | None = None,
        previous_version: str | None = None,
    ) -> dict[str, Any]:
        with self._session_factory() as session:
            package = self._packages.require_package(session, package_id)
            current, previous = self._resolve_pair(
                session, package_id, version, previous_version_package_id, previous_version
            )
            row = self._find_valid(session, current, previous)
            if row is None:
                raise comparison_not_found(package_id, version, previous.package_id, previous.version)
            summary: dict[str, Any] = {
                "packageId": current.package_id,
                "version": f"{current.version}@{current.revision}",
                "previousVersionPackageId": previous.package_id,
                "previousVersion": f"{previous.version}@{previous.revision}",
                "noContent": row.no_content,
                "operationTypes": list(row.summary or []),
            }
            if package.kind == PackageKind.DASHBOARD:
                summary["refs"] = self._ref_summaries(session, current, previous)
            return summary

    def get_changes(
        self,
        package_id: str,
        version: str,
        previous_version_package_id: str | None = None,
        previous_version: str | None = None,
    ) -> list[dict[str, Any]]:
        with self._session_factory() as session:
            current, previous = self._resolve_pair(
                session, package_id, version, previous_version_package_id, previous_version
            )
            row = self._find_valid(session, current, previous)
            if row is None:
                raise comparison_not_found(package_id, version, previous.package_id, previous.version)
            return list(row.changes or [])

    def _ref_summaries(
        self, session: Session, current: PublishedVersion, previous: PublishedVersion
    ) -> list[dict[str, Any]]:
        def refs_of(row: PublishedVersion) -> dict[str, VersionReference]:
            edges = session.scalars(select(VersionReference).where(VersionReference.version_ref_id == row.id)).all()
            return {edge.ref_package_id: edge for edge in edges}

        current_refs = refs_of(current)
        previous_refs = refs_of(previous)
        result: list[dict[str, Any]] = []
        for ref_package_id in sorted(current_refs.keys() & previous_refs.keys()):
            now, before = current_refs[ref_package_id], previous_refs[ref_package_id]
            row = session.get(
                VersionComparison,
                make_comparison_id(
                    ref_package_id,
                    now.ref_version,
                    now.ref_revision,
                    ref_package_id,
                    before.ref_version,
                    before.ref_revision,
                ),
            )
            if row is None or not row.valid:
                continue
            result.append(
                {
                    "packageRef": f"{ref_package_id}@{now.ref_version}@{now.ref_revision}",
                    "previousPackageRef": f"{ref_package_id}@{before.ref_version}@{before.ref_revision}",
                    "noContent": row.no_content,
                    "operationTypes": list(row.summary or []),
                }
            )
        return result
