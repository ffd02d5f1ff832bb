"""Turns a completed result archive into persisted versions, comparisons and
transformed documents.

The build is moved to ``complete`` before records are written. When record
persistence fails afterwards the build stays complete with ``finalized=False``
and consumers resubmit on their next request.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from apihub.builds.archive import ResultArchive, read_result_archive
from apihub.builds.service import BuildAlreadyFinishedError, BuildService
from apihub.builds.types import BuildSnapshot
from apihub.comparison.keys import make_comparison_id
from apihub.core.config import Settings
from apihub.core.errors import (
    ApiHubError,
    BadRequestError,
    ErrorCode,
    insufficient_privileges,
    invalid_parameter_value,
    package_not_found,
)
from apihub.db.models import (
    GROUP_BUILD_TYPES,
    Build,
    BuildStatus,
    BuildType,
    Package,
    PublishedDocument,
    PublishedOperation,
    PublishedVersion,
    TransformedDocuments,
    VersionComparison,
    VersionReference,
    VersionStatus,
)
from apihub.packages.groups import stored_format
from apihub.packages.service import PackageService, split_version_ref
from apihub.storage.artifacts import ArtifactStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FinalizeOutcome:
    build_id: str
    completed: bool
    finalized: bool
    revision: int | None = None


ComparisonKey = tuple[str, str, int, str, str, int]


def _invalid_result(name: str, debug: str) -> BadRequestError:
    return BadRequestError(
        ErrorCode.INVALID_PACKAGED_FILE,
        "Packaged file $file is invalid",
        params={"file": name},
        debug=debug,
    )


COMPARISON_REVISION_FIELDS = ("revision", "previousRevision")
COMPARISON_TEXT_FIELDS = ("packageId", "version", "previousVersion", "previousVersionPackageId")
COMPARISON_LIST_FIELDS = ("operationTypes", "changes")


def _check_comparison_fields(index: int, comparison: dict[str, Any]) -> None:
    for name in COMPARISON_REVISION_FIELDS:
        value = comparison.get(name)
        if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 0):
            raise _invalid_result("comparisons.json", f"entry {index} has a non-integer {name}: {value!r}")
    for name in COMPARISON_TEXT_FIELDS:
        value = comparison.get(name)
        if value is not None and not isinstance(value, str):
            raise _invalid_result("comparisons.json", f"entry {index} has a non-string {name}")
    for name in COMPARISON_LIST_FIELDS:
        value = comparison.get(name)
        if value is not None and not isinstance(value, list):
            raise _invalid_result("comparisons.json", f"entry {index} has a non-list {name}")


class ResultFinalizer:
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
        self._builds = build_service or BuildService(settings, session_factory, self._artifacts)
        self._packages = PackageService(settings, session_factory)

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def finalize(self, build_id: str, result: bytes) -> FinalizeOutcome:
        build = self._builds.get_build(build_id)
        if build.status in (BuildStatus.COMPLETE, BuildStatus.ERROR):
            raise BuildAlreadyFinishedError(build.id, build.status)
        if build.status != BuildStatus.RUNNING:
            raise invalid_parameter_value("status", BuildStatus.COMPLETE.value, debug="build was never started")

        try:
            archive = read_result_archive(result)
            self._validate(build, archive)
        except ApiHubError as exc:
            self._builds.fail_build(build_id, exc.rendered_message() + (f": {exc.debug}" if exc.debug else ""))
            raise

        result_ref = self._artifacts.put_bytes(result)
        if not self._builds.mark_complete(build_id, result_ref):
            logger.info("Build %s left running before its result was stored; discarding result", build_id)
            return FinalizeOutcome(build_id=build_id, completed=False, finalized=False)

        try:
            revision = self._persist(build, archive, result_ref)
        except Exception as exc:  # noqa: BLE001 - the build stays complete and unfinalized
            logger.exception("Failed to persist result of build %s", build_id)
            self._record_persist_failure(build_id, str(exc))
            return FinalizeOutcome(build_id=build_id, completed=True, finalized=False)

        logger.info("Finalized %s build %s", build.build_type.value, build_id)
        return FinalizeOutcome(build_id=build_id, completed=True, finalized=True, revision=revision)

    # validation

    def _validate(self, build: BuildSnapshot, archive: ResultArchive) -> None:
        info = archive.info
        declared_package = info.get("packageId")
        if declared_package is not None and declared_package != build.package_id:
            raise BadRequestError(
                ErrorCode.PACKAGE_ID_MISMATCH,
                "Package id $packageId from the result doesn't match the build package id $buildPackageId",
                params={"packageId": declared_package, "buildPackageId": build.package_id},
            )
        declared_type = info.get("buildType")
        if declared_type is not None and declared_type != build.build_type.value:
            raise _invalid_result("info.json", f"buildType {declared_type} != {build.build_type.value}")
        declared_version = info.get("version")
        if declared_version is not None and declared_version != build.version:
            raise _invalid_result("info.json", f"version {declared_version} != {build.version}")

        for index, document in enumerate(archive.documents):
            if not isinstance(document, dict) or not (document.get("slug") or document.get("fileId")):
                raise _invalid_result("documents.json", f"entry {index} has neither slug nor fileId")
        for index, operation in enumerate(archive.operations):
            if not isinstance(operation, dict) or not operation.get("operationId"):
                raise _invalid_result("operations.json", f"entry {index} has no operationId")
        for index, comparison in enumerate(archive.comparisons):
            if not isinstance(comparison, dict):
                raise _invalid_result("comparisons.json", f"entry {index} is not an object")
            _check_comparison_fields(index, comparison)

        if build.build_type == BuildType.PUBLISH:
            status = build.config.get("status")
            if status not in build.available_statuses:
                raise insufficient_privileges(
                    debug=f"version status {status} is not in {sorted(build.available_statuses)}"
                )

    # persistence

    def _persist(self, build: BuildSnapshot, archive: ResultArchive, result_ref: str) -> int | None:
        with self._session_factory() as session:
            revision: int | None = None
            if build.build_type == BuildType.PUBLISH:
                revision = self._persist_publish(session, build, archive)
            elif build.build_type == BuildType.CHANGELOG:
                self._persist_changelog(session, build, archive, result_ref)
            elif build.build_type in GROUP_BUILD_TYPES:
                self._persist_group(session, build, result_ref)
            row = session.get(Build, build.id)
            if row is not None:
                row.finalized = True
            session.commit()
            return revision

    def _persist_publish(self, session: Session, build: BuildSnapshot, archive: ResultArchive) -> int:
        config = build.config
        package = session.scalar(select(Package).where(Package.id == build.package_id).with_for_update())
        if package is None:
            raise package_not_found(build.package_id)

        latest = self._packages.latest_revision(session, build.package_id, build.version)
        revision = latest + 1
        metadata = config.get("metadata") or {}
        labels = {*metadata.get("versionLabels", []), *archive.info.get("versionLabels", [])}
        version_row = PublishedVersion(
            package_id=build.package_id,
            version=build.version,
            revision=revision,
            status=VersionStatus(config["status"]),
            previous_version=config.get("previousVersion") or None,
            previous_version_package_id=config.get("previousVersionPackageId") or None,
            labels=sorted(label for label in labels if label),
            build_id=build.id,
            created_by=build.created_by,
            published_at=self._now(),
        )
        session.add(version_row)
        session.flush()

        seen_slugs: set[str] = set()
        for document in archive.documents:
            file_id = str(document.get("fileId") or document["slug"])
            slug = str(document.get("slug") or file_id)
            if slug in seen_slugs:
                raise _invalid_result("documents.json", f"duplicate slug {slug}")
            seen_slugs.add(slug)
            content = archive.files.get(str(document.get("filename") or file_id))
            content_ref = self._artifacts.put_bytes(content) if content is not None else None
            checksum = document.get("checksum") or (hashlib.sha256(content).hexdigest() if content is not None else "")
            session.add(
                PublishedDocument(
                    version_ref_id=version_row.id,
                    slug=slug,
                    file_id=file_id,
                    title=str(document.get("title") or file_id),
                    doc_type=str(document.get("type") or "unknown"),
                    doc_format=str(document.get("format") or "unknown"),
                    checksum=checksum,
                    content_ref=content_ref,
                    operation_ids=list(document.get("operationIds") or []),
                )
            )

        seen_operations: set[str] = set()
        for operation in archive.operations:
            operation_id = str(operation["operationId"])
            if operation_id in seen_operations:
                continue
            seen_operations.add(operation_id)
            session.add(
                PublishedOperation(
                    version_ref_id=version_row.id,
                    operation_id=operation_id,
                    api_type=str(operation.get("apiType") or "rest"),
                    title=str(operation.get("title") or ""),
                    method=operation.get("method"),
                    path=operation.get("path"),
                    document_slug=operation.get("documentSlug"),
                    deprecated=bool(operation.get("deprecated", False)),
                    data_hash=str(operation.get("dataHash") or ""),
                )
            )

        for ref in config.get("refs") or []:
            ref_version, ref_revision = split_version_ref(ref["version"])
            if ref_revision is None:
                ref_revision = self._packages.latest_revision(session, ref["refId"], ref_version)
            session.merge(
                VersionReference(
                    version_ref_id=version_row.id,
                    ref_package_id=ref["refId"],
                    ref_version=ref_version,
                    ref_revision=ref_revision,
                )
            )

        if latest:
            self._invalidate_superseded(session, build.package_id, build.version, revision)

        default_prev_package = config.get("previousVersionPackageId") or build.package_id
        for comparison in archive.comparisons:
            prev_version = comparison.get("previousVersion") or config.get("previousVersion")
            if not prev_version:
                continue
            prev_package = comparison.get("previousVersionPackageId") or default_prev_package
            prev_revision = comparison.get("previousRevision") or self._packages.latest_revision(
                session, prev_package, prev_version
            )
            key: ComparisonKey = (
                comparison.get("packageId") or build.package_id,
                comparison.get("version") or build.version,
                int(comparison.get("revision") or revision),
                prev_package,
                prev_version,
                int(prev_revision),
            )
            self._upsert_comparison(session, key, comparison, build_id=build.id, result_ref=None)

        logger.info("Published %s@%s revision %d", build.package_id, build.version, revision)
        return revision

    def _invalidate_superseded(self, session: Session, package_id: str, version: str, revision: int) -> None:
        session.execute(
            update(VersionComparison)
            .where(
                VersionComparison.valid.is_(True),
                or_(
                    and_(
                        VersionComparison.package_id == package_id,
                        VersionComparison.version == version,
                        VersionComparison.revision < revision,
                    ),
                    and_(
                        VersionComparison.previous_package_id == package_id,
                        VersionComparison.previous_version == version,
                        VersionComparison.previous_revision < revision,
                    ),
                ),
            )
            .values(valid=False, updated_at=self._now())
        )

    def _persist_changelog(
        self, session: Session, build: BuildSnapshot, archive: ResultArchive, result_ref: str
    ) -> None:
        config = build.config
        main_key: ComparisonKey = (
            build.package_id,
            build.version,
            int(config.get("comparisonRevision") or self._packages.latest_revision(session, build.package_id, build.version)),
            config["previousVersionPackageId"],
            config["previousVersion"],
            int(
                config.get("comparisonPrevRevision")
                or self._packages.latest_revision(session, config["previousVersionPackageId"], config["previousVersion"])
            ),
        )
        stored: set[str] = set()
        for comparison in archive.comparisons:
            key: ComparisonKey = (
                comparison.get("packageId") or main_key[0],
                comparison.get("version") or main_key[1],
                int(comparison.get("revision") or main_key[2]),
                comparison.get("previousVersionPackageId") or main_key[3],
                comparison.get("previousVersion") or main_key[4],
                int(comparison.get("previousRevision") or main_key[5]),
            )
            stored.add(self._upsert_comparison(session, key, comparison, build_id=build.id, result_ref=result_ref))
        if make_comparison_id(*main_key) not in stored:
            self._upsert_comparison(session, main_key, {"noContent": True}, build_id=build.id, result_ref=result_ref)

    def _upsert_comparison(
        self,
        session: Session,
        key: ComparisonKey,
        payload: dict[str, Any],
        *,
        build_id: str,
        result_ref: str | None,
    ) -> str:
        comparison_id = make_comparison_id(*key)
        now = self._now()
        row = session.get(VersionComparison, comparison_id)
        if row is None:
            row = VersionComparison(
                comparison_id=comparison_id,
                package_id=key[0],
                version=key[1],
                revision=key[2],
                previous_package_id=key[3],
                previous_version=key[4],
                previous_revision=key[5],
                created_at=now,
            )
            session.add(row)
        row.valid = True
        row.no_content = bool(payload.get("noContent", False))
        row.summary = list(payload.get("operationTypes") or [])
        row.changes = list(payload.get("changes") or [])
        row.result_ref = result_ref
        row.build_id = build_id
        row.updated_at = now
        return comparison_id

    def _persist_group(self, session: Session, build: BuildSnapshot, result_ref: str) -> None:
        config = build.config
        version, revision = split_version_ref(build.version)
        if revision is None:
            revision = self._packages.latest_revision(session, build.package_id, version)
        doc_format = stored_format(config.get("format"))
        row = session.scalar(
            select(TransformedDocuments).where(
                TransformedDocuments.package_id == build.package_id,
                TransformedDocuments.version == version,
                TransformedDocuments.revision == revision,
                TransformedDocuments.api_type == config["apiType"],
                TransformedDocuments.group_name == config["groupName"],
                TransformedDocuments.build_type == build.build_type,
                TransformedDocuments.doc_format == doc_format,
            )
        )
        if row is None:
            row = TransformedDocuments(
                package_id=build.package_id,
                version=version,
                revision=revision,
                api_type=config["apiType"],
                group_name=config["groupName"],
                build_type=build.build_type,
                doc_format=doc_format,
            )
            session.add(row)
        row.result_ref = result_ref
        row.build_id = build.id
        row.created_at = self._now()

    def _record_persist_failure(self, build_id: str, details: str) -> None:
        with self._session_factory() as session:
            row = session.get(Build, build_id)
            if row is None:
                return
            row.details = f"result persistence failed: {details}"[: self._settings.build_details_max_length]
            session.commit()
