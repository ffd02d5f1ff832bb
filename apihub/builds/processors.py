"""Default in-process build computations.

A processor turns a running build (its stored config plus the unpacked
sources) into a result archive in the layout read by the finalizer.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Protocol

from sqlalchemy.orm import Session, sessionmaker

from apihub.builds.archive import write_result_archive
from apihub.builds.documents import (
    ParsedDocument,
    dump_document,
    filter_document,
    merge_documents,
    parse_document,
)
from apihub.builds.types import BuildSnapshot
from apihub.comparison.diff import diff_operations, summarize_changes
from apihub.core.config import Settings
from apihub.core.errors import ErrorCode, NotFoundError
from apihub.db.models import BuildType
from apihub.packages.groups import OperationGroupService
from apihub.packages.service import PackageService, published_version_not_found, split_version_ref
from apihub.storage.artifacts import ArtifactStore

logger = logging.getLogger(__name__)


class BuildProcessor(Protocol):
    def process(self, build: BuildSnapshot, sources: Mapping[str, bytes]) -> bytes: ...


class UnsupportedBuildTypeError(RuntimeError):
    pass


def _info(build: BuildSnapshot, **extra: Any) -> dict[str, Any]:
    return {
        "packageId": build.package_id,
        "version": build.version,
        "buildType": build.build_type.value,
        **extra,
    }


def _unique_slug(slug: str, taken: set[str]) -> str:
    candidate = slug
    suffix = 2
    while candidate in taken:
        candidate = f"{slug}-{suffix}"
        suffix += 1
    taken.add(candidate)
    return candidate


class _ProcessorBase:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session], artifacts: ArtifactStore):
        self._settings = settings
        self._session_factory = session_factory
        self._artifacts = artifacts
        self._packages = PackageService(settings, session_factory)

    def _version_operations(
        self, session: Session, package_id: str, version: str, revision: int | None
    ) -> tuple[int, list[dict[str, Any]]]:
        row = self._packages.find_version(session, package_id, version, revision)
        if row is None:
            ref = version if revision is None else f"{version}@{revision}"
            raise published_version_not_found(package_id, ref)
        return row.revision, self._packages.operations_for_version(session, row.id)


class PublishProcessor(_ProcessorBase):
    """Lists the published documents and operations; diffs against the previous version."""

    def process(self, build: BuildSnapshot, sources: Mapping[str, bytes]) -> bytes:
        config = build.config
        declared = {entry["fileId"]: entry for entry in config.get("files") or []}
        taken: set[str] = set()
        documents: list[dict[str, Any]] = []
        operations: dict[str, dict[str, Any]] = {}
        files: dict[str, bytes] = {}

        for name in sorted(sources):
            entry = declared.get(name)
            if declared and (entry is None or not entry.get("publish", True)):
                continue
            parsed: ParsedDocument = parse_document(name, sources[name])
            slug = _unique_slug((entry or {}).get("slug") or parsed.slug, taken)
            for operation in parsed.operations:
                operation["documentSlug"] = slug
                operations.setdefault(operation["operationId"], operation)
            documents.append(
                {
                    "fileId": name,
                    "slug": slug,
                    "filename": name,
                    "title": parsed.title,
                    "type": parsed.doc_type,
                    "format": parsed.doc_format,
                    "labels": list((entry or {}).get("labels") or []),
                    "operationIds": [operation["operationId"] for operation in parsed.operations],
                }
            )
            files[name] = sources[name]

        comparisons = []
        previous_version = config.get("previousVersion")
        if previous_version:
            previous_package = config.get("previousVersionPackageId") or build.package_id
            with self._session_factory() as session:
                previous_revision, previous_ops = self._version_operations(
                    session, previous_package, previous_version, None
                )
            changes = diff_operations(list(operations.values()), previous_ops)
            comparisons.append(
                {
                    "previousVersionPackageId": previous_package,
                    "previousVersion": previous_version,
                    "previousRevision": previous_revision,
                    "operationTypes": summarize_changes(changes),
                    "changes": changes,
                    "noContent": not changes,
                }
            )

        return write_result_archive(
            _info(build, status=config.get("status")),
            documents=documents,
            operations=list(operations.values()),
            comparisons=comparisons,
            files=files,
        )


class ChangelogProcessor(_ProcessorBase):
    """Diffs the operations of two published revisions."""

    def process(self, build: BuildSnapshot, sources: Mapping[str, bytes]) -> bytes:
        config = build.config
        with self._session_factory() as session:
            revision, current = self._version_operations(
                session, build.package_id, build.version, config.get("comparisonRevision")
            )
            previous_revision, previous = self._version_operations(
                session,
                config["previousVersionPackageId"],
                config["previousVersion"],
                config.get("comparisonPrevRevision"),
            )
        changes = diff_operations(current, previous)
        comparison = {
            "packageId": build.package_id,
            "version": build.version,
            "revision": revision,
            "previousVersionPackageId": config["previousVersionPackageId"],
            "previousVersion": config["previousVersion"],
            "previousRevision": previous_revision,
            "operationTypes": summarize_changes(changes),
            "changes": changes,
            "noContent": not changes,
        }
        return write_result_archive(_info(build), comparisons=[comparison])


class GroupProcessor(_ProcessorBase):
    """Cuts the documents of a version down to the operations of one group."""

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        artifacts: ArtifactStore,
        groups: OperationGroupService,
    ):
        super().__init__(settings, session_factory, artifacts)
        self._groups = groups

    def process(self, build: BuildSnapshot, sources: Mapping[str, bytes]) -> bytes:
        config = build.config
        version, revision = split_version_ref(build.version)
        with self._session_factory() as session:
            version_row = self._packages.find_version(session, build.package_id, version, revision)
            if version_row is None:
                raise published_version_not_found(build.package_id, build.version)
            group = self._groups.require_group(
                session, build.package_id, version, version_row.revision, config["apiType"], config["groupName"]
            )
            operation_ids = set(group.operation_ids or [])
            stored = [
                (document.file_id, document.content_ref)
                for document in self._packages.documents_for_version(session, version_row.id)
                if document.content_ref is not None
            ]

        bodies: list[tuple[ParsedDocument, dict[str, Any]]] = []
        for file_id, content_ref in stored:
            parsed = parse_document(file_id, self._artifacts.get_bytes(content_ref))
            if parsed.body is None or not parsed.doc_type.startswith("openapi"):
                continue
            filtered = filter_document(parsed.body, operation_ids)
            if filtered is not None:
                bodies.append((parsed, filtered))
        if not bodies:
            raise NotFoundError(
                ErrorCode.OPERATIONS_ARE_EMPTY,
                "Group $groupName has no operations with documents",
                params={"groupName": config["groupName"]},
            )

        files: dict[str, bytes] = {}
        documents: list[dict[str, Any]] = []
        if build.build_type == BuildType.MERGED_SPECIFICATION:
            doc_format = config.get("format") or "json"
            merged = merge_documents(
                [body for _parsed, body in bodies], title=config["groupName"], version=version
            )
            filename = f"{config['groupName']}.{doc_format}"
            files[filename] = dump_document(merged, doc_format)
            documents.append({"fileId": filename, "slug": config["groupName"], "format": doc_format})
        else:
            for parsed, body in bodies:
                doc_format = "json" if build.build_type == BuildType.DOCUMENT_GROUP else parsed.doc_format
                filename = f"{parsed.slug}.{doc_format}"
                files[filename] = dump_document(body, doc_format)
                documents.append(
                    {"fileId": filename, "slug": parsed.slug, "title": parsed.title, "format": doc_format}
                )

        return write_result_archive(
            _info(build, apiType=config["apiType"], groupName=config["groupName"], format=config.get("format")),
            documents=documents,
            files=files,
        )


def default_processors(
    settings: Settings,
    session_factory: sessionmaker[Session],
    artifacts: ArtifactStore,
    groups: OperationGroupService,
) -> dict[BuildType, BuildProcessor]:
    group_processor = GroupProcessor(settings, session_factory, artifacts, groups)
    return {
        BuildType.PUBLISH: PublishProcessor(settings, session_factory, artifacts),
        BuildType.CHANGELOG: ChangelogProcessor(settings, session_factory, artifacts),
        BuildType.DOCUMENT_GROUP: group_processor,
        BuildType.REDUCED_SOURCE_SPECIFICATIONS: group_processor,
        BuildType.MERGED_SPECIFICATION: group_processor,
    }
