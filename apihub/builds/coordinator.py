from __future__ import annotations

import logging

from sqlalchemy.orm import Session, sessionmaker

from apihub.builds.archive import pack_build_archive, read_sources_archive
from apihub.builds.finalizer import FinalizeOutcome, ResultFinalizer
from apihub.builds.service import BuildService
from apihub.builds.types import BuildSnapshot
from apihub.core.config import Settings
from apihub.core.context import SecurityContext
from apihub.core.errors import ApiHubError, invalid_parameter_value, required_params_missing
from apihub.db.models import BuildStatus
from apihub.storage.artifacts import ArtifactNotFoundError, ArtifactStore

logger = logging.getLogger(__name__)

REPORTABLE_STATUSES = (BuildStatus.RUNNING, BuildStatus.COMPLETE, BuildStatus.ERROR)
MAX_CLAIM_ATTEMPTS = 16


class BuilderCoordinator:
    """Pull-based handoff of builds to remote builders and intake of their reports."""

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        artifacts: ArtifactStore | None = None,
        build_service: BuildService | None = None,
        finalizer: ResultFinalizer | None = None,
    ):
        self._settings = settings
        self._artifacts = artifacts or ArtifactStore.from_settings(settings)
        self._builds = build_service or BuildService(settings, session_factory, self._artifacts)
        self._finalizer = finalizer or ResultFinalizer(settings, session_factory, self._artifacts, self._builds)

    def pull_free_build(self, builder_id: str) -> bytes | None:
        normalized = (builder_id or "").strip()
        if not normalized:
            raise required_params_missing("builderId")

        for _attempt in range(MAX_CLAIM_ATTEMPTS):
            build = self._builds.claim_for_builder(normalized)
            if build is None:
                return None
            try:
                return self._pack(build)
            except (ArtifactNotFoundError, ApiHubError) as exc:
                logger.warning("Sources of build %s are unusable: %s", build.id, exc)
                self._builds.fail_build(build.id, f"build sources are unavailable: {exc}")
        return None

    def _pack(self, build: BuildSnapshot) -> bytes:
        raw_sources = self._builds.load_sources(build.id)
        sources: dict[str, bytes] = {}
        if raw_sources is not None:
            sources = read_sources_archive(
                raw_sources,
                file_size_limit_bytes=self._settings.publish_file_size_limit_bytes,
                file_size_limit_mb=self._settings.publish_file_size_limit_mb,
            ).files
        config = dict(build.config)
        config["buildId"] = build.id
        logger.info("Handing build %s to builder %s", build.id, build.owner_builder_id)
        return pack_build_archive(config, sources)

    def report_status(
        self,
        ctx: SecurityContext,
        build_id: str,
        builder_id: str,
        status: str,
        *,
        details: str | None = None,
        result: bytes | None = None,
    ) -> BuildSnapshot | FinalizeOutcome:
        normalized_builder = (builder_id or "").strip()
        if not normalized_builder:
            raise required_params_missing("builderId")
        self._builds.validate_ownership(build_id, normalized_builder)

        try:
            target = BuildStatus(status)
        except ValueError as exc:
            raise invalid_parameter_value("status", status) from exc
        if target not in REPORTABLE_STATUSES:
            raise invalid_parameter_value("status", status, debug="builders may report running, complete or error")

        logger.debug("Builder %s reports %s for build %s (%s)", normalized_builder, status, build_id, ctx.describe())
        if target == BuildStatus.RUNNING:
            return self._builds.heartbeat(build_id)
        if target == BuildStatus.ERROR:
            return self._builds.fail_build(build_id, details or "build failed")
        if not result:
            raise required_params_missing("data")
        return self._finalizer.finalize(build_id, result)
