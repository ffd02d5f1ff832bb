from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, and_, bindparam, delete, or_, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from apihub.builds.archive import read_sources_archive
from apihub.builds.config import (
    ChangelogConfig,
    GroupBuildConfig,
    PublishConfig,
    config_to_wire,
)
from apihub.builds.fingerprint import fingerprint_config
from apihub.builds.types import (
    BuildListResult,
    BuildOutcome,
    BuildSnapshot,
    BuildSubmission,
    OutcomeState,
)
from apihub.core.config import Settings
from apihub.core.context import RoleService, SecurityContext
from apihub.core.errors import (
    BadRequestError,
    ConflictError,
    ErrorCode,
    ForbiddenError,
    NotFoundError,
    insufficient_privileges,
    invalid_parameter_value,
    required_params_missing,
)
from apihub.db.models import (
    ACTIVE_BUILD_STATUSES,
    TERMINAL_BUILD_STATUSES,
    Build,
    BuildDependency,
    BuildSource,
    BuildStatus,
    BuildType,
    PrunedBuild,
    VersionStatus,
)
from apihub.packages.service import PackageService, split_version_ref, validate_version_name
from apihub.storage.artifacts import ArtifactStore

logger = logging.getLogger(__name__)


class BuildNotFoundError(NotFoundError):
    def __init__(self, build_id: str):
        super().__init__(ErrorCode.BUILD_NOT_FOUND, "Build with id $buildId not found", params={"buildId": build_id})


class BuildPrunedError(NotFoundError):
    def __init__(self, build_id: str):
        super().__init__(
            ErrorCode.BUILD_PRUNED,
            "Build with id $buildId was pruned by retention policy",
            params={"buildId": build_id},
        )


class BuildAlreadyFinishedError(BadRequestError):
    def __init__(self, build_id: str, status: BuildStatus):
        super().__init__(
            ErrorCode.BUILD_ALREADY_FINISHED,
            "Build $buildId is already finished with status $status",
            params={"buildId": build_id, "status": status.value},
        )


class BuildOwnershipError(ForbiddenError):
    def __init__(self, build_id: str, builder_id: str):
        super().__init__(
            ErrorCode.NOT_OWNER,
            "Builder $builderId is not the owner of build $buildId",
            params={"builderId": builder_id, "buildId": build_id},
        )


ALLOWED_TRANSITIONS: dict[BuildStatus, set[BuildStatus]] = {
    BuildStatus.NOT_STARTED: {BuildStatus.RUNNING, BuildStatus.ERROR},
    BuildStatus.RUNNING: {BuildStatus.COMPLETE, BuildStatus.ERROR},
    BuildStatus.COMPLETE: set(),
    BuildStatus.ERROR: set(),
}

TIMEOUT_DETAILS = "timeout"
KEEPALIVE_DETAILS = "build keepalive timeout exceeded"

_DEPENDENCIES_PENDING_SQL = """
    NOT EXISTS (
        SELECT 1
        FROM build_dependencies dep
        JOIN builds parent ON parent.id = dep.depends_on_id
        WHERE dep.build_id = builds.id
          AND parent.status IN ('none', 'running')
    )
"""


class BuildService:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        artifacts: ArtifactStore | None = None,
    ):
        self._settings = settings
        self._session_factory = session_factory
        self._artifacts = artifacts or ArtifactStore.from_settings(settings)
        self._packages = PackageService(settings, session_factory)
        self._roles = RoleService(settings)

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def _coerce_utc(self, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _bound_details(self, details: str | None) -> str | None:
        if details is None:
            return None
        limit = self._settings.build_details_max_length
        if len(details) <= limit:
            return details
        return details[: limit - 3] + "..."

    def _enforce_transition(self, build: Build, to_status: BuildStatus) -> None:
        if build.status in TERMINAL_BUILD_STATUSES:
            raise BuildAlreadyFinishedError(build.id, build.status)
        if to_status not in ALLOWED_TRANSITIONS[build.status]:
            raise invalid_parameter_value("status", to_status.value, debug=f"current status is {build.status.value}")

    # submission

    def submit_publish(
        self,
        ctx: SecurityContext,
        config: PublishConfig,
        *,
        sources: bytes | None = None,
        client_build: bool = False,
        builder_id: str | None = None,
        dependencies: Sequence[str] = (),
        resolve_refs: bool = True,
        resolve_conflicts: bool = True,
        allow_reuse: bool = True,
        timeout_seconds: int | None = None,
        priority: int = 0,
    ) -> BuildSubmission:
        available = self._roles.available_publish_statuses(ctx, config.package_id)
        with self._session_factory() as session:
            package = self._packages.require_package(session, config.package_id)
            validate_version_name("version", config.version)
            if config.previous_version:
                validate_version_name("previousVersion", config.previous_version)
            if (
                config.status == VersionStatus.RELEASE
                and package.release_version_pattern
                and not re.fullmatch(package.release_version_pattern, config.version)
            ):
                raise BadRequestError(
                    ErrorCode.RELEASE_VERSION_DOESNT_MATCH_PATTERN,
                    "Release version $version doesn't match pattern $pattern",
                    params={"version": config.version, "pattern": package.release_version_pattern},
                )
            if config.previous_version_package_id == config.package_id:
                raise BadRequestError(
                    ErrorCode.INVALID_PREVIOUS_VERSION_PACKAGE,
                    "previousVersionPackageId must differ from packageId $packageId",
                    params={"packageId": config.package_id},
                )
            if config.previous_version == config.version and not config.previous_version_package_id:
                raise BadRequestError(
                    ErrorCode.VERSION_IS_EQUAL_TO_PREVIOUS_VERSION,
                    "Version $version can't be equal to its previous version",
                    params={"version": config.version},
                )
            if config.previous_version:
                self._packages.require_version(
                    session, config.previous_version_package_id or config.package_id, config.previous_version
                )
            refs = []
            for ref in config.refs:
                ref_version, ref_revision = split_version_ref(ref.version)
                row = self._packages.require_version(session, ref.ref_id, ref.version)
                if ref_revision is None:
                    ref = ref.model_copy(update={"version": f"{ref_version}@{row.revision}"})
                refs.append(ref)
            self._require_dependencies(session, dependencies)

        if config.status.value not in available:
            raise insufficient_privileges(debug=f"status {config.status.value} is not in {available}")

        effective = config.model_copy(
            update={
                "refs": refs,
                "resolve_refs": resolve_refs,
                "resolve_conflicts": resolve_conflicts,
                "unresolved_refs": bool(dependencies),
            }
        )
        return self._submit(
            ctx,
            effective,
            sources=sources,
            client_build=client_build,
            builder_id=builder_id,
            dependencies=dependencies,
            allow_reuse=allow_reuse,
            timeout_seconds=timeout_seconds,
            priority=priority,
            available_statuses=available,
        )

    def submit_changelog(
        self,
        ctx: SecurityContext,
        config: ChangelogConfig,
        *,
        client_build: bool = False,
        builder_id: str | None = None,
        timeout_seconds: int | None = None,
        priority: int = 0,
    ) -> BuildSubmission:
        return self._submit(
            ctx,
            config,
            client_build=client_build,
            builder_id=builder_id,
            allow_reuse=False,
            timeout_seconds=timeout_seconds,
            priority=priority,
        )

    def submit_group_transform(
        self,
        ctx: SecurityContext,
        config: GroupBuildConfig,
        *,
        client_build: bool = False,
        builder_id: str | None = None,
        timeout_seconds: int | None = None,
        priority: int = 0,
    ) -> BuildSubmission:
        return self._submit(
            ctx,
            config,
            client_build=client_build,
            builder_id=builder_id,
            allow_reuse=False,
            timeout_seconds=timeout_seconds,
            priority=priority,
        )

    def _require_dependencies(self, session: Session, dependencies: Sequence[str]) -> None:
        if not dependencies:
            return
        found = set(session.scalars(select(Build.id).where(Build.id.in_(list(dependencies)))).all())
        missing = [dep for dep in dependencies if dep not in found]
        if missing:
            raise invalid_parameter_value("dependencies", ",".join(missing), debug="unknown publish ids")

    def _submit(
        self,
        ctx: SecurityContext,
        config: Any,
        *,
        sources: bytes | None = None,
        client_build: bool,
        builder_id: str | None,
        dependencies: Sequence[str] = (),
        allow_reuse: bool,
        timeout_seconds: int | None,
        priority: int,
        available_statuses: Sequence[str] = (),
    ) -> BuildSubmission:
        normalized_builder = (builder_id or "").strip() or None
        if client_build and normalized_builder is None:
            raise required_params_missing("builderId")

        source_hashes: list[str] = []
        if sources is not None:
            archive = read_sources_archive(
                sources,
                file_size_limit_bytes=self._settings.publish_file_size_limit_bytes,
                file_size_limit_mb=self._settings.publish_file_size_limit_mb,
            )
            source_hashes = archive.sorted_hashes

        wire = config_to_wire(config)
        wire["createdBy"] = ctx.user_id
        fingerprint = fingerprint_config(wire, source_hashes)
        now = self._now()
        timeout = timeout_seconds or self._settings.build_default_timeout_seconds
        deadline_at = now + timedelta(seconds=timeout) if timeout else None

        for _attempt in range(3):
            with self._session_factory() as session:
                self.expire_overdue_builds(session=session)
                if allow_reuse:
                    reusable = self._find_reusable(session, fingerprint, now)
                    if reusable is not None:
                        session.commit()
                        logger.info("Reusing build %s for fingerprint %s", reusable.id, fingerprint)
                        return BuildSubmission(build_id=reusable.id, config=dict(reusable.config), reused=True)

                active = self._find_active(session, fingerprint)
                if active is not None:
                    session.commit()
                    return BuildSubmission(build_id=active.id, config=dict(active.config), existing=True)

                build_id = str(uuid4())
                if wire["buildType"] == BuildType.PUBLISH.value:
                    wire["publishId"] = build_id
                source_ref = self._artifacts.put_bytes(sources) if sources is not None else None
                build = Build(
                    id=build_id,
                    build_type=BuildType(wire["buildType"]),
                    status=BuildStatus.NOT_STARTED,
                    package_id=config.package_id,
                    version=config.version,
                    fingerprint=fingerprint,
                    config=wire,
                    client_build=client_build,
                    owner_builder_id=normalized_builder if client_build else None,
                    priority=priority,
                    available_statuses=list(available_statuses),
                    created_by=ctx.user_id,
                    created_at=now,
                    last_active=now,
                    deadline_at=deadline_at,
                )
                session.add(build)
                session.add(BuildSource(build_id=build_id, source_ref=source_ref, source_hashes=source_hashes))
                for dependency in dict.fromkeys(dependencies):
                    session.add(BuildDependency(build_id=build_id, depends_on_id=dependency))
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    active = self._find_active(session, fingerprint)
                    if active is not None:
                        return BuildSubmission(build_id=active.id, config=dict(active.config), existing=True)
                    continue
                logger.info(
                    "Created %s build %s for %s@%s (client=%s)",
                    build.build_type.value,
                    build_id,
                    config.package_id,
                    config.version,
                    client_build,
                )
                return BuildSubmission(build_id=build_id, config=dict(wire))

        raise ConflictError(
            ErrorCode.BUILD_CONFLICT,
            "Failed to register build for fingerprint $fingerprint",
            params={"fingerprint": fingerprint},
        )

    def _find_active(self, session: Session, fingerprint: str) -> Build | None:
        return session.scalar(
            select(Build).where(Build.fingerprint == fingerprint, Build.status.in_(ACTIVE_BUILD_STATUSES))
        )

    def _find_reusable(self, session: Session, fingerprint: str, now: datetime) -> Build | None:
        cutoff = now - timedelta(seconds=self._settings.build_reuse_ttl_seconds)
        return session.scalar(
            select(Build)
            .where(
                Build.fingerprint == fingerprint,
                Build.status == BuildStatus.COMPLETE,
                Build.finalized.is_(True),
                Build.finished_at >= cutoff,
            )
            .order_by(Build.finished_at.desc(), Build.id.desc())
            .limit(1)
        )

    def sourceless_fingerprint(self, config: ChangelogConfig | GroupBuildConfig) -> str:
        """Fingerprint of a changelog or group build, matching what submission stores. These never carry sources."""
        return fingerprint_config(config_to_wire(config), ())

    def find_latest_build(self, fingerprint: str) -> BuildSnapshot | None:
        with self._session_factory() as session:
            self._reap(session)
            build = session.scalar(
                select(Build)
                .where(Build.fingerprint == fingerprint)
                .order_by(Build.created_at.desc(), Build.id.desc())
                .limit(1)
            )
            session.commit()
            return None if build is None else self._to_snapshot(build)

    def ensure_build(
        self,
        ctx: SecurityContext,
        config: ChangelogConfig | GroupBuildConfig,
        *,
        result_exists: bool,
        re_calculate: bool = False,
        client_build: bool = False,
        builder_id: str | None = None,
    ) -> BuildOutcome:
        """Return the cached result state, the in-flight build, or a fresh build."""
        if client_build and not (builder_id or "").strip():
            raise required_params_missing("builderId")
        if not re_calculate:
            if result_exists:
                return BuildOutcome(state=OutcomeState.OK)
            latest = self.find_latest_build(self.sourceless_fingerprint(config))
            if latest is not None and latest.status == BuildStatus.ERROR:
                return BuildOutcome(
                    state=OutcomeState.ACCEPTED,
                    build_id=latest.id,
                    status=BuildStatus.ERROR,
                    message=latest.details,
                )
            if latest is not None and latest.status in ACTIVE_BUILD_STATUSES:
                return BuildOutcome(state=OutcomeState.ACCEPTED, build_id=latest.id, status=BuildStatus.RUNNING)

        if isinstance(config, ChangelogConfig):
            submission = self.submit_changelog(ctx, config, client_build=client_build, builder_id=builder_id)
        else:
            submission = self.submit_group_transform(ctx, config, client_build=client_build, builder_id=builder_id)
        if client_build:
            return BuildOutcome(
                state=OutcomeState.CREATED,
                build_id=submission.build_id,
                status=BuildStatus.NOT_STARTED,
                config=submission.config,
            )
        return BuildOutcome(state=OutcomeState.ACCEPTED, build_id=submission.build_id, status=BuildStatus.RUNNING)

    # status

    def _require_build(self, session: Session, build_id: str) -> Build:
        build = session.get(Build, build_id)
        if build is not None:
            return build
        if session.get(PrunedBuild, build_id) is not None:
            raise BuildPrunedError(build_id)
        raise BuildNotFoundError(build_id)

    def get_build(self, build_id: str) -> BuildSnapshot:
        with self._session_factory() as session:
            self._reap(session)
            build = self._require_build(session, build_id)
            session.commit()
            return self._to_snapshot(build)

    def get_status(self, build_id: str) -> BuildSnapshot:
        return self.get_build(build_id)

    def get_statuses(self, build_ids: Sequence[str]) -> list[BuildSnapshot]:
        with self._session_factory() as session:
            self._reap(session)
            builds = [self._require_build(session, build_id) for build_id in dict.fromkeys(build_ids)]
            session.commit()
            return [self._to_snapshot(build) for build in builds]

    def list_builds(
        self,
        *,
        package_id: str | None = None,
        status: BuildStatus | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> BuildListResult:
        bounded_limit = max(1, min(limit, self._settings.max_page_size))
        with self._session_factory() as session:
            stmt = select(Build).order_by(Build.created_at.desc(), Build.id.desc()).limit(bounded_limit + 1)
            if package_id is not None:
                stmt = stmt.where(Build.package_id == package_id)
            if status is not None:
                stmt = stmt.where(Build.status == status)
            if cursor:
                anchor = session.get(Build, cursor)
                if anchor is None:
                    raise invalid_parameter_value("cursor", cursor)
                stmt = stmt.where(
                    or_(
                        Build.created_at < anchor.created_at,
                        and_(Build.created_at == anchor.created_at, Build.id < cursor),
                    )
                )
            rows = list(session.scalars(stmt).all())
            items = rows[:bounded_limit]
            next_cursor = items[-1].id if len(rows) > bounded_limit and items else None
            return BuildListResult(items=[self._to_snapshot(row) for row in items], next_cursor=next_cursor)

    def validate_ownership(self, build_id: str, builder_id: str) -> BuildSnapshot:
        with self._session_factory() as session:
            build = self._require_build(session, build_id)
            if build.owner_builder_id != builder_id:
                raise BuildOwnershipError(build_id, builder_id)
            return self._to_snapshot(build)

    def load_sources(self, build_id: str) -> bytes | None:
        with self._session_factory() as session:
            source = session.get(BuildSource, build_id)
            if source is None or source.source_ref is None:
                return None
            ref = source.source_ref
        return self._artifacts.get_bytes(ref)

    # claiming

    def claim_internal(self, executor_id: str) -> BuildSnapshot | None:
        return self._claim(
            owner_id=executor_id,
            eligibility="client_build = :no AND owner_builder_id IS NULL",
        )

    def claim_for_builder(self, builder_id: str) -> BuildSnapshot | None:
        if self._settings.executor_enabled:
            eligibility = "client_build = :yes AND owner_builder_id = :owner"
        else:
            eligibility = "(owner_builder_id IS NULL OR owner_builder_id = :owner)"
        return self._claim(owner_id=builder_id, eligibility=eligibility)

    def _claim(self, *, owner_id: str, eligibility: str) -> BuildSnapshot | None:
        normalized_owner = owner_id.strip()
        if not normalized_owner:
            raise ValueError("owner id cannot be blank")

        statement = text(
            f"""
            WITH candidate AS (
                SELECT id
                FROM builds
                WHERE status = 'none'
                  AND {eligibility}
                  AND (deadline_at IS NULL OR deadline_at > :now)
                  AND {_DEPENDENCIES_PENDING_SQL}
                ORDER BY priority DESC, created_at ASC, id ASC
                LIMIT 1
            )
            UPDATE builds
            SET status = 'running',
                owner_builder_id = :owner,
                started_at = :now,
                last_active = :now
            WHERE id IN (SELECT id FROM candidate)
              AND status = 'none'
            RETURNING id
            """
        )
        params: dict[str, Any] = {"now": self._now(), "owner": normalized_owner}
        typed = [bindparam("now", type_=DateTime(timezone=True))]
        for flag, value in (("yes", True), ("no", False)):
            if f":{flag}" in eligibility:
                typed.append(bindparam(flag, type_=Boolean))
                params[flag] = value
        statement = statement.bindparams(*typed)
        with self._session_factory() as session:
            self._reap(session)
            session.commit()
            claimed_id = session.execute(statement, params).scalar_one_or_none()
            if claimed_id is None:
                session.rollback()
                return None
            session.commit()
            build = session.get(Build, claimed_id)
            if build is None:
                raise BuildNotFoundError(claimed_id)
            logger.info("Build %s claimed by %s", claimed_id, normalized_owner)
            return self._to_snapshot(build)

    # transitions

    def heartbeat(self, build_id: str) -> BuildSnapshot:
        with self._session_factory() as session:
            build = self._require_build(session, build_id)
            now = self._now()
            if build.status == BuildStatus.NOT_STARTED:
                self._enforce_transition(build, BuildStatus.RUNNING)
                build.status = BuildStatus.RUNNING
                build.started_at = now
            elif build.status != BuildStatus.RUNNING:
                raise BuildAlreadyFinishedError(build.id, build.status)
            build.last_active = now
            session.commit()
            return self._to_snapshot(build)

    def fail_build(self, build_id: str, details: str) -> BuildSnapshot:
        with self._session_factory() as session:
            build = self._require_build(session, build_id)
            self._enforce_transition(build, BuildStatus.ERROR)
            now = self._now()
            build.status = BuildStatus.ERROR
            build.details = self._bound_details(details)
            build.finished_at = now
            build.last_active = now
            session.commit()
            logger.info("Build %s failed: %s", build_id, build.details)
            return self._to_snapshot(build)

    def mark_complete(self, build_id: str, result_ref: str) -> bool:
        """Compare-and-set running -> complete; False when the build already left running."""
        now = self._now()
        with self._session_factory() as session:
            build = self._require_build(session, build_id)
            if build.status != BuildStatus.RUNNING:
                return False
            self._enforce_transition(build, BuildStatus.COMPLETE)
            build.status = BuildStatus.COMPLETE
            build.result_ref = result_ref
            build.details = None
            build.finished_at = now
            build.last_active = now
            session.commit()
            return True

    def expire_overdue_builds(self, *, session: Session | None = None) -> int:
        owns_session = session is None
        local_session = session or self._session_factory()
        now = self._now()
        overdue = list(
            local_session.scalars(
                select(Build).where(
                    Build.status.in_(ACTIVE_BUILD_STATUSES),
                    Build.deadline_at.is_not(None),
                    Build.deadline_at <= now,
                )
            ).all()
        )
        for build in overdue:
            self._enforce_transition(build, BuildStatus.ERROR)
            build.status = BuildStatus.ERROR
            build.details = TIMEOUT_DETAILS
            build.finished_at = now
            build.last_active = now
            logger.info("Build %s exceeded its deadline", build.id)
        self._finish_reap(local_session, owns_session, bool(overdue))
        return len(overdue)

    def recover_stale_builds(self, *, session: Session | None = None) -> int:
        owns_session = session is None
        local_session = session or self._session_factory()
        now = self._now()
        cutoff = now - timedelta(seconds=self._settings.build_keepalive_timeout_seconds)
        stale = list(
            local_session.scalars(
                select(Build).where(Build.status == BuildStatus.RUNNING, Build.last_active <= cutoff)
            ).all()
        )
        for build in stale:
            self._enforce_transition(build, BuildStatus.ERROR)
            build.status = BuildStatus.ERROR
            build.details = KEEPALIVE_DETAILS
            build.finished_at = now
            logger.warning("Build %s owned by %s stopped sending keepalives", build.id, build.owner_builder_id)
        self._finish_reap(local_session, owns_session, bool(stale))
        return len(stale)

    def _finish_reap(self, session: Session, owns_session: bool, changed: bool) -> None:
        if changed and owns_session:
            session.commit()
        elif changed:
            session.flush()
        if owns_session:
            session.close()

    def _reap(self, session: Session) -> None:
        self.expire_overdue_builds(session=session)
        self.recover_stale_builds(session=session)

    def prune_builds(self, *, older_than: timedelta | None = None) -> int:
        retention = older_than or timedelta(days=self._settings.build_retention_days)
        cutoff = self._now() - retention
        with self._session_factory() as session:
            build_ids = list(
                session.scalars(
                    select(Build.id).where(
                        Build.status.in_(TERMINAL_BUILD_STATUSES),
                        Build.finished_at.is_not(None),
                        Build.finished_at < cutoff,
                    )
                ).all()
            )
            if not build_ids:
                return 0
            now = self._now()
            for build_id in build_ids:
                session.merge(PrunedBuild(build_id=build_id, pruned_at=now))
            session.execute(delete(BuildDependency).where(BuildDependency.build_id.in_(build_ids)))
            session.execute(delete(BuildSource).where(BuildSource.build_id.in_(build_ids)))
            session.execute(delete(Build).where(Build.id.in_(build_ids)))
            session.commit()
            logger.info("Pruned %d finished builds older than %s", len(build_ids), cutoff.isoformat())
            return len(build_ids)

    def _to_snapshot(self, build: Build) -> BuildSnapshot:
        return BuildSnapshot(
            id=build.id,
            build_type=build.build_type,
            status=build.status,
            details=build.details,
            package_id=build.package_id,
            version=build.version,
            fingerprint=build.fingerprint,
            config=dict(build.config or {}),
            client_build=build.client_build,
            owner_builder_id=build.owner_builder_id,
            priority=build.priority,
            available_statuses=list(build.available_statuses or []),
            created_by=build.created_by,
            result_ref=build.result_ref,
            finalized=build.finalized,
            created_at=self._coerce_utc(build.created_at) or build.created_at,
            last_active=self._coerce_utc(build.last_active) or build.last_active,
            started_at=self._coerce_utc(build.started_at),
            finished_at=self._coerce_utc(build.finished_at),
            deadline_at=self._coerce_utc(build.deadline_at),
        )
