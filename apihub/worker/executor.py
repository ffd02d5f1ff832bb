from __future__ import annotations

import contextlib
import logging
import threading
from collections.abc import Iterator, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from apihub.builds.archive import read_sources_archive
from apihub.builds.finalizer import FinalizeOutcome, ResultFinalizer
from apihub.builds.processors import BuildProcessor, UnsupportedBuildTypeError, default_processors
from apihub.builds.service import BuildAlreadyFinishedError, BuildService
from apihub.builds.types import BuildSnapshot
from apihub.core.config import Settings
from apihub.core.errors import ApiHubError
from apihub.db.models import BuildStatus, BuildType
from apihub.packages.groups import OperationGroupService
from apihub.storage.artifacts import ArtifactStore

logger = logging.getLogger(__name__)


class BuildExecutor:
    """Fixed pool of threads draining builds that no remote builder owns."""

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        artifacts: ArtifactStore | None = None,
        build_service: BuildService | None = None,
        processors: Mapping[BuildType, BuildProcessor] | None = None,
    ):
        self._settings = settings
        self._artifacts = artifacts or ArtifactStore.from_settings(settings)
        self._builds = build_service or BuildService(settings, session_factory, self._artifacts)
        self._finalizer = ResultFinalizer(settings, session_factory, self._artifacts, self._builds)
        if processors is None:
            groups = OperationGroupService(settings, session_factory, self._artifacts, self._builds)
            processors = default_processors(settings, session_factory, self._artifacts, groups)
        self._processors = dict(processors)
        self._executor_id = settings.effective_executor_id
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def executor_id(self) -> str:
        return self._executor_id

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for index in range(self._settings.executor_workers):
            thread = threading.Thread(
                target=self._loop,
                name=f"build-executor-{index}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info("Started %d build executor workers as %s", len(self._threads), self._executor_id)

    def stop(self, timeout: float | None = 10.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                processed = self.run_once()
                if not processed:
                    self._builds.expire_overdue_builds()
                    self._builds.recover_stale_builds()
            except Exception:  # noqa: BLE001 - the worker thread outlives any single build
                logger.exception("Build executor iteration failed")
                processed = False
            if not processed:
                self._stop.wait(self._settings.executor_poll_seconds)

    def run_once(self) -> bool:
        """Claim and run a single build. Returns False when nothing was claimable."""
        build = self._builds.claim_internal(self._executor_id)
        if build is None:
            return False
        self.execute(build)
        return True

    def execute(self, build: BuildSnapshot) -> FinalizeOutcome | None:
        logger.info("Executing %s build %s for %s@%s", build.build_type.value, build.id, build.package_id, build.version)
        try:
            processor = self._processors.get(build.build_type)
            if processor is None:
                raise UnsupportedBuildTypeError(f"no processor registered for {build.build_type.value}")
            with self._keepalive(build.id):
                result = processor.process(build, self._load_sources(build))
        except Exception as exc:  # noqa: BLE001 - any processor failure ends the build in error
            logger.exception("Build %s failed", build.id)
            details = exc.rendered_message() if isinstance(exc, ApiHubError) else f"{type(exc).__name__}: {exc}"
            self._fail_if_running(build.id, details)
            return None

        current = self._builds.get_build(build.id)
        if current.status != BuildStatus.RUNNING:
            logger.info("Build %s is %s; discarding computed result", build.id, current.status.value)
            return None
        try:
            return self._finalizer.finalize(build.id, result)
        except ApiHubError as exc:
            logger.warning("Result of build %s was rejected: %s", build.id, exc.rendered_message())
            return None
        except Exception as exc:  # noqa: BLE001
            logger.exception("Finalizing build %s failed", build.id)
            self._fail_if_running(build.id, f"{type(exc).__name__}: {exc}")
            return None

    @contextlib.contextmanager
    def _keepalive(self, build_id: str) -> Iterator[None]:
        done = threading.Event()
        ticker = threading.Thread(
            target=self._send_keepalives,
            args=(build_id, done),
            name=f"build-keepalive-{build_id}",
            daemon=True,
        )
        ticker.start()
        try:
            yield
        finally:
            done.set()
            ticker.join()

    def _send_keepalives(self, build_id: str, done: threading.Event) -> None:
        interval = self._settings.build_keepalive_timeout_seconds / 3
        while not done.wait(interval):
            try:
                self._builds.heartbeat(build_id)
            except BuildAlreadyFinishedError:
                return
            except (ApiHubError, SQLAlchemyError):
                logger.exception("Keepalive for build %s failed", build_id)

    def _load_sources(self, build: BuildSnapshot) -> dict[str, bytes]:
        raw = self._builds.load_sources(build.id)
        if raw is None:
            return {}
        return read_sources_archive(
            raw,
            file_size_limit_bytes=self._settings.publish_file_size_limit_bytes,
            file_size_limit_mb=self._settings.publish_file_size_limit_mb,
        ).files

    def _fail_if_running(self, build_id: str, details: str) -> None:
        try:
            self._builds.fail_build(build_id, details)
        except BuildAlreadyFinishedError as exc:
            logger.info("Not recording failure of build %s: %s", build_id, exc.rendered_message())
