from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from apihub.comparison.keys import make_comparison_id
from apihub.core.config import Settings
from apihub.core.context import SecurityContext
from apihub.core.errors import ConflictError, ErrorCode, invalid_parameter_value, package_not_found
from apihub.db.models import (
    Build,
    OperationGroup,
    Package,
    PackageTransition,
    PublishedVersion,
    TransformedDocuments,
    VersionComparison,
    VersionReference,
)
from apihub.packages.service import PACKAGE_ID_PATTERN
from apihub.packages.types import TransitionSnapshot

logger = logging.getLogger(__name__)


class PackageTransitionService:
    """Package renames and the old-id lookup used for redirects."""

    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]):
        self._settings = settings
        self._session_factory = session_factory

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def move_package(self, ctx: SecurityContext, old_package_id: str, new_package_id: str) -> TransitionSnapshot:
        if not PACKAGE_ID_PATTERN.match(new_package_id):
            raise invalid_parameter_value("newPackageId", new_package_id)
        if old_package_id == new_package_id:
            raise invalid_parameter_value("newPackageId", new_package_id, debug="package id is unchanged")

        with self._session_factory() as session:
            package = session.get(Package, old_package_id)
            if package is None:
                raise package_not_found(old_package_id)
            if session.get(Package, new_package_id) is not None:
                raise ConflictError(
                    ErrorCode.PACKAGE_ALREADY_EXISTS,
                    "Package with packageId = $packageId already exists",
                    params={"packageId": new_package_id},
                )

            session.add(
                Package(
                    id=new_package_id,
                    name=package.name,
                    kind=package.kind,
                    release_version_pattern=package.release_version_pattern,
                    created_by=package.created_by,
                    created_at=package.created_at,
                )
            )
            session.flush()
            self._rewrite_references(session, old_package_id, new_package_id)
            session.delete(package)

            # a move back onto a former id drops that id's old redirect
            session.execute(delete(PackageTransition).where(PackageTransition.old_package_id == new_package_id))
            session.execute(
                update(PackageTransition)
                .where(PackageTransition.new_package_id == old_package_id)
                .values(new_package_id=new_package_id)
            )
            transition = PackageTransition(
                old_package_id=old_package_id,
                new_package_id=new_package_id,
                moved_by=ctx.user_id,
                moved_at=self._now(),
            )
            session.merge(transition)
            session.commit()
            logger.info("Moved package %s to %s (%s)", old_package_id, new_package_id, ctx.describe())
            return self._to_snapshot(transition)

    def _rewrite_references(self, session: Session, old_id: str, new_id: str) -> None:
        session.execute(update(PublishedVersion).where(PublishedVersion.package_id == old_id).values(package_id=new_id))
        session.execute(
            update(PublishedVersion)
            .where(PublishedVersion.previous_version_package_id == old_id)
            .values(previous_version_package_id=new_id)
        )
        session.execute(
            update(VersionReference).where(VersionReference.ref_package_id == old_id).values(ref_package_id=new_id)
        )
        session.execute(update(OperationGroup).where(OperationGroup.package_id == old_id).values(package_id=new_id))
        session.execute(
            update(TransformedDocuments).where(TransformedDocuments.package_id == old_id).values(package_id=new_id)
        )
        session.execute(update(Build).where(Build.package_id == old_id).values(package_id=new_id))

        comparisons = session.scalars(
            select(VersionComparison).where(
                or_(VersionComparison.package_id == old_id, VersionComparison.previous_package_id == old_id)
            )
        ).all()
        for row in comparisons:
            if row.package_id == old_id:
                row.package_id = new_id
            if row.previous_package_id == old_id:
                row.previous_package_id = new_id
            row.comparison_id = make_comparison_id(
                row.package_id,
                row.version,
                row.revision,
                row.previous_package_id,
                row.previous_version,
                row.previous_revision,
            )
        session.flush()

    def resolve(self, package_id: str) -> str | None:
        """Follow renames of ``package_id``; None when it was never moved."""
        with self._session_factory() as session:
            current = package_id
            visited = {current}
            moved = False
            while True:
                transition = session.get(PackageTransition, current)
                if transition is None or transition.new_package_id in visited:
                    break
                current = transition.new_package_id
                visited.add(current)
                moved = True
            return current if moved else None

    def get_transition(self, old_package_id: str) -> TransitionSnapshot | None:
        with self._session_factory() as session:
            transition = session.get(PackageTransition, old_package_id)
            return None if transition is None else self._to_snapshot(transition)

    def _to_snapshot(self, transition: PackageTransition) -> TransitionSnapshot:
        return TransitionSnapshot(
            old_package_id=transition.old_package_id,
            new_package_id=transition.new_package_id,
            moved_by=transition.moved_by,
            moved_at=transition.moved_at,
        )
