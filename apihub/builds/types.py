from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from apihub.db.models import BuildStatus, BuildType


@dataclass(slots=True)
class BuildSnapshot:
    id: str
    build_type: BuildType
    status: BuildStatus
    details: str | None
    package_id: str
    version: str
    fingerprint: str
    config: dict[str, Any]
    client_build: bool
    owner_builder_id: str | None
    priority: int
    available_statuses: list[str]
    created_by: str
    result_ref: str | None
    finalized: bool
    created_at: datetime
    last_active: datetime
    started_at: datetime | None
    finished_at: datetime | None
    deadline_at: datetime | None


@dataclass(slots=True)
class BuildSubmission:
    build_id: str
    config: dict[str, Any]
    reused: bool = False
    existing: bool = False


@dataclass(frozen=True)
class BuildListResult:
    items: list[BuildSnapshot]
    next_cursor: str | None


def snapshot_to_dict(snapshot: BuildSnapshot) -> dict[str, Any]:
    return {
        "buildId": snapshot.id,
        "buildType": snapshot.build_type.value,
        "status": snapshot.status.value,
        "details": snapshot.details,
        "packageId": snapshot.package_id,
        "version": snapshot.version,
        "fingerprint": snapshot.fingerprint,
        "clientBuild": snapshot.client_build,
        "builderId": snapshot.owner_builder_id,
        "priority": snapshot.priority,
        "createdBy": snapshot.created_by,
        "finalized": snapshot.finalized,
        "createdAt": snapshot.created_at,
        "lastActive": snapshot.last_active,
        "startedAt": snapshot.started_at,
        "finishedAt": snapshot.finished_at,
    }


class OutcomeState(str, Enum):
    OK = "ok"
    CREATED = "created"
    ACCEPTED = "accepted"


@dataclass(slots=True)
class BuildOutcome:
    """Result of a cache-or-build request (comparisons, group transformations)."""

    state: OutcomeState
    build_id: str | None = None
    status: BuildStatus | None = None
    message: str | None = None
    config: dict[str, Any] | None = None
