from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class BuildStatusesRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    publish_ids: list[str] = Field(min_length=1, max_length=200)


class PruneBuildsRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    older_than_days: int | None = Field(default=None, ge=1)


class BuildStatusResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    publish_id: str
    status: str
    message: str | None = None


class BuildResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    build_id: str
    build_type: str
    status: str
    details: str | None
    package_id: str
    version: str
    fingerprint: str
    client_build: bool
    builder_id: str | None
    priority: int
    created_by: str
    finalized: bool
    created_at: datetime
    last_active: datetime
    started_at: datetime | None
    finished_at: datetime | None


class BuildListResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    items: list[BuildResponse]
    next_cursor: str | None
