from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CompareVersionsRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    package_id: str = Field(min_length=1, max_length=255)
    version: str = Field(min_length=1, max_length=255)
    previous_version_package_id: str | None = None
    previous_version: str | None = None


class ComparisonSummaryResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    package_id: str
    version: str
    previous_version_package_id: str
    previous_version: str
    no_content: bool
    operation_types: list[Any]
    refs: list[dict[str, Any]] | None = None


class ComparisonChangesResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    changes: list[dict[str, Any]]
