from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class LogLevelRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: str = Field(min_length=1, max_length=16)


class LogLevelResponse(BaseModel):
    level: str
