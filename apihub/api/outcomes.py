from __future__ import annotations

from typing import Any

from fastapi import status
from fastapi.responses import JSONResponse, Response

from apihub.builds.types import BuildOutcome, OutcomeState
from apihub.db.models import BuildStatus


def outcome_response(outcome: BuildOutcome) -> Response:
    """200 when the result exists, 201 with the config for client builds, 202 otherwise."""
    if outcome.state == OutcomeState.OK:
        return Response(status_code=status.HTTP_200_OK)
    if outcome.state == OutcomeState.CREATED:
        return JSONResponse(
            status_code=status.HTTP_201_CREATED,
            content={**(outcome.config or {}), "buildId": outcome.build_id},
        )
    state = "error" if outcome.status == BuildStatus.ERROR else "running"
    content: dict[str, Any] = {"buildId": outcome.build_id, "status": state}
    if outcome.message:
        content["message"] = outcome.message
    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=content)
