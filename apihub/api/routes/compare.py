from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from apihub.api.outcomes import outcome_response
from apihub.api.schemas.compare import (
    CompareVersionsRequest,
    ComparisonChangesResponse,
    ComparisonSummaryResponse,
)
from apihub.api.security import get_security_context
from apihub.comparison.service import ComparisonService
from apihub.core.config import get_settings
from apihub.core.context import SecurityContext
from apihub.db.session import get_session_factory

router = APIRouter(tags=["compare"])


def get_comparison_service() -> ComparisonService:
    return ComparisonService(settings=get_settings(), session_factory=get_session_factory())


@router.post("/compare")
def compare_versions(
    request: CompareVersionsRequest,
    builder_id: str | None = Query(default=None, alias="builderId"),
    client_build: bool = Query(default=False, alias="clientBuild"),
    re_calculate: bool = Query(default=False, alias="reCalculate"),
    ctx: SecurityContext = Depends(get_security_context),
    service: ComparisonService = Depends(get_comparison_service),
) -> Response:
    outcome = service.ensure_comparison(
        ctx,
        request.package_id,
        request.version,
        request.previous_version_package_id,
        request.previous_version,
        re_calculate=re_calculate,
        client_build=client_build,
        builder_id=builder_id,
    )
    return outcome_response(outcome)


@router.get("/packages/{package_id}/versions/{version}/changes/summary", response_model=ComparisonSummaryResponse)
@router.get("/packages/{package_id}/versions/{version}/comparison-summary", response_model=ComparisonSummaryResponse)
def get_comparison_summary(
    package_id: str,
    version: str,
    previous_version: str | None = Query(default=None, alias="previousVersion"),
    previous_version_package_id: str | None = Query(default=None, alias="previousVersionPackageId"),
    service: ComparisonService = Depends(get_comparison_service),
) -> ComparisonSummaryResponse:
    summary = service.get_summary(package_id, version, previous_version_package_id, previous_version)
    return ComparisonSummaryResponse.model_validate(summary)


@router.get("/packages/{package_id}/versions/{version}/changes", response_model=ComparisonChangesResponse)
def get_comparison_changes(
    package_id: str,
    version: str,
    previous_version: str | None = Query(default=None, alias="previousVersion"),
    previous_version_package_id: str | None = Query(default=None, alias="previousVersionPackageId"),
    service: ComparisonService = Depends(get_comparison_service),
) -> ComparisonChangesResponse:
    changes = service.get_changes(package_id, version, previous_version_package_id, previous_version)
    return ComparisonChangesResponse(changes=changes)
