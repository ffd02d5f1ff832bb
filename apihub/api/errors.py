"""Error envelope rendering and the renamed-package redirect."""

from __future__ import annotations

import logging
import re

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from apihub.core.config import get_settings
from apihub.core.errors import ApiHubError, ErrorCode
from apihub.db.session import get_session_factory
from apihub.packages.transitions import PackageTransitionService

logger = logging.getLogger(__name__)

REDIRECTABLE_CODES = frozenset(
    {
        ErrorCode.PACKAGE_NOT_FOUND,
        ErrorCode.PUBLISHED_VERSION_NOT_FOUND,
        ErrorCode.PUBLISHED_PACKAGE_VERSION_NOT_FOUND,
    }
)
PACKAGE_PATH_PATTERN = re.compile(r"/packages/(?P<package_id>[^/]+)")


def _envelope_response(status_code: int, code: str, message: str, debug: str | None = None) -> JSONResponse:
    content: dict[str, object] = {"status": status_code, "code": code, "message": message}
    if debug:
        content["debug"] = debug
    return JSONResponse(status_code=status_code, content=content)


def _validation_debug(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}")
    return "; ".join(parts)


def _moved_location(request: Request) -> str | None:
    match = PACKAGE_PATH_PATTERN.search(request.url.path)
    if match is None:
        return None
    old_package_id = match.group("package_id")
    service = PackageTransitionService(get_settings(), get_session_factory())
    try:
        new_package_id = service.resolve(old_package_id)
    except SQLAlchemyError:
        logger.exception("Package transition lookup failed for %s", old_package_id)
        return None
    if new_package_id is None:
        return None
    path = request.url.path
    location = f"{path[: match.start('package_id')]}{new_package_id}{path[match.end('package_id'):]}"
    if request.url.query:
        location = f"{location}?{request.url.query}"
    return location


async def handle_api_error(request: Request, exc: ApiHubError) -> Response:
    if exc.code in REDIRECTABLE_CODES:
        location = await run_in_threadpool(_moved_location, request)
        if location is not None:
            logger.debug("Redirecting %s to %s", request.url.path, location)
            return RedirectResponse(location, status_code=301)

    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc, exc_info=exc)
    else:
        logger.debug("%s %s rejected with %s: %s", request.method, request.url.path, exc.code.value, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_envelope())


async def handle_validation_error(request: Request, exc: RequestValidationError) -> Response:
    debug = _validation_debug(exc)
    logger.debug("%s %s has a bad request body: %s", request.method, request.url.path, debug)
    return _envelope_response(400, ErrorCode.BAD_REQUEST_BODY.value, "Failed to decode request", debug)


async def handle_unexpected_error(request: Request, exc: Exception) -> Response:
    logger.error("%s %s failed unexpectedly", request.method, request.url.path, exc_info=exc)
    return _envelope_response(
        500,
        ErrorCode.INTERNAL.value,
        "Internal server error",
        f"{type(exc).__name__}: {exc}",
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiHubError, handle_api_error)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, handle_validation_error)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, handle_unexpected_error)
