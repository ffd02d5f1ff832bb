from __future__ import annotations

from fastapi import Header, Request

from apihub.core.context import SecurityContext
from apihub.core.errors import ApiHubError, ErrorCode

ANONYMOUS_USER = "anonymous"


def bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def resolve_user_id(user_id: str | None) -> str:
    return (user_id or "").strip() or ANONYMOUS_USER


def resolve_security_context(user_id: str | None, authorization: str | None, api_key: str | None) -> SecurityContext:
    if api_key is not None and not api_key.strip():
        raise ApiHubError(ErrorCode.API_KEY_HEADER_EMPTY, "API key header is empty", status_code=401)
    return SecurityContext(user_id=resolve_user_id(user_id), token=bearer_token(authorization))


def get_security_context(
    request: Request,
    x_user_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
    api_key: str | None = Header(default=None),
) -> SecurityContext:
    return resolve_security_context(x_user_id, authorization, api_key).with_step(request.url.path)
