"""Bounded multipart intake.

Limits are checked against ``Content-Length`` before the body is parsed, on the
raw body stream while it is parsed, and again while reading each uploaded part.
A body sent without ``Content-Length`` is cut off once it passes the limit.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any

from fastapi import Request
from starlette.types import Message, Receive
from starlette.datastructures import FormData, UploadFile
from starlette.exceptions import HTTPException

from apihub.core.errors import (
    BadRequestError,
    ErrorCode,
    archive_size_exceeded,
    incorrect_param_type,
)

READ_CHUNK_BYTES = 1024 * 1024
TRANSFER_ENCODING_HEADER = "content-transfer-encoding"


def enforce_content_length(request: Request, limit_bytes: int, limit_mb: int) -> None:
    raw = request.headers.get("content-length")
    if raw is None:
        return
    try:
        length = int(raw)
    except ValueError as exc:
        raise incorrect_param_type("Content-Length", "integer") from exc
    if length > limit_bytes:
        raise archive_size_exceeded(limit_mb)


def is_base64_transfer(request: Request) -> bool:
    return request.headers.get(TRANSFER_ENCODING_HEADER, "").strip().lower() == "base64"


def _bounded_receive(receive: Receive, limit_bytes: int, limit_mb: int) -> Receive:
    received = 0

    async def bounded() -> Message:
        nonlocal received
        message = await receive()
        if message["type"] == "http.request":
            received += len(message.get("body", b""))
            if received > limit_bytes:
                raise archive_size_exceeded(limit_mb)
        return message

    return bounded


async def read_form(request: Request, limit_bytes: int, limit_mb: int) -> FormData:
    """Parse the form body, refusing bodies over ``limit_bytes`` whether or not they declare a length."""
    enforce_content_length(request, limit_bytes, limit_mb)
    bounded = Request(request.scope, _bounded_receive(request.receive, limit_bytes, limit_mb))
    try:
        return await bounded.form()
    except HTTPException as exc:
        raise BadRequestError(ErrorCode.BAD_REQUEST_BODY, "Failed to parse multipart body", debug=str(exc.detail)) from exc


async def read_upload(
    value: Any,
    *,
    limit_bytes: int,
    limit_mb: int,
    base64_encoded: bool = False,
) -> bytes | None:
    """Read a form part into memory; plain string parts are accepted as content."""
    if value is None:
        return None
    if isinstance(value, UploadFile):
        chunks: list[bytes] = []
        total = 0
        while True:
            chunk = await value.read(READ_CHUNK_BYTES)
            if not chunk:
                break
            total += len(chunk)
            if total > limit_bytes:
                raise archive_size_exceeded(limit_mb)
            chunks.append(chunk)
        data = b"".join(chunks)
    else:
        data = str(value).encode("utf-8")
        if len(data) > limit_bytes:
            raise archive_size_exceeded(limit_mb)

    if base64_encoded and data:
        try:
            data = base64.b64decode(data, validate=False)
        except (binascii.Error, ValueError) as exc:
            raise BadRequestError(ErrorCode.BAD_REQUEST_BODY, "Failed to decode base64 content", debug=str(exc)) from exc
    return data


def upload_filename(value: Any) -> str | None:
    if isinstance(value, UploadFile):
        return value.filename
    return None


def form_text(form: FormData, name: str) -> str | None:
    value = form.get(name)
    if value is None or isinstance(value, UploadFile):
        return None
    return str(value)


def form_bool(form: FormData, name: str, default: bool = False) -> bool:
    raw = form_text(form, name)
    if raw is None or raw.strip() == "":
        return default
    normalized = raw.strip().lower()
    if normalized in {"true", "1", "yes"}:
        return True
    if normalized in {"false", "0", "no"}:
        return False
    raise incorrect_param_type(name, "boolean")


def form_json(form: FormData, name: str, *, expect: type) -> Any:
    raw = form_text(form, name)
    if raw is None or raw.strip() == "":
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise BadRequestError(
            ErrorCode.BAD_REQUEST_BODY,
            "Failed to decode $param",
            params={"param": name},
            debug=str(exc),
        ) from exc
    if not isinstance(value, expect):
        raise incorrect_param_type(name, expect.__name__)
    return value
