from __future__ import annotations

import hashlib
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import BaseModel

FINGERPRINT_FIELDS: tuple[str, ...] = (
    "apiType",
    "buildType",
    "comparisonPrevRevision",
    "comparisonRevision",
    "format",
    "groupName",
    "packageId",
    "previousVersion",
    "previousVersionPackageId",
    "version",
)


def _encode_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if hasattr(value, "value"):
        return str(value.value)
    return str(value)


def _length_prefixed(token: str) -> bytes:
    raw = token.encode("utf-8")
    return str(len(raw)).encode("ascii") + b":" + raw


def canonical_form(config: Mapping[str, Any], source_hashes: Iterable[str] = ()) -> bytes:
    parts: list[bytes] = []
    for name in sorted(FINGERPRINT_FIELDS):
        parts.append(_length_prefixed(name) + b"=" + _length_prefixed(_encode_value(config.get(name))) + b";")
    for digest in sorted(source_hashes):
        parts.append(b"source=" + _length_prefixed(digest) + b";")
    return b"".join(parts)


def fingerprint_config(config: BaseModel | Mapping[str, Any], source_hashes: Iterable[str] = ()) -> str:
    if isinstance(config, BaseModel):
        fields = config.model_dump(by_alias=True, mode="json")
    else:
        fields = dict(config)
    return hashlib.sha256(canonical_form(fields, source_hashes)).hexdigest()
