"""Helpers over API specification documents used by the default build processors."""

from __future__ import annotations

import copy
import hashlib
import json
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any

import yaml

HTTP_METHODS = ("get", "put", "post", "delete", "options", "head", "patch", "trace")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


@dataclass(slots=True)
class ParsedDocument:
    file_id: str
    slug: str
    doc_type: str
    doc_format: str
    title: str
    body: dict[str, Any] | None = None
    operations: list[dict[str, Any]] = field(default_factory=list)


def slugify(value: str) -> str:
    normalized = _NON_ALNUM.sub("-", value.lower()).strip("-")
    return normalized or "document"


def operation_id_for(path: str, method: str) -> str:
    return f"{slugify(path.replace('{', '').replace('}', ''))}-{method.lower()}"


def _hash_json(value: Any) -> str:
    return hashlib.sha256(json.dumps(value, sort_keys=True, default=str).encode("utf-8")).hexdigest()


def _load_structured(name: str, content: bytes) -> tuple[str, Any]:
    suffix = PurePosixPath(name).suffix.lower()
    text = content.decode("utf-8")
    if suffix == ".json":
        return "json", json.loads(text)
    return "yaml", yaml.safe_load(text)


def parse_document(file_id: str, content: bytes) -> ParsedDocument:
    slug = slugify(PurePosixPath(file_id).stem)
    suffix = PurePosixPath(file_id).suffix.lower()
    if suffix in {".graphql", ".gql"}:
        return ParsedDocument(file_id=file_id, slug=slug, doc_type="graphql", doc_format="graphql", title=file_id)
    if suffix == ".proto":
        return ParsedDocument(file_id=file_id, slug=slug, doc_type="protobuf", doc_format="proto", title=file_id)
    if suffix == ".md":
        return ParsedDocument(file_id=file_id, slug=slug, doc_type="markdown", doc_format="md", title=file_id)
    if suffix not in {".json", ".yaml", ".yml"}:
        return ParsedDocument(file_id=file_id, slug=slug, doc_type="unknown", doc_format="unknown", title=file_id)

    try:
        doc_format, body = _load_structured(file_id, content)
    except (UnicodeDecodeError, json.JSONDecodeError, yaml.YAMLError):
        return ParsedDocument(file_id=file_id, slug=slug, doc_type="unknown", doc_format="unknown", title=file_id)
    if not isinstance(body, dict):
        return ParsedDocument(file_id=file_id, slug=slug, doc_type="unknown", doc_format=doc_format, title=file_id)

    if "openapi" in body:
        doc_type = "openapi-3-1" if str(body["openapi"]).startswith("3.1") else "openapi-3-0"
    elif "swagger" in body:
        doc_type = "openapi-2-0"
    else:
        doc_type = "json-schema" if "$schema" in body else "unknown"
    info = body.get("info") if isinstance(body.get("info"), dict) else {}
    parsed = ParsedDocument(
        file_id=file_id,
        slug=slug,
        doc_type=doc_type,
        doc_format=doc_format,
        title=str(info.get("title") or file_id),
        body=body,
    )
    if doc_type.startswith("openapi"):
        parsed.operations = extract_operations(body, slug)
    return parsed


def extract_operations(body: dict[str, Any], document_slug: str) -> list[dict[str, Any]]:
    operations: list[dict[str, Any]] = []
    paths = body.get("paths") if isinstance(body.get("paths"), dict) else {}
    for path in sorted(paths):
        item = paths[path]
        if not isinstance(item, dict):
            continue
        for method in HTTP_METHODS:
            operation = item.get(method)
            if not isinstance(operation, dict):
                continue
            operations.append(
                {
                    "operationId": operation_id_for(path, method),
                    "apiType": "rest",
                    "title": str(operation.get("summary") or operation.get("operationId") or f"{method.upper()} {path}"),
                    "method": method,
                    "path": path,
                    "documentSlug": document_slug,
                    "deprecated": bool(operation.get("deprecated", False)),
                    "dataHash": _hash_json(operation),
                }
            )
    return operations


def filter_document(body: dict[str, Any], operation_ids: set[str]) -> dict[str, Any] | None:
    """Copy of ``body`` keeping only the operations in ``operation_ids``; None when nothing is left."""
    filtered = copy.deepcopy(body)
    kept_paths: dict[str, Any] = {}
    for path, item in (body.get("paths") or {}).items():
        if not isinstance(item, dict):
            continue
        kept_item = {key: value for key, value in item.items() if key not in HTTP_METHODS}
        methods = {
            method: item[method]
            for method in HTTP_METHODS
            if method in item and operation_id_for(path, method) in operation_ids
        }
        if methods:
            kept_item.update(copy.deepcopy(methods))
            kept_paths[path] = kept_item
    if not kept_paths:
        return None
    filtered["paths"] = kept_paths
    return filtered


def merge_documents(documents: list[dict[str, Any]], *, title: str, version: str) -> dict[str, Any]:
    merged: dict[str, Any] = {
        "openapi": "3.0.3",
        "info": {"title": title, "version": version},
        "paths": {},
        "components": {},
    }
    if documents and "openapi" in documents[0]:
        merged["openapi"] = documents[0]["openapi"]
    for document in documents:
        for path, item in (document.get("paths") or {}).items():
            merged["paths"].setdefault(path, {}).update(item)
        for section, entries in (document.get("components") or {}).items():
            if isinstance(entries, dict):
                merged["components"].setdefault(section, {}).update(entries)
    if not merged["components"]:
        merged.pop("components")
    return merged


def dump_document(body: dict[str, Any], doc_format: str) -> bytes:
    if doc_format == "yaml":
        return yaml.safe_dump(body, sort_keys=False, allow_unicode=True).encode("utf-8")
    return json.dumps(body, indent=2, ensure_ascii=False).encode("utf-8")
