"""ZIP layouts exchanged with builders.

Sources archive: arbitrary API document files, validated for member paths and sizes.
Build archive (handed to remote builders): ``config.json`` plus ``sources/<name>``.
Result archive: ``info.json`` and optional ``documents.json``, ``operations.json``,
``comparisons.json``, ``notifications.json`` plus ``documents/<filename>`` payloads.
"""

from __future__ import annotations

import hashlib
import io
import json
import zipfile
from dataclasses import dataclass, field
from typing import Any

from apihub.core.errors import BadRequestError, ErrorCode, archive_size_exceeded
from apihub.core.path_safety import PathSafetyError, validate_archive_member_path

CONFIG_ENTRY = "config.json"
SOURCES_PREFIX = "sources/"
INFO_ENTRY = "info.json"
DOCUMENTS_ENTRY = "documents.json"
OPERATIONS_ENTRY = "operations.json"
COMPARISONS_ENTRY = "comparisons.json"
NOTIFICATIONS_ENTRY = "notifications.json"
DOCUMENTS_PREFIX = "documents/"


@dataclass(slots=True)
class SourcesArchive:
    files: dict[str, bytes]
    hashes: dict[str, str]

    @property
    def sorted_hashes(self) -> list[str]:
        return sorted(self.hashes.values())


@dataclass(slots=True)
class ResultArchive:
    info: dict[str, Any]
    documents: list[dict[str, Any]] = field(default_factory=list)
    operations: list[dict[str, Any]] = field(default_factory=list)
    comparisons: list[dict[str, Any]] = field(default_factory=list)
    notifications: list[dict[str, Any]] = field(default_factory=list)
    files: dict[str, bytes] = field(default_factory=dict)


def _invalid_archive(debug: str) -> BadRequestError:
    return BadRequestError(ErrorCode.INVALID_PACKAGE_ARCHIVE, "Package archive is invalid", debug=debug)


def _invalid_packaged_file(name: str, debug: str) -> BadRequestError:
    return BadRequestError(
        ErrorCode.INVALID_PACKAGED_FILE,
        "Packaged file $file is invalid",
        params={"file": name},
        debug=debug,
    )


def _open_zip(data: bytes) -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as exc:
        raise _invalid_archive(str(exc)) from exc


def read_sources_archive(data: bytes, *, file_size_limit_bytes: int, file_size_limit_mb: int) -> SourcesArchive:
    files: dict[str, bytes] = {}
    with _open_zip(data) as archive:
        for info in archive.infolist():
            if info.is_dir():
                continue
            try:
                validate_archive_member_path(info.filename)
            except PathSafetyError as exc:
                raise _invalid_archive(f"{info.filename}: {exc}") from exc
            if info.file_size > file_size_limit_bytes:
                error = archive_size_exceeded(file_size_limit_mb)
                error.debug = f"file {info.filename} is {info.file_size} bytes"
                raise error
            files[info.filename] = archive.read(info)
    return SourcesArchive(
        files=files,
        hashes={name: hashlib.sha256(content).hexdigest() for name, content in files.items()},
    )


def pack_build_archive(config: dict[str, Any], sources: dict[str, bytes] | None = None) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(CONFIG_ENTRY, json.dumps(config, sort_keys=True))
        for name in sorted(sources or {}):
            archive.writestr(SOURCES_PREFIX + name, (sources or {})[name])
    return buffer.getvalue()


def unpack_build_archive(data: bytes) -> tuple[dict[str, Any], dict[str, bytes]]:
    with _open_zip(data) as archive:
        try:
            config = json.loads(archive.read(CONFIG_ENTRY))
        except KeyError as exc:
            raise _invalid_archive(f"{CONFIG_ENTRY} is missing") from exc
        sources = {
            name[len(SOURCES_PREFIX):]: archive.read(name)
            for name in archive.namelist()
            if name.startswith(SOURCES_PREFIX) and not name.endswith("/")
        }
    return config, sources


def _read_json_entry(archive: zipfile.ZipFile, name: str, *, required: bool, expect: type) -> Any:
    try:
        raw = archive.read(name)
    except KeyError as exc:
        if required:
            raise _invalid_packaged_file(name, "entry is missing") from exc
        return expect()
    try:
        value = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise _invalid_packaged_file(name, str(exc)) from exc
    if not isinstance(value, expect):
        raise _invalid_packaged_file(name, f"expected a JSON {expect.__name__}")
    return value


def read_result_archive(data: bytes) -> ResultArchive:
    with _open_zip(data) as archive:
        result = ResultArchive(
            info=_read_json_entry(archive, INFO_ENTRY, required=True, expect=dict),
            documents=_read_json_entry(archive, DOCUMENTS_ENTRY, required=False, expect=list),
            operations=_read_json_entry(archive, OPERATIONS_ENTRY, required=False, expect=list),
            comparisons=_read_json_entry(archive, COMPARISONS_ENTRY, required=False, expect=list),
            notifications=_read_json_entry(archive, NOTIFICATIONS_ENTRY, required=False, expect=list),
        )
        for name in archive.namelist():
            if not name.startswith(DOCUMENTS_PREFIX) or name.endswith("/"):
                continue
            try:
                validate_archive_member_path(name)
            except PathSafetyError as exc:
                raise _invalid_packaged_file(name, str(exc)) from exc
            result.files[name[len(DOCUMENTS_PREFIX):]] = archive.read(name)
    return result


def write_result_archive(
    info: dict[str, Any],
    *,
    documents: list[dict[str, Any]] | None = None,
    operations: list[dict[str, Any]] | None = None,
    comparisons: list[dict[str, Any]] | None = None,
    files: dict[str, bytes] | None = None,
) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(INFO_ENTRY, json.dumps(info, sort_keys=True))
        if documents is not None:
            archive.writestr(DOCUMENTS_ENTRY, json.dumps(documents, sort_keys=True))
        if operations is not None:
            archive.writestr(OPERATIONS_ENTRY, json.dumps(operations, sort_keys=True))
        if comparisons is not None:
            archive.writestr(COMPARISONS_ENTRY, json.dumps(comparisons, sort_keys=True))
        for name in sorted(files or {}):
            archive.writestr(DOCUMENTS_PREFIX + name, (files or {})[name])
    return buffer.getvalue()
