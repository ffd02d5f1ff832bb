from __future__ import annotations

from pathlib import Path, PurePosixPath


class PathSafetyError(ValueError):
    pass


def validate_archive_member_path(raw_path: str) -> PurePosixPath:
    if not raw_path:
        raise PathSafetyError("Archive member name is empty")
    if "\\" in raw_path:
        raise PathSafetyError("Backslashes are not allowed in archive member names")
    if raw_path.startswith("/"):
        raise PathSafetyError("Archive member names must be relative")
    path = PurePosixPath(raw_path)
    if ".." in path.parts:
        raise PathSafetyError("Path traversal is not allowed")
    if "~" in raw_path:
        raise PathSafetyError("Home expansion is not allowed")
    if "$" in raw_path:
        raise PathSafetyError("Environment variable expansion is not allowed")
    return path


def resolve_under_root(root: Path, raw_path: str) -> Path:
    rel = validate_archive_member_path(raw_path)
    candidate = (root / rel).resolve(strict=False)
    resolved_root = root.resolve(strict=False)

    if candidate == resolved_root or resolved_root in candidate.parents:
        return candidate

    raise PathSafetyError("Path escapes artifact root")
