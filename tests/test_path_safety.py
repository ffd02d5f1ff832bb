from __future__ import annotations

from pathlib import Path

import pytest

from apihub.core.path_safety import PathSafetyError, resolve_under_root, validate_archive_member_path


@pytest.mark.parametrize(
    "raw_path",
    [
        "",
        "../evil.json",
        "specs/../../escape.json",
        "~/private.json",
        "$HOME/private.json",
        "/absolute/spec.json",
        "specs\\windows.json",
    ],
)
def test_validate_archive_member_path_rejects_unsafe_input(raw_path: str) -> None:
    with pytest.raises(PathSafetyError):
        validate_archive_member_path(raw_path)


def test_validate_archive_member_path_accepts_nested_relative_path() -> None:
    resolved = validate_archive_member_path("specs/petstore.yaml")
    assert resolved.as_posix() == "specs/petstore.yaml"


def test_resolve_under_root_stays_inside_root(tmp_path: Path) -> None:
    resolved = resolve_under_root(tmp_path, "ab/cd/result.zip")
    assert resolved == (tmp_path / "ab" / "cd" / "result.zip").resolve()


def test_resolve_under_root_rejects_traversal(tmp_path: Path) -> None:
    with pytest.raises(PathSafetyError):
        resolve_under_root(tmp_path, "../outside.zip")
