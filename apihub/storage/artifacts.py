from __future__ import annotations

import hashlib
import os
import re
import tempfile
from pathlib import Path

from apihub.core.config import Settings
from apihub.core.path_safety import resolve_under_root

_KEY_PATTERN = re.compile(r"^[0-9a-f]{64}$")


class ArtifactNotFoundError(RuntimeError):
    pass


class InvalidArtifactKeyError(ValueError):
    pass


class ArtifactStore:
    """Content-addressed blob store laid out as ``ab/cd/<sha256>`` under the artifacts root."""

    def __init__(self, root: Path):
        self._root = root.resolve(strict=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ArtifactStore":
        return cls(settings.artifacts_root)

    @staticmethod
    def key_for(data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    def _relpath(self, key: str) -> str:
        if not _KEY_PATTERN.match(key):
            raise InvalidArtifactKeyError(f"Invalid artifact key: {key}")
        return f"{key[0:2]}/{key[2:4]}/{key}"

    def path_for(self, key: str) -> Path:
        return resolve_under_root(self._root, self._relpath(key))

    def put_bytes(self, data: bytes) -> str:
        key = self.key_for(data)
        target = self.path_for(key)
        if target.exists():
            return key
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".upload-", dir=target.parent)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, target)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return key

    def get_bytes(self, key: str) -> bytes:
        target = self.path_for(key)
        try:
            return target.read_bytes()
        except FileNotFoundError as exc:
            raise ArtifactNotFoundError(f"Artifact not found: {key}") from exc

    def exists(self, key: str) -> bool:
        return self.path_for(key).is_file()

    def delete(self, key: str) -> bool:
        target = self.path_for(key)
        if not target.exists():
            return False
        target.unlink()
        return True
