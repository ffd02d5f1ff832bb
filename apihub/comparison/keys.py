from __future__ import annotations

import hashlib


def make_comparison_id(
    package_id: str,
    version: str,
    revision: int,
    previous_package_id: str,
    previous_version: str,
    previous_revision: int,
) -> str:
    material = "@".join(
        [package_id, version, str(revision), previous_package_id, previous_version, str(previous_revision)]
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()
