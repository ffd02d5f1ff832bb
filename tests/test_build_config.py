from __future__ import annotations

import pytest

from apihub.builds.config import (
    ChangelogConfig,
    MergedSpecificationConfig,
    PublishConfig,
    ReducedSourceConfig,
    parse_build_config,
    validate_format_for_build_type,
)
from apihub.builds.fingerprint import fingerprint_config
from apihub.core.errors import BadRequestError, ErrorCode
from apihub.db.models import BuildType


def _publish_wire(**overrides) -> dict:
    wire = {"packageId": "pkg.alpha", "version": "v1", "buildType": "build", "status": "draft"}
    wire.update(overrides)
    return wire


def test_fingerprint_ignores_identity_and_timestamps() -> None:
    base = fingerprint_config(_publish_wire(), ["h1", "h2"])
    decorated = fingerprint_config(
        _publish_wire(createdBy="alice", publishId="abc", builderId="b1", clientBuild=True, createdAt="2024-01-01"),
        ["h1", "h2"],
    )
    assert decorated == base


def test_fingerprint_source_hash_order_does_not_matter() -> None:
    assert fingerprint_config(_publish_wire(), ["h2", "h1"]) == fingerprint_config(_publish_wire(), ["h1", "h2"])


def test_fingerprint_changes_with_identity_fields() -> None:
    base = fingerprint_config(_publish_wire())
    assert fingerprint_config(_publish_wire(version="v2")) != base
    assert fingerprint_config(_publish_wire(previousVersion="v0")) != base
    assert fingerprint_config(_publish_wire(), ["h1"]) != base


def test_fingerprint_accepts_models_and_dicts_alike() -> None:
    config = parse_build_config(_publish_wire())
    assert fingerprint_config(config) == fingerprint_config(config.model_dump(by_alias=True, mode="json"))


def test_parse_build_config_dispatches_on_build_type() -> None:
    assert isinstance(parse_build_config(_publish_wire()), PublishConfig)

    changelog = parse_build_config(
        {
            "packageId": "pkg.alpha",
            "version": "v2@1",
            "buildType": "changelog",
            "previousVersion": "v1@1",
            "previousVersionPackageId": "pkg.alpha",
        }
    )
    assert isinstance(changelog, ChangelogConfig)

    merged = parse_build_config(
        {"packageId": "pkg.alpha", "version": "v1@1", "buildType": "mergedSpecification", "groupName": "pets"}
    )
    assert isinstance(merged, MergedSpecificationConfig)
    assert merged.format == "json"

    reduced = parse_build_config(
        {"packageId": "pkg.alpha", "version": "v1@1", "buildType": "reducedSourceSpecifications", "groupName": "pets"}
    )
    assert isinstance(reduced, ReducedSourceConfig)
    assert reduced.format is None


def test_parse_build_config_rejects_unknown_build_type() -> None:
    with pytest.raises(BadRequestError) as exc_info:
        parse_build_config(_publish_wire(buildType="mystery"))
    assert exc_info.value.code == ErrorCode.UNKNOWN_BUILD_TYPE


def test_parse_build_config_reports_missing_fields() -> None:
    with pytest.raises(BadRequestError) as exc_info:
        parse_build_config({"packageId": "pkg.alpha", "buildType": "build"})
    assert exc_info.value.code == ErrorCode.BAD_REQUEST_BODY
    assert "version" in (exc_info.value.debug or "")


@pytest.mark.parametrize(
    ("build_type", "requested", "expected"),
    [
        (BuildType.DOCUMENT_GROUP, None, "json"),
        (BuildType.DOCUMENT_GROUP, "json", "json"),
        (BuildType.MERGED_SPECIFICATION, None, "json"),
        (BuildType.MERGED_SPECIFICATION, "yaml", "yaml"),
        (BuildType.REDUCED_SOURCE_SPECIFICATIONS, None, None),
        (BuildType.PUBLISH, None, None),
    ],
)
def test_validate_format_accepts_supported_combinations(build_type, requested, expected) -> None:
    assert validate_format_for_build_type(build_type, requested) == expected


@pytest.mark.parametrize(
    ("build_type", "requested", "code"),
    [
        (BuildType.DOCUMENT_GROUP, "yaml", ErrorCode.FORMAT_NOT_SUPPORTED_FOR_BUILD_TYPE),
        (BuildType.MERGED_SPECIFICATION, "html", ErrorCode.FORMAT_NOT_SUPPORTED_FOR_BUILD_TYPE),
        (BuildType.MERGED_SPECIFICATION, "xml", ErrorCode.INVALID_PARAMETER_VALUE),
        (BuildType.CHANGELOG, "json", ErrorCode.INVALID_PARAMETER_VALUE),
    ],
)
def test_validate_format_rejects_unsupported_combinations(build_type, requested, code) -> None:
    with pytest.raises(BadRequestError) as exc_info:
        validate_format_for_build_type(build_type, requested)
    assert exc_info.value.code == code
