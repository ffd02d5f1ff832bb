"""Build configuration variants.

Each build type is its own pydantic model; the ``buildType`` field is the
discriminator. Wire names are camelCase, python attributes snake_case.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from apihub.core.errors import BadRequestError, ErrorCode, invalid_parameter_value
from apihub.db.models import BuildType, VersionStatus

# buildType -> formats accepted for it; None means the build has no format
FORMAT_TABLE: dict[BuildType, tuple[str, ...] | None] = {
    BuildType.PUBLISH: None,
    BuildType.CHANGELOG: None,
    BuildType.REDUCED_SOURCE_SPECIFICATIONS: None,
    BuildType.MERGED_SPECIFICATION: ("json", "yaml"),
    BuildType.DOCUMENT_GROUP: ("json",),
}
DEFAULT_FORMATS: dict[BuildType, str] = {
    BuildType.MERGED_SPECIFICATION: "json",
    BuildType.DOCUMENT_GROUP: "json",
}
KNOWN_DOCUMENT_FORMATS = ("json", "yaml", "html")
SUPPORTED_API_TYPES = ("rest", "graphql", "protobuf")

VERSION_FORBIDDEN_CHARS = ("@", "/", "\\", "?", "#", "%")
GROUP_FORMAT_BUILD_TYPES = (
    BuildType.DOCUMENT_GROUP,
    BuildType.MERGED_SPECIFICATION,
    BuildType.REDUCED_SOURCE_SPECIFICATIONS,
)


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class BuildRef(_WireModel):
    ref_id: str
    version: str
    parent_ref_id: str | None = None
    parent_version: str | None = None


class BuildFile(_WireModel):
    file_id: str
    slug: str | None = None
    publish: bool = True
    labels: list[str] = Field(default_factory=list)
    blob_id: str | None = None


class BuildMetadata(_WireModel):
    branch_name: str | None = None
    repository_url: str | None = None
    cloud_name: str | None = None
    cloud_url: str | None = None
    namespace: str | None = None
    version_labels: list[str] = Field(default_factory=list)


class _BaseBuildConfig(_WireModel):
    package_id: str = Field(min_length=1, max_length=255)
    version: str = Field(min_length=1, max_length=255)
    created_by: str | None = None
    publish_id: str | None = None

    @property
    def build_kind(self) -> BuildType:
        return BuildType(self.build_type)  # type: ignore[attr-defined]


class PublishConfig(_BaseBuildConfig):
    build_type: Literal["build"] = "build"
    status: VersionStatus
    previous_version: str = ""
    previous_version_package_id: str = ""
    refs: list[BuildRef] = Field(default_factory=list)
    files: list[BuildFile] = Field(default_factory=list)
    metadata: BuildMetadata = Field(default_factory=BuildMetadata)
    unresolved_refs: bool = False
    resolve_refs: bool = True
    resolve_conflicts: bool = True


class ChangelogConfig(_BaseBuildConfig):
    build_type: Literal["changelog"] = "changelog"
    previous_version: str = Field(min_length=1)
    previous_version_package_id: str = Field(min_length=1)
    comparison_revision: int | None = Field(default=None, ge=1)
    comparison_prev_revision: int | None = Field(default=None, ge=1)


class _GroupBuildConfig(_BaseBuildConfig):
    api_type: str = "rest"
    group_name: str = Field(min_length=1, max_length=255)

    @field_validator("api_type")
    @classmethod
    def _validate_api_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in SUPPORTED_API_TYPES:
            raise ValueError(f"unsupported api type: {value}")
        return normalized


class DocumentGroupConfig(_GroupBuildConfig):
    build_type: Literal["documentGroup"] = "documentGroup"
    format: Literal["json"] = "json"


class MergedSpecificationConfig(_GroupBuildConfig):
    build_type: Literal["mergedSpecification"] = "mergedSpecification"
    format: Literal["json", "yaml"] = "json"


class ReducedSourceConfig(_GroupBuildConfig):
    build_type: Literal["reducedSourceSpecifications"] = "reducedSourceSpecifications"
    format: None = None


GroupBuildConfig = Union[DocumentGroupConfig, MergedSpecificationConfig, ReducedSourceConfig]

BuildConfig = Annotated[
    Union[PublishConfig, ChangelogConfig, DocumentGroupConfig, MergedSpecificationConfig, ReducedSourceConfig],
    Field(discriminator="build_type"),
]

_BUILD_CONFIG_ADAPTER: TypeAdapter[Any] = TypeAdapter(BuildConfig)


def parse_build_type(raw: str) -> BuildType:
    try:
        return BuildType(raw)
    except ValueError as exc:
        raise BadRequestError(
            ErrorCode.UNKNOWN_BUILD_TYPE,
            "Build type '$buildType' is unknown",
            params={"buildType": raw},
        ) from exc


def validate_format_for_build_type(build_type: BuildType, doc_format: str | None) -> str | None:
    """Return the effective format for ``build_type`` or raise a typed error."""
    allowed = FORMAT_TABLE[build_type]
    if doc_format is not None and doc_format not in KNOWN_DOCUMENT_FORMATS:
        raise invalid_parameter_value("format", doc_format)
    if allowed is None:
        if doc_format is not None and build_type in {BuildType.PUBLISH, BuildType.CHANGELOG}:
            raise invalid_parameter_value("format", doc_format, debug=f"{build_type.value} builds have no format")
        return None
    if doc_format is None:
        return DEFAULT_FORMATS[build_type]
    if doc_format not in allowed:
        raise BadRequestError(
            ErrorCode.FORMAT_NOT_SUPPORTED_FOR_BUILD_TYPE,
            "Format $format is not supported for build type $buildType",
            params={"format": doc_format, "buildType": build_type.value},
        )
    return doc_format


def parse_build_config(data: dict[str, Any]) -> Any:
    """Validate a wire-form config dict into its BuildConfig variant."""
    if not isinstance(data, dict):
        raise BadRequestError(ErrorCode.BAD_REQUEST_BODY, "Build config must be a JSON object")
    raw_type = data.get("buildType") or "build"
    build_type = parse_build_type(str(raw_type))
    if build_type in GROUP_FORMAT_BUILD_TYPES:
        raw_format = data.get("format")
        effective = validate_format_for_build_type(build_type, raw_format if raw_format else None)
        data = {**data, "format": effective}
    try:
        return _BUILD_CONFIG_ADAPTER.validate_python({**data, "buildType": build_type.value})
    except ValidationError as exc:
        raise BadRequestError(
            ErrorCode.BAD_REQUEST_BODY,
            "Failed to decode build config",
            debug=_summarize_validation_error(exc),
        ) from exc


def config_to_wire(config: Any) -> dict[str, Any]:
    return config.model_dump(by_alias=True, mode="json")


def _summarize_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}")
    return "; ".join(parts)
