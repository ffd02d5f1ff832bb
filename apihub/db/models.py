from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class BuildStatus(str, Enum):
    NOT_STARTED = "none"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


ACTIVE_BUILD_STATUSES = (BuildStatus.NOT_STARTED, BuildStatus.RUNNING)
TERMINAL_BUILD_STATUSES = (BuildStatus.COMPLETE, BuildStatus.ERROR)


class BuildType(str, Enum):
    PUBLISH = "build"
    CHANGELOG = "changelog"
    DOCUMENT_GROUP = "documentGroup"
    REDUCED_SOURCE_SPECIFICATIONS = "reducedSourceSpecifications"
    MERGED_SPECIFICATION = "mergedSpecification"


GROUP_BUILD_TYPES = (
    BuildType.DOCUMENT_GROUP,
    BuildType.REDUCED_SOURCE_SPECIFICATIONS,
    BuildType.MERGED_SPECIFICATION,
)


class VersionStatus(str, Enum):
    DRAFT = "draft"
    RELEASE = "release"
    ARCHIVED = "archived"


class PackageKind(str, Enum):
    PACKAGE = "package"
    DASHBOARD = "dashboard"


class Build(Base):
    __tablename__ = "builds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    build_type: Mapped[BuildType] = mapped_column(
        SAEnum(BuildType, native_enum=False, values_callable=_enum_values, length=64),
        nullable=False,
    )
    status: Mapped[BuildStatus] = mapped_column(
        SAEnum(BuildStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=BuildStatus.NOT_STARTED,
    )
    details: Mapped[str | None] = mapped_column(Text, nullable=True)

    package_id: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[str] = mapped_column(String(255), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    config: Mapped[dict[str, Any]] = mapped_column(JSON(none_as_null=True), nullable=False, default=dict)

    client_build: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    owner_builder_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    available_statuses: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)

    result_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)
    finalized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_active: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deadline_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "ux_builds_active_fingerprint",
            "fingerprint",
            unique=True,
            sqlite_where=text("status IN ('none', 'running')"),
            postgresql_where=text("status IN ('none', 'running')"),
        ),
        Index("ix_builds_fingerprint_created", "fingerprint", "created_at"),
        Index("ix_builds_claim", "status", "client_build", "priority", "created_at"),
        Index("ix_builds_package_version", "package_id", "version"),
        Index("ix_builds_created_id", "created_at", "id"),
        Index("ix_builds_running_active", "status", "last_active"),
    )


class BuildSource(Base):
    __tablename__ = "build_sources"

    build_id: Mapped[str] = mapped_column(String(36), ForeignKey("builds.id", ondelete="CASCADE"), primary_key=True)
    source_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source_hashes: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)


class BuildDependency(Base):
    __tablename__ = "build_dependencies"

    build_id: Mapped[str] = mapped_column(String(36), ForeignKey("builds.id", ondelete="CASCADE"), primary_key=True)
    depends_on_id: Mapped[str] = mapped_column(String(36), primary_key=True)

    __table_args__ = (Index("ix_build_dependencies_depends_on", "depends_on_id"),)


class PrunedBuild(Base):
    __tablename__ = "pruned_builds"

    build_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    pruned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Package(Base):
    __tablename__ = "packages"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[PackageKind] = mapped_column(
        SAEnum(PackageKind, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=PackageKind.PACKAGE,
    )
    release_version_pattern: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class PublishedVersion(Base):
    __tablename__ = "published_versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    package_id: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[str] = mapped_column(String(255), nullable=False)
    revision: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[VersionStatus] = mapped_column(
        SAEnum(VersionStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
    )
    previous_version: Mapped[str | None] = mapped_column(String(255), nullable=True)
    previous_version_package_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    labels: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    build_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    published_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("package_id", "version", "revision", name="uq_published_versions_ref"),
        Index("ix_published_versions_package_version", "package_id", "version", "revision"),
        Index("ix_published_versions_previous", "previous_version_package_id", "previous_version"),
    )


class PublishedDocument(Base):
    __tablename__ = "published_documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    version_ref_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("published_versions.id", ondelete="CASCADE"), nullable=False
    )
    slug: Mapped[str] = mapped_column(String(255), nullable=False)
    file_id: Mapped[str] = mapped_column(String(1024), nullable=False)
    title: Mapped[str] = mapped_column(String(1024), nullable=False)
    doc_type: Mapped[str] = mapped_column(String(64), nullable=False)
    doc_format: Mapped[str] = mapped_column(String(32), nullable=False)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    content_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)
    operation_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    __table_args__ = (
        UniqueConstraint("version_ref_id", "slug", name="uq_published_documents_slug"),
        Index("ix_published_documents_version", "version_ref_id"),
    )


class PublishedOperation(Base):
    __tablename__ = "published_operations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    version_ref_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("published_versions.id", ondelete="CASCADE"), nullable=False
    )
    operation_id: Mapped[str] = mapped_column(String(1024), nullable=False)
    api_type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    method: Mapped[str | None] = mapped_column(String(16), nullable=True)
    path: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    document_slug: Mapped[str | None] = mapped_column(String(255), nullable=True)
    deprecated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    data_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        UniqueConstraint("version_ref_id", "operation_id", name="uq_published_operations_id"),
        Index("ix_published_operations_version_type", "version_ref_id", "api_type"),
    )


class VersionReference(Base):
    __tablename__ = "version_references"

    version_ref_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("published_versions.id", ondelete="CASCADE"), primary_key=True
    )
    ref_package_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    ref_version: Mapped[str] = mapped_column(String(255), primary_key=True)
    ref_revision: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (Index("ix_version_references_target", "ref_package_id", "ref_version"),)


class VersionComparison(Base):
    __tablename__ = "version_comparisons"

    comparison_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    package_id: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[str] = mapped_column(String(255), nullable=False)
    revision: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_package_id: Mapped[str] = mapped_column(String(255), nullable=False)
    previous_version: Mapped[str] = mapped_column(String(255), nullable=False)
    previous_revision: Mapped[int] = mapped_column(Integer, nullable=False)
    valid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    no_content: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    summary: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    changes: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    result_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)
    build_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_version_comparisons_current", "package_id", "version", "revision"),
        Index("ix_version_comparisons_previous", "previous_package_id", "previous_version", "previous_revision"),
    )


class OperationGroup(Base):
    __tablename__ = "operation_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    package_id: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[str] = mapped_column(String(255), nullable=False)
    revision: Mapped[int] = mapped_column(Integer, nullable=False)
    api_type: Mapped[str] = mapped_column(String(32), nullable=False)
    group_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    operation_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    template_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)
    template_filename: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "package_id", "version", "revision", "api_type", "group_name", name="uq_operation_groups_key"
        ),
    )


class TransformedDocuments(Base):
    __tablename__ = "transformed_documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    package_id: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[str] = mapped_column(String(255), nullable=False)
    revision: Mapped[int] = mapped_column(Integer, nullable=False)
    api_type: Mapped[str] = mapped_column(String(32), nullable=False)
    group_name: Mapped[str] = mapped_column(String(255), nullable=False)
    build_type: Mapped[BuildType] = mapped_column(
        SAEnum(BuildType, native_enum=False, values_callable=_enum_values, length=64),
        nullable=False,
    )
    doc_format: Mapped[str] = mapped_column(String(32), nullable=False)
    result_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    build_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint(
            "package_id",
            "version",
            "revision",
            "api_type",
            "group_name",
            "build_type",
            "doc_format",
            name="uq_transformed_documents_key",
        ),
    )


class PackageTransition(Base):
    __tablename__ = "package_transitions"

    old_package_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    new_package_id: Mapped[str] = mapped_column(String(255), nullable=False)
    moved_by: Mapped[str] = mapped_column(String(128), nullable=False)
    moved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (Index("ix_package_transitions_new", "new_package_id"),)


class WsSession(Base):
    __tablename__ = "ws_sessions"

    session_id: Mapped[str] = mapped_column(String(1024), primary_key=True)
    node_addr: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_ws_sessions_node", "node_addr"),
        Index("ix_ws_sessions_expires_at", "expires_at"),
    )


class WsNode(Base):
    __tablename__ = "ws_nodes"

    node_addr: Mapped[str] = mapped_column(String(255), primary_key=True)
    heartbeat_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SchemaMigration(Base):
    __tablename__ = "schema_migrations"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
