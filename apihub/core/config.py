from __future__ import annotations

import socket
from functools import lru_cache
from pathlib import Path

from pydantic import Field, PositiveFloat, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_VERSION_STATUSES = ("draft", "release", "archived")
MEGABYTE = 1024 * 1024


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="APIHUB_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "APIHub"
    environment: str = "production"
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    log_level: str = "INFO"

    state_root: Path = Field(default=Path("/state"))
    artifacts_root: Path = Field(default=Path("/state/artifacts"))
    database_url: str | None = None

    node_address: str | None = None
    background_tasks_enabled: bool = True

    executor_enabled: bool = True
    executor_workers: PositiveInt = 2
    executor_poll_seconds: PositiveFloat = 1.0
    executor_id: str | None = None

    build_keepalive_timeout_seconds: PositiveInt = 600
    build_reuse_ttl_seconds: PositiveInt = 86400
    build_default_timeout_seconds: PositiveInt | None = None
    build_details_max_length: PositiveInt = 4096
    build_retention_days: PositiveInt = 30

    publish_archive_size_limit_mb: PositiveInt = 50
    publish_file_size_limit_mb: PositiveInt = 15
    branch_content_size_limit_mb: PositiveInt = 50

    default_publish_statuses: list[str] = Field(default_factory=lambda: list(SUPPORTED_VERSION_STATUSES))
    publish_statuses_by_user: dict[str, list[str]] = Field(default_factory=dict)

    ws_session_ttl_seconds: PositiveInt = 30
    ws_node_ttl_seconds: PositiveInt = 30
    ws_ping_interval_seconds: PositiveInt = 5
    ws_sweep_interval_seconds: PositiveInt = 60

    default_page_size: PositiveInt = 50
    max_page_size: PositiveInt = 200

    @field_validator("state_root", "artifacts_root", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path) -> Path:
        raw = str(value)
        if "~" in raw:
            raise ValueError("Home expansion syntax is not allowed in paths")
        if "$" in raw:
            raise ValueError("Environment variable syntax is not allowed in paths")
        path = Path(raw)
        if not path.is_absolute():
            raise ValueError("Path settings must be absolute")
        return path

    @field_validator("default_publish_statuses")
    @classmethod
    def _normalize_statuses(cls, value: list[str]) -> list[str]:
        normalized = [item.strip().lower() for item in value if item.strip()]
        unknown = sorted(set(normalized) - set(SUPPORTED_VERSION_STATUSES))
        if unknown:
            raise ValueError(f"Unknown version statuses: {unknown}")
        return normalized

    @field_validator("node_address")
    @classmethod
    def _validate_node_address(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if not normalized or "/" in normalized:
            raise ValueError("node_address must be a host:port pair")
        return normalized

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.state_root = self.state_root.resolve(strict=False)
        self.artifacts_root = self.artifacts_root.resolve(strict=False)

        self.state_root.mkdir(parents=True, exist_ok=True)
        if self.artifacts_root.as_posix() == "/state/artifacts" and self.state_root.as_posix() != "/state":
            self.artifacts_root = (self.state_root / "artifacts").resolve(strict=False)
        self.artifacts_root.mkdir(parents=True, exist_ok=True)
        if self.state_root != self.artifacts_root and self.state_root not in self.artifacts_root.parents:
            raise ValueError("artifacts_root must be under state_root")

        if self.publish_file_size_limit_mb > self.publish_archive_size_limit_mb:
            raise ValueError("publish_file_size_limit_mb must be <= publish_archive_size_limit_mb")

        if self.max_page_size < self.default_page_size:
            raise ValueError("max_page_size must be greater than or equal to default_page_size")

        if self.ws_ping_interval_seconds >= self.ws_session_ttl_seconds:
            raise ValueError("ws_ping_interval_seconds must be lower than ws_session_ttl_seconds")

        for user_id, statuses in self.publish_statuses_by_user.items():
            unknown = sorted(set(statuses) - set(SUPPORTED_VERSION_STATUSES))
            if unknown:
                raise ValueError(f"Unknown version statuses for user {user_id}: {unknown}")

        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "apihub.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"

    @property
    def effective_node_address(self) -> str:
        if self.node_address:
            return self.node_address
        return f"{socket.gethostname()}:{self.api_port}"

    @property
    def effective_executor_id(self) -> str:
        return self.executor_id or f"internal@{self.effective_node_address}"

    @property
    def publish_archive_size_limit_bytes(self) -> int:
        return self.publish_archive_size_limit_mb * MEGABYTE

    @property
    def publish_file_size_limit_bytes(self) -> int:
        return self.publish_file_size_limit_mb * MEGABYTE

    @property
    def branch_content_size_limit_bytes(self) -> int:
        return self.branch_content_size_limit_mb * MEGABYTE


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
