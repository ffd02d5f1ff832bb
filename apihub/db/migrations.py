from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy import Connection, Engine, inspect, text


@dataclass(frozen=True)
class MigrationStep:
    version: int
    name: str
    apply: Callable[[Connection], None]


def _ensure_schema_migrations_table(conn: Connection) -> None:
    conn.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                applied_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
    )


def _table_exists(conn: Connection, table_name: str) -> bool:
    inspector = inspect(conn)
    return inspector.has_table(table_name)


def _column_exists(conn: Connection, table_name: str, column_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA table_info('{table_name}')")).mappings().all()
        return any(str(row["name"]) == column_name for row in rows)

    inspector = inspect(conn)
    return any(col["name"] == column_name for col in inspector.get_columns(table_name))


def _index_exists(conn: Connection, table_name: str, index_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
        return any(str(row["name"]) == index_name for row in rows)

    inspector = inspect(conn)
    return any(index.get("name") == index_name for index in inspector.get_indexes(table_name))


def _migration_0001_baseline(_conn: Connection) -> None:
    return


def _resolve_duplicate_active_fingerprints(conn: Connection) -> None:
    # keep the oldest active build per fingerprint, fail the rest
    conn.execute(
        text(
            """
            UPDATE builds
            SET status = 'error',
                details = 'superseded by an older build with the same fingerprint',
                finished_at = CURRENT_TIMESTAMP
            WHERE status IN ('none', 'running')
              AND EXISTS (
                  SELECT 1
                  FROM builds older
                  WHERE older.fingerprint = builds.fingerprint
                    AND older.status IN ('none', 'running')
                    AND (older.created_at < builds.created_at
                         OR (older.created_at = builds.created_at AND older.id < builds.id))
              )
            """
        )
    )


def _migration_0002_active_fingerprint_gate(conn: Connection) -> None:
    if not _table_exists(conn, "builds"):
        return
    if _index_exists(conn, "builds", "ux_builds_active_fingerprint"):
        return

    _resolve_duplicate_active_fingerprints(conn)
    conn.execute(
        text(
            "CREATE UNIQUE INDEX ux_builds_active_fingerprint "
            "ON builds (fingerprint) WHERE status IN ('none', 'running')"
        )
    )


def _migration_0003_build_finalized_flag(conn: Connection) -> None:
    if not _table_exists(conn, "builds"):
        return
    if not _column_exists(conn, "builds", "finalized"):
        conn.execute(text("ALTER TABLE builds ADD COLUMN finalized BOOLEAN NOT NULL DEFAULT 0"))
        conn.execute(text("UPDATE builds SET finalized = 1 WHERE status = 'complete' AND result_ref IS NOT NULL"))


def _migration_0004_build_deadline(conn: Connection) -> None:
    if not _table_exists(conn, "builds"):
        return
    if not _column_exists(conn, "builds", "deadline_at"):
        conn.execute(text("ALTER TABLE builds ADD COLUMN deadline_at DATETIME"))


def _migration_0005_comparison_changes(conn: Connection) -> None:
    if not _table_exists(conn, "version_comparisons"):
        return
    if not _column_exists(conn, "version_comparisons", "changes"):
        conn.execute(text("ALTER TABLE version_comparisons ADD COLUMN changes JSON NOT NULL DEFAULT '[]'"))


def _migration_0006_operation_deprecated_flag(conn: Connection) -> None:
    if not _table_exists(conn, "published_operations"):
        return
    if not _column_exists(conn, "published_operations", "deprecated"):
        conn.execute(text("ALTER TABLE published_operations ADD COLUMN deprecated BOOLEAN NOT NULL DEFAULT 0"))


MIGRATIONS: tuple[MigrationStep, ...] = (
    MigrationStep(version=1, name="baseline", apply=_migration_0001_baseline),
    MigrationStep(version=2, name="active_fingerprint_gate", apply=_migration_0002_active_fingerprint_gate),
    MigrationStep(version=3, name="build_finalized_flag", apply=_migration_0003_build_finalized_flag),
    MigrationStep(version=4, name="build_deadline", apply=_migration_0004_build_deadline),
    MigrationStep(version=5, name="comparison_changes", apply=_migration_0005_comparison_changes),
    MigrationStep(version=6, name="operation_deprecated_flag", apply=_migration_0006_operation_deprecated_flag),
)


def apply_migrations(engine: Engine) -> list[int]:
    applied: list[int] = []
    with engine.begin() as conn:
        _ensure_schema_migrations_table(conn)
        done = {int(row[0]) for row in conn.execute(text("SELECT version FROM schema_migrations")).all()}
        for step in MIGRATIONS:
            if step.version in done:
                continue
            step.apply(conn)
            conn.execute(
                text("INSERT INTO schema_migrations (version, name) VALUES (:version, :name)"),
                {"version": step.version, "name": step.name},
            )
            applied.append(step.version)
    return applied
