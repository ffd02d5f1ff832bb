from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine, text

from apihub.db.migrations import MIGRATIONS, apply_migrations


def _column_names(conn, table_name: str) -> set[str]:
    rows = conn.execute(text(f"PRAGMA table_info('{table_name}')")).mappings().all()
    return {str(row["name"]) for row in rows}


def _index_names(conn, table_name: str) -> set[str]:
    rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
    return {str(row["name"]) for row in rows}


def _create_legacy_schema(conn) -> None:
    conn.execute(
        text(
            """
            CREATE TABLE builds (
                id VARCHAR(36) PRIMARY KEY,
                build_type VARCHAR(40) NOT NULL,
                status VARCHAR(16) NOT NULL,
                details TEXT,
                package_id VARCHAR(255) NOT NULL,
                version VARCHAR(255) NOT NULL,
                fingerprint VARCHAR(64) NOT NULL,
                config JSON NOT NULL,
                result_ref VARCHAR(512),
                created_at DATETIME NOT NULL,
                finished_at DATETIME
            )
            """
        )
    )
    conn.execute(
        text(
            """
            CREATE TABLE version_comparisons (
                comparison_id VARCHAR(64) PRIMARY KEY,
                package_id VARCHAR(255) NOT NULL,
                version VARCHAR(255) NOT NULL,
                summary JSON NOT NULL
            )
            """
        )
    )
    conn.execute(
        text(
            """
            CREATE TABLE published_operations (
                package_id VARCHAR(255) NOT NULL,
                version VARCHAR(255) NOT NULL,
                revision INTEGER NOT NULL,
                operation_id VARCHAR(255) NOT NULL,
                PRIMARY KEY (package_id, version, revision, operation_id)
            )
            """
        )
    )


def test_apply_migrations_upgrades_legacy_schema(tmp_path: Path) -> None:
    db_path = tmp_path / "legacy.sqlite3"
    engine = create_engine(f"sqlite:///{db_path.as_posix()}", future=True)

    with engine.begin() as conn:
        _create_legacy_schema(conn)
        conn.execute(
            text(
                "INSERT INTO builds(id, build_type, status, package_id, version, fingerprint, config, result_ref, created_at) "
                "VALUES ('done', 'build', 'complete', 'pkg', 'v1', 'fp-0', '{}', 'ab/done.zip', '2024-01-01 00:00:00')"
            )
        )

    apply_migrations(engine)
    apply_migrations(engine)

    with engine.begin() as conn:
        build_columns = _column_names(conn, "builds")
        build_indexes = _index_names(conn, "builds")
        comparison_columns = _column_names(conn, "version_comparisons")
        operation_columns = _column_names(conn, "published_operations")
        finalized = conn.execute(text("SELECT finalized FROM builds WHERE id = 'done'")).scalar_one()
        migration_versions = [
            int(row[0])
            for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version ASC")).all()
        ]

    assert {"finalized", "deadline_at"}.issubset(build_columns)
    assert "ux_builds_active_fingerprint" in build_indexes
    assert "changes" in comparison_columns
    assert "deprecated" in operation_columns
    assert bool(finalized) is True
    assert migration_versions == [step.version for step in MIGRATIONS]


def test_apply_migrations_resolves_duplicate_active_fingerprints(tmp_path: Path) -> None:
    db_path = tmp_path / "duplicates.sqlite3"
    engine = create_engine(f"sqlite:///{db_path.as_posix()}", future=True)

    with engine.begin() as conn:
        _create_legacy_schema(conn)
        conn.execute(
            text(
                "INSERT INTO builds(id, build_type, status, package_id, version, fingerprint, config, created_at) VALUES "
                "('b-old', 'build', 'none', 'pkg', 'v1', 'fp-1', '{}', '2024-01-01 00:00:00'), "
                "('b-new', 'build', 'running', 'pkg', 'v1', 'fp-1', '{}', '2024-01-01 00:05:00'), "
                "('b-other', 'build', 'none', 'pkg', 'v2', 'fp-2', '{}', '2024-01-01 00:05:00')"
            )
        )

    applied = apply_migrations(engine)

    with engine.begin() as conn:
        statuses = dict(conn.execute(text("SELECT id, status FROM builds")).all())

    assert applied == [step.version for step in MIGRATIONS]
    assert statuses == {"b-old": "none", "b-new": "error", "b-other": "none"}
    assert apply_migrations(engine) == []
