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
    return inspect(conn).has_table(table_name)


def _column_exists(conn: Connection, table_name: str, column_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False
    return any(col["name"] == column_name for col in inspect(conn).get_columns(table_name))


def _index_exists(conn: Connection, table_name: str, index_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False
    return any(index.get("name") == index_name for index in inspect(conn).get_indexes(table_name))


def _migration_0001_baseline(_conn: Connection) -> None:
    return


def _migration_0002_queue_heartbeat(conn: Connection) -> None:
    if not _table_exists(conn, "backup_queue"):
        return

    if not _column_exists(conn, "backup_queue", "heartbeat_at"):
        conn.execute(text("ALTER TABLE backup_queue ADD COLUMN heartbeat_at DATETIME"))

    conn.execute(
        text(
            """
            UPDATE backup_queue
            SET heartbeat_at = started_at
            WHERE status = 'processing'
              AND heartbeat_at IS NULL
            """
        )
    )

    if not _index_exists(conn, "backup_queue", "ix_backup_queue_processing_started"):
        conn.execute(
            text("CREATE INDEX ix_backup_queue_processing_started ON backup_queue (status, started_at)")
        )


def _migration_0003_backup_logs(conn: Connection) -> None:
    if not _table_exists(conn, "backup_logs"):
        conn.execute(
            text(
                """
                CREATE TABLE backup_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    backup_job_id VARCHAR(36) NOT NULL REFERENCES backup_jobs(id) ON DELETE CASCADE,
                    event_type VARCHAR(64) NOT NULL,
                    message TEXT NOT NULL,
                    is_error BOOLEAN NOT NULL DEFAULT 0,
                    details JSON NOT NULL DEFAULT '{}',
                    created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
        )

    if not _index_exists(conn, "backup_logs", "ix_backup_logs_job_created"):
        conn.execute(
            text("CREATE INDEX ix_backup_logs_job_created ON backup_logs (backup_job_id, created_at, id)")
        )


def _migration_0004_backup_parts_unique_part(conn: Connection) -> None:
    if not _table_exists(conn, "backup_parts"):
        return
    if _index_exists(conn, "backup_parts", "uq_backup_parts_job_part"):
        return
    unique_constraints = inspect(conn).get_unique_constraints("backup_parts")
    if any(set(item["column_names"]) == {"backup_job_id", "part_number"} for item in unique_constraints):
        return

    # keep the newest row per (job, part) before enforcing uniqueness
    conn.execute(
        text(
            """
            DELETE FROM backup_parts
            WHERE id NOT IN (
                SELECT MAX(id)
                FROM backup_parts
                GROUP BY backup_job_id, part_number
            )
            """
        )
    )
    conn.execute(
        text(
            "CREATE UNIQUE INDEX IF NOT EXISTS uq_backup_parts_job_part "
            "ON backup_parts (backup_job_id, part_number)"
        )
    )


MIGRATIONS: tuple[MigrationStep, ...] = (
    MigrationStep(version=1, name="baseline", apply=_migration_0001_baseline),
    MigrationStep(version=2, name="queue_heartbeat", apply=_migration_0002_queue_heartbeat),
    MigrationStep(version=3, name="backup_logs", apply=_migration_0003_backup_logs),
    MigrationStep(version=4, name="backup_parts_unique_part", apply=_migration_0004_backup_parts_unique_part),
)


def apply_migrations(engine: Engine) -> None:
    with engine.begin() as conn:
        _ensure_schema_migrations_table(conn)

        existing_versions = {
            int(row[0])
            for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version ASC")).all()
        }

        for step in MIGRATIONS:
            if step.version in existing_versions:
                continue

            step.apply(conn)
            conn.execute(
                text("INSERT INTO schema_migrations(version, name) VALUES (:version, :name)"),
                {"version": step.version, "name": step.name},
            )
