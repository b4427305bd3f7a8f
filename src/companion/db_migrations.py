"""
SQLite schema migrations for the conversation store, with per-component version tracking.
"""
from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Callable

from .models import utcnow_iso
from .observability import get_logger

logger = get_logger(__name__)


MigrationRunner = Callable[[sqlite3.Connection], None]


@dataclass(frozen=True)
class SqliteMigration:
    version: int
    name: str
    statements: tuple[str, ...] = ()
    runner: MigrationRunner | None = None


def _ensure_session_updated_at(conn: sqlite3.Connection):
    columns = {row[1] for row in conn.execute("PRAGMA table_info(sessions)").fetchall()}
    if "updated_at" not in columns:
        conn.execute("ALTER TABLE sessions ADD COLUMN updated_at TEXT NOT NULL DEFAULT ''")
        conn.execute("UPDATE sessions SET updated_at = created_at WHERE updated_at = ''")


CONVERSATION_STORE_MIGRATIONS = (
    SqliteMigration(
        version=1,
        name="create_conversation_tables",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                session_id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active'
                    CHECK(status IN ('active', 'completed', 'archived')),
                created_at TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                role TEXT NOT NULL CHECK(role IN ('user', 'assistant')),
                content TEXT NOT NULL,
                created_at TEXT NOT NULL,
                metadata_json TEXT,
                FOREIGN KEY(session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, id)",
            "CREATE INDEX IF NOT EXISTS idx_sessions_owner ON sessions(owner_id, created_at)",
        ),
    ),
    SqliteMigration(
        version=2,
        name="ensure_session_updated_at",
        runner=_ensure_session_updated_at,
    ),
)


def applied_versions(conn: sqlite3.Connection, component: str) -> set[int]:
    rows = conn.execute(
        "SELECT version FROM schema_migrations WHERE component = ?",
        (component,),
    ).fetchall()
    return {int(row[0]) for row in rows}


def apply_sqlite_migrations(
    conn: sqlite3.Connection,
    *,
    component: str,
    migrations: tuple[SqliteMigration, ...] | list[SqliteMigration] = CONVERSATION_STORE_MIGRATIONS,
) -> list[int]:
    """Applies pending migrations in version order and returns the versions applied now."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            component TEXT NOT NULL,
            version INTEGER NOT NULL,
            name TEXT NOT NULL,
            applied_at TEXT NOT NULL,
            PRIMARY KEY(component, version)
        )
        """
    )

    already = applied_versions(conn, component)
    newly_applied: list[int] = []
    for migration in sorted(migrations, key=lambda m: int(m.version)):
        version = int(migration.version)
        if version in already:
            continue

        for statement in migration.statements:
            sql = str(statement or "").strip()
            if sql:
                conn.execute(sql)
        if callable(migration.runner):
            migration.runner(conn)

        conn.execute(
            """
            INSERT INTO schema_migrations (component, version, name, applied_at)
            VALUES (?, ?, ?, ?)
            """,
            (component, version, migration.name, utcnow_iso()),
        )
        newly_applied.append(version)
        logger.info("db_migration_applied", component=component, version=version, name=migration.name)
    return newly_applied
