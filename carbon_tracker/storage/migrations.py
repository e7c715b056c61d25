"""
Forward-only schema migrations.

Each migration checks for its change before applying it, so re-running the
whole list against an up-to-date database is a no-op. The last applied
version is stored in PRAGMA user_version.
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Callable, List, Set

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    up: Callable[[sqlite3.Connection], None]


def column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    """Check if a column exists on a table."""
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return any(row[1] == column for row in rows)


def _add_needs_sync(conn: sqlite3.Connection) -> None:
    if not column_exists(conn, "sessions", "needs_sync"):
        conn.execute("ALTER TABLE sessions ADD COLUMN needs_sync INTEGER NOT NULL DEFAULT 1")


def _add_project_identifier(conn: sqlite3.Connection) -> None:
    if not column_exists(conn, "sessions", "project_identifier"):
        conn.execute("ALTER TABLE sessions ADD COLUMN project_identifier TEXT NOT NULL DEFAULT ''")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_sessions_project_identifier "
        "ON sessions(project_identifier)"
    )


def _add_project_config(conn: sqlite3.Connection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS project_config (
            project_hash TEXT NOT NULL,
            key TEXT NOT NULL,
            value TEXT NOT NULL,
            PRIMARY KEY (project_hash, key)
        )
    """)


def _add_needs_sync_index(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_needs_sync ON sessions(needs_sync)")


MIGRATIONS: List[Migration] = [
    Migration(1, "Add needs_sync flag for sync tracking", _add_needs_sync),
    Migration(2, "Add project_identifier column for stable project identification", _add_project_identifier),
    Migration(3, "Add project_config table for per-project settings", _add_project_config),
    Migration(4, "Index needs_sync for dirty-row scans", _add_needs_sync_index),
]

# Databases whose migration failed in this process; not retried until restart
_halted: Set[str] = set()


def get_schema_version(conn: sqlite3.Connection) -> int:
    return conn.execute("PRAGMA user_version").fetchone()[0]


def run_migrations(
    conn: sqlite3.Connection,
    migrations: List[Migration] = MIGRATIONS,
    db_key: str = ""
) -> int:
    """Apply every migration newer than the stored version, in order.

    A failing step is logged and stops the run; the stored version stays at
    the last successful step and the database is not migrated again for the
    rest of the process.

    Args:
        conn: Open connection
        migrations: Ordered migration list
        db_key: Identifies the database for the halt bookkeeping

    Returns:
        The schema version after this run
    """
    current_version = get_schema_version(conn)
    if db_key and db_key in _halted:
        return current_version

    for migration in sorted(migrations, key=lambda m: m.version):
        if migration.version <= current_version:
            continue
        try:
            with conn:
                migration.up(conn)
            conn.execute(f"PRAGMA user_version = {int(migration.version)}")
            current_version = migration.version
        except sqlite3.Error as e:
            logger.error(
                "Migration v%d failed (%s): %s",
                migration.version, migration.description, e
            )
            if db_key:
                _halted.add(db_key)
            break

    return current_version
