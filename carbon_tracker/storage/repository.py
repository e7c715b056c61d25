"""
Repository pattern for data access.

Handles session accounting rows, global and per-project configuration, and
stored credentials. A store is opened for one logical operation and closed
again; it is never held across unrelated operations.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, List, Optional, TypeVar, Union

from .db import get_connection, get_readonly_connection
from .migrations import run_migrations
from .models import (
    EMPTY_STATS,
    AggregateStats,
    AuthConfig,
    DailyStats,
    ProjectStats,
    SessionAccountingRow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SYNC_ENABLED_KEY = "sync_enabled"
USER_ID_KEY = "claude_code_user_id"
USER_NAME_KEY = "claude_code_user_name"
INSTALLED_AT_KEY = "installed_at"

_AUTH_ACCESS_TOKEN = "auth_access_token"
_AUTH_REFRESH_TOKEN = "auth_refresh_token"
_AUTH_ACCESS_EXPIRES = "auth_access_token_expires_at"
_AUTH_REFRESH_EXPIRES = "auth_refresh_token_expires_at"
_AUTH_ORGANIZATION = "auth_organization_id"
_AUTH_UPDATED_AT = "auth_updated_at"

SESSION_COLUMNS = """
    session_id, project_path, project_identifier, input_tokens, output_tokens,
    cache_creation_tokens, cache_read_tokens, total_tokens, energy_wh,
    co2_grams, primary_model, created_at, updated_at, needs_sync
"""


def to_iso(value: datetime) -> str:
    """Serialize a datetime as UTC ISO-8601 with millisecond precision."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def from_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def initialize_schema(conn: sqlite3.Connection, db_key: str = "") -> None:
    """Create the base tables if missing, then apply pending migrations."""
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS sessions (
            session_id TEXT PRIMARY KEY,
            project_path TEXT NOT NULL,
            input_tokens INTEGER NOT NULL DEFAULT 0,
            output_tokens INTEGER NOT NULL DEFAULT 0,
            cache_creation_tokens INTEGER NOT NULL DEFAULT 0,
            cache_read_tokens INTEGER NOT NULL DEFAULT 0,
            total_tokens INTEGER NOT NULL DEFAULT 0,
            energy_wh REAL NOT NULL DEFAULT 0,
            co2_grams REAL NOT NULL DEFAULT 0,
            primary_model TEXT NOT NULL DEFAULT 'unknown',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_sessions_created_at ON sessions(created_at);
        CREATE INDEX IF NOT EXISTS idx_sessions_project_path ON sessions(project_path);

        CREATE TABLE IF NOT EXISTS plugin_config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );
    """)
    run_migrations(conn, db_key=db_key)


def _row_to_session(row: sqlite3.Row) -> SessionAccountingRow:
    return SessionAccountingRow(
        session_id=row["session_id"],
        project_path=row["project_path"],
        project_identifier=row["project_identifier"] or "",
        input_tokens=int(row["input_tokens"]),
        output_tokens=int(row["output_tokens"]),
        cache_creation_tokens=int(row["cache_creation_tokens"]),
        cache_read_tokens=int(row["cache_read_tokens"]),
        total_tokens=int(row["total_tokens"]),
        energy_wh=float(row["energy_wh"]),
        co2_grams=float(row["co2_grams"]),
        primary_model=row["primary_model"],
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
        needs_sync=bool(row["needs_sync"]),
    )


class CarbonStore:
    """Access to the local carbon database over one open connection.

    Use `open_store` (read-write) or `query_readonly` rather than
    constructing this directly.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # Sessions

    def upsert_session(self, session: SessionAccountingRow) -> None:
        """Insert or update a session row.

        On conflict every column is replaced except created_at, and
        needs_sync is set again so the new content gets delivered.
        """
        with self.conn:
            self.conn.execute("""
                INSERT INTO sessions (
                    session_id, project_path, project_identifier, input_tokens,
                    output_tokens, cache_creation_tokens, cache_read_tokens,
                    total_tokens, energy_wh, co2_grams, primary_model,
                    created_at, updated_at, needs_sync
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
                ON CONFLICT(session_id) DO UPDATE SET
                    project_path = excluded.project_path,
                    project_identifier = excluded.project_identifier,
                    input_tokens = excluded.input_tokens,
                    output_tokens = excluded.output_tokens,
                    cache_creation_tokens = excluded.cache_creation_tokens,
                    cache_read_tokens = excluded.cache_read_tokens,
                    total_tokens = excluded.total_tokens,
                    energy_wh = excluded.energy_wh,
                    co2_grams = excluded.co2_grams,
                    primary_model = excluded.primary_model,
                    updated_at = excluded.updated_at,
                    needs_sync = 1
            """, (
                session.session_id,
                session.project_path,
                session.project_identifier,
                session.input_tokens,
                session.output_tokens,
                session.cache_creation_tokens,
                session.cache_read_tokens,
                session.total_tokens,
                session.energy_wh,
                session.co2_grams,
                session.primary_model,
                to_iso(session.created_at),
                to_iso(session.updated_at),
            ))

    def get_session(self, session_id: str) -> Optional[SessionAccountingRow]:
        row = self.conn.execute(
            f"SELECT {SESSION_COLUMNS} FROM sessions WHERE session_id = ?", (session_id,)
        ).fetchone()
        return _row_to_session(row) if row else None

    def session_exists(self, session_id: str) -> bool:
        return self.conn.execute(
            "SELECT 1 FROM sessions WHERE session_id = ?", (session_id,)
        ).fetchone() is not None

    def get_all_session_ids(self) -> List[str]:
        return [row[0] for row in self.conn.execute("SELECT session_id FROM sessions")]

    def delete_project_sessions(self, project_identifier: str) -> int:
        """Delete every session of a project. Only for user-initiated removal."""
        with self.conn:
            cursor = self.conn.execute(
                "DELETE FROM sessions WHERE project_identifier = ?", (project_identifier,)
            )
        return cursor.rowcount

    def rename_project_identifier(self, old_identifier: str, new_identifier: str) -> int:
        """Move sessions to a new project identifier and mark them for sync."""
        with self.conn:
            cursor = self.conn.execute(
                "UPDATE sessions SET project_identifier = ?, needs_sync = 1 "
                "WHERE project_identifier = ?",
                (new_identifier, old_identifier)
            )
        return cursor.rowcount

    # Statistics

    def get_aggregate_stats(self, project_identifier: Optional[str] = None) -> AggregateStats:
        """Get totals across all sessions, optionally for one project."""
        query = """
            SELECT
                COUNT(*),
                COALESCE(SUM(total_tokens), 0),
                COALESCE(SUM(input_tokens), 0),
                COALESCE(SUM(output_tokens), 0),
                COALESCE(SUM(cache_creation_tokens), 0),
                COALESCE(SUM(cache_read_tokens), 0),
                COALESCE(SUM(energy_wh), 0),
                COALESCE(SUM(co2_grams), 0)
            FROM sessions
        """
        params = []
        if project_identifier:
            query += " WHERE project_identifier = ?"
            params.append(project_identifier)

        row = self.conn.execute(query, params).fetchone()
        return AggregateStats(
            total_sessions=int(row[0]),
            total_tokens=int(row[1]),
            total_input_tokens=int(row[2]),
            total_output_tokens=int(row[3]),
            total_cache_creation_tokens=int(row[4]),
            total_cache_read_tokens=int(row[5]),
            total_energy_wh=float(row[6]),
            total_co2_grams=float(row[7]),
        )

    def get_daily_stats(self, days: int = 7, project_identifier: Optional[str] = None) -> List[DailyStats]:
        """Get per-day totals for the last N days, oldest first."""
        query = """
            SELECT
                DATE(created_at) AS date,
                COUNT(*),
                COALESCE(SUM(total_tokens), 0),
                COALESCE(SUM(energy_wh), 0),
                COALESCE(SUM(co2_grams), 0)
            FROM sessions
            WHERE created_at >= DATE('now', '-' || ? || ' days')
        """
        params: list = [int(days)]
        if project_identifier:
            query += " AND project_identifier = ?"
            params.append(project_identifier)
        query += " GROUP BY DATE(created_at) ORDER BY date"

        return [
            DailyStats(
                date=row[0],
                sessions=int(row[1]),
                tokens=int(row[2]),
                energy_wh=float(row[3]),
                co2_grams=float(row[4]),
            )
            for row in self.conn.execute(query, params)
        ]

    def get_project_stats(self, days: int = 7) -> List[ProjectStats]:
        """Get per-project totals for the last N days, largest CO2 first."""
        rows = self.conn.execute("""
            SELECT
                project_identifier,
                COUNT(*),
                COALESCE(SUM(total_tokens), 0),
                COALESCE(SUM(energy_wh), 0),
                COALESCE(SUM(co2_grams), 0) AS co2
            FROM sessions
            WHERE created_at >= DATE('now', '-' || ? || ' days')
            GROUP BY project_identifier
            ORDER BY co2 DESC
        """, (int(days),))
        return [
            ProjectStats(
                project_identifier=row[0],
                sessions=int(row[1]),
                tokens=int(row[2]),
                energy_wh=float(row[3]),
                co2_grams=float(row[4]),
            )
            for row in rows
        ]

    # Sync state

    def get_unsynced_sessions(self, limit: int = 100) -> List[SessionAccountingRow]:
        rows = self.conn.execute(
            f"SELECT {SESSION_COLUMNS} FROM sessions WHERE needs_sync = 1 "
            "ORDER BY created_at, session_id LIMIT ?",
            (int(limit),)
        ).fetchall()
        return [_row_to_session(row) for row in rows]

    def count_unsynced_sessions(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM sessions WHERE needs_sync = 1").fetchone()[0]

    def mark_sessions_synced(self, sessions: List[SessionAccountingRow]) -> int:
        """Clear the needs_sync flag of delivered sessions.

        A row rewritten after it was read for delivery no longer matches
        the delivered updated_at and token total, and stays dirty.

        Returns:
            Number of rows marked clean
        """
        if not sessions:
            return 0
        with self.conn:
            cursor = self.conn.executemany(
                "UPDATE sessions SET needs_sync = 0 "
                "WHERE session_id = ? AND updated_at = ? AND total_tokens = ?",
                [(s.session_id, to_iso(s.updated_at), s.total_tokens) for s in sessions]
            )
        return cursor.rowcount

    def mark_all_synced(self) -> int:
        with self.conn:
            cursor = self.conn.execute("UPDATE sessions SET needs_sync = 0 WHERE needs_sync = 1")
        return cursor.rowcount

    # Global config

    def get_config(self, key: str) -> Optional[str]:
        row = self.conn.execute("SELECT value FROM plugin_config WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def set_config(self, key: str, value: str) -> None:
        with self.conn:
            self.conn.execute(
                "INSERT INTO plugin_config (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value)
            )

    def delete_config(self, key: str) -> None:
        with self.conn:
            self.conn.execute("DELETE FROM plugin_config WHERE key = ?", (key,))

    def get_installed_at(self) -> Optional[datetime]:
        value = self.get_config(INSTALLED_AT_KEY)
        return from_iso(value) if value else None

    def set_installed_at(self, when: Optional[datetime] = None) -> None:
        """Record the install time, only if not already set."""
        with self.conn:
            self.conn.execute(
                "INSERT OR IGNORE INTO plugin_config (key, value) VALUES (?, ?)",
                (INSTALLED_AT_KEY, to_iso(when or datetime.now(timezone.utc)))
            )

    # Per-project config

    def get_project_config(self, project_hash: str, key: str) -> Optional[str]:
        row = self.conn.execute(
            "SELECT value FROM project_config WHERE project_hash = ? AND key = ?",
            (project_hash, key)
        ).fetchone()
        return row[0] if row else None

    def set_project_config(self, project_hash: str, key: str, value: str) -> None:
        with self.conn:
            self.conn.execute(
                "INSERT INTO project_config (project_hash, key, value) VALUES (?, ?, ?) "
                "ON CONFLICT(project_hash, key) DO UPDATE SET value = excluded.value",
                (project_hash, key, value)
            )

    def delete_project_config(self, project_hash: str, key: str) -> None:
        with self.conn:
            self.conn.execute(
                "DELETE FROM project_config WHERE project_hash = ? AND key = ?",
                (project_hash, key)
            )

    # Credentials

    def get_auth_config(self) -> Optional[AuthConfig]:
        """Stored credentials, or None if the tracker was never authorized."""
        access_token = self.get_config(_AUTH_ACCESS_TOKEN)
        refresh_token = self.get_config(_AUTH_REFRESH_TOKEN)
        access_expires = self.get_config(_AUTH_ACCESS_EXPIRES)
        refresh_expires = self.get_config(_AUTH_REFRESH_EXPIRES)
        if not (access_token and refresh_token and access_expires and refresh_expires):
            return None

        updated_at = self.get_config(_AUTH_UPDATED_AT)
        return AuthConfig(
            access_token=access_token,
            refresh_token=refresh_token,
            access_token_expires_at=from_iso(access_expires),
            refresh_token_expires_at=from_iso(refresh_expires),
            organization_id=self.get_config(_AUTH_ORGANIZATION),
            updated_at=from_iso(updated_at) if updated_at else None,
        )

    def save_auth_config(self, auth: AuthConfig) -> None:
        self.update_auth_tokens(
            auth.access_token,
            auth.refresh_token,
            auth.access_token_expires_at,
            auth.refresh_token_expires_at,
        )
        if auth.organization_id:
            self.save_organization_id(auth.organization_id)

    def update_auth_tokens(
        self,
        access_token: str,
        refresh_token: str,
        access_token_expires_at: datetime,
        refresh_token_expires_at: datetime
    ) -> None:
        values = {
            _AUTH_ACCESS_TOKEN: access_token,
            _AUTH_REFRESH_TOKEN: refresh_token,
            _AUTH_ACCESS_EXPIRES: to_iso(access_token_expires_at),
            _AUTH_REFRESH_EXPIRES: to_iso(refresh_token_expires_at),
            _AUTH_UPDATED_AT: to_iso(datetime.now(timezone.utc)),
        }
        with self.conn:
            self.conn.executemany(
                "INSERT INTO plugin_config (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                list(values.items())
            )

    def save_organization_id(self, organization_id: str) -> None:
        self.set_config(_AUTH_ORGANIZATION, organization_id)


@contextmanager
def open_store(db_path: Union[str, Path]) -> Iterator[CarbonStore]:
    """Open the store read-write for one operation.

    Creates the database if needed and brings the schema up to date.
    """
    conn = get_connection(db_path)
    try:
        initialize_schema(conn, db_key=str(Path(db_path).resolve()))
        yield CarbonStore(conn)
    finally:
        conn.close()


def query_readonly(
    db_path: Union[str, Path],
    fn: Callable[[CarbonStore], T],
    default: Optional[T] = None
) -> Optional[T]:
    """Run a read-only query, returning `default` instead of failing.

    A missing database file means no data yet; query errors are logged.
    """
    if not Path(db_path).exists():
        return default

    try:
        conn = get_readonly_connection(db_path)
    except sqlite3.Error as e:
        logger.warning("Cannot open %s read-only: %s", db_path, e)
        return default

    try:
        return fn(CarbonStore(conn))
    except sqlite3.Error as e:
        logger.warning("Read-only query failed: %s", e)
        return default
    finally:
        conn.close()


def get_total_co2(db_path: Union[str, Path], project_identifier: Optional[str] = None) -> float:
    """Total CO2 in grams, 0.0 when there is no data yet."""
    stats = query_readonly(
        db_path,
        lambda store: store.get_aggregate_stats(project_identifier),
        default=EMPTY_STATS
    )
    return stats.total_co2_grams
