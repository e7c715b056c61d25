"""
Database connection management.

Provides SQLite connections for the local carbon store.
"""

import sqlite3
from pathlib import Path
from typing import Union


def get_connection(db_path: Union[str, Path]) -> sqlite3.Connection:
    """Create and return a read-write SQLite connection in WAL mode.

    Write-ahead logging lets short-lived readers (a status line query)
    run while a writer (a background sync) holds the database.

    Args:
        db_path: Path to SQLite database file; parent directories are created

    Returns:
        SQLite connection returning sqlite3.Row rows
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=5.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def get_readonly_connection(db_path: Union[str, Path]) -> sqlite3.Connection:
    """Open an existing database read-only.

    Raises:
        sqlite3.OperationalError: If the file does not exist or cannot be opened
    """
    uri = Path(db_path).resolve().as_uri() + "?mode=ro"
    conn = sqlite3.connect(uri, uri=True, timeout=5.0)
    conn.row_factory = sqlite3.Row
    return conn
