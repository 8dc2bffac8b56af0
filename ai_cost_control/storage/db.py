"""
Database connection management.

Provides SQLite connections and timestamp encoding for data persistence.
"""

import sqlite3
from datetime import datetime, timezone
from pathlib import Path

DEFAULT_DB_PATH = "ai_cost_control.db"

# Fixed-width so lexical order in SQL equals chronological order
_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    Connections run in autocommit mode so that callers open explicit
    ``BEGIN IMMEDIATE`` transactions when they need a write lock, and
    wait on a busy database instead of failing straight away.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=30.0, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 30000")
    return conn


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def encode_timestamp(value: datetime) -> str:
    return to_utc(value).strftime(_TIMESTAMP_FORMAT)


def decode_timestamp(value: str) -> datetime:
    return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
