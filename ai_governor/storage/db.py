"""
Database connection management.

Provides SQLite connections for the ledger and key-value store.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "ai_governor.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    A busy timeout lets concurrent writers wait for each other instead of
    failing immediately with "database is locked".

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=10.0, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
