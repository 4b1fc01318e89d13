"""
Database connection management.

Provides SQLite connection for data persistence.
"""

import sqlite3
from pathlib import Path


DEFAULT_DB_PATH = "contentgen.db"

# Seconds a writer waits on a locked database before failing
BUSY_TIMEOUT = 30.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled and rows
        addressable by column name
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
