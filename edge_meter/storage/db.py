"""
Database connection management.

Provides the SQLite connection backing the local counter store.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "edge_meter.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with a busy timeout so concurrent merges wait
        for the write lock instead of failing
    """
    path = Path(db_path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=30.0)
    return conn
