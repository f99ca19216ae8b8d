"""
Database connection management.

Provides the SQLite connection used for usage and cost snapshots.
"""

import sqlite3
from pathlib import Path
from typing import Union

DEFAULT_DB_PATH = "snapshots.sqlite"


def get_connection(db_path: Union[str, Path] = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection with explicit transaction control.

    Autocommit mode (``isolation_level=None``) leaves BEGIN/COMMIT/ROLLBACK
    to the caller, so a snapshot replace is one transaction and nothing else.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
