"""SQLite connection management."""

import sqlite3
from pathlib import Path


def get_connection(db_path: Path | str) -> sqlite3.Connection:
    """
    Get a SQLite connection with row factory and WAL mode.

    Connections are opened in autocommit mode (isolation_level=None) so the
    store can issue explicit BEGIN IMMEDIATE for write transactions. WAL lets
    readers proceed while an install transaction is open.
    """
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(
        db_path,
        timeout=30.0,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA busy_timeout = 30000")
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
