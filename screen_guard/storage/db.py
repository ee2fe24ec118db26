"""
Database connection management.

Provides SQLite connections for data persistence.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

DEFAULT_DB_PATH = "screen_guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    Connections run in autocommit mode so that callers open explicit
    ``BEGIN IMMEDIATE`` transactions for every read-modify-write. The busy
    timeout lets the evaluation loop, the refund loop and direct user
    actions wait on each other instead of failing.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=30, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA busy_timeout = 30000")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside an immediate (write-locking) transaction.

    The write lock is taken up front so two read-modify-write cycles on
    the same record cannot interleave and lose an update.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
