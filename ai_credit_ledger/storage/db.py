"""
Database connection management.

Provides SQLite connections for the account store and credit ledger.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "ai_credit_ledger.db"

# Seconds a writer waits for another writer's transaction to finish
LOCK_TIMEOUT_SECONDS = 30.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    The connection runs in autocommit mode so that callers control
    transaction boundaries explicitly (``BEGIN IMMEDIATE`` / ``COMMIT``).

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(
        str(path),
        timeout=LOCK_TIMEOUT_SECONDS,
        isolation_level=None,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
