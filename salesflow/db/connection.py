"""
SQLite plumbing shared by the schema setup and the SQLite stores.

Every connection comes from connect(): dict-like rows, the configured journal
mode, foreign keys on, and a busy timeout so the scheduler thread and API
requests can share one file. Reads use get_db_conn(); anything that writes
more than one row uses transaction() so the rows land together.
"""

import logging
import sqlite3
import uuid
from contextlib import contextmanager

from salesflow.config import DB_JOURNAL_MODE, DB_PATH

logger = logging.getLogger("salesflow.db")

BUSY_TIMEOUT_SECONDS = 30


def connect(db_path: str = None) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path or DB_PATH, timeout=BUSY_TIMEOUT_SECONDS)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA journal_mode={DB_JOURNAL_MODE}")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@contextmanager
def get_db_conn(db_path: str = None):
    """Read-only use; the connection is always closed, never committed."""
    conn = connect(db_path)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(db_path: str = None):
    """Commit when the block finishes, roll back and re-raise when it doesn't."""
    conn = connect(db_path)
    try:
        yield conn
        conn.commit()
    except Exception as e:
        conn.rollback()
        logger.debug("Rolled back write to %s: %s", db_path or DB_PATH, e)
        raise
    finally:
        conn.close()


def list_tables(conn: sqlite3.Connection) -> list:
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
    ).fetchall()
    return [row[0] for row in rows]


def gen_id(prefix=""):
    """Short random id, e.g. gen_id("enr") -> "enr_3f9a0c1d2b4e"."""
    short = uuid.uuid4().hex[:12]
    return f"{prefix}_{short}" if prefix else short
