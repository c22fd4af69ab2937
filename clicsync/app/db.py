import os
import sqlite3
from contextlib import contextmanager
from typing import Optional

from .config import settings

SCHEMA_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "sqlite_schema.sql")


def _connect(db_path: Optional[str] = None) -> sqlite3.Connection:
    # isolation_level=None: we issue BEGIN/COMMIT ourselves (see `transaction`),
    # so a batch is exactly one store transaction.
    conn = sqlite3.connect(
        db_path or settings.db_path,
        timeout=max(settings.db_busy_timeout_ms, 0) / 1000.0,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute(f"PRAGMA busy_timeout = {int(settings.db_busy_timeout_ms)}")
    return conn


@contextmanager
def get_conn(db_path: Optional[str] = None):
    conn = _connect(db_path)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection):
    # IMMEDIATE takes the write lock up front so concurrent pushes serialize
    # instead of failing halfway with SQLITE_BUSY on upgrade.
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def init_db(db_path: Optional[str] = None) -> None:
    if not os.path.exists(SCHEMA_PATH):
        raise RuntimeError(f"Missing schema file: {SCHEMA_PATH}")
    with open(SCHEMA_PATH, "r", encoding="utf-8") as f:
        schema = f.read()
    with get_conn(db_path) as conn:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript(schema)
