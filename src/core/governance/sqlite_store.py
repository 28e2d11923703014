"""
Shared SQLite plumbing for the governance stores.

Each store owns a table family in a single database file. Connections are
thread-local, run in WAL mode with a busy timeout, and every write goes
through _transaction() which commits or rolls back and re-raises.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


class SQLiteStore:
    """Base class for SQLite-backed stores. Subclasses set CREATE_TABLE_SQL."""

    CREATE_TABLE_SQL = ""

    def __init__(self, db_path: Path | str):
        self.db_path = str(db_path)
        self._local = threading.local()
        os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
        self._init_database()

    def _get_connection(self) -> sqlite3.Connection:
        if not hasattr(self._local, 'connection') or self._local.connection is None:
            self._local.connection = sqlite3.connect(
                self.db_path, check_same_thread=False, timeout=30.0
            )
            self._local.connection.row_factory = sqlite3.Row
            self._local.connection.execute("PRAGMA journal_mode=WAL")
        return self._local.connection

    @contextmanager
    def _transaction(self):
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def _init_database(self):
        if not self.CREATE_TABLE_SQL:
            return
        with self._transaction() as conn:
            conn.executescript(self.CREATE_TABLE_SQL)

    def close(self) -> None:
        """Close this thread's connection."""
        conn = getattr(self._local, 'connection', None)
        if conn is not None:
            conn.close()
            self._local.connection = None
