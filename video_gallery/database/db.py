"""
Database connection management.
"""
import sqlite3
import logging
import threading
from pathlib import Path
from typing import Optional

from ..exceptions import CatalogError
from .schema import init_schema

class DBManager:
    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        # Reconciliation commits from the cycle thread while the host may read;
        # writes are serialized through this lock.
        self._write_lock = threading.RLock()

    def connect(self) -> sqlite3.Connection:
        """
        Connects to the SQLite database and configures performance pragmas.
        """
        if self._conn:
            return self._conn

        logging.info(f"Connecting to database: {self.db_path}")
        try:
            if str(self.db_path) != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            # Shared with the reconciliation thread; access goes through write_lock
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)

            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
            self._conn.execute("PRAGMA temp_store=MEMORY;")
            self._conn.execute("PRAGMA foreign_keys=ON;")

            # Ensure schema exists
            init_schema(self._conn)
        except (sqlite3.Error, OSError) as e:
            self._conn = None
            raise CatalogError(f"Cannot open catalog {self.db_path}: {e}") from e

        return self._conn

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def write_lock(self) -> threading.RLock:
        """Returns the write lock for thread-safe database operations."""
        return self._write_lock
