"""SQLite connection layer with optional sqlite-vec extension."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import sqlite_vec
import structlog

logger = structlog.get_logger()


class Database:
    """Per-agent SQLite index with optional sqlite-vec vector search support.

    The vector extension is an accelerator: when it cannot be loaded the
    failure is kept in ``vector_error`` and the connection still works for
    chunk storage and keyword search.
    """

    def __init__(
        self,
        db_path: Path | str,
        *,
        load_vector: bool = True,
        extension_path: str | None = None,
    ) -> None:
        """Store the database path. Call connect() to open the connection.

        Args:
            db_path: Path to the SQLite database file (created if missing).
            load_vector: Try to load sqlite-vec into the connection.
            extension_path: Explicit extension file; defaults to the one
                shipped with the sqlite-vec wheel.
        """
        self.db_path = Path(db_path)
        self.load_vector = load_vector
        self.extension_path = extension_path
        self.vector_available = False
        self.vector_error: str | None = None
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> sqlite3.Connection:
        """Open a connection, try to load sqlite-vec, and return the connection."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        if self.load_vector:
            self._load_vector_extension(conn)
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    def _load_vector_extension(self, conn: sqlite3.Connection) -> None:
        try:
            conn.enable_load_extension(True)
            if self.extension_path:
                conn.load_extension(self.extension_path)
            else:
                sqlite_vec.load(conn)
            conn.enable_load_extension(False)
        except (AttributeError, sqlite3.Error, OSError) as exc:
            # AttributeError: interpreter built without extension loading.
            self.vector_available = False
            self.vector_error = str(exc) or type(exc).__name__
            logger.warning("vector_extension_unavailable", error=self.vector_error)
            return
        self.vector_available = True
        self.vector_error = None

    def __enter__(self) -> sqlite3.Connection:
        """Open the database and return the connection (context manager support)."""
        self._conn = self.connect()
        return self._conn

    def __exit__(self, *args: object) -> None:
        """Close the connection when leaving the context manager."""
        if self._conn:
            self._conn.close()
            self._conn = None
