"""SQLite connection layer (WAL, explicit transactions, FTS5)."""

from __future__ import annotations

import sqlite3
from pathlib import Path


class Database:
    """Handle to the local mirror database.

    The writer connection runs in autocommit mode (``isolation_level=None``);
    :meth:`trawl.db.repository.Repository.transaction` issues the explicit
    ``BEGIN IMMEDIATE`` / ``COMMIT`` / ``ROLLBACK``. Readers may open the same
    file concurrently with ``readonly=True`` and see only committed state.
    """

    def __init__(self, db_path: Path | str, *, readonly: bool = False) -> None:
        """Store the database path. Call connect() to open the connection.

        Args:
            db_path: Path to the SQLite database file (created if missing,
                unless *readonly*).
            readonly: Open with ``mode=ro``; the file must already exist.
        """
        self.db_path = Path(db_path)
        self.readonly = readonly
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> sqlite3.Connection:
        """Open a connection, apply pragmas, and return it."""
        if self.readonly:
            uri = f"{self.db_path.resolve().as_uri()}?mode=ro"
            conn = sqlite3.connect(uri, uri=True, isolation_level=None)
        else:
            conn = sqlite3.connect(self.db_path, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        if not self.readonly:
            conn.execute("PRAGMA journal_mode = WAL")
        return conn

    def __enter__(self) -> sqlite3.Connection:
        """Open the database and return the connection (context manager support)."""
        self._conn = self.connect()
        return self._conn

    def __exit__(self, *args: object) -> None:
        """Close the connection when leaving the context manager."""
        if self._conn:
            self._conn.close()
            self._conn = None
