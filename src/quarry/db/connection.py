"""SQLite connection layer with sqlite-vec extension."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import sqlite_vec


class Database:
    """One store file: SQLite with sqlite-vec vector search support."""

    def __init__(self, db_path: Path | str) -> None:
        """Store the database path. Call connect() to open the connection.

        Args:
            db_path: Path to the SQLite database file (created if missing,
                along with its parent directory).
        """
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None

    def connect(self, read_only: bool = False) -> sqlite3.Connection:
        """Open a connection, load sqlite-vec, and return the connection.

        The connection is in autocommit mode; multi-statement writes open
        explicit transactions (see KnowledgeDB.transaction).

        Args:
            read_only: Open an existing file with ``mode=ro``. Nothing is
                created and the journal mode is left as it is.

        Raises:
            FileNotFoundError: If *read_only* and the file does not exist.
        """
        if read_only:
            if not self.db_path.exists():
                raise FileNotFoundError(f"Store file not found: {self.db_path}")
            conn = sqlite3.connect(
                f"{self.db_path.resolve().as_uri()}?mode=ro", uri=True, isolation_level=None
            )
        else:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path, isolation_level=None)
        try:
            conn.row_factory = sqlite3.Row
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
            if not read_only:
                conn.execute("PRAGMA journal_mode = WAL")
        except BaseException:
            conn.close()
            raise
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
