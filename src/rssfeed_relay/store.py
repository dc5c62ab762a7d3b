"""SQLite-backed JSON document store for RSS Feed Relay."""

import copy
import json
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS documents (
    name TEXT PRIMARY KEY,
    body TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""


class StoreError(Exception):
    """Raised when the document store cannot be read or written."""


class DocumentStore:
    """Durable key/collection store holding one JSON document per name."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        """Open database connection and initialize schema."""
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(SCHEMA_SQL)
            self._conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Could not open store at {self.db_path}: {e}") from e

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreError("Store not connected. Call connect() first.")
        return self._conn

    def load(self, name: str, default: Any = None) -> Any:
        """Return the document stored under ``name``, or a copy of ``default``."""
        with self._lock:
            try:
                row = self.conn.execute(
                    "SELECT body FROM documents WHERE name = ?", (name,)
                ).fetchone()
            except sqlite3.Error as e:
                raise StoreError(f"Could not load '{name}': {e}") from e
        if row is None:
            return copy.deepcopy(default)
        try:
            return json.loads(row["body"])
        except json.JSONDecodeError as e:
            raise StoreError(f"Document '{name}' is corrupt: {e}") from e

    def save(self, name: str, value: Any) -> None:
        """Replace the document stored under ``name``."""
        body = json.dumps(value, ensure_ascii=False)
        with self._lock:
            try:
                self.conn.execute(
                    """INSERT INTO documents (name, body, updated_at) VALUES (?, ?, ?)
                       ON CONFLICT(name) DO UPDATE SET
                           body = excluded.body, updated_at = excluded.updated_at""",
                    (name, body, _dt_to_str(datetime.now(timezone.utc))),
                )
                self.conn.commit()
            except sqlite3.Error as e:
                raise StoreError(f"Could not save '{name}': {e}") from e


# --- Helper functions ---


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for storage."""
    return dt.isoformat() if dt else None


def _str_to_dt(s: str | None) -> datetime | None:
    """Convert stored ISO string back to datetime."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        return None
