"""Persistent tier selections stored in SQLite."""

import sqlite3
import threading
import logging
from datetime import datetime
from pathlib import Path

from src.retention.retention_config import STATE_NAMESPACE

logger = logging.getLogger(__name__)

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS retention_state (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
"""


class StateStoreError(Exception):
    """The state database could not be read or written."""


class StateStore:
    """Thread-safe key/value store for sticky tier selections.

    Each tier maps to one namespaced key holding the ISO timestamp of its
    representative backup. The database is opened on first use, so an
    unreachable path surfaces as ``StateStoreError`` from ``get``/``set``/
    ``delete`` and retention degrades to gap detection.
    """

    def __init__(self, db_path: str, namespace: str = STATE_NAMESPACE):
        self.db_path = Path(db_path)
        self.namespace = namespace
        self._local = threading.local()

    def _get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "connection", None)
        if conn is not None:
            return conn

        conn = None
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), timeout=10)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.executescript(_SCHEMA)
            conn.commit()
        except (sqlite3.Error, OSError) as exc:
            if conn is not None:
                conn.close()
            raise StateStoreError(
                f"Cannot open state database {self.db_path}: {exc}"
            ) from exc

        self._local.connection = conn
        logger.info("State store opened at %s", self.db_path)
        return conn

    def key_for(self, tier: str) -> str:
        return f"{self.namespace}.{tier}_backup_selected"

    def get(self, tier: str) -> datetime | None:
        """Timestamp of the tier's sticky representative, if any."""
        try:
            row = self._get_connection().execute(
                "SELECT value FROM retention_state WHERE key = ?",
                (self.key_for(tier),),
            ).fetchone()
        except sqlite3.Error as exc:
            raise StateStoreError(f"Cannot read {tier} selection: {exc}") from exc
        if row is None:
            return None
        try:
            return datetime.fromisoformat(row["value"])
        except ValueError:
            logger.warning("Ignoring malformed %s selection: %r", tier, row["value"])
            return None

    def set(self, tier: str, timestamp: datetime):
        try:
            conn = self._get_connection()
            conn.execute(
                """
                INSERT INTO retention_state (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (self.key_for(tier), timestamp.isoformat(), datetime.now().isoformat()),
            )
            conn.commit()
        except sqlite3.Error as exc:
            raise StateStoreError(f"Cannot write {tier} selection: {exc}") from exc
        logger.debug("Stored %s selection %s", tier, timestamp.isoformat())

    def delete(self, tier: str):
        try:
            conn = self._get_connection()
            conn.execute(
                "DELETE FROM retention_state WHERE key = ?", (self.key_for(tier),)
            )
            conn.commit()
        except sqlite3.Error as exc:
            raise StateStoreError(f"Cannot delete {tier} selection: {exc}") from exc

    def close(self):
        conn = getattr(self._local, "connection", None)
        if conn is not None:
            conn.close()
            self._local.connection = None
