"""
Application Settings Service.

Read/write access to the ``app_settings`` key-value table in the local
SQLite database.  Provides typed getters for known settings and a
generic get/set for everything else.

This is a documented exception to the Repository pattern because
``app_settings`` stores infrastructure state (when each owner last
completed a full sync), not domain data::

    CREATE TABLE IF NOT EXISTS app_settings (
        key   TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Optional

from finsync.database import DatabaseManager
from finsync.logger import StructuredLogger

_KEY_LAST_SYNC_PREFIX: str = "last_sync_at"


class AppSettingsService:
    """Manages persistent infrastructure state in local SQLite.

    Parameters
    ----------
    db:
        Initialised ``DatabaseManager`` with active SQLite connection.
    logger:
        Structured logger instance.
    """

    def __init__(self, db: DatabaseManager, logger: StructuredLogger) -> None:
        self._db = db
        self._logger = logger

    # ------------------------------------------------------------------
    # Generic key-value access
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[str]:
        """Read a setting value by key.  Returns ``None`` if not found."""
        try:
            with self._db.write_lock:
                row = self._db.sqlite.execute(
                    "SELECT value FROM app_settings WHERE key = ?",
                    (key,),
                ).fetchone()
            return row["value"] if row is not None else None
        except sqlite3.Error as exc:
            self._logger.warning("Failed to read app_settings[%s]: %s", key, exc)
            return None

    def set(self, key: str, value: str) -> bool:
        """Upsert a setting value.  Returns ``True`` on success."""
        try:
            with self._db.write_lock:
                self._db.sqlite.execute(
                    """
                    INSERT INTO app_settings (key, value)
                    VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value      = excluded.value,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (key, value),
                )
                if not self._db.in_batch:
                    self._db.sqlite.commit()
            self._logger.debug("app_settings[%s] updated.", key)
            return True
        except sqlite3.Error as exc:
            self._logger.error("Failed to write app_settings[%s]: %s", key, exc)
            return False

    # ------------------------------------------------------------------
    # Typed convenience: last completed sync per owner
    # ------------------------------------------------------------------

    def get_last_sync_at(self, owner_id: str) -> Optional[datetime]:
        """Return when *owner_id* last completed a full sync, or ``None``."""
        raw = self.get(f"{_KEY_LAST_SYNC_PREFIX}:{owner_id}")
        if raw is None:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            self._logger.warning("Ignoring malformed last_sync_at value %r.", raw)
            return None

    def set_last_sync_at(self, owner_id: str, at: datetime) -> bool:
        """Persist the completion time of a full sync for *owner_id*."""
        return self.set(f"{_KEY_LAST_SYNC_PREFIX}:{owner_id}", at.isoformat())
