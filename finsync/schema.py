"""
Centralized SQLite Schema Initialization.

Defines the canonical schema for the local store and provides a single
entry-point, :func:`initialize_schema`, that creates all required tables
idempotently.  A single-row ``schema_version`` table records the applied
version so later releases can roll forward without data loss.

Storage notes:
    - ``amount`` is stored as TEXT (the Decimal's canonical string) so no
      precision is lost in the local store.
    - ``server_id`` carries a partial UNIQUE index per table: at most one
      local record may own a given server id.

Usage::

    from finsync.schema import initialize_schema

    initialize_schema(db.sqlite, StructuredLogger(name="finsync.schema"))
"""

from __future__ import annotations

import sqlite3

from finsync.logger import StructuredLogger

__all__ = ["CURRENT_SCHEMA_VERSION", "initialize_schema"]

CURRENT_SCHEMA_VERSION: int = 1

_TABLE_DEFINITIONS: list[str] = [
    # -- categories -----------------------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS categories (
        local_id TEXT PRIMARY KEY,
        server_id TEXT,
        owner_id TEXT NOT NULL,
        name TEXT NOT NULL,
        color_hex TEXT NOT NULL,
        icon_name TEXT NOT NULL DEFAULT 'tag',
        is_active INTEGER NOT NULL DEFAULT 1,
        display_order INTEGER NOT NULL DEFAULT 0,
        sync_status TEXT NOT NULL DEFAULT 'pending'
            CHECK (sync_status IN ('pending', 'synced', 'pendingDelete')),
        last_sync_attempt TEXT,
        sync_error TEXT,
        remote_missing INTEGER NOT NULL DEFAULT 0,
        revision INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    # -- transactions ---------------------------------------------------------
    """
    CREATE TABLE IF NOT EXISTS transactions (
        local_id TEXT PRIMARY KEY,
        server_id TEXT,
        owner_id TEXT NOT NULL,
        category_id TEXT,
        type TEXT NOT NULL CHECK (type IN ('expense', 'income')),
        amount TEXT NOT NULL,
        date TEXT NOT NULL,
        description TEXT NOT NULL,
        ai_confidence REAL,
        ai_justification TEXT,
        needs_user_review INTEGER NOT NULL DEFAULT 0,
        sync_status TEXT NOT NULL DEFAULT 'pending'
            CHECK (sync_status IN ('pending', 'synced', 'pendingDelete')),
        last_sync_attempt TEXT,
        sync_error TEXT,
        remote_missing INTEGER NOT NULL DEFAULT 0,
        revision INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    # -- key/value infrastructure state (last sync time per owner) ------------
    """
    CREATE TABLE IF NOT EXISTS app_settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # -- persistent structured audit trail ------------------------------------
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        action TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        details TEXT DEFAULT '{}',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    # -- indexes --------------------------------------------------------------
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_categories_server_id "
    "ON categories(server_id) WHERE server_id IS NOT NULL",
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_transactions_server_id "
    "ON transactions(server_id) WHERE server_id IS NOT NULL",
    "CREATE INDEX IF NOT EXISTS idx_categories_owner ON categories(owner_id)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_owner_date ON transactions(owner_id, date)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_sync_status ON transactions(sync_status)",
    "CREATE INDEX IF NOT EXISTS idx_categories_sync_status ON categories(sync_status)",
]


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------

def _ensure_version_table(conn: sqlite3.Connection) -> None:
    """Create the ``schema_version`` table if it does not yet exist."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            version INTEGER NOT NULL,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    conn.commit()


def _get_schema_version(conn: sqlite3.Connection) -> int:
    """Return the current schema version, or ``0`` for a fresh database."""
    row = conn.execute("SELECT version FROM schema_version WHERE id = 1").fetchone()
    return row[0] if row is not None else 0


def _set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    """Upsert the version tracker.  Does **not** commit."""
    conn.execute(
        """
        INSERT INTO schema_version (id, version) VALUES (1, ?)
        ON CONFLICT(id) DO UPDATE SET version = excluded.version,
                                      applied_at = CURRENT_TIMESTAMP
        """,
        (version,),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def initialize_schema(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Ensure the local SQLite database matches the current schema version.

    Safe to call on every startup.  The table creation and the version
    bump happen in a single transaction; on failure the database stays at
    its previous version and the next startup retries.
    """
    _ensure_version_table(conn)
    current: int = _get_schema_version(conn)

    if current >= CURRENT_SCHEMA_VERSION:
        logger.info("Schema is up to date (version %d).", current)
        return

    logger.info(
        "Upgrading schema from version %d to %d.", current, CURRENT_SCHEMA_VERSION,
    )
    try:
        for ddl in _TABLE_DEFINITIONS:
            conn.execute(ddl)
        _set_schema_version(conn, CURRENT_SCHEMA_VERSION)
        conn.commit()
    except Exception:
        conn.rollback()
        logger.error("Schema initialisation failed; rolled back to version %d.", current)
        raise

    logger.info("Schema initialised at version %d.", CURRENT_SCHEMA_VERSION)
