"""
Structured Audit Logging Utility.

Every local mutation and every identity conflict is recorded as a
structured JSON audit entry.  Provides a Pydantic-validated model and a
single function for consistent audit trail entries.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from enum import StrEnum
from typing import Optional, Union

from pydantic import BaseModel, Field

from finsync.logger import StructuredLogger

__all__ = ["AuditAction", "AuditEvent", "log_audit_event", "persist_audit_event"]

# Scalar type permitted inside the ``details`` mapping.  Nested structures
# do not belong in the audit log.
DetailValue = Union[str, int, float, bool, None]


class AuditAction(StrEnum):
    """Actions recorded in the audit trail."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    REORDER = "REORDER"
    IDENTITY_CONFLICT = "IDENTITY_CONFLICT"
    ORPHAN_CLEANUP = "ORPHAN_CLEANUP"


class AuditEvent(BaseModel):
    """Schema-validated representation of a single audit trail entry."""

    timestamp: str
    action: str
    entity_type: str
    entity_id: str
    user_id: str
    details: dict[str, DetailValue] = Field(default_factory=dict)


def log_audit_event(
    logger: StructuredLogger,
    action: str,
    entity_type: str,
    entity_id: str,
    user_id: str,
    details: Optional[dict[str, DetailValue]] = None,
    conn: Optional[sqlite3.Connection] = None,
    commit: bool = True,
) -> None:
    """Log a structured JSON audit event, with optional SQLite persistence.

    Always emits a structured JSON log line via *logger*.  When *conn* is
    provided, also writes the event to the ``audit_log`` table.

    Args:
        logger: The logger instance to write to.
        action: What happened (see :class:`AuditAction`).
        entity_type: ``"Transaction"`` or ``"Category"``.
        entity_id: Local id of the affected record.
        user_id: Owner of the affected record.
        details: Optional additional context (e.g. the server id).
        conn: Optional SQLite connection.  When provided, the event is
            also persisted via :func:`persist_audit_event`.
        commit: Commit after the insert.  Pass ``False`` inside a
            ``batch_write`` block so the entry joins that transaction.
    """
    event = AuditEvent(
        timestamp=datetime.now(timezone.utc).isoformat(),
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        user_id=user_id,
        details=details or {},
    )
    logger.info("AUDIT: %s", json.dumps(event.model_dump(), default=str))

    # Persistence errors are logged, never propagated.
    if conn is not None:
        try:
            persist_audit_event(conn=conn, event=event, commit=commit)
        except sqlite3.Error as db_err:
            logger.warning("Failed to persist audit event to SQLite: %s", db_err)


def persist_audit_event(
    conn: sqlite3.Connection,
    event: AuditEvent,
    commit: bool = True,
) -> None:
    """Write an already-validated audit event to the ``audit_log`` table."""
    conn.execute(
        """
        INSERT INTO audit_log (timestamp, action, entity_type, entity_id, user_id, details)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            event.timestamp,
            event.action,
            event.entity_type,
            event.entity_id,
            event.user_id,
            json.dumps(event.details, default=str),
        ),
    )
    if commit:
        conn.commit()
