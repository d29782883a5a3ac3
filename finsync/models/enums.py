"""
Shared Enumerations for FinSync Models.

All string enumerations for type-safe field constraints.
StrEnum values compare equal to their string equivalents, so rows read
back from SQLite or a server payload validate without extra mapping.
"""

from __future__ import annotations

from enum import StrEnum


class SyncStatus(StrEnum):
    """Per-record sync lifecycle.

    ``PENDING``: created or edited locally, not yet accepted by the server.
    ``SYNCED``: identical to the server-accepted state; requires a server id.
    ``PENDING_DELETE``: removed by the user, awaiting server confirmation.

    There is no terminal state other than physical removal from the store.
    """

    PENDING = "pending"
    SYNCED = "synced"
    PENDING_DELETE = "pendingDelete"


class TransactionType(StrEnum):
    """Direction of a transaction."""

    EXPENSE = "expense"
    INCOME = "income"


class EntityKind(StrEnum):
    """Entity types handled by the sync engine."""

    TRANSACTION = "Transaction"
    CATEGORY = "Category"


class PushOutcome(StrEnum):
    """Result of a single push attempt for one record.

    ``REQUEUED`` means the server accepted the request but the local record
    moved on (newer edit or delete) while it was in flight; another push
    is needed.
    """

    SYNCED = "SYNCED"
    DELETED = "DELETED"
    REQUEUED = "REQUEUED"
    FAILED = "FAILED"
    CONFLICT = "CONFLICT"
    SKIPPED = "SKIPPED"
