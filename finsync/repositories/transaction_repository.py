"""
Transaction Repository.

Local store for Transaction records.  Listings are newest first; month
listings hide records awaiting remote deletion, since the user already
removed them.
"""

from __future__ import annotations

import re
from typing import ClassVar

from finsync.database import DatabaseManager
from finsync.errors import ValidationFailure
from finsync.logger import StructuredLogger
from finsync.models.enums import SyncStatus
from finsync.models.transaction import Transaction
from finsync.repositories.base_repository import EntityStore

_MONTH_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


class TransactionStore(EntityStore[Transaction]):
    """Data access layer for Transaction entities."""

    TABLE = "transactions"
    MODEL = Transaction
    ORDER_BY = "date DESC, created_at DESC"

    # Hardcoded column allowlist; must match the Transaction model fields.
    _ENTITY_COLUMNS: ClassVar[tuple[str, ...]] = (
        "category_id",
        "type",
        "amount",
        "date",
        "description",
        "ai_confidence",
        "ai_justification",
        "needs_user_review",
    )

    def __init__(self, db: DatabaseManager, logger: StructuredLogger) -> None:
        super().__init__(db, logger)

    def fetch_by_month(self, owner_id: str, month: str) -> list[Transaction]:
        """Return the owner's visible transactions dated in *month* (``YYYY-MM``).

        Raises:
            ValidationFailure: If *month* is not ``YYYY-MM``.
        """
        if not _MONTH_PATTERN.match(month):
            raise ValidationFailure(f"Month must be formatted YYYY-MM, got {month!r}.")

        with self._db.write_lock:
            rows = self.sqlite.execute(
                f"""
                SELECT * FROM {self.TABLE}
                WHERE owner_id = ? AND substr(date, 1, 7) = ? AND sync_status != ?
                ORDER BY {self.ORDER_BY}
                """,
                (owner_id, month, SyncStatus.PENDING_DELETE.value),
            ).fetchall()
        return [self._from_row(row) for row in rows]

    def fetch_by_category(self, category_id: str) -> list[Transaction]:
        """Return transactions whose ``category_id`` equals *category_id* exactly."""
        with self._db.write_lock:
            rows = self.sqlite.execute(
                f"SELECT * FROM {self.TABLE} WHERE category_id = ? ORDER BY {self.ORDER_BY}",
                (category_id,),
            ).fetchall()
        return [self._from_row(row) for row in rows]
