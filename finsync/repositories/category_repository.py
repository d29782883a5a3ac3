"""
Category Repository.

Local store for Category records, listed in the user's ``display_order``.
"""

from __future__ import annotations

from typing import ClassVar

from finsync.database import DatabaseManager
from finsync.logger import StructuredLogger
from finsync.models.category import Category
from finsync.repositories.base_repository import EntityStore


class CategoryStore(EntityStore[Category]):
    """Data access layer for Category entities."""

    TABLE = "categories"
    MODEL = Category
    ORDER_BY = "display_order, name"

    _ENTITY_COLUMNS: ClassVar[tuple[str, ...]] = (
        "name",
        "color_hex",
        "icon_name",
        "is_active",
        "display_order",
    )

    def __init__(self, db: DatabaseManager, logger: StructuredLogger) -> None:
        super().__init__(db, logger)

    def max_display_order(self, owner_id: str) -> int:
        """Highest ``display_order`` among the owner's categories, ``-1`` if none."""
        with self._db.write_lock:
            row = self.sqlite.execute(
                f"SELECT MAX(display_order) AS max_order FROM {self.TABLE} WHERE owner_id = ?",
                (owner_id,),
            ).fetchone()
        if row is None or row["max_order"] is None:
            return -1
        return int(row["max_order"])
