"""
Base Repository: the Entity Store.

Provides shared infrastructure for the local stores:
- DatabaseManager reference (SQLite connection + ``write_lock``)
- Logger reference
- Row <-> model conversion through an explicit column allowlist
- The dual-identifier lookup ``find_by_any_id``

The store exclusively owns the canonical copy of every record.  Callers
receive frozen model snapshots and hand new snapshots back through
:meth:`EntityStore.update`; nothing is edited in place.

Every public method acquires ``DatabaseManager.write_lock`` so that the
UI thread and the sync loop never interleave mid-operation.  Compound
read-check-write sequences wrap several calls in :meth:`EntityStore.atomic`.
"""

from __future__ import annotations

import sqlite3
from contextlib import AbstractContextManager
from typing import ClassVar, Generic, Optional, TypeVar

from pydantic import ValidationError

from finsync.database import DatabaseManager
from finsync.errors import DuplicateKey, IdentityConflict, RecordNotFound
from finsync.logger import StructuredLogger
from finsync.models.entity import SyncedEntity, validation_failure
from finsync.models.enums import SyncStatus
from finsync.utils.general import convert_to_json_safe

E = TypeVar("E", bound=SyncedEntity)


class EntityStore(Generic[E]):
    """Base class for the local stores.  Receives dependencies via __init__.

    Subclasses set ``TABLE``, ``MODEL``, the column allowlist and the
    ``ORDER_BY`` clause used by :meth:`fetch_all`.
    """

    TABLE: ClassVar[str] = ""
    MODEL: ClassVar[type[SyncedEntity]] = SyncedEntity
    ORDER_BY: ClassVar[str] = "created_at"

    _BASE_COLUMNS: ClassVar[tuple[str, ...]] = (
        "local_id",
        "server_id",
        "owner_id",
        "sync_status",
        "last_sync_attempt",
        "sync_error",
        "remote_missing",
        "revision",
        "created_at",
        "updated_at",
    )
    _ENTITY_COLUMNS: ClassVar[tuple[str, ...]] = ()

    def __init__(self, db: DatabaseManager, logger: StructuredLogger) -> None:
        self._db = db
        self._logger = logger

    @property
    def sqlite(self) -> sqlite3.Connection:
        """Returns the SQLite connection backing this store."""
        return self._db.sqlite

    @property
    def columns(self) -> tuple[str, ...]:
        return self._BASE_COLUMNS + self._ENTITY_COLUMNS

    def atomic(self) -> AbstractContextManager[None]:
        """Group several store calls into one locked, all-or-nothing unit.

        Usage::

            with store.atomic():
                current = store.get(local_id)
                store.update(current.mark_for_deletion(now))
        """
        return self._db.batch_write()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, entity: E) -> E:
        """Persist a new record.

        Raises:
            DuplicateKey: If ``local_id`` is already present.
            IdentityConflict: If another record already owns ``server_id``.
        """
        columns_sql = ", ".join(self.columns)
        placeholders = ", ".join("?" for _ in self.columns)

        with self._db.write_lock:
            try:
                self.sqlite.execute(
                    f"INSERT INTO {self.TABLE} ({columns_sql}) VALUES ({placeholders})",
                    self._to_row(entity),
                )
            except sqlite3.IntegrityError as exc:
                if self._exists(entity.local_id):
                    raise DuplicateKey(
                        f"{self.MODEL.__name__} {entity.local_id} already exists.",
                        original_error=exc,
                    ) from exc
                raise self._identity_conflict(entity, exc) from exc
            self._commit()

        self._logger.debug("Inserted %s %s", self.MODEL.__name__, entity.local_id)
        return entity

    def update(self, entity: E) -> E:
        """Replace the stored copy of *entity* (matched by ``local_id``).

        Raises:
            RecordNotFound: If the record is not in the store.
            IdentityConflict: If the update would replace a stamped
                ``server_id`` or claim one owned by another record.
        """
        assignments = ", ".join(f"{col} = ?" for col in self.columns if col != "local_id")
        values = self._to_row(entity)[1:]

        with self._db.write_lock:
            current = self.get(entity.local_id)
            if current is None:
                raise RecordNotFound(f"{self.MODEL.__name__} {entity.local_id} not found.")
            if current.server_id is not None and entity.server_id != current.server_id:
                raise IdentityConflict(
                    f"{self.MODEL.__name__} {entity.local_id} already holds server id "
                    f"{current.server_id}; refusing to change it to {entity.server_id}.",
                    server_id=entity.server_id,
                    local_ids=(entity.local_id,),
                )
            try:
                self.sqlite.execute(
                    f"UPDATE {self.TABLE} SET {assignments} WHERE local_id = ?",
                    [*values, entity.local_id],
                )
            except sqlite3.IntegrityError as exc:
                raise self._identity_conflict(entity, exc) from exc
            self._commit()

        return entity

    def delete(self, local_id: str) -> bool:
        """Permanently remove a record.  Returns ``True`` if a row was removed."""
        with self._db.write_lock:
            cursor = self.sqlite.execute(
                f"DELETE FROM {self.TABLE} WHERE local_id = ?", (local_id,)
            )
            self._commit()
        removed = cursor.rowcount > 0
        if removed:
            self._logger.debug("Deleted %s %s", self.MODEL.__name__, local_id)
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, local_id: str) -> Optional[E]:
        """Return the record stored under *local_id*, or ``None``."""
        with self._db.write_lock:
            row = self.sqlite.execute(
                f"SELECT * FROM {self.TABLE} WHERE local_id = ?", (local_id,)
            ).fetchone()
        return self._from_row(row) if row is not None else None

    def find_by_any_id(self, any_id: str) -> Optional[E]:
        """Return the record whose ``local_id`` or ``server_id`` equals *any_id*.

        This is the single matching primitive between the local and server
        id namespaces.

        Raises:
            IdentityConflict: If two different records match.
        """
        with self._db.write_lock:
            rows = self.sqlite.execute(
                f"SELECT * FROM {self.TABLE} WHERE local_id = ? OR server_id = ?",
                (any_id, any_id),
            ).fetchall()

        if not rows:
            return None
        if len(rows) > 1:
            raise IdentityConflict(
                f"{len(rows)} {self.MODEL.__name__} records match id {any_id}.",
                server_id=any_id,
                local_ids=tuple(row["local_id"] for row in rows),
            )
        return self._from_row(rows[0])

    def fetch_all(self, owner_id: str) -> list[E]:
        """Return every record owned by *owner_id*, in the store's display order."""
        with self._db.write_lock:
            rows = self.sqlite.execute(
                f"SELECT * FROM {self.TABLE} WHERE owner_id = ? ORDER BY {self.ORDER_BY}",
                (owner_id,),
            ).fetchall()
        return [self._from_row(row) for row in rows]

    def fetch_pending(self, owner_id: str) -> list[E]:
        """Return records with something to push (``pending`` or ``pendingDelete``)."""
        with self._db.write_lock:
            rows = self.sqlite.execute(
                f"SELECT * FROM {self.TABLE} "
                "WHERE owner_id = ? AND sync_status != ? ORDER BY updated_at",
                (owner_id, SyncStatus.SYNCED.value),
            ).fetchall()
        return [self._from_row(row) for row in rows]

    def count_pending(self, owner_id: str) -> int:
        with self._db.write_lock:
            row = self.sqlite.execute(
                f"SELECT COUNT(*) AS cnt FROM {self.TABLE} "
                "WHERE owner_id = ? AND sync_status != ?",
                (owner_id, SyncStatus.SYNCED.value),
            ).fetchone()
        return int(row["cnt"]) if row is not None else 0

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _commit(self) -> None:
        """Commit the SQLite transaction unless a batch is active.

        Inside :meth:`DatabaseManager.batch_write` this is a no-op; the
        batch issues a single commit (or rollback) when the block exits.
        """
        if not self._db.in_batch:
            self.sqlite.commit()

    def _exists(self, local_id: str) -> bool:
        row = self.sqlite.execute(
            f"SELECT 1 FROM {self.TABLE} WHERE local_id = ?", (local_id,)
        ).fetchone()
        return row is not None

    def _identity_conflict(self, entity: E, exc: sqlite3.IntegrityError) -> IdentityConflict:
        owner = self.sqlite.execute(
            f"SELECT local_id FROM {self.TABLE} WHERE server_id = ?", (entity.server_id,)
        ).fetchone()
        local_ids = (entity.local_id,) if owner is None else (owner["local_id"], entity.local_id)
        return IdentityConflict(
            f"Server id {entity.server_id} is already owned by another "
            f"{self.MODEL.__name__}.",
            server_id=entity.server_id,
            local_ids=local_ids,
            original_error=exc,
        )

    def _to_row(self, entity: E) -> list[object]:
        """Serialise *entity* to column values, in ``columns`` order.

        Decimals become canonical strings, dates and datetimes ISO-8601
        text, booleans integers.
        """
        data = convert_to_json_safe(entity.model_dump())
        assert isinstance(data, dict)
        return [
            int(value) if isinstance(value, bool) else value
            for value in (data.get(col) for col in self.columns)
        ]

    def _from_row(self, row: sqlite3.Row) -> E:
        """Parse a SQLite row into a model snapshot."""
        try:
            return self.MODEL.model_validate(dict(row))  # type: ignore[return-value]
        except ValidationError as exc:
            raise validation_failure(exc, self.MODEL.__name__) from exc
