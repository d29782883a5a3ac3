"""
Supabase Gateways.

Remote gateway implementations backed by the synchronous ``supabase``
client.  Each blocking PostgREST call runs in a worker thread via
``asyncio.to_thread`` so the sync loop keeps serving other records while
a request is in flight.

Any failure, including the offline-mode ``RuntimeError`` raised by
:attr:`DatabaseManager.supabase` and malformed responses, surfaces as
:class:`~finsync.errors.GatewayFailure`.
"""

from __future__ import annotations

import asyncio
from typing import Callable, ClassVar, Generic, TypeVar

from pydantic import ValidationError

from finsync.database import DatabaseManager
from finsync.errors import GatewayFailure
from finsync.logger import StructuredLogger
from finsync.models.dto import ServerCategory, ServerRecord, ServerTransaction
from finsync.utils.string_helpers import JsonValue

R = TypeVar("R", bound=ServerRecord)


class SupabaseGateway(Generic[R]):
    """Table-backed gateway for one entity type.

    Subclasses set ``DTO`` and, when the listing should embed related
    rows, ``SELECT``.
    """

    DTO: ClassVar[type[ServerRecord]] = ServerRecord
    SELECT: ClassVar[str] = "*"

    def __init__(self, db: DatabaseManager, table: str, logger: StructuredLogger) -> None:
        self._db = db
        self._table = table
        self._logger = logger

    async def create(self, fields: dict[str, JsonValue]) -> R:
        rows = await self._call(
            "create",
            lambda: self._db.supabase.table(self._table).insert(fields).execute().data,
        )
        return self._single(rows, "create")

    async def update(self, server_id: str, fields: dict[str, JsonValue]) -> R:
        rows = await self._call(
            "update",
            lambda: self._db.supabase.table(self._table)
            .update(fields)
            .eq("id", server_id)
            .execute()
            .data,
        )
        return self._single(rows, f"update {server_id}")

    async def delete(self, server_id: str) -> None:
        # Deleting a row that is already gone matches nothing and succeeds.
        await self._call(
            "delete",
            lambda: self._db.supabase.table(self._table)
            .delete()
            .eq("id", server_id)
            .execute()
            .data,
        )

    async def list_all(self, owner_id: str) -> list[R]:
        rows = await self._call(
            "list_all",
            lambda: self._db.supabase.table(self._table)
            .select(self.SELECT)
            .eq("user_id", owner_id)
            .execute()
            .data,
        )

        records: list[R] = []
        for row in rows:
            try:
                records.append(self._parse(row))
            except GatewayFailure as exc:
                self._logger.warning(
                    "Skipping malformed %s row: %s", self._table, exc.reason,
                )
        return records

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _call(
        self,
        operation: str,
        op: Callable[[], list[dict[str, JsonValue]]],
    ) -> list[dict[str, JsonValue]]:
        try:
            rows = await asyncio.to_thread(op)
        except RuntimeError as exc:
            raise GatewayFailure(f"{self._table}.{operation}: offline ({exc})", exc) from exc
        except Exception as exc:
            raise GatewayFailure(f"{self._table}.{operation}: {exc}", exc) from exc

        self._logger.debug("%s.%s returned %d row(s)", self._table, operation, len(rows or []))
        return list(rows or [])

    def _single(self, rows: list[dict[str, JsonValue]], operation: str) -> R:
        if not rows:
            raise GatewayFailure(f"{self._table}.{operation}: no record returned")
        return self._parse(rows[0])

    def _parse(self, row: dict[str, JsonValue]) -> R:
        try:
            return self.DTO.model_validate(row)  # type: ignore[return-value]
        except ValidationError as exc:
            raise GatewayFailure(
                f"{self._table}: malformed server record ({exc.error_count()} error(s))", exc,
            ) from exc


class SupabaseTransactionGateway(SupabaseGateway[ServerTransaction]):
    """Transactions, listed with their category embedded."""

    DTO = ServerTransaction
    SELECT = "*, category:categories(id, name, color_hex, icon_name)"


class SupabaseCategoryGateway(SupabaseGateway[ServerCategory]):
    """Categories."""

    DTO = ServerCategory
