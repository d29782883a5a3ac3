"""
Remote Gateway Interface.

The sync engine talks to the backend only through this boundary.  Any
implementation (Supabase, a REST client, an in-memory fake for tests)
must provide these four coroutines per entity type and must translate
every transport or backend error into :class:`~finsync.errors.GatewayFailure`.

Gateway calls are the only suspension points of the sync engine.  They
are expected to fail, not hang, within a bounded time.
"""

from __future__ import annotations

from typing import Protocol, TypeVar

from finsync.models.dto import ServerRecord
from finsync.utils.string_helpers import JsonValue

R = TypeVar("R", bound=ServerRecord, covariant=True)


class RemoteGateway(Protocol[R]):
    """Create/update/delete/list against the backend for one entity type."""

    async def create(self, fields: dict[str, JsonValue]) -> R:
        """Create a record and return it with its server-assigned ``id``.

        Raises:
            GatewayFailure: On any network or backend error.
        """
        ...

    async def update(self, server_id: str, fields: dict[str, JsonValue]) -> R:
        """Apply *fields* to the record ``server_id`` and return the result.

        Raises:
            GatewayFailure: On any network or backend error.
        """
        ...

    async def delete(self, server_id: str) -> None:
        """Delete the record ``server_id``.

        Raises:
            GatewayFailure: On any network or backend error.
        """
        ...

    async def list_all(self, owner_id: str) -> list[R]:
        """Return every record of this type visible to *owner_id*.

        Raises:
            GatewayFailure: On any network or backend error.
        """
        ...
