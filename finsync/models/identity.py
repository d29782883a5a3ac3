"""
Dual-Identifier Model.

A record is addressable by two ids:

- ``local_id``: generated on the device at creation time, always present,
  never reassigned.  Storage key and UI reference.
- ``server_id``: assigned by the backend once it accepts the record.
  Absent while the record has never been pushed.

Data pulled from the server only knows server ids, while offline-created
data only knows local ids.  Every match between the two namespaces goes
through a store's ``find_by_any_id``; nothing else compares ids ad hoc.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Optional, Protocol, TypeVar

if TYPE_CHECKING:
    from finsync.models.category import Category
    from finsync.models.transaction import Transaction

__all__ = [
    "IdLookup",
    "generate_local_id",
    "resolve_category",
    "server_category_id",
]

E = TypeVar("E", covariant=True)


class IdLookup(Protocol[E]):
    """Anything that can resolve an id from either namespace."""

    def find_by_any_id(self, any_id: str) -> Optional[E]: ...  # noqa: E704


def generate_local_id() -> str:
    """Return a new globally unique local id (UUID4, canonical form)."""
    return str(uuid.uuid4())


def resolve_category(
    transaction: Transaction,
    categories: IdLookup[Category],
) -> Optional[Category]:
    """Resolve a transaction's weak ``category_id`` to the local category.

    ``category_id`` may hold either a local id (set offline) or a server id
    (set by a pull); the referenced category may not exist locally yet.
    """
    if not transaction.category_id:
        return None
    return categories.find_by_any_id(transaction.category_id)


def server_category_id(
    transaction: Transaction,
    categories: IdLookup[Category],
) -> Optional[str]:
    """Return the category reference to send to the server.

    ``None`` when the transaction has no category.  When the category is
    known locally its ``server_id`` is returned (``None`` if it has not
    been accepted yet).  An unknown reference is passed through unchanged:
    it can only have come from the server.
    """
    if not transaction.category_id:
        return None
    category = categories.find_by_any_id(transaction.category_id)
    if category is None:
        return transaction.category_id
    return category.server_id
