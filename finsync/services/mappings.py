"""
Entity <-> Wire Mappings.

Builds outgoing request payloads from local snapshots and materializes
local records from server DTOs.  Amounts always travel as decimal
strings and dates as ``YYYY-MM-DD``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, TypeVar

from pydantic import ValidationError

from finsync.models.category import Category
from finsync.models.dto import NestedCategory, ServerCategory, ServerTransaction
from finsync.models.entity import validation_failure
from finsync.models.enums import SyncStatus
from finsync.models.transaction import Transaction
from finsync.utils.general import convert_to_json_safe
from finsync.utils.string_helpers import JsonValue

__all__ = [
    "category_from_nested",
    "category_from_server",
    "category_payload",
    "transaction_from_server",
    "transaction_payload",
]

M = TypeVar("M", Category, Transaction)


def category_payload(category: Category, *, include_owner: bool) -> dict[str, JsonValue]:
    """Request body for a category create (``include_owner=True``) or update."""
    payload: dict[str, JsonValue] = {
        "name": category.name,
        "color_hex": category.color_hex,
        "icon_name": category.icon_name,
        "is_active": category.is_active,
    }
    if include_owner:
        payload["user_id"] = category.owner_id
    return payload


def transaction_payload(
    transaction: Transaction,
    category_server_id: Optional[str],
    *,
    include_owner: bool,
) -> dict[str, JsonValue]:
    """Request body for a transaction create or update.

    ``category_server_id`` is the category reference already translated
    to the server namespace.
    """
    body = convert_to_json_safe(
        {
            "category_id": category_server_id,
            "type": transaction.type,
            "amount": transaction.amount,
            "date": transaction.date,
            "description": transaction.description,
        }
    )
    assert isinstance(body, dict)
    if include_owner:
        body["user_id"] = transaction.owner_id
    return body


def category_from_server(
    record: ServerCategory,
    owner_id: str,
    display_order: int,
    at: datetime,
) -> Category:
    """Materialize a synced local category from a server record."""
    return _build(
        Category,
        owner_id=owner_id,
        server_id=record.id,
        sync_status=SyncStatus.SYNCED,
        last_sync_attempt=at,
        display_order=display_order,
        **record.entity_fields(),
    )


def category_from_nested(
    nested: NestedCategory,
    owner_id: str,
    display_order: int,
    at: datetime,
) -> Category:
    """Materialize a synced local category from a transaction's embedded summary."""
    return _build(
        Category,
        owner_id=owner_id,
        server_id=nested.id,
        name=nested.name,
        color_hex=nested.color_hex,
        icon_name=nested.icon_name,
        is_active=True,
        sync_status=SyncStatus.SYNCED,
        last_sync_attempt=at,
        display_order=display_order,
    )


def transaction_from_server(
    record: ServerTransaction,
    owner_id: str,
    at: datetime,
) -> Transaction:
    """Materialize a synced local transaction from a server record."""
    return _build(
        Transaction,
        owner_id=owner_id,
        server_id=record.id,
        sync_status=SyncStatus.SYNCED,
        last_sync_attempt=at,
        **record.entity_fields(),
    )


def _build(model: type[M], **data: object) -> M:
    try:
        return model(**data)
    except ValidationError as exc:
        raise validation_failure(exc, model.__name__) from exc
