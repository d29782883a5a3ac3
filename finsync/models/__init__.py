"""
Data Models Package.

Re-exports all Pydantic models:
    from finsync.models import Transaction, Category, SyncStatus
    from finsync.models import ServerTransaction, ServerCategory
"""

from finsync.models.category import Category
from finsync.models.dto import NestedCategory, ServerCategory, ServerRecord, ServerTransaction
from finsync.models.entity import SyncedEntity, utcnow
from finsync.models.enums import EntityKind, PushOutcome, SyncStatus, TransactionType
from finsync.models.identity import generate_local_id, resolve_category
from finsync.models.transaction import Transaction, TransactionInput
from finsync.models.user import User

__all__ = [
    "Category",
    "EntityKind",
    "NestedCategory",
    "PushOutcome",
    "ServerCategory",
    "ServerRecord",
    "ServerTransaction",
    "SyncStatus",
    "SyncedEntity",
    "Transaction",
    "TransactionInput",
    "TransactionType",
    "User",
    "generate_local_id",
    "resolve_category",
    "utcnow",
]
