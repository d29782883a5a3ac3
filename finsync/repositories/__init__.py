"""
Repository Layer Package.

Provides the local Entity Store over SQLite.  All local record access
flows through these stores; services never touch ``db.sqlite`` for
domain data directly.

Usage:
    from finsync.repositories import CategoryStore, TransactionStore
"""

from finsync.repositories.base_repository import EntityStore
from finsync.repositories.category_repository import CategoryStore
from finsync.repositories.transaction_repository import TransactionStore

__all__ = [
    "CategoryStore",
    "EntityStore",
    "TransactionStore",
]
