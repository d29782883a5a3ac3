"""
Remote Gateway Package.

The boundary between the sync engine and the backend.

Usage:
    from finsync.gateways import RemoteGateway, SupabaseTransactionGateway
"""

from finsync.gateways.base import RemoteGateway
from finsync.gateways.supabase_gateway import (
    SupabaseCategoryGateway,
    SupabaseGateway,
    SupabaseTransactionGateway,
)

__all__ = [
    "RemoteGateway",
    "SupabaseCategoryGateway",
    "SupabaseGateway",
    "SupabaseTransactionGateway",
]
