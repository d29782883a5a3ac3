"""
Error Taxonomy.

Exceptions raised by the sync core.  Only ``ValidationFailure`` and
``RecordNotFound`` are expected to reach presentation code; gateway
failures are always recovered inside the engine and recorded as
``sync_error`` on the affected record.
"""

from __future__ import annotations

from typing import Optional


class FinSyncError(Exception):
    """Base class for all sync-core errors."""

    def __init__(self, message: str, original_error: Optional[Exception] = None) -> None:
        self.message: str = message
        self.original_error: Optional[Exception] = original_error
        super().__init__(self.message)


class DuplicateKey(FinSyncError):
    """A record with the same ``local_id`` already exists in the store.

    Programmer error: local ids are generated, never reused.
    """


class IdentityConflict(FinSyncError):
    """Two local records claim the same server id, or a stamped server id
    would be replaced by a different one.

    Never auto-merged.  Logged as an audit event for manual resolution.
    """

    def __init__(
        self,
        message: str,
        server_id: Optional[str] = None,
        local_ids: tuple[str, ...] = (),
        original_error: Optional[Exception] = None,
    ) -> None:
        super().__init__(message, original_error)
        self.server_id: Optional[str] = server_id
        self.local_ids: tuple[str, ...] = local_ids


class GatewayFailure(FinSyncError):
    """Network or backend failure during push or pull.  Recoverable."""

    def __init__(self, reason: str, original_error: Optional[Exception] = None) -> None:
        super().__init__(reason, original_error)
        self.reason: str = reason


class ValidationFailure(FinSyncError, ValueError):
    """Local input rejected before it reaches the store."""

    def __init__(
        self,
        message: str,
        errors: Optional[list[dict[str, object]]] = None,
        original_error: Optional[Exception] = None,
    ) -> None:
        super().__init__(message, original_error)
        self.errors: list[dict[str, object]] = errors or []


class RecordNotFound(FinSyncError, LookupError):
    """No local record matches the requested id."""
