"""
Synced Entity Base Model.

Common fields and the sync-status state machine shared by Transaction and
Category.  Instances are frozen snapshots: every transition returns a new
instance, and only the store holds the canonical copy.

State machine::

    pending ──push ok / equal pull──▶ synced
    synced  ──local edit───────────▶ pending
    pending | synced ──user delete─▶ pendingDelete
    pendingDelete ──remote delete ok (or never synced)──▶ removed from store
    any ──failed attempt──▶ same state with sync_error set
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import ClassVar, Optional, Self, assert_never

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from finsync.errors import IdentityConflict, ValidationFailure
from finsync.models.enums import SyncStatus
from finsync.models.identity import generate_local_id


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def validation_failure(exc: ValidationError, entity_name: str) -> ValidationFailure:
    """Build a :class:`ValidationFailure` from a pydantic error."""
    details = "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or entity_name}: {err['msg']}"
        for err in exc.errors()
    )
    return ValidationFailure(
        f"Invalid {entity_name}: {details}",
        errors=[
            {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
            for err in exc.errors()
        ],
        original_error=exc,
    )


class SyncedEntity(BaseModel):
    """Abstract base for records that sync with the server.

    Subclasses declare ``SERVER_FIELDS`` (fields the server is
    authoritative for and that pull-merge overwrites) and
    ``EDITABLE_FIELDS`` (fields a user edit may change).
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    SERVER_FIELDS: ClassVar[tuple[str, ...]] = ()
    EDITABLE_FIELDS: ClassVar[frozenset[str]] = frozenset()

    local_id: str = Field(default_factory=generate_local_id, min_length=1)
    server_id: Optional[str] = None
    owner_id: str = Field(min_length=1)
    sync_status: SyncStatus = SyncStatus.PENDING
    last_sync_attempt: Optional[datetime] = None
    sync_error: Optional[str] = None

    # Local-only bookkeeping, never sent to the server.
    remote_missing: bool = False
    revision: int = Field(default=0, ge=0)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _synced_requires_server_id(self) -> Self:
        if self.sync_status is SyncStatus.SYNCED and not self.server_id:
            raise ValueError("a synced record must carry a server_id")
        return self

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def is_pending_sync(self) -> bool:
        """``True`` while the record still has something to push."""
        return self.sync_status is not SyncStatus.SYNCED

    def server_fields(self) -> dict[str, object]:
        """Current values of the server-authoritative fields."""
        return {name: getattr(self, name) for name in self.SERVER_FIELDS}

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def with_server_id(self, server_id: str) -> Self:
        """Stamp *server_id*.  A stamped id can never be replaced.

        Raises:
            IdentityConflict: If a different server id is already stamped.
        """
        if self.server_id == server_id:
            return self
        if self.server_id is not None:
            raise IdentityConflict(
                f"{type(self).__name__} {self.local_id} already holds server id "
                f"{self.server_id}; refusing to replace it with {server_id}.",
                server_id=server_id,
                local_ids=(self.local_id,),
            )
        return self.model_copy(update={"server_id": server_id})

    def mark_synced(self, server_id: str, at: datetime) -> Self:
        """``pending → synced``: stamp the id, clear the error, record the attempt."""
        stamped = self.with_server_id(server_id)
        return stamped.model_copy(
            update={
                "sync_status": SyncStatus.SYNCED,
                "sync_error": None,
                "last_sync_attempt": at,
                "remote_missing": False,
            }
        )

    def mark_modified(self, at: datetime, **changes: object) -> Self:
        """Apply a user edit.

        ``synced`` regresses to ``pending``; ``pendingDelete`` stays put.
        Bumps ``updated_at`` and ``revision``.  An edit that changes no
        value returns ``self`` untouched.

        Raises:
            ValidationFailure: If a field is not editable or a value is invalid.
        """
        unknown = set(changes) - self.EDITABLE_FIELDS
        if unknown:
            raise ValidationFailure(
                f"{type(self).__name__} fields are not editable: {sorted(unknown)}"
            )

        # Compare parsed values, so "2.50" for an amount of 2.50 is no edit.
        edited = self._revalidate({**self.model_dump(), **changes})
        if all(getattr(edited, name) == getattr(self, name) for name in changes):
            return self

        match self.sync_status:
            case SyncStatus.SYNCED | SyncStatus.PENDING:
                next_status = SyncStatus.PENDING
            case SyncStatus.PENDING_DELETE:
                next_status = SyncStatus.PENDING_DELETE
            case _ as unreachable:
                assert_never(unreachable)

        data = edited.model_dump()
        data.update(
            sync_status=next_status,
            updated_at=max(at, self.updated_at),
            revision=self.revision + 1,
        )
        return self._revalidate(data)

    def mark_for_deletion(self, at: datetime) -> Self:
        """``pending | synced → pendingDelete``."""
        match self.sync_status:
            case SyncStatus.SYNCED | SyncStatus.PENDING:
                pass
            case SyncStatus.PENDING_DELETE:
                return self
            case _ as unreachable:
                assert_never(unreachable)

        return self.model_copy(
            update={
                "sync_status": SyncStatus.PENDING_DELETE,
                "updated_at": max(at, self.updated_at),
                "revision": self.revision + 1,
            }
        )

    def mark_sync_failed(self, error: str, at: datetime) -> Self:
        """Record a failed attempt.  Status never advances on failure."""
        return self.model_copy(update={"sync_error": error, "last_sync_attempt": at})

    def apply_server_state(self, server_id: str, fields: dict[str, object], at: datetime) -> Self:
        """Overwrite server-authoritative *fields* and mark the record synced.

        Local-only fields (``local_id``, ``display_order``, ``revision``)
        are preserved.
        """
        data = self.model_dump()
        data.update(fields)
        merged = self._revalidate(data)
        return merged.mark_synced(server_id, at)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _revalidate(self, data: dict[str, object]) -> Self:
        try:
            return type(self).model_validate(data)
        except ValidationError as exc:
            raise validation_failure(exc, type(self).__name__) from exc
