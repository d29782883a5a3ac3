"""
Repository Facade Base.

Shared write/read plumbing for the CRUD services presentation code uses:

- Every mutation lands in the local store synchronously and returns the
  locally visible snapshot at once.
- The push for that record is then handed to the
  :class:`BackgroundRunner` as a fire-and-forget task.
- Reads optionally run a bounded, best-effort pull first; a failed pull
  is logged and the local data is served regardless.

While the :class:`ConnectivityMonitor` reports the device offline,
neither pushes nor read-path pulls are attempted: changes stay queued
and the reconnect-triggered sync cycle uploads them.
"""

from __future__ import annotations

import concurrent.futures
from collections.abc import Callable, Coroutine
from typing import Any, ClassVar, Generic, Optional, TypeVar

from finsync.auth import SessionManager
from finsync.config import AppConfig
from finsync.errors import GatewayFailure, RecordNotFound, ValidationFailure
from finsync.logger import StructuredLogger
from finsync.models.entity import SyncedEntity, utcnow
from finsync.models.enums import EntityKind, SyncStatus
from finsync.repositories.base_repository import EntityStore
from finsync.services.background import BackgroundRunner
from finsync.services.base_service import BaseService
from finsync.services.connectivity import ConnectivityMonitor
from finsync.services.reconciliation import MergeReport, ReconciliationEngine
from finsync.utils.audit import AuditAction, DetailValue, log_audit_event

E = TypeVar("E", bound=SyncedEntity)


class BaseCrudService(BaseService, Generic[E]):
    """Local-first CRUD for one entity type.

    Dependencies are injected via __init__; subclasses set ``KIND``.
    Without a ``connectivity`` monitor the device is assumed online.
    """

    KIND: ClassVar[EntityKind]

    def __init__(
        self,
        store: EntityStore[E],
        engine: ReconciliationEngine,
        runner: BackgroundRunner,
        session: SessionManager,
        config: AppConfig,
        logger: StructuredLogger,
        connectivity: Optional[ConnectivityMonitor] = None,
    ) -> None:
        super().__init__(logger)
        self._store = store
        self._engine = engine
        self._runner = runner
        self._session = session
        self._connectivity = connectivity
        self._pull_on_read: bool = config.PULL_ON_READ
        self._pull_timeout_s: float = config.PULL_TIMEOUT_S

    @property
    def is_online(self) -> bool:
        return self._connectivity is None or self._connectivity.is_online

    @property
    def owner_id(self) -> str:
        """Id of the signed-in user.

        Raises:
            RuntimeError: If nobody is signed in.
        """
        return self._session.get_current_user().id

    def pending_count(self) -> int:
        """Number of the owner's records still waiting to be pushed."""
        return self._store.count_pending(self.owner_id)

    # ------------------------------------------------------------------
    # Shared write paths
    # ------------------------------------------------------------------

    def _create(self, entity: E) -> E:
        with self._store.atomic():
            self._store.insert(entity)
            self._audit(AuditAction.CREATE, entity)
        self._schedule_push(entity.local_id)
        return entity

    def _edit(self, any_id: str, **changes: object) -> E:
        """Apply a user edit and queue its push.

        An edit that changes nothing is not stored, audited or pushed.

        Raises:
            RecordNotFound: If no record matches *any_id*.
            ValidationFailure: If the record is awaiting deletion or a
                value is invalid.
        """
        with self._store.atomic():
            current = self._get_visible(any_id)
            updated = current.mark_modified(utcnow(), **changes)
            if updated is current:
                return current
            self._store.update(updated)
            self._audit(AuditAction.UPDATE, updated, {"fields": ",".join(sorted(changes))})
        self._schedule_push(updated.local_id)
        return updated

    def _delete(self, any_id: str) -> None:
        """Delete locally, or mark for remote deletion when the server may know it.

        Raises:
            RecordNotFound: If no record matches *any_id*.
        """
        with self._store.atomic():
            current = self._store.find_by_any_id(any_id)
            if current is None or current.owner_id != self.owner_id:
                raise RecordNotFound(f"{self.KIND.value} {any_id} not found.")

            if current.server_id is None and not self._engine.is_push_in_flight(current.local_id):
                self._store.delete(current.local_id)
                remote = False
            else:
                self._store.update(current.mark_for_deletion(utcnow()))
                remote = True
            self._audit(AuditAction.DELETE, current, {"remote": remote})

        if remote:
            self._schedule_push(current.local_id)

    # ------------------------------------------------------------------
    # Shared read paths
    # ------------------------------------------------------------------

    def _get_visible(self, any_id: str) -> E:
        """Return the owner's record for *any_id*, hiding records being deleted.

        Raises:
            RecordNotFound: If no visible record matches.
            ValidationFailure: If the record is awaiting deletion.
        """
        entity = self._store.find_by_any_id(any_id)
        if entity is None or entity.owner_id != self.owner_id:
            raise RecordNotFound(f"{self.KIND.value} {any_id} not found.")
        if entity.sync_status is SyncStatus.PENDING_DELETE:
            raise ValidationFailure(
                f"{self.KIND.value} {any_id} has been deleted and cannot be edited."
            )
        return entity

    def _refresh(self, pull: Callable[[str], Coroutine[Any, Any, MergeReport]]) -> None:
        """Best-effort pull before a read.  Never raises."""
        if self._pull_on_read:
            self._pull_now(pull)

    def _pull_now(self, pull: Callable[[str], Coroutine[Any, Any, MergeReport]]) -> bool:
        """Run one bounded pull for the owner.

        Returns ``True`` when the pull completed.  Offline, failed and
        timed-out pulls are logged and return ``False``; never raises.
        """
        if not self.is_online:
            self._logger.debug("Offline; %s pull skipped.", self.KIND.value)
            return False
        try:
            future = self._runner.submit(pull(self.owner_id))
            future.result(timeout=self._pull_timeout_s)
        except GatewayFailure as exc:
            self._logger.info("Pull of %s data failed: %s", self.KIND.value, exc.reason)
        except concurrent.futures.TimeoutError:
            future.cancel()
            self._logger.info(
                "Pull of %s data exceeded %.1f s.", self.KIND.value, self._pull_timeout_s,
            )
        except Exception:
            self._logger.warning(
                "Pull of %s data raised unexpectedly.", self.KIND.value, exc_info=True,
            )
        else:
            return True
        return False

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _schedule_push(self, local_id: str, kind: EntityKind | None = None) -> None:
        if not self.is_online:
            # Queued; the reconnect-triggered cycle pushes it.
            return
        try:
            self._runner.submit(self._engine.sync_record(kind or self.KIND, local_id))
        except RuntimeError as exc:
            # The record stays queued and is picked up by the next sync cycle.
            self._logger.warning("Could not schedule push for %s: %s", local_id, exc)

    def _audit(
        self,
        action: AuditAction,
        entity: SyncedEntity,
        details: dict[str, DetailValue] | None = None,
        kind: EntityKind | None = None,
    ) -> None:
        """Record an audit entry.  Call inside an ``atomic()`` block."""
        log_audit_event(
            logger=self._logger,
            action=action,
            entity_type=(kind or self.KIND).value,
            entity_id=entity.local_id,
            user_id=entity.owner_id,
            details=details,
            conn=self._store.sqlite,
            commit=False,
        )
