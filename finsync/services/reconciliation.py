"""
Reconciliation Engine.

The two idempotent algorithms that keep the local store and the server
in agreement:

**Pull-merge** folds a server listing into the local store.  Each server
record is matched through ``find_by_any_id``; matches are overwritten
with server state, unknown records are materialized as new ``synced``
local records.  Local records with something still to push are never
overwritten: a pending edit always survives a pull.

**Push** replays ``pending`` / ``pendingDelete`` records to the gateway,
one record at a time per ``local_id``.  Every result is applied only if
the record still matches the snapshot the push started from (same
``revision`` and status); otherwise the server id is stamped and the
record is re-queued.

All coroutines run on a single event loop (see
:class:`~finsync.services.background.BackgroundRunner`).  Store access is
synchronous and happens under ``DatabaseManager.write_lock``; gateway
calls are the only suspension points.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator, Awaitable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, TypedDict, assert_never

from finsync.database import DatabaseManager
from finsync.errors import GatewayFailure, IdentityConflict, ValidationFailure
from finsync.gateways.base import RemoteGateway
from finsync.logger import StructuredLogger
from finsync.models.category import Category
from finsync.models.dto import ServerCategory, ServerRecord, ServerTransaction
from finsync.models.entity import SyncedEntity, utcnow
from finsync.models.enums import EntityKind, PushOutcome, SyncStatus
from finsync.models.identity import server_category_id
from finsync.models.transaction import Transaction
from finsync.repositories.base_repository import EntityStore
from finsync.repositories.category_repository import CategoryStore
from finsync.repositories.transaction_repository import TransactionStore
from finsync.services.app_settings_service import AppSettingsService
from finsync.services.base_service import BaseService
from finsync.services.mappings import (
    category_from_nested,
    category_from_server,
    category_payload,
    transaction_from_server,
    transaction_payload,
)
from finsync.utils.audit import AuditAction, log_audit_event
from finsync.utils.string_helpers import JsonValue


class MergeReport(TypedDict):
    """Typed summary of one pull-merge."""

    inserted: int
    updated: int
    unchanged: int
    deferred: int
    skipped: int
    conflicts: int
    flagged_missing: int
    nested_categories: int


class PushReport(TypedDict):
    """Typed summary of one push pass, keyed by :class:`PushOutcome`."""

    synced: int
    deleted: int
    requeued: int
    failed: int
    conflict: int
    skipped: int


class SyncReport(TypedDict):
    """Typed summary of a full :meth:`ReconciliationEngine.sync_all` cycle."""

    owner_id: str
    started_at: str
    finished_at: str
    categories_pushed: PushReport
    categories_pulled: Optional[MergeReport]
    transactions_pushed: PushReport
    transactions_pulled: Optional[MergeReport]
    errors: list[str]
    succeeded: bool


def _empty_merge_report() -> MergeReport:
    return MergeReport(
        inserted=0,
        updated=0,
        unchanged=0,
        deferred=0,
        skipped=0,
        conflicts=0,
        flagged_missing=0,
        nested_categories=0,
    )


def _push_report(outcomes: Sequence[PushOutcome]) -> PushReport:
    report = PushReport(synced=0, deleted=0, requeued=0, failed=0, conflict=0, skipped=0)
    for outcome in outcomes:
        key = outcome.value.lower()
        report[key] += 1  # type: ignore[literal-required]
    return report


class ReconciliationEngine(BaseService):
    """Pull-merge and push for Transactions and Categories.

    Parameters
    ----------
    transactions, categories:
        Local stores.
    transaction_gateway, category_gateway:
        Remote gateways for each entity type.
    db:
        ``DatabaseManager`` providing ``write_lock`` and the audit
        connection.
    logger:
        Structured JSON logger.
    app_settings:
        Optional settings service; when given, successful full syncs are
        recorded per owner.
    max_requeues:
        How many follow-up pushes :meth:`sync_record` issues when a push
        result turns out to be stale.
    """

    def __init__(
        self,
        transactions: TransactionStore,
        categories: CategoryStore,
        transaction_gateway: RemoteGateway[ServerTransaction],
        category_gateway: RemoteGateway[ServerCategory],
        db: DatabaseManager,
        logger: StructuredLogger,
        app_settings: Optional[AppSettingsService] = None,
        max_requeues: int = 3,
    ) -> None:
        super().__init__(logger)
        self._transactions = transactions
        self._categories = categories
        self._transaction_gateway = transaction_gateway
        self._category_gateway = category_gateway
        self._db = db
        self._app_settings = app_settings
        self._max_requeues = max_requeues

        # Per-record push serialisation.  Locks are created on demand and
        # dropped once nobody holds or waits for them.
        self._record_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

        # local_id -> (kind, is_create) for pushes between snapshot and result.
        # Read from other threads by the facades, hence the guard.
        self._in_flight: dict[str, tuple[EntityKind, bool]] = {}
        self._in_flight_guard = threading.Lock()

        self._syncing: bool = False

    # ------------------------------------------------------------------
    # Queries used by the facades
    # ------------------------------------------------------------------

    def is_push_in_flight(self, local_id: str) -> bool:
        """``True`` while a gateway call for *local_id* has not completed."""
        with self._in_flight_guard:
            return local_id in self._in_flight

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    # ------------------------------------------------------------------
    # Pull-merge
    # ------------------------------------------------------------------

    async def pull_categories(self, owner_id: str) -> MergeReport:
        """Fetch the owner's categories and merge them.

        Raises:
            GatewayFailure: If the listing could not be fetched.
        """
        listed_at = utcnow()
        records = await self._category_gateway.list_all(owner_id)
        return self.merge_categories(owner_id, records, listed_at=listed_at)

    async def pull_transactions(self, owner_id: str) -> MergeReport:
        """Fetch the owner's transactions and merge them.

        Raises:
            GatewayFailure: If the listing could not be fetched.
        """
        listed_at = utcnow()
        records = await self._transaction_gateway.list_all(owner_id)
        return self.merge_transactions(owner_id, records, listed_at=listed_at)

    def merge_categories(
        self,
        owner_id: str,
        records: Sequence[ServerCategory],
        complete: bool = True,
        listed_at: Optional[datetime] = None,
    ) -> MergeReport:
        """Fold a server category listing into the local store.

        When *complete* is ``True`` the listing is taken as the owner's
        full server state and synced local records missing from it are
        flagged ``remote_missing``.
        """
        return self._merge(EntityKind.CATEGORY, owner_id, records, complete, listed_at)

    def merge_transactions(
        self,
        owner_id: str,
        records: Sequence[ServerTransaction],
        complete: bool = True,
        listed_at: Optional[datetime] = None,
    ) -> MergeReport:
        """Fold a server transaction listing into the local store.

        A category embedded in a transaction record is materialized first
        when it does not exist locally yet.
        """
        return self._merge(EntityKind.TRANSACTION, owner_id, records, complete, listed_at)

    def _merge(
        self,
        kind: EntityKind,
        owner_id: str,
        records: Sequence[ServerRecord],
        complete: bool,
        listed_at: Optional[datetime],
    ) -> MergeReport:
        store = self._store(kind)
        report = _empty_merge_report()
        seen: set[str] = set()
        now = utcnow()

        with self._db.batch_write():
            # A create still in flight may already exist on the server
            # without a local server_id; unknown records wait for the next pull.
            creates_pending = self._creates_in_flight(kind)

            for record in records:
                if record.id in seen:
                    self._logger.warning(
                        "Duplicate %s id %s in server listing; ignoring repeat.",
                        kind.value, record.id,
                    )
                    report["skipped"] += 1
                    continue
                seen.add(record.id)

                if isinstance(record, ServerTransaction):
                    self._materialize_nested_category(owner_id, record, now, report)

                try:
                    self._merge_record(kind, store, owner_id, record, now, report, creates_pending)
                except IdentityConflict as exc:
                    report["conflicts"] += 1
                    self._report_conflict(kind, owner_id, exc)
                except ValidationFailure as exc:
                    report["skipped"] += 1
                    self._logger.warning(
                        "Rejected server %s %s: %s", kind.value, record.id, exc.message,
                    )

            if complete:
                cutoff = listed_at or now
                for entity in store.fetch_all(owner_id):
                    if (
                        entity.sync_status is SyncStatus.SYNCED
                        and entity.server_id not in seen
                        and not entity.remote_missing
                        and (entity.last_sync_attempt is None or entity.last_sync_attempt <= cutoff)
                    ):
                        store.update(entity.model_copy(update={"remote_missing": True}))
                        report["flagged_missing"] += 1

        self._logger.info(
            "Merged %d %s record(s) for %s: %s", len(records), kind.value, owner_id, report,
        )
        return report

    def _merge_record(
        self,
        kind: EntityKind,
        store: EntityStore[SyncedEntity],
        owner_id: str,
        record: ServerRecord,
        now: datetime,
        report: MergeReport,
        creates_pending: bool,
    ) -> None:
        local = store.find_by_any_id(record.id)

        if local is None:
            if creates_pending:
                report["deferred"] += 1
                return
            store.insert(self._materialize(kind, owner_id, record, now))
            report["inserted"] += 1
            return

        if local.owner_id != owner_id:
            raise IdentityConflict(
                f"Server id {record.id} is held by a record of another owner.",
                server_id=record.id,
                local_ids=(local.local_id,),
            )

        fields = self._authoritative_fields(record, local)

        match local.sync_status:
            case SyncStatus.SYNCED:
                candidate = local.apply_server_state(record.id, fields, now)
                if candidate.server_fields() == local.server_fields() and not local.remote_missing:
                    report["unchanged"] += 1
                    return
                store.update(candidate)
                report["updated"] += 1

            case SyncStatus.PENDING:
                candidate = local.apply_server_state(record.id, fields, now)
                if candidate.server_fields() == local.server_fields():
                    # The local edit already matches the server copy.
                    store.update(local.mark_synced(record.id, now))
                    report["updated"] += 1
                    return
                stamped = local.with_server_id(record.id)
                if stamped is local and not local.remote_missing:
                    report["unchanged"] += 1
                    return
                store.update(stamped.model_copy(update={"remote_missing": False}))
                report["updated"] += 1

            case SyncStatus.PENDING_DELETE:
                stamped = local.with_server_id(record.id)
                if stamped is local:
                    report["unchanged"] += 1
                    return
                store.update(stamped)
                report["updated"] += 1

            case _ as unreachable:
                assert_never(unreachable)

    def _materialize_nested_category(
        self,
        owner_id: str,
        record: ServerTransaction,
        now: datetime,
        report: MergeReport,
    ) -> None:
        nested = record.category
        if nested is None:
            return
        try:
            if self._categories.find_by_any_id(nested.id) is not None:
                return
            if self._creates_in_flight(EntityKind.CATEGORY):
                return
            category = category_from_nested(
                nested,
                owner_id=owner_id,
                display_order=self._categories.max_display_order(owner_id) + 1,
                at=now,
            )
            self._categories.insert(category)
            report["nested_categories"] += 1
        except IdentityConflict as exc:
            report["conflicts"] += 1
            self._report_conflict(EntityKind.CATEGORY, owner_id, exc)
        except ValidationFailure as exc:
            self._logger.warning(
                "Rejected embedded category %s: %s", nested.id, exc.message,
            )

    def _materialize(
        self,
        kind: EntityKind,
        owner_id: str,
        record: ServerRecord,
        now: datetime,
    ) -> SyncedEntity:
        match kind:
            case EntityKind.CATEGORY:
                assert isinstance(record, ServerCategory)
                return category_from_server(
                    record,
                    owner_id=owner_id,
                    display_order=self._categories.max_display_order(owner_id) + 1,
                    at=now,
                )
            case EntityKind.TRANSACTION:
                assert isinstance(record, ServerTransaction)
                return transaction_from_server(record, owner_id=owner_id, at=now)
            case _ as unreachable:
                assert_never(unreachable)

    def _authoritative_fields(
        self,
        record: ServerRecord,
        local: SyncedEntity,
    ) -> dict[str, object]:
        """Server fields for *local*, keeping an equivalent local category reference.

        A transaction created offline points at its category by local id;
        the server answers with the category's server id.  Both name the
        same category, so the local reference is kept.
        """
        fields = record.entity_fields()
        if isinstance(local, Transaction):
            remote_ref = fields.get("category_id")
            if (
                local.category_id
                and isinstance(remote_ref, str)
                and remote_ref != local.category_id
                and self._same_category(local.category_id, remote_ref)
            ):
                fields["category_id"] = local.category_id
        return fields

    def _same_category(self, first: str, second: str) -> bool:
        try:
            a = self._categories.find_by_any_id(first)
            b = self._categories.find_by_any_id(second)
        except IdentityConflict:
            return False
        return a is not None and b is not None and a.local_id == b.local_id

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def push_record(self, kind: EntityKind, local_id: str) -> PushOutcome:
        """Make one push attempt for a record.

        At most one attempt per ``local_id`` runs at a time; later callers
        wait for the earlier attempt to finish.
        """
        async with self._record_lock(local_id):
            return await self._push_once(kind, local_id)

    async def sync_record(self, kind: EntityKind, local_id: str) -> PushOutcome:
        """Push a record, following up while results come back stale."""
        outcome = await self.push_record(kind, local_id)
        requeues = 0
        while outcome is PushOutcome.REQUEUED and requeues < self._max_requeues:
            requeues += 1
            self._logger.debug("Re-pushing %s %s (attempt %d).", kind.value, local_id, requeues + 1)
            outcome = await self.push_record(kind, local_id)
        return outcome

    async def push_pending(self, kind: EntityKind, owner_id: str) -> PushReport:
        """Push every ``pending`` / ``pendingDelete`` record of *kind* for the owner."""
        pending = self._store(kind).fetch_pending(owner_id)
        if not pending:
            return _push_report([])

        outcomes = await asyncio.gather(
            *(self.sync_record(kind, entity.local_id) for entity in pending)
        )
        report = _push_report(outcomes)
        self._logger.info("Pushed %d %s record(s): %s", len(pending), kind.value, report)
        return report

    async def _push_once(self, kind: EntityKind, local_id: str) -> PushOutcome:
        store = self._store(kind)

        if kind is EntityKind.TRANSACTION:
            await self._ensure_category_pushed(local_id)

        with self._db.write_lock:
            snapshot = store.get(local_id)
            if snapshot is None:
                return PushOutcome.SKIPPED

            match snapshot.sync_status:
                case SyncStatus.SYNCED:
                    return PushOutcome.SKIPPED
                case SyncStatus.PENDING_DELETE:
                    if snapshot.server_id is None:
                        store.delete(local_id)
                        self._audit(AuditAction.DELETE, kind, snapshot, {"remote": False})
                        return PushOutcome.DELETED
                    fields: dict[str, JsonValue] = {}
                case SyncStatus.PENDING:
                    payload = self._payload(snapshot)
                    if payload is None:
                        self._record_failure(
                            store, local_id, "Category has not been synced yet.",
                        )
                        return PushOutcome.FAILED
                    fields = payload
                case _ as unreachable:
                    assert_never(unreachable)

            is_create = snapshot.server_id is None
            with self._in_flight_guard:
                self._in_flight[local_id] = (kind, is_create)

        gateway = self._gateway(kind)
        try:
            if snapshot.sync_status is SyncStatus.PENDING_DELETE:
                assert snapshot.server_id is not None
                await gateway.delete(snapshot.server_id)
                return self._apply_delete_result(kind, snapshot)

            if is_create:
                record = await gateway.create(fields)
            else:
                assert snapshot.server_id is not None
                record = await gateway.update(snapshot.server_id, fields)
        except GatewayFailure as exc:
            self._logger.warning(
                "Push of %s %s failed: %s", kind.value, local_id, exc.reason,
            )
            self._record_failure(store, local_id, exc.reason)
            return PushOutcome.FAILED
        finally:
            with self._in_flight_guard:
                self._in_flight.pop(local_id, None)

        outcome = self._apply_push_result(kind, snapshot, record)
        if outcome is None:
            await self._delete_orphan(kind, snapshot, record)
            return PushOutcome.DELETED
        return outcome

    def _apply_push_result(
        self,
        kind: EntityKind,
        snapshot: SyncedEntity,
        record: ServerRecord,
    ) -> Optional[PushOutcome]:
        """Stamp a create/update response onto the current record.

        Returns ``None`` when the record vanished while the request was in
        flight (the server copy is then an orphan).
        """
        store = self._store(kind)
        now = utcnow()

        with self._db.write_lock:
            current = store.get(snapshot.local_id)
            if current is None:
                return None

            stale = (
                current.revision != snapshot.revision
                or current.sync_status is not snapshot.sync_status
            )
            try:
                if stale or current.sync_status is not SyncStatus.PENDING:
                    store.update(
                        current.with_server_id(record.id).model_copy(
                            update={"last_sync_attempt": now, "sync_error": None}
                        )
                    )
                    self._logger.info(
                        "%s %s changed during push; stamped server id %s and re-queued.",
                        kind.value, snapshot.local_id, record.id,
                    )
                    return PushOutcome.REQUEUED

                fields = self._authoritative_fields(record, current)
                store.update(current.apply_server_state(record.id, fields, now))
            except IdentityConflict as exc:
                self._report_conflict(kind, current.owner_id, exc)
                self._record_failure(store, current.local_id, exc.message)
                return PushOutcome.CONFLICT
            except ValidationFailure as exc:
                # The server accepted the record but answered with values the
                # local model rejects; keep local content, just stamp the id.
                self._logger.warning(
                    "Server response for %s %s rejected: %s",
                    kind.value, current.local_id, exc.message,
                )
                store.update(current.with_server_id(record.id).mark_sync_failed(exc.message, now))
                return PushOutcome.FAILED

        self._logger.info(
            "%s %s synced as %s.", kind.value, snapshot.local_id, record.id,
        )
        return PushOutcome.SYNCED

    def _apply_delete_result(self, kind: EntityKind, snapshot: SyncedEntity) -> PushOutcome:
        store = self._store(kind)
        with self._db.write_lock:
            if store.get(snapshot.local_id) is not None:
                store.delete(snapshot.local_id)
            self._audit(
                AuditAction.DELETE, kind, snapshot,
                {"remote": True, "server_id": snapshot.server_id},
            )
        return PushOutcome.DELETED

    async def _delete_orphan(
        self,
        kind: EntityKind,
        snapshot: SyncedEntity,
        record: ServerRecord,
    ) -> None:
        """Best-effort removal of a server record whose local record is gone."""
        self._audit(
            AuditAction.ORPHAN_CLEANUP, kind, snapshot, {"server_id": record.id},
        )
        try:
            await self._gateway(kind).delete(record.id)
        except GatewayFailure as exc:
            self._logger.warning(
                "Could not remove orphaned server %s %s: %s", kind.value, record.id, exc.reason,
            )

    async def _ensure_category_pushed(self, local_id: str) -> None:
        """Push a transaction's still-local category before the transaction."""
        transaction = self._transactions.get(local_id)
        if (
            transaction is None
            or transaction.sync_status is not SyncStatus.PENDING
            or not transaction.category_id
        ):
            return
        try:
            category = self._categories.find_by_any_id(transaction.category_id)
        except IdentityConflict:
            return
        if (
            category is not None
            and category.server_id is None
            and category.sync_status is SyncStatus.PENDING
        ):
            await self.sync_record(EntityKind.CATEGORY, category.local_id)

    def _payload(self, entity: SyncedEntity) -> Optional[dict[str, JsonValue]]:
        """Request body for *entity*, or ``None`` if its category has no server id."""
        is_create = entity.server_id is None
        if isinstance(entity, Category):
            return category_payload(entity, include_owner=is_create)
        if isinstance(entity, Transaction):
            try:
                category_ref = server_category_id(entity, self._categories)
            except IdentityConflict:
                return None
            if entity.category_id and category_ref is None:
                return None
            return transaction_payload(entity, category_ref, include_owner=is_create)
        raise TypeError(f"Unsupported entity type {type(entity).__name__}")

    def _record_failure(
        self,
        store: EntityStore[SyncedEntity],
        local_id: str,
        reason: str,
    ) -> None:
        with self._db.write_lock:
            current = store.get(local_id)
            if current is None:
                return
            store.update(current.mark_sync_failed(reason, utcnow()))

    # ------------------------------------------------------------------
    # Full cycle
    # ------------------------------------------------------------------

    async def sync_all(self, owner_id: str) -> Optional[SyncReport]:
        """Push then pull categories, then push then pull transactions.

        Categories go first because transactions reference them.  Only
        one cycle runs at a time; a call made while a cycle is running
        returns ``None`` immediately.
        """
        if self._syncing:
            self._logger.info("Sync already in progress; skipping.")
            return None

        self._syncing = True
        started = utcnow()
        errors: list[str] = []
        try:
            categories_pushed = await self.push_pending(EntityKind.CATEGORY, owner_id)
            categories_pulled = await self._pull_safely(
                self.pull_categories(owner_id), errors,
            )
            transactions_pushed = await self.push_pending(EntityKind.TRANSACTION, owner_id)
            transactions_pulled = await self._pull_safely(
                self.pull_transactions(owner_id), errors,
            )
        finally:
            self._syncing = False

        finished = utcnow()
        succeeded = (
            not errors
            and categories_pushed["failed"] == 0
            and transactions_pushed["failed"] == 0
        )
        if succeeded and self._app_settings is not None:
            self._app_settings.set_last_sync_at(owner_id, finished)

        report = SyncReport(
            owner_id=owner_id,
            started_at=started.isoformat(),
            finished_at=finished.isoformat(),
            categories_pushed=categories_pushed,
            categories_pulled=categories_pulled,
            transactions_pushed=transactions_pushed,
            transactions_pulled=transactions_pulled,
            errors=errors,
            succeeded=succeeded,
        )
        log = self._logger.info if succeeded else self._logger.warning
        log("Sync cycle for %s finished (succeeded=%s).", owner_id, succeeded)
        return report

    async def _pull_safely(
        self,
        pull: Awaitable[MergeReport],
        errors: list[str],
    ) -> Optional[MergeReport]:
        try:
            return await pull
        except GatewayFailure as exc:
            self._logger.warning("Pull failed: %s", exc.reason)
            errors.append(exc.reason)
            return None

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _record_lock(self, local_id: str) -> AsyncIterator[None]:
        lock = self._record_locks.get(local_id)
        if lock is None:
            lock = asyncio.Lock()
            self._record_locks[local_id] = lock
        self._lock_users[local_id] = self._lock_users.get(local_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[local_id] -= 1
            if self._lock_users[local_id] == 0:
                del self._lock_users[local_id]
                del self._record_locks[local_id]

    def _creates_in_flight(self, kind: EntityKind) -> bool:
        with self._in_flight_guard:
            return any(k is kind and is_create for k, is_create in self._in_flight.values())

    def _store(self, kind: EntityKind) -> EntityStore[SyncedEntity]:
        match kind:
            case EntityKind.TRANSACTION:
                return self._transactions  # type: ignore[return-value]
            case EntityKind.CATEGORY:
                return self._categories  # type: ignore[return-value]
            case _ as unreachable:
                assert_never(unreachable)

    def _gateway(self, kind: EntityKind) -> RemoteGateway[ServerRecord]:
        match kind:
            case EntityKind.TRANSACTION:
                return self._transaction_gateway
            case EntityKind.CATEGORY:
                return self._category_gateway
            case _ as unreachable:
                assert_never(unreachable)

    def _report_conflict(self, kind: EntityKind, owner_id: str, exc: IdentityConflict) -> None:
        self._logger.error("Identity conflict on %s: %s", kind.value, exc.message)
        log_audit_event(
            logger=self._logger,
            action=AuditAction.IDENTITY_CONFLICT,
            entity_type=kind.value,
            entity_id=",".join(exc.local_ids) or "unknown",
            user_id=owner_id,
            details={"server_id": exc.server_id, "message": exc.message},
            conn=self._db.sqlite,
            commit=not self._db.in_batch,
        )

    def _audit(
        self,
        action: AuditAction,
        kind: EntityKind,
        entity: SyncedEntity,
        details: dict[str, str | int | float | bool | None],
    ) -> None:
        with self._db.write_lock:
            log_audit_event(
                logger=self._logger,
                action=action,
                entity_type=kind.value,
                entity_id=entity.local_id,
                user_id=entity.owner_id,
                details=details,
                conn=self._db.sqlite,
                commit=not self._db.in_batch,
            )
