"""
Category CRUD Service.

The facade presentation code uses for categories.  Besides the usual
create/edit/delete it owns the local-only ``display_order`` (drag & drop
reordering) and seeds the default category set for a new user.

Deleting a category detaches it from the owner's transactions: their
``category_id`` is cleared as a regular edit, so the change is pushed
like any other.
"""

from __future__ import annotations

from typing import Final, Optional

from pydantic import ValidationError

from finsync.auth import SessionManager
from finsync.config import AppConfig
from finsync.errors import RecordNotFound, ValidationFailure
from finsync.logger import StructuredLogger
from finsync.models.category import Category
from finsync.models.entity import utcnow, validation_failure
from finsync.models.enums import EntityKind, SyncStatus
from finsync.models.transaction import Transaction
from finsync.repositories.category_repository import CategoryStore
from finsync.repositories.transaction_repository import TransactionStore
from finsync.services.background import BackgroundRunner
from finsync.services.base_crud import BaseCrudService
from finsync.services.connectivity import ConnectivityMonitor
from finsync.services.reconciliation import ReconciliationEngine
from finsync.utils.audit import AuditAction, log_audit_event

# (name, color_hex, icon_name)
DEFAULT_CATEGORIES: Final[tuple[tuple[str, str, str], ...]] = (
    ("Food", "#FF6B6B", "fork.knife"),
    ("Transport", "#4ECDC4", "car.fill"),
    ("Housing", "#45B7D1", "house.fill"),
    ("Health", "#96CEB4", "heart.fill"),
    ("Education", "#DDA0DD", "book.fill"),
    ("Leisure", "#FFD93D", "gamecontroller.fill"),
    ("Shopping", "#FF8C42", "bag.fill"),
    ("Other", "#95A5A6", "ellipsis.circle.fill"),
)


class CategoryCrudService(BaseCrudService[Category]):
    """Service handling category CRUD operations.

    Dependencies are injected via __init__ -- no global state.
    ``transaction_store`` is optional; without it, deleting a category
    leaves transaction references untouched.
    """

    KIND = EntityKind.CATEGORY

    def __init__(
        self,
        category_store: CategoryStore,
        engine: ReconciliationEngine,
        runner: BackgroundRunner,
        session: SessionManager,
        config: AppConfig,
        logger: StructuredLogger,
        transaction_store: Optional[TransactionStore] = None,
        connectivity: Optional[ConnectivityMonitor] = None,
    ) -> None:
        super().__init__(
            category_store, engine, runner, session, config, logger, connectivity,
        )
        self._categories = category_store
        self._transactions = transaction_store

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_category(
        self,
        name: str,
        color_hex: str,
        icon_name: str = "tag",
    ) -> Category:
        """Create a category at the end of the user's ordering.

        Raises:
            ValidationFailure: If any value is invalid.
        """
        owner_id = self.owner_id
        with self._categories.atomic():
            try:
                category = Category(
                    owner_id=owner_id,
                    name=name,
                    color_hex=color_hex,
                    icon_name=icon_name,
                    display_order=self._categories.max_display_order(owner_id) + 1,
                )
            except ValidationError as exc:
                raise validation_failure(exc, "Category") from exc
            created = self._create(category)

        self._logger.info("Category '%s' created locally.", created.name)
        return created

    def update_category(self, category_id: str, **changes: object) -> Category:
        """Edit a category.  Accepts ``name``, ``color_hex``, ``icon_name``
        and ``is_active``.

        Raises:
            RecordNotFound: If no category matches *category_id*.
            ValidationFailure: If a value is invalid or the category has
                been deleted.
        """
        return self._edit(category_id, **changes)

    def delete_category(self, category_id: str) -> None:
        """Delete a category and clear it from the owner's transactions.

        Raises:
            RecordNotFound: If no category matches *category_id*.
        """
        with self._categories.atomic():
            category = self._categories.find_by_any_id(category_id)
            if category is None or category.owner_id != self.owner_id:
                raise RecordNotFound(f"Category {category_id} not found.")
            detached = self._detach_transactions(category)
            self._delete(category.local_id)

        for transaction in detached:
            self._schedule_push(transaction.local_id, EntityKind.TRANSACTION)

    def reorder_categories(self, ordered_ids: list[str]) -> list[Category]:
        """Persist a new display order.

        Categories named in *ordered_ids* (local or server ids) come first,
        in that order; the rest keep their relative order after them.
        The order is a local preference and is never pushed.

        Raises:
            RecordNotFound: If an id does not name one of the owner's categories.
            ValidationFailure: If an id is repeated.
        """
        owner_id = self.owner_id
        with self._categories.atomic():
            listed: list[Category] = []
            seen: set[str] = set()
            for any_id in ordered_ids:
                category = self._categories.find_by_any_id(any_id)
                if category is None or category.owner_id != owner_id:
                    raise RecordNotFound(f"Category {any_id} not found.")
                if category.local_id in seen:
                    raise ValidationFailure(f"Category {any_id} listed more than once.")
                seen.add(category.local_id)
                listed.append(category)

            rest = [c for c in self._categories.fetch_all(owner_id) if c.local_id not in seen]

            now = utcnow()
            reordered: list[Category] = []
            for position, category in enumerate(listed + rest):
                if category.display_order != position:
                    category = category.model_copy(
                        update={
                            "display_order": position,
                            "updated_at": max(now, category.updated_at),
                        }
                    )
                    self._categories.update(category)
                reordered.append(category)

            log_audit_event(
                logger=self._logger,
                action=AuditAction.REORDER,
                entity_type=self.KIND.value,
                entity_id=owner_id,
                user_id=owner_id,
                details={"count": len(reordered)},
                conn=self._categories.sqlite,
                commit=False,
            )

        return [c for c in reordered if c.sync_status is not SyncStatus.PENDING_DELETE]

    def seed_default_categories(self, refresh: bool = True) -> list[Category]:
        """Create the default category set for an owner that has none.

        The owner may already have categories on the server (created on
        another device), so with *refresh* the server listing is pulled
        first and seeding only happens once that pull has succeeded.
        Pass ``refresh=False`` only right after a successful category
        pull.  Seeded categories are ordinary pending records and are
        uploaded like any other change.

        Returns the created categories: empty when the owner already has
        categories, or when the pull could not be completed (offline or
        failed); the caller retries later in that case.
        """
        owner_id = self.owner_id
        created: list[Category] = []
        if self._categories.fetch_all(owner_id):
            return created
        if refresh and not self._pull_now(self._engine.pull_categories):
            self._logger.info(
                "Default categories for %s deferred until the server can be reached.", owner_id,
            )
            return created

        with self._categories.atomic():
            if self._categories.fetch_all(owner_id):
                return created
            for name, color_hex, icon_name in DEFAULT_CATEGORIES:
                created.append(self.create_category(name, color_hex, icon_name))

        self._logger.info("Seeded %d default categories for %s.", len(created), owner_id)
        return created

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_category(self, category_id: str) -> Category:
        """Return a category by local or server id.

        Raises:
            RecordNotFound: If no visible category matches.
        """
        category = self._categories.find_by_any_id(category_id)
        if (
            category is None
            or category.owner_id != self.owner_id
            or category.sync_status is SyncStatus.PENDING_DELETE
        ):
            raise RecordNotFound(f"Category {category_id} not found.")
        return category

    def list_categories(
        self,
        include_inactive: bool = False,
        refresh: bool = True,
    ) -> list[Category]:
        """Return the owner's categories in display order."""
        if refresh:
            self._refresh(self._engine.pull_categories)

        return [
            c for c in self._categories.fetch_all(self.owner_id)
            if c.sync_status is not SyncStatus.PENDING_DELETE
            and (include_inactive or c.is_active)
        ]

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _detach_transactions(self, category: Category) -> list[Transaction]:
        """Clear *category* from every live transaction that references it."""
        if self._transactions is None:
            return []

        references = {category.local_id}
        if category.server_id is not None:
            references.add(category.server_id)

        now = utcnow()
        detached: list[Transaction] = []
        for reference in sorted(references):
            for transaction in self._transactions.fetch_by_category(reference):
                if (
                    transaction.owner_id != category.owner_id
                    or transaction.sync_status is SyncStatus.PENDING_DELETE
                ):
                    continue
                updated = transaction.mark_modified(now, category_id=None)
                self._transactions.update(updated)
                self._audit(
                    AuditAction.UPDATE,
                    updated,
                    {"fields": "category_id"},
                    kind=EntityKind.TRANSACTION,
                )
                detached.append(updated)
        return detached
