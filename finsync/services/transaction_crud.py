"""
Transaction CRUD Service.

The facade presentation code uses for transactions: create, edit,
re-categorize, delete, and month listings.  Writes are local and
immediate; pushes run in the background.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import ValidationError

from finsync.auth import SessionManager
from finsync.config import AppConfig
from finsync.errors import RecordNotFound
from finsync.logger import StructuredLogger
from finsync.models.category import Category
from finsync.models.entity import validation_failure
from finsync.models.enums import EntityKind, SyncStatus, TransactionType
from finsync.models.identity import resolve_category
from finsync.models.transaction import Transaction, TransactionInput
from finsync.repositories.category_repository import CategoryStore
from finsync.repositories.transaction_repository import TransactionStore
from finsync.services.background import BackgroundRunner
from finsync.services.base_crud import BaseCrudService
from finsync.services.connectivity import ConnectivityMonitor
from finsync.services.reconciliation import ReconciliationEngine


class TransactionCrudService(BaseCrudService[Transaction]):
    """Service handling transaction CRUD operations.

    Dependencies are injected via __init__ -- no global state.
    """

    KIND = EntityKind.TRANSACTION

    def __init__(
        self,
        transaction_store: TransactionStore,
        category_store: CategoryStore,
        engine: ReconciliationEngine,
        runner: BackgroundRunner,
        session: SessionManager,
        config: AppConfig,
        logger: StructuredLogger,
        connectivity: Optional[ConnectivityMonitor] = None,
    ) -> None:
        super().__init__(
            transaction_store, engine, runner, session, config, logger, connectivity,
        )
        self._transactions = transaction_store
        self._categories = category_store

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_transaction(
        self,
        type: TransactionType | str,
        amount: Decimal | int | float | str,
        date: date | str,
        description: str,
        category_id: Optional[str] = None,
    ) -> Transaction:
        """Record a new transaction locally and queue it for upload.

        Raises:
            ValidationFailure: If any value is invalid (e.g. an unparsable
                amount).  Nothing is stored in that case.
        """
        self._check_input(amount=amount, description=description)
        try:
            transaction = Transaction(
                owner_id=self.owner_id,
                type=type,
                amount=amount,
                date=date,
                description=description,
                category_id=category_id or None,
            )
        except ValidationError as exc:
            raise validation_failure(exc, "Transaction") from exc

        created = self._create(transaction)
        self._logger.info("Transaction %s created locally.", created.local_id)
        return created

    def update_transaction(self, transaction_id: str, **changes: object) -> Transaction:
        """Edit a transaction.  Accepts ``category_id``, ``type``, ``amount``,
        ``date`` and ``description``.

        Raises:
            RecordNotFound: If no transaction matches *transaction_id*.
            ValidationFailure: If a value is invalid or the transaction
                has been deleted.
        """
        self._check_input(**changes)
        return self._edit(transaction_id, **changes)

    def update_transaction_category(
        self,
        transaction_id: str,
        category_id: Optional[str],
    ) -> Transaction:
        """Re-categorize a transaction (``None`` clears the category)."""
        return self._edit(transaction_id, category_id=category_id or None)

    def delete_transaction(self, transaction_id: str) -> None:
        """Delete a transaction.

        Never-synced transactions disappear immediately; others are
        hidden and removed once the server confirms the deletion.
        """
        self._delete(transaction_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_transaction(self, transaction_id: str) -> Transaction:
        """Return a transaction by local or server id.

        Raises:
            RecordNotFound: If no visible transaction matches.
        """
        transaction = self._transactions.find_by_any_id(transaction_id)
        if (
            transaction is None
            or transaction.owner_id != self.owner_id
            or transaction.sync_status is SyncStatus.PENDING_DELETE
        ):
            raise RecordNotFound(f"Transaction {transaction_id} not found.")
        return transaction

    def list_transactions(
        self,
        month: Optional[str] = None,
        refresh: bool = True,
    ) -> list[Transaction]:
        """Return the owner's transactions, newest first.

        Args:
            month: Optional ``YYYY-MM`` filter.
            refresh: Try a best-effort pull first.
        """
        if refresh:
            self._refresh(self._engine.pull_transactions)

        if month is not None:
            return self._transactions.fetch_by_month(self.owner_id, month)
        return [
            t for t in self._transactions.fetch_all(self.owner_id)
            if t.sync_status is not SyncStatus.PENDING_DELETE
        ]

    def resolve_category(self, transaction: Transaction) -> Optional[Category]:
        """The local category a transaction points at, if it exists locally."""
        return resolve_category(transaction, self._categories)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _check_input(**values: object) -> None:
        try:
            TransactionInput.model_validate(values)
        except ValidationError as exc:
            raise validation_failure(exc, "Transaction") from exc
