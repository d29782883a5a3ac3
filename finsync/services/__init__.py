"""
Business Logic Services Package.

Services depend on the Repository layer for local data, the gateways for
the remote backend, and the Auth module for user context.

The ``create_services()`` factory wires every store, gateway and service
together, returning a typed dict that the host application can consume
without knowing the internal dependency graph.
"""

from __future__ import annotations

from typing import Optional, TypedDict

from finsync.auth import SessionManager
from finsync.config import AppConfig
from finsync.database import DatabaseManager
from finsync.gateways.base import RemoteGateway
from finsync.gateways.supabase_gateway import (
    SupabaseCategoryGateway,
    SupabaseTransactionGateway,
)
from finsync.logger import get_logger
from finsync.models.dto import ServerCategory, ServerTransaction
from finsync.repositories.category_repository import CategoryStore
from finsync.repositories.transaction_repository import TransactionStore
from finsync.services.app_settings_service import AppSettingsService
from finsync.services.background import BackgroundRunner
from finsync.services.category_crud import CategoryCrudService
from finsync.services.connectivity import ConnectivityMonitor
from finsync.services.reconciliation import ReconciliationEngine
from finsync.services.sync_worker import SyncWorkerService
from finsync.services.transaction_crud import TransactionCrudService


class ServiceContainer(TypedDict):
    """Typed container for all sync services."""

    # --- Facades (what presentation code talks to) ---
    transaction_crud_service: TransactionCrudService
    category_crud_service: CategoryCrudService

    # --- Sync machinery ---
    reconciliation_engine: ReconciliationEngine
    sync_worker_service: SyncWorkerService
    background_runner: BackgroundRunner
    connectivity_monitor: ConnectivityMonitor

    # --- Infrastructure ---
    app_settings_service: AppSettingsService
    transaction_store: TransactionStore
    category_store: CategoryStore


def create_services(
    db: DatabaseManager,
    config: AppConfig,
    session: SessionManager,
    connectivity: Optional[ConnectivityMonitor] = None,
    transaction_gateway: Optional[RemoteGateway[ServerTransaction]] = None,
    category_gateway: Optional[RemoteGateway[ServerCategory]] = None,
) -> ServiceContainer:
    """
    Wire all stores, gateways and services together.

    This is the single composition root for the service layer.  The
    application entry-point calls this once at startup.  Nothing is
    started here; the caller owns ``background_runner.start()`` and
    ``sync_worker_service.start()``.

    Args:
        db: Initialised DatabaseManager with the local schema in place.
        config: Application configuration.
        session: Shared session holding the signed-in user.
        connectivity: Online/offline monitor (a fresh one when omitted).
        transaction_gateway: Remote transaction API (Supabase when omitted).
        category_gateway: Remote category API (Supabase when omitted).

    Returns:
        ServiceContainer mapping service names to fully-wired instances.
    """
    logger = get_logger("services")

    # ------------------------------------------------------------------
    # 1. Local stores (data-access layer)
    # ------------------------------------------------------------------
    transaction_store = TransactionStore(db=db, logger=logger)
    category_store = CategoryStore(db=db, logger=logger)

    # ------------------------------------------------------------------
    # 2. Remote gateways
    # ------------------------------------------------------------------
    if transaction_gateway is None:
        transaction_gateway = SupabaseTransactionGateway(
            db=db,
            table=config.TRANSACTIONS_TABLE,
            logger=get_logger("gateway.transactions"),
        )
    if category_gateway is None:
        category_gateway = SupabaseCategoryGateway(
            db=db,
            table=config.CATEGORIES_TABLE,
            logger=get_logger("gateway.categories"),
        )

    # ------------------------------------------------------------------
    # 3. Sync machinery
    # ------------------------------------------------------------------
    app_settings_service = AppSettingsService(db=db, logger=logger)
    reconciliation_engine = ReconciliationEngine(
        transactions=transaction_store,
        categories=category_store,
        transaction_gateway=transaction_gateway,
        category_gateway=category_gateway,
        db=db,
        logger=get_logger("sync"),
        app_settings=app_settings_service,
        max_requeues=config.SYNC_MAX_REQUEUES,
    )
    background_runner = BackgroundRunner(logger=get_logger("sync.loop"))
    if connectivity is None:
        connectivity = ConnectivityMonitor(logger=get_logger("connectivity"))

    sync_worker_service = SyncWorkerService(
        engine=reconciliation_engine,
        runner=background_runner,
        session=session,
        connectivity=connectivity,
        config=config,
        logger=get_logger("sync.worker"),
    )

    # ------------------------------------------------------------------
    # 4. Facades
    # ------------------------------------------------------------------
    transaction_crud_service = TransactionCrudService(
        transaction_store=transaction_store,
        category_store=category_store,
        engine=reconciliation_engine,
        runner=background_runner,
        session=session,
        config=config,
        logger=logger,
        connectivity=connectivity,
    )
    category_crud_service = CategoryCrudService(
        category_store=category_store,
        engine=reconciliation_engine,
        runner=background_runner,
        session=session,
        config=config,
        logger=logger,
        transaction_store=transaction_store,
        connectivity=connectivity,
    )

    return ServiceContainer(
        transaction_crud_service=transaction_crud_service,
        category_crud_service=category_crud_service,
        reconciliation_engine=reconciliation_engine,
        sync_worker_service=sync_worker_service,
        background_runner=background_runner,
        connectivity_monitor=connectivity,
        app_settings_service=app_settings_service,
        transaction_store=transaction_store,
        category_store=category_store,
    )
