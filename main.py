"""
FinSync Headless Entry Point.

Bootstraps the entire dependency graph via constructor injection,
initialises the local SQLite schema, and keeps the local store
reconciled with the backend until interrupted.  Every subsystem is wired
here with no module-level globals.

Usage::

    OWNER_ID=<user uuid> python main.py
"""

from __future__ import annotations

import atexit
import sys
import threading
import traceback

from finsync.auth import SessionManager
from finsync.config import get_config
from finsync.database import DatabaseManager
from finsync.logger import StructuredLogger, get_logger
from finsync.models.user import User
from finsync.schema import initialize_schema
from finsync.services import create_services
from finsync.services.reconciliation import SyncReport


def main() -> None:
    """Application entry point: wire dependencies and run the sync worker."""
    logger: StructuredLogger = get_logger("main")
    logger.info("Starting FinSync...")

    # ------------------------------------------------------------------
    # 1. Configuration (from .env / environment variables)
    # ------------------------------------------------------------------
    config = get_config()

    # ------------------------------------------------------------------
    # 2. Database Manager (offline-first: Supabase optional, SQLite always)
    # ------------------------------------------------------------------
    db = DatabaseManager(
        supabase_url=config.SUPABASE_URL,
        supabase_key=config.SUPABASE_ANON_KEY.get_secret_value(),
        sqlite_path=config.SQLITE_PATH,
        logger=StructuredLogger(name="database"),
    )

    # DatabaseManager.close() is idempotent.
    atexit.register(db.close)

    # ------------------------------------------------------------------
    # 3. SQLite Schema Initialization (idempotent)
    # ------------------------------------------------------------------
    initialize_schema(db.sqlite, StructuredLogger(name="schema"))

    # ------------------------------------------------------------------
    # 4. Session Manager
    # ------------------------------------------------------------------
    session = SessionManager()
    if config.OWNER_ID:
        session.set_current_user(User(id=config.OWNER_ID, email=config.OWNER_EMAIL))
    else:
        logger.warning("OWNER_ID is not set; sync cycles will be skipped.")

    # ------------------------------------------------------------------
    # 5. Service Container (single composition root)
    # ------------------------------------------------------------------
    services = create_services(db=db, config=config, session=session)
    runner = services["background_runner"]
    worker = services["sync_worker_service"]
    categories = services["category_crud_service"]

    # Defaults are seeded once the owner's server categories are known
    # locally, so a second device does not upload another set.
    def _seed_default_categories(report: SyncReport) -> None:
        if report["categories_pulled"] is None:
            return
        worker.remove_cycle_listener(_seed_default_categories)
        categories.seed_default_categories(refresh=False)

    worker.add_cycle_listener(_seed_default_categories)

    # ------------------------------------------------------------------
    # 6. Run until interrupted
    # ------------------------------------------------------------------
    runner.start()
    worker.start()
    worker.sync_now()
    logger.info("Sync worker running. Press Ctrl+C to stop.")

    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        logger.info("Shutdown requested.")
    finally:
        worker.stop()
        runner.stop()
        db.close()
        logger.info("FinSync shut down.")


def _show_fatal_error(exc: BaseException) -> None:
    """Write a fatal error with its traceback to stderr."""
    detail = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    sys.stderr.write(f"FATAL: {type(exc).__name__}: {exc}\n{detail}")


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        pass
    except Exception as exc:
        _show_fatal_error(exc)
        sys.exit(1)
