# tests/conftest.py
from __future__ import annotations

import asyncio
import io
import os
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Generic, Optional, TypeVar

# Keep test runs from writing finsync.log into the working directory.
os.environ["LOG_FILE"] = ""
os.environ.setdefault("SUPABASE_URL", "")

import pytest

from finsync.auth import SessionManager
from finsync.config import AppConfig
from finsync.database import DatabaseManager
from finsync.errors import GatewayFailure
from finsync.logger import StructuredLogger
from finsync.models.dto import ServerCategory, ServerRecord, ServerTransaction
from finsync.models.user import User
from finsync.repositories.category_repository import CategoryStore
from finsync.repositories.transaction_repository import TransactionStore
from finsync.schema import initialize_schema
from finsync.services.app_settings_service import AppSettingsService
from finsync.services.background import BackgroundRunner
from finsync.services.connectivity import ConnectivityMonitor
from finsync.services.reconciliation import ReconciliationEngine
from finsync.utils.string_helpers import JsonValue

OWNER_ID = "user-1"

R = TypeVar("R", bound=ServerRecord)


class FakeGateway(Generic[R]):
    """In-memory server for one table.

    Rows are stored as plain dicts, exactly what a REST backend would
    return.  Failures can be injected per operation or globally with
    ``offline``; ``on_next_write`` runs a callback after the next
    create/update has been applied server-side but before the response
    reaches the caller (a concurrent local edit, for instance).
    """

    def __init__(self, dto: type[R], prefix: str) -> None:
        self.dto = dto
        self.prefix = prefix
        self.rows: dict[str, dict[str, JsonValue]] = {}
        self.calls: list[tuple[str, Optional[str]]] = []
        self.offline = False
        self._failures: dict[str, str] = {}
        self._after_write: Optional[Callable[[], None]] = None
        self._counter = 0

    # -- test controls ---------------------------------------------------

    def fail_next(self, operation: str, reason: str = "HTTP 503") -> None:
        self._failures[operation] = reason

    def on_next_write(self, callback: Callable[[], None]) -> None:
        self._after_write = callback

    def seed(self, row: dict[str, JsonValue]) -> None:
        self.rows[str(row["id"])] = dict(row)

    # -- RemoteGateway ---------------------------------------------------

    async def create(self, fields: dict[str, JsonValue]) -> R:
        await self._enter("create", None)
        self._counter += 1
        server_id = f"{self.prefix}-{self._counter}"
        row: dict[str, JsonValue] = {"id": server_id, **fields}
        self.rows[server_id] = row
        self._fire_after_write()
        return self.dto.model_validate(row)

    async def update(self, server_id: str, fields: dict[str, JsonValue]) -> R:
        await self._enter("update", server_id)
        if server_id not in self.rows:
            raise GatewayFailure(f"{server_id} not found")
        self.rows[server_id].update(fields)
        self._fire_after_write()
        return self.dto.model_validate(self.rows[server_id])

    async def delete(self, server_id: str) -> None:
        await self._enter("delete", server_id)
        self.rows.pop(server_id, None)

    async def list_all(self, owner_id: str) -> list[R]:
        await self._enter("list_all", None)
        return [
            self.dto.model_validate(row)
            for row in self.rows.values()
            if row.get("user_id") == owner_id
        ]

    # -- internals -------------------------------------------------------

    async def _enter(self, operation: str, server_id: Optional[str]) -> None:
        # Yield once so concurrent callers interleave like real I/O.
        await asyncio.sleep(0)
        self.calls.append((operation, server_id))
        if self.offline:
            raise GatewayFailure("offline")
        reason = self._failures.pop(operation, None)
        if reason is not None:
            raise GatewayFailure(reason)

    def _fire_after_write(self) -> None:
        callback, self._after_write = self._after_write, None
        if callback is not None:
            callback()


class Device:
    """One installation: its own local database wired to a shared server."""

    def __init__(
        self,
        path: Path,
        logger: StructuredLogger,
        transaction_gateway: FakeGateway[ServerTransaction],
        category_gateway: FakeGateway[ServerCategory],
    ) -> None:
        self.db = DatabaseManager(
            supabase_url="",
            supabase_key="",
            sqlite_path=path,
            logger=logger,
        )
        initialize_schema(self.db.sqlite, logger)
        self.transactions = TransactionStore(db=self.db, logger=logger)
        self.categories = CategoryStore(db=self.db, logger=logger)
        self.app_settings = AppSettingsService(db=self.db, logger=logger)
        self.engine = ReconciliationEngine(
            transactions=self.transactions,
            categories=self.categories,
            transaction_gateway=transaction_gateway,
            category_gateway=category_gateway,
            db=self.db,
            logger=logger,
            app_settings=self.app_settings,
        )

    def audit_actions(self) -> list[str]:
        rows = self.db.sqlite.execute("SELECT action FROM audit_log ORDER BY id").fetchall()
        return [row["action"] for row in rows]


@pytest.fixture
def owner_id() -> str:
    return OWNER_ID


@pytest.fixture
def logger() -> StructuredLogger:
    """Structured logger writing to an in-memory stream."""
    return StructuredLogger(name="finsync.tests", stream=io.StringIO(), log_file="")


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(
        SUPABASE_URL="",
        LOG_FILE="",
        PULL_TIMEOUT_S=5.0,
        SYNC_BASE_INTERVAL_S=30.0,
        SYNC_MAX_INTERVAL_S=300.0,
        CONNECTIVITY_DEBOUNCE_S=0.0,
    )


@pytest.fixture
def transaction_gateway() -> FakeGateway[ServerTransaction]:
    return FakeGateway(ServerTransaction, "tx")


@pytest.fixture
def category_gateway() -> FakeGateway[ServerCategory]:
    return FakeGateway(ServerCategory, "cat")


@pytest.fixture
def make_device(
    tmp_path: Path,
    logger: StructuredLogger,
    transaction_gateway: FakeGateway[ServerTransaction],
    category_gateway: FakeGateway[ServerCategory],
) -> Iterator[Callable[[str], Device]]:
    """Factory for devices sharing the same fake server."""
    devices: list[Device] = []

    def _make(name: str = "device") -> Device:
        device = Device(
            tmp_path / f"{name}.db", logger, transaction_gateway, category_gateway,
        )
        devices.append(device)
        return device

    yield _make
    for device in devices:
        device.db.close()


@pytest.fixture
def device(make_device: Callable[[str], Device]) -> Device:
    return make_device("device-a")


@pytest.fixture
def session(owner_id: str) -> SessionManager:
    return SessionManager(User(id=owner_id, email="owner@example.com"))


@pytest.fixture
def runner(logger: StructuredLogger) -> Iterator[BackgroundRunner]:
    runner = BackgroundRunner(logger=logger)
    runner.start()
    yield runner
    runner.stop()


@pytest.fixture
def connectivity(logger: StructuredLogger) -> ConnectivityMonitor:
    return ConnectivityMonitor(logger=logger)
