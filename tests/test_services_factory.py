"""
Tests for the service composition root and the small infrastructure
services it wires (settings, audit trail, JSON conversion).
"""

import math
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from finsync.gateways.supabase_gateway import SupabaseCategoryGateway, SupabaseTransactionGateway
from finsync.models import SyncStatus, TransactionType
from finsync.services import create_services
from finsync.utils import AuditAction, convert_to_json_safe, log_audit_event


@pytest.fixture
def services(device, app_config, session, transaction_gateway, category_gateway):
    container = create_services(
        db=device.db,
        config=app_config,
        session=session,
        transaction_gateway=transaction_gateway,
        category_gateway=category_gateway,
    )
    yield container
    container["sync_worker_service"].stop()
    container["background_runner"].stop()


class TestCreateServices:
    """Wiring of the service container."""

    def test_facades_share_one_engine(self, services):
        engine = services["reconciliation_engine"]
        assert services["transaction_crud_service"]._engine is engine
        assert services["category_crud_service"]._engine is engine
        assert services["sync_worker_service"]._engine is engine

    def test_end_to_end(self, services, category_gateway, transaction_gateway):
        categories = services["category_crud_service"]
        transactions = services["transaction_crud_service"]
        runner = services["background_runner"]

        seeded = categories.seed_default_categories()
        transactions.create_transaction(
            TransactionType.EXPENSE, "42.50", "2024-01-10", "Coffee", category_id=seeded[0].local_id,
        )
        assert runner.drain(5.0)

        report = services["sync_worker_service"].run_once()

        assert report is not None and report["succeeded"] is True
        assert len(category_gateway.rows) == len(seeded)
        (row,) = transaction_gateway.rows.values()
        food = categories.get_category(seeded[0].local_id)
        assert row["category_id"] == food.server_id
        assert all(
            c.sync_status is SyncStatus.SYNCED for c in categories.list_categories(refresh=False)
        )

    def test_supabase_gateways_by_default(self, device, app_config, session):
        container = create_services(db=device.db, config=app_config, session=session)
        engine = container["reconciliation_engine"]
        assert isinstance(engine._transaction_gateway, SupabaseTransactionGateway)
        assert isinstance(engine._category_gateway, SupabaseCategoryGateway)


class TestAppSettings:
    """Key/value settings and the last-sync marker."""

    def test_roundtrip(self, device, owner_id):
        settings = device.app_settings
        assert settings.get("missing") is None
        assert settings.set("theme", "dark") is True
        assert settings.get("theme") == "dark"

        at = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)
        settings.set_last_sync_at(owner_id, at)
        assert settings.get_last_sync_at(owner_id) == at
        assert settings.get_last_sync_at("someone-else") is None


class TestAuditTrail:
    """Audit events are persisted to the audit_log table."""

    def test_event_persisted(self, device, logger, owner_id):
        log_audit_event(
            logger=logger,
            action=AuditAction.DELETE,
            entity_type="Transaction",
            entity_id="local-1",
            user_id=owner_id,
            details={"remote": True},
            conn=device.db.sqlite,
        )

        row = device.db.sqlite.execute("SELECT * FROM audit_log").fetchone()
        assert row["action"] == "DELETE"
        assert row["entity_id"] == "local-1"
        assert '"remote": true' in row["details"]


class TestJsonConversion:
    """Wire-safe conversion of local values."""

    def test_values(self):
        converted = convert_to_json_safe(
            {
                "amount": Decimal("42.50"),
                "date": date(2024, 1, 10),
                "at": datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc),
                "type": TransactionType.INCOME,
                "bad": math.nan,
                "items": (1, "a"),
            }
        )
        assert converted == {
            "amount": "42.50",
            "date": "2024-01-10",
            "at": "2024-01-10T12:00:00+00:00",
            "type": "income",
            "bad": None,
            "items": [1, "a"],
        }

    def test_unsupported_type(self):
        with pytest.raises(TypeError):
            convert_to_json_safe(object())
