"""
Tests for the reconciliation engine: push, pull-merge and full cycles.

Each test drives the engine's coroutines with ``asyncio.run`` against
the in-memory gateways from ``conftest.py``.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from finsync.models import Category, EntityKind, PushOutcome, ServerCategory, ServerTransaction, SyncStatus, Transaction
from finsync.models.entity import utcnow

T0 = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)


def make_transaction(owner_id: str, **overrides: object) -> Transaction:
    data: dict[str, object] = {
        "owner_id": owner_id,
        "type": "expense",
        "amount": "42.50",
        "date": "2024-01-10",
        "description": "Coffee",
    }
    data.update(overrides)
    return Transaction(**data)


def server_transaction(owner_id: str, server_id: str, **overrides: object) -> ServerTransaction:
    row: dict[str, object] = {
        "id": server_id,
        "user_id": owner_id,
        "type": "expense",
        "amount": "42.50",
        "date": "2024-01-10",
        "description": "Coffee",
    }
    row.update(overrides)
    return ServerTransaction.model_validate(row)


class TestPush:
    """Replaying local changes to the server."""

    def test_create_then_sync(self, device, owner_id, transaction_gateway):
        tx = make_transaction(owner_id)
        device.transactions.insert(tx)

        outcome = asyncio.run(device.engine.sync_record(EntityKind.TRANSACTION, tx.local_id))

        assert outcome is PushOutcome.SYNCED
        stored = device.transactions.get(tx.local_id)
        assert stored.sync_status is SyncStatus.SYNCED
        assert stored.server_id == "tx-1"
        assert stored.sync_error is None
        assert stored.last_sync_attempt is not None
        assert transaction_gateway.rows["tx-1"] == {
            "id": "tx-1",
            "category_id": None,
            "type": "expense",
            "amount": "42.50",
            "date": "2024-01-10",
            "description": "Coffee",
            "user_id": owner_id,
        }

    def test_synced_record_is_skipped(self, device, owner_id, transaction_gateway):
        tx = make_transaction(owner_id).mark_synced("tx-9", T0)
        device.transactions.insert(tx)

        outcome = asyncio.run(device.engine.push_record(EntityKind.TRANSACTION, tx.local_id))

        assert outcome is PushOutcome.SKIPPED
        assert transaction_gateway.calls == []

    def test_edit_of_synced_record_updates_server(self, device, owner_id, transaction_gateway):
        tx = make_transaction(owner_id)
        device.transactions.insert(tx)
        asyncio.run(device.engine.sync_record(EntityKind.TRANSACTION, tx.local_id))

        synced = device.transactions.get(tx.local_id)
        device.transactions.update(synced.mark_modified(utcnow(), description="Espresso"))
        outcome = asyncio.run(device.engine.sync_record(EntityKind.TRANSACTION, tx.local_id))

        assert outcome is PushOutcome.SYNCED
        assert transaction_gateway.calls[-1] == ("update", "tx-1")
        assert transaction_gateway.rows["tx-1"]["description"] == "Espresso"
        assert "user_id" in transaction_gateway.rows["tx-1"]
        assert device.transactions.get(tx.local_id).sync_status is SyncStatus.SYNCED

    def test_failure_keeps_status_and_records_error(self, device, owner_id, transaction_gateway):
        tx = make_transaction(owner_id)
        device.transactions.insert(tx)
        transaction_gateway.fail_next("create", "HTTP 503")

        outcome = asyncio.run(device.engine.sync_record(EntityKind.TRANSACTION, tx.local_id))

        assert outcome is PushOutcome.FAILED
        stored = device.transactions.get(tx.local_id)
        assert stored.sync_status is SyncStatus.PENDING
        assert stored.server_id is None
        assert stored.sync_error == "HTTP 503"
        assert stored.last_sync_attempt is not None
        assert transaction_gateway.rows == {}

    def test_retry_after_failure_succeeds(self, device, owner_id, transaction_gateway):
        tx = make_transaction(owner_id)
        device.transactions.insert(tx)
        transaction_gateway.fail_next("create")
        asyncio.run(device.engine.sync_record(EntityKind.TRANSACTION, tx.local_id))

        outcome = asyncio.run(device.engine.sync_record(EntityKind.TRANSACTION, tx.local_id))

        assert outcome is PushOutcome.SYNCED
        assert device.transactions.get(tx.local_id).sync_error is None
        assert len(transaction_gateway.rows) == 1

    def test_edit_during_push_is_requeued_then_synced(self, device, owner_id, transaction_gateway):
        tx = make_transaction(owner_id)
        device.transactions.insert(tx)

        def edit_locally() -> None:
            current = device.transactions.get(tx.local_id)
            device.transactions.update(current.mark_modified(utcnow(), description="Edited"))

        transaction_gateway.on_next_write(edit_locally)

        first = asyncio.run(device.engine.push_record(EntityKind.TRANSACTION, tx.local_id))
        assert first is PushOutcome.REQUEUED
        requeued = device.transactions.get(tx.local_id)
        assert requeued.sync_status is SyncStatus.PENDING
        assert requeued.server_id == "tx-1"
        assert requeued.description == "Edited"

        second = asyncio.run(device.engine.sync_record(EntityKind.TRANSACTION, tx.local_id))
        assert second is PushOutcome.SYNCED
        assert transaction_gateway.rows["tx-1"]["description"] == "Edited"
        assert len(transaction_gateway.rows) == 1

    def test_sync_record_follows_up_stale_results(self, device, owner_id, transaction_gateway):
        tx = make_transaction(owner_id)
        device.transactions.insert(tx)

        def edit_locally() -> None:
            current = device.transactions.get(tx.local_id)
            device.transactions.update(current.mark_modified(utcnow(), amount="50"))

        transaction_gateway.on_next_write(edit_locally)

        outcome = asyncio.run(device.engine.sync_record(EntityKind.TRANSACTION, tx.local_id))

        assert outcome is PushOutcome.SYNCED
        assert transaction_gateway.rows["tx-1"]["amount"] == "50"
        stored = device.transactions.get(tx.local_id)
        assert stored.sync_status is SyncStatus.SYNCED
        assert stored.amount == Decimal("50")

    def test_delete_during_create_wins(self, device, owner_id, transaction_gateway):
        tx = make_transaction(owner_id)
        device.transactions.insert(tx)

        def delete_locally() -> None:
            current = device.transactions.get(tx.local_id)
            device.transactions.update(current.mark_for_deletion(utcnow()))

        transaction_gateway.on_next_write(delete_locally)

        outcome = asyncio.run(device.engine.sync_record(EntityKind.TRANSACTION, tx.local_id))

        assert outcome is PushOutcome.DELETED
        assert device.transactions.get(tx.local_id) is None
        assert transaction_gateway.rows == {}

    def test_vanished_record_cleans_up_server_copy(self, device, owner_id, transaction_gateway):
        tx = make_transaction(owner_id)
        device.transactions.insert(tx)
        transaction_gateway.on_next_write(lambda: device.transactions.delete(tx.local_id))

        outcome = asyncio.run(device.engine.sync_record(EntityKind.TRANSACTION, tx.local_id))

        assert outcome is PushOutcome.DELETED
        assert transaction_gateway.rows == {}
        assert "ORPHAN_CLEANUP" in device.audit_actions()

    def test_never_synced_delete_is_local_only(self, device, owner_id, transaction_gateway):
        tx = make_transaction(owner_id).mark_for_deletion(T0)
        device.transactions.insert(tx)

        outcome = asyncio.run(device.engine.sync_record(EntityKind.TRANSACTION, tx.local_id))

        assert outcome is PushOutcome.DELETED
        assert transaction_gateway.calls == []
        assert device.transactions.get(tx.local_id) is None

    def test_failed_remote_delete_keeps_tombstone(self, device, owner_id, transaction_gateway):
        tx = make_transaction(owner_id).mark_synced("tx-3", T0).mark_for_deletion(T0)
        device.transactions.insert(tx)
        transaction_gateway.fail_next("delete", "timeout")

        outcome = asyncio.run(device.engine.sync_record(EntityKind.TRANSACTION, tx.local_id))

        assert outcome is PushOutcome.FAILED
        stored = device.transactions.get(tx.local_id)
        assert stored.sync_status is SyncStatus.PENDING_DELETE
        assert stored.sync_error == "timeout"

    def test_category_pushed_before_transaction(
        self, device, owner_id, transaction_gateway, category_gateway,
    ):
        category = Category(owner_id=owner_id, name="Food", color_hex="#FF6B6B")
        device.categories.insert(category)
        tx = make_transaction(owner_id, category_id=category.local_id)
        device.transactions.insert(tx)

        outcome = asyncio.run(device.engine.sync_record(EntityKind.TRANSACTION, tx.local_id))

        assert outcome is PushOutcome.SYNCED
        assert device.categories.get(category.local_id).server_id == "cat-1"
        assert transaction_gateway.rows["tx-1"]["category_id"] == "cat-1"
        # The local reference keeps pointing at the same category.
        assert device.transactions.get(tx.local_id).category_id == category.local_id

    def test_transaction_waits_for_unsynced_category(
        self, device, owner_id, transaction_gateway, category_gateway,
    ):
        category = Category(owner_id=owner_id, name="Food", color_hex="#FF6B6B")
        device.categories.insert(category)
        tx = make_transaction(owner_id, category_id=category.local_id)
        device.transactions.insert(tx)
        category_gateway.fail_next("create")

        outcome = asyncio.run(device.engine.sync_record(EntityKind.TRANSACTION, tx.local_id))

        assert outcome is PushOutcome.FAILED
        assert transaction_gateway.rows == {}
        assert device.transactions.get(tx.local_id).sync_error == "Category has not been synced yet."

    def test_push_pending_reports_outcomes(self, device, owner_id, transaction_gateway):
        for description in ("A", "B", "C"):
            device.transactions.insert(make_transaction(owner_id, description=description))
        transaction_gateway.fail_next("create")

        report = asyncio.run(device.engine.push_pending(EntityKind.TRANSACTION, owner_id))

        assert report["synced"] == 2
        assert report["failed"] == 1
        assert device.transactions.count_pending(owner_id) == 1


class TestPullMerge:
    """Folding server listings into the local store."""

    def test_unknown_records_materialized_as_synced(self, device, owner_id):
        report = device.engine.merge_transactions(owner_id, [server_transaction(owner_id, "tx-1")])

        assert report["inserted"] == 1
        stored = device.transactions.find_by_any_id("tx-1")
        assert stored.sync_status is SyncStatus.SYNCED
        assert stored.amount == Decimal("42.50")

    def test_merge_is_idempotent(self, device, owner_id):
        records = [
            server_transaction(owner_id, "tx-1"),
            server_transaction(owner_id, "tx-2", description="Bus", amount="2.10"),
        ]
        device.engine.merge_transactions(owner_id, records)
        snapshot = device.transactions.fetch_all(owner_id)

        report = device.engine.merge_transactions(owner_id, records)

        assert report["inserted"] == 0
        assert report["updated"] == 0
        assert report["unchanged"] == 2
        assert device.transactions.fetch_all(owner_id) == snapshot

    def test_server_changes_overwrite_synced_records(self, device, owner_id):
        device.engine.merge_transactions(owner_id, [server_transaction(owner_id, "tx-1")])

        report = device.engine.merge_transactions(
            owner_id, [server_transaction(owner_id, "tx-1", description="Latte", aiConfidence=0.8)],
        )

        assert report["updated"] == 1
        stored = device.transactions.find_by_any_id("tx-1")
        assert stored.description == "Latte"
        assert stored.ai_confidence == 0.8

    def test_pending_edit_survives_pull(self, device, owner_id):
        device.engine.merge_transactions(owner_id, [server_transaction(owner_id, "tx-1")])
        synced = device.transactions.find_by_any_id("tx-1")
        device.transactions.update(synced.mark_modified(utcnow(), description="Local edit"))

        device.engine.merge_transactions(
            owner_id, [server_transaction(owner_id, "tx-1", description="Server edit")],
        )

        stored = device.transactions.get(synced.local_id)
        assert stored.description == "Local edit"
        assert stored.sync_status is SyncStatus.PENDING

    def test_pending_record_matching_server_becomes_synced(self, device, owner_id):
        device.engine.merge_transactions(owner_id, [server_transaction(owner_id, "tx-1")])
        synced = device.transactions.find_by_any_id("tx-1")
        device.transactions.update(synced.mark_modified(utcnow(), description="Tea"))

        device.engine.merge_transactions(
            owner_id, [server_transaction(owner_id, "tx-1", description="Tea")],
        )

        assert device.transactions.get(synced.local_id).sync_status is SyncStatus.SYNCED

    def test_pending_delete_not_resurrected(self, device, owner_id):
        device.engine.merge_transactions(owner_id, [server_transaction(owner_id, "tx-1")])
        synced = device.transactions.find_by_any_id("tx-1")
        device.transactions.update(synced.mark_for_deletion(utcnow()))

        device.engine.merge_transactions(owner_id, [server_transaction(owner_id, "tx-1")])

        assert device.transactions.get(synced.local_id).sync_status is SyncStatus.PENDING_DELETE
        assert len(device.transactions.fetch_all(owner_id)) == 1

    def test_duplicate_ids_in_listing(self, device, owner_id):
        record = server_transaction(owner_id, "tx-1")
        report = device.engine.merge_transactions(owner_id, [record, record])

        assert report["inserted"] == 1
        assert report["skipped"] == 1
        assert len(device.transactions.fetch_all(owner_id)) == 1

    def test_invalid_record_skipped(self, device, owner_id):
        bad = server_transaction(owner_id, "tx-1", aiConfidence=1.5)
        good = server_transaction(owner_id, "tx-2")

        report = device.engine.merge_transactions(owner_id, [bad, good])

        assert report["skipped"] == 1
        assert report["inserted"] == 1
        assert device.transactions.find_by_any_id("tx-1") is None

    def test_server_values_a_user_could_not_enter_are_kept(self, device, owner_id):
        refund = server_transaction(owner_id, "tx-1", amount="-5", description="")

        report = device.engine.merge_transactions(owner_id, [refund])

        assert report["inserted"] == 1
        stored = device.transactions.find_by_any_id("tx-1")
        assert stored.amount == Decimal("-5")
        assert stored.description == ""

    def test_record_owned_by_another_user_is_a_conflict(self, device, owner_id):
        foreign = make_transaction("user-2").mark_synced("tx-1", T0)
        device.transactions.insert(foreign)

        report = device.engine.merge_transactions(owner_id, [server_transaction(owner_id, "tx-1")])

        assert report["conflicts"] == 1
        assert device.transactions.find_by_any_id("tx-1").owner_id == "user-2"
        assert "IDENTITY_CONFLICT" in device.audit_actions()

    def test_nested_category_materialized_first(self, device, owner_id):
        record = server_transaction(
            owner_id,
            "tx-1",
            category_id="cat-9",
            category={"id": "cat-9", "name": "Food", "color_hex": "#FF6B6B", "icon_name": "fork.knife"},
        )

        report = device.engine.merge_transactions(owner_id, [record])

        assert report["nested_categories"] == 1
        category = device.categories.find_by_any_id("cat-9")
        assert category.name == "Food"
        assert category.sync_status is SyncStatus.SYNCED
        assert device.transactions.find_by_any_id("tx-1").category_id == "cat-9"

    def test_missing_synced_record_flagged_not_deleted(self, device, owner_id):
        old = make_transaction(owner_id).mark_synced("tx-old", T0)
        device.transactions.insert(old)

        partial = device.engine.merge_transactions(owner_id, [], complete=False)
        assert partial["flagged_missing"] == 0

        report = device.engine.merge_transactions(owner_id, [])

        assert report["flagged_missing"] == 1
        stored = device.transactions.get(old.local_id)
        assert stored.remote_missing is True
        assert stored.sync_status is SyncStatus.SYNCED

    def test_record_synced_after_listing_not_flagged(self, device, owner_id):
        listed_at = utcnow()
        fresh = make_transaction(owner_id).mark_synced("tx-new", listed_at + timedelta(seconds=5))
        device.transactions.insert(fresh)

        report = device.engine.merge_transactions(owner_id, [], listed_at=listed_at)

        assert report["flagged_missing"] == 0

    def test_reappearing_record_clears_flag(self, device, owner_id):
        old = make_transaction(owner_id).mark_synced("tx-1", T0)
        device.transactions.insert(old)
        device.engine.merge_transactions(owner_id, [])

        device.engine.merge_transactions(owner_id, [server_transaction(owner_id, "tx-1")])

        assert device.transactions.get(old.local_id).remote_missing is False

    def test_category_merge_keeps_display_order(self, device, owner_id):
        local = Category(owner_id=owner_id, name="Food", color_hex="#FF6B6B", display_order=5)
        device.categories.insert(local.mark_synced("cat-1", T0))

        device.engine.merge_categories(
            owner_id,
            [ServerCategory(id="cat-1", user_id=owner_id, name="Groceries", color_hex="#FF6B6B")],
        )

        stored = device.categories.get(local.local_id)
        assert stored.name == "Groceries"
        assert stored.display_order == 5


class TestFullSync:
    """Complete cycles and multi-device convergence."""

    def test_sync_all_reports_and_records_time(self, device, owner_id, category_gateway):
        device.categories.insert(Category(owner_id=owner_id, name="Food", color_hex="#FF6B6B"))
        device.transactions.insert(make_transaction(owner_id))

        report = asyncio.run(device.engine.sync_all(owner_id))

        assert report["succeeded"] is True
        assert report["errors"] == []
        assert report["categories_pushed"]["synced"] == 1
        assert report["transactions_pushed"]["synced"] == 1
        assert report["transactions_pulled"]["unchanged"] == 1
        assert device.app_settings.get_last_sync_at(owner_id) is not None
        assert device.transactions.count_pending(owner_id) == 0
        assert len(category_gateway.rows) == 1

    def test_sync_all_with_pull_failure(self, device, owner_id, transaction_gateway):
        transaction_gateway.fail_next("list_all", "HTTP 500")

        report = asyncio.run(device.engine.sync_all(owner_id))

        assert report["succeeded"] is False
        assert report["errors"] == ["HTTP 500"]
        assert report["transactions_pulled"] is None
        assert device.app_settings.get_last_sync_at(owner_id) is None

    def test_only_one_cycle_at_a_time(self, device, owner_id):
        async def run_twice():
            return await asyncio.gather(
                device.engine.sync_all(owner_id), device.engine.sync_all(owner_id),
            )

        first, second = asyncio.run(run_twice())

        assert first is not None
        assert second is None
        assert device.engine.is_syncing is False

    def test_two_devices_converge(self, make_device, owner_id):
        phone = make_device("phone")
        laptop = make_device("laptop")

        created = make_transaction(owner_id, amount="42.50", description="Coffee", date="2024-01-10")
        phone.transactions.insert(created)
        asyncio.run(phone.engine.sync_all(owner_id))
        asyncio.run(laptop.engine.sync_all(owner_id))

        mirrored = laptop.transactions.fetch_all(owner_id)
        assert len(mirrored) == 1
        assert mirrored[0].amount == Decimal("42.50")
        assert mirrored[0].description == "Coffee"
        assert mirrored[0].date.isoformat() == "2024-01-10"
        assert mirrored[0].server_id == phone.transactions.get(created.local_id).server_id
        assert mirrored[0].sync_status is SyncStatus.SYNCED

        # An edit on the laptop reaches the phone.
        laptop.transactions.update(mirrored[0].mark_modified(utcnow(), description="Cappuccino"))
        asyncio.run(laptop.engine.sync_all(owner_id))
        asyncio.run(phone.engine.sync_all(owner_id))

        assert phone.transactions.get(created.local_id).description == "Cappuccino"

        # Running again changes nothing.
        before = phone.transactions.fetch_all(owner_id)
        asyncio.run(phone.engine.sync_all(owner_id))
        assert phone.transactions.fetch_all(owner_id) == before
