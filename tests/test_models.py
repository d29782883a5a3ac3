"""
Tests for the sync entity models.

Covers value parsing, the sync-status state machine and the
dual-identifier rules.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from finsync.errors import IdentityConflict, ValidationFailure
from finsync.models import Category, SyncStatus, Transaction, TransactionInput, TransactionType
from finsync.models.identity import resolve_category, server_category_id

OWNER = "user-1"
T0 = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)


def make_transaction(**overrides: object) -> Transaction:
    data: dict[str, object] = {
        "owner_id": OWNER,
        "type": "expense",
        "amount": "42.50",
        "date": "2024-01-10",
        "description": "Coffee",
        "created_at": T0,
        "updated_at": T0,
    }
    data.update(overrides)
    return Transaction(**data)


class FakeCategoryLookup:
    def __init__(self, *categories: Category) -> None:
        self._categories = categories

    def find_by_any_id(self, any_id: str) -> Category | None:
        for category in self._categories:
            if any_id in (category.local_id, category.server_id):
                return category
        return None


class TestTransactionValues:
    """Parsing of amounts, dates and descriptions."""

    def test_amount_kept_exact(self):
        tx = make_transaction(amount="42.50")
        assert tx.amount == Decimal("42.50")
        assert tx.type is TransactionType.EXPENSE

    def test_float_amount_uses_shortest_repr(self):
        tx = make_transaction(amount=0.1)
        assert tx.amount == Decimal("0.1")

    def test_comma_decimal_separator(self):
        tx = make_transaction(amount="12,5")
        assert tx.amount == Decimal("12.5")

    @pytest.mark.parametrize("amount", ["abc", True, float("nan")])
    def test_invalid_amount_rejected(self, amount):
        with pytest.raises(ValidationError):
            make_transaction(amount=amount)

    def test_record_holds_server_values_as_sent(self):
        tx = make_transaction(amount="-5", description="")
        assert tx.amount == Decimal("-5")
        assert tx.description == ""

    @pytest.mark.parametrize(
        "values",
        [{"amount": "-1"}, {"description": "   "}, {"amount": "abc"}],
    )
    def test_user_input_is_stricter(self, values):
        with pytest.raises(ValidationError):
            TransactionInput.model_validate(values)

    def test_user_input_checks_only_supplied_values(self):
        checked = TransactionInput.model_validate({"type": "income", "amount": "0"})
        assert checked.amount == Decimal("0")
        assert checked.description is None

    def test_iso_timestamp_date_truncated(self):
        tx = make_transaction(date="2024-01-10T23:15:00Z")
        assert tx.date == date(2024, 1, 10)
        assert tx.month == "2024-01"

    def test_description_stripped(self):
        assert make_transaction(description="  Lunch ").description == "Lunch"


class TestSyncStateMachine:
    """Transitions between pending, synced and pendingDelete."""

    def test_new_records_are_pending_without_server_id(self):
        tx = make_transaction()
        assert tx.sync_status is SyncStatus.PENDING
        assert tx.server_id is None
        assert tx.local_id
        assert tx.is_pending_sync

    def test_synced_requires_server_id(self):
        with pytest.raises(ValidationError):
            make_transaction(sync_status=SyncStatus.SYNCED)

    def test_mark_synced_stamps_id_and_clears_error(self):
        failed = make_transaction().mark_sync_failed("HTTP 503", T0)
        synced = failed.mark_synced("srv-1", T0)
        assert synced.sync_status is SyncStatus.SYNCED
        assert synced.server_id == "srv-1"
        assert synced.sync_error is None
        assert synced.last_sync_attempt == T0

    def test_edit_of_synced_record_returns_to_pending(self):
        synced = make_transaction().mark_synced("srv-1", T0)
        edited = synced.mark_modified(T0 + timedelta(minutes=1), description="Tea")
        assert edited.sync_status is SyncStatus.PENDING
        assert edited.description == "Tea"
        assert edited.revision == synced.revision + 1
        assert edited.server_id == "srv-1"

    def test_edit_never_moves_updated_at_backwards(self):
        tx = make_transaction()
        edited = tx.mark_modified(T0 - timedelta(days=1), description="Tea")
        assert edited.updated_at == T0

    def test_edit_of_pending_delete_stays_pending_delete(self):
        doomed = make_transaction().mark_for_deletion(T0)
        edited = doomed.mark_modified(T0, description="Tea")
        assert edited.sync_status is SyncStatus.PENDING_DELETE

    def test_edit_without_changes_is_a_no_op(self):
        synced = make_transaction().mark_synced("srv-1", T0)

        assert synced.mark_modified(T0 + timedelta(minutes=1)) is synced
        assert synced.mark_modified(T0, description="Coffee", amount="42.5") is synced

    def test_non_editable_field_rejected(self):
        with pytest.raises(ValidationFailure):
            make_transaction().mark_modified(T0, owner_id="someone-else")

    def test_invalid_edit_value_rejected(self):
        with pytest.raises(ValidationFailure):
            make_transaction().mark_modified(T0, amount="not a number")

    def test_mark_for_deletion_is_idempotent(self):
        doomed = make_transaction().mark_for_deletion(T0)
        assert doomed.sync_status is SyncStatus.PENDING_DELETE
        assert doomed.mark_for_deletion(T0) is doomed

    def test_failure_keeps_status(self):
        failed = make_transaction().mark_sync_failed("timeout", T0)
        assert failed.sync_status is SyncStatus.PENDING
        assert failed.sync_error == "timeout"

    def test_apply_server_state_keeps_local_only_fields(self):
        category = Category(owner_id=OWNER, name="Food", color_hex="#FF6B6B", display_order=4)
        merged = category.apply_server_state(
            "cat-1",
            {"name": "Groceries", "color_hex": "#00FF00", "icon_name": "cart", "is_active": True},
            T0,
        )
        assert merged.name == "Groceries"
        assert merged.display_order == 4
        assert merged.local_id == category.local_id
        assert merged.sync_status is SyncStatus.SYNCED


class TestDualIdentifiers:
    """Local and server id namespaces."""

    def test_server_id_cannot_be_replaced(self):
        synced = make_transaction().mark_synced("srv-1", T0)
        assert synced.with_server_id("srv-1") is synced
        with pytest.raises(IdentityConflict):
            synced.with_server_id("srv-2")

    def test_resolve_category_by_local_or_server_id(self):
        category = Category(owner_id=OWNER, name="Food", color_hex="#FF6B6B").mark_synced("cat-1", T0)
        lookup = FakeCategoryLookup(category)

        by_local = make_transaction(category_id=category.local_id)
        by_server = make_transaction(category_id="cat-1")
        assert resolve_category(by_local, lookup) == category
        assert resolve_category(by_server, lookup) == category
        assert resolve_category(make_transaction(), lookup) is None

    def test_server_category_id_translation(self):
        unsynced = Category(owner_id=OWNER, name="Rent", color_hex="#45B7D1")
        synced = Category(owner_id=OWNER, name="Food", color_hex="#FF6B6B").mark_synced("cat-1", T0)
        lookup = FakeCategoryLookup(unsynced, synced)

        assert server_category_id(make_transaction(category_id=synced.local_id), lookup) == "cat-1"
        assert server_category_id(make_transaction(category_id=unsynced.local_id), lookup) is None
        assert server_category_id(make_transaction(category_id="cat-77"), lookup) == "cat-77"
        assert server_category_id(make_transaction(), lookup) is None


class TestCategory:
    """Category field rules."""

    def test_defaults(self):
        category = Category(owner_id=OWNER, name=" Food ", color_hex="#ff6b6b")
        assert category.name == "Food"
        assert category.icon_name == "tag"
        assert category.is_active is True
        assert category.color_hex == "#ff6b6b"

    @pytest.mark.parametrize("color", ["red", "#FFF", "FF6B6B", "#GG0000"])
    def test_invalid_color_rejected(self, color):
        with pytest.raises(ValidationError):
            Category(owner_id=OWNER, name="Food", color_hex=color)
