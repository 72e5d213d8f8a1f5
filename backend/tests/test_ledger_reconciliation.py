"""Tests for ledger reconciliation, append-only guards and history."""

from datetime import timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import update

from stockledger.core.exceptions import InvariantViolationError, NotFoundError
from stockledger.models.batch import Batch
from stockledger.models.stock import InventoryEvent, InventoryEventType, StockLevel
from stockledger.services.ledger_service import LedgerService, assert_consistent, reconcile

from tests.conftest import TENANT_ID


def _event(delta, balance):
    return SimpleNamespace(quantity_delta=delta, running_balance=balance)


@pytest.fixture
def ledger_service(db_session):
    return LedgerService(db_session)


class TestReconcile:
    """Pure running-balance check."""

    def test_consistent_sequence(self):
        events = [_event(100, 100), _event(-30, 70), _event(5, 75)]
        result = reconcile(events)
        assert result.consistent
        assert result.first_divergence_index is None
        assert result.checked == 3
        assert result.closing_balance == 75

    def test_reports_first_divergence(self):
        events = [_event(100, 100), _event(-30, 70), _event(5, 80), _event(-10, 70)]
        result = reconcile(events)
        assert not result.consistent
        assert result.first_divergence_index == 2

    def test_implied_opening_balance(self):
        """Without an opening balance the first event sets the baseline."""
        events = [_event(-5, 45), _event(-5, 40)]
        assert reconcile(events).consistent
        assert not reconcile(events, opening_balance=0).consistent
        assert reconcile(events, opening_balance=0).first_divergence_index == 0

    def test_empty(self):
        assert reconcile([]).consistent
        assert reconcile([], opening_balance=0).closing_balance == 0

    def test_idempotent(self):
        events = [_event(3, 3), _event(2, 6)]
        assert reconcile(events) == reconcile(events)

    def test_assert_consistent(self):
        with pytest.raises(InvariantViolationError) as exc_info:
            assert_consistent([_event(1, 1), _event(1, 3)])
        assert exc_info.value.index == 1


class TestPartitionReconciliation:
    def test_mutations_keep_ledger_consistent(self, ledger_service, mutation_service, test_product, test_location, second_location):
        mutation_service.receive_stock(TENANT_ID, test_product.id, test_location.id, 100)
        mutation_service.sell_stock(TENANT_ID, test_product.id, test_location.id, 40)
        mutation_service.transfer_stock(TENANT_ID, test_product.id, test_location.id, second_location.id, 25)
        mutation_service.set_quantity(TENANT_ID, test_product.id, test_location.id, 30)
        mutation_service.adjust_stock(TENANT_ID, test_product.id, second_location.id, -5)

        for location in (test_location, second_location):
            result = ledger_service.verify_partition(TENANT_ID, test_product.id, location.id)
            assert result.consistent
        assert ledger_service.reconcile_partition(TENANT_ID, test_product.id, test_location.id).live_quantity == 30
        assert ledger_service.reconcile_partition(TENANT_ID, test_product.id, second_location.id).live_quantity == 20

    def test_untouched_partition(self, ledger_service, test_product, test_location):
        result = ledger_service.reconcile_partition(TENANT_ID, test_product.id, test_location.id)
        assert result.consistent
        assert result.live_quantity == 0

    def test_detects_out_of_band_quantity_change(self, db_session, ledger_service, mutation_service, test_product, test_location):
        """A quantity written around the mutation service no longer matches the ledger."""
        mutation_service.receive_stock(TENANT_ID, test_product.id, test_location.id, 10)
        db_session.execute(update(StockLevel).values(quantity=12))
        db_session.commit()

        result = ledger_service.reconcile_partition(TENANT_ID, test_product.id, test_location.id)
        assert result.ledger.consistent
        assert not result.matches_stock_level
        assert not result.consistent

        with pytest.raises(InvariantViolationError) as exc_info:
            ledger_service.verify_partition(TENANT_ID, test_product.id, test_location.id)
        assert exc_info.value.index == 0

    def test_detects_broken_running_balance(self, db_session, ledger_service, mutation_service, test_product, test_location):
        mutation_service.receive_stock(TENANT_ID, test_product.id, test_location.id, 10)
        mutation_service.sell_stock(TENANT_ID, test_product.id, test_location.id, 3)
        # Bulk SQL bypasses the ORM guards, as a faulty writer would
        db_session.execute(
            update(InventoryEvent)
            .where(InventoryEvent.quantity_delta == -3)
            .values(running_balance=8)
            .execution_options(synchronize_session=False)
        )
        db_session.commit()

        with pytest.raises(InvariantViolationError) as exc_info:
            ledger_service.verify_partition(TENANT_ID, test_product.id, test_location.id)
        assert exc_info.value.index == 1


class TestAppendOnly:
    def test_event_update_rejected(self, db_session, mutation_service, test_product, test_location):
        result = mutation_service.receive_stock(TENANT_ID, test_product.id, test_location.id, 10)
        event = db_session.get(InventoryEvent, result.event_id)
        event.notes = "edited"

        with pytest.raises(InvariantViolationError):
            db_session.flush()
        db_session.rollback()

    def test_event_delete_rejected(self, db_session, mutation_service, test_product, test_location):
        result = mutation_service.receive_stock(TENANT_ID, test_product.id, test_location.id, 10)
        db_session.delete(db_session.get(InventoryEvent, result.event_id))

        with pytest.raises(InvariantViolationError):
            db_session.flush()
        db_session.rollback()


class TestBatchTotals:
    def test_matches_after_receipts(self, ledger_service, receive_batch, batch_product, test_location, now):
        receive_batch(batch_product, test_location, "A", 10, timedelta(days=30), now)
        receive_batch(batch_product, test_location, "B", 15, timedelta(days=60), now)

        result = ledger_service.verify_batch_totals(TENANT_ID, batch_product.id, test_location.id)
        assert result.consistent
        assert result.batch_total == result.stock_quantity == 25

    def test_detects_drift(self, db_session, ledger_service, receive_batch, batch_product, test_location, now):
        receive_batch(batch_product, test_location, "A", 10, timedelta(days=30), now)
        # Out-of-band write that skips the stock level
        db_session.execute(update(Batch).where(Batch.batch_number == "A").values(quantity=4))
        db_session.commit()

        result = ledger_service.verify_batch_totals(TENANT_ID, batch_product.id, test_location.id)
        assert not result.consistent
        assert result.batch_total == 4
        assert result.stock_quantity == 10

    def test_missing_stock_level(self, ledger_service, batch_product, test_location):
        with pytest.raises(NotFoundError):
            ledger_service.verify_batch_totals(TENANT_ID, batch_product.id, test_location.id)


class TestHistory:
    def test_newest_first_with_filters(self, ledger_service, mutation_service, test_product, test_location, second_location):
        mutation_service.receive_stock(TENANT_ID, test_product.id, test_location.id, 10)
        mutation_service.sell_stock(TENANT_ID, test_product.id, test_location.id, 2)
        mutation_service.receive_stock(TENANT_ID, test_product.id, second_location.id, 5)

        history = ledger_service.get_history(TENANT_ID)
        assert [e.quantity_delta for e in history] == [5, -2, 10]

        sold = ledger_service.get_history(TENANT_ID, event_type=InventoryEventType.STOCK_SOLD)
        assert [e.running_balance for e in sold] == [8]

        at_main = ledger_service.get_history(TENANT_ID, location_id=test_location.id, limit=1)
        assert [e.quantity_delta for e in at_main] == [-2]

        assert ledger_service.get_history("someone-else") == []

    def test_stats(self, ledger_service, mutation_service, test_product, test_location):
        mutation_service.receive_stock(TENANT_ID, test_product.id, test_location.id, 10)
        mutation_service.receive_stock(TENANT_ID, test_product.id, test_location.id, 6)
        mutation_service.sell_stock(TENANT_ID, test_product.id, test_location.id, 4)

        stats = ledger_service.get_stats(TENANT_ID)

        assert stats.total == 3
        assert stats.net_change == 12
        by_type = {s.type: (s.count, s.net_change) for s in stats.by_type}
        assert by_type == {
            InventoryEventType.STOCK_RECEIVED: (2, 16),
            InventoryEventType.STOCK_SOLD: (1, -4),
        }
