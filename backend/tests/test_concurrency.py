"""Tests for optimistic concurrency on stock levels."""

import threading

import pytest
from sqlalchemy import select

from stockledger.core.config import Settings
from stockledger.core.exceptions import ConcurrencyConflictError, InsufficientStockError
from stockledger.db.base import Base
from stockledger.db.session import build_engine, build_session_factory
from stockledger.models.catalog import Location, Product
from stockledger.models.stock import InventoryEvent, InventoryEventType
from stockledger.repositories.stock_repository import StockRepository
from stockledger.services.ledger_service import LedgerService
from stockledger.services.stock_mutation_service import StockMutationService

from tests.conftest import TENANT_ID


class RacingStockRepository(StockRepository):
    """Lets another writer commit a change right before the first swap attempt."""

    def __init__(self, db, racer):
        super().__init__(db)
        self.racer = racer
        self.swaps = 0

    def compare_and_swap(self, level, expected_version, **values):
        self.swaps += 1
        if self.swaps == 1:
            self.racer()
        return super().compare_and_swap(level, expected_version, **values)


class TestCompareAndSwap:
    def test_stale_version_rejected(self, db_session, mutation_service, test_product, test_location):
        mutation_service.receive_stock(TENANT_ID, test_product.id, test_location.id, 5)
        repo = StockRepository(db_session)
        level = repo.get_stock_level(TENANT_ID, test_product.id, test_location.id)
        stale_version = level.version

        mutation_service.sell_stock(TENANT_ID, test_product.id, test_location.id, 1)

        assert repo.compare_and_swap(level, stale_version, quantity=100) is False
        assert repo.get_stock_level(TENANT_ID, test_product.id, test_location.id).quantity == 4

    def test_retry_after_lost_swap(self, db_session, settings, test_product, test_location):
        seeder = StockMutationService(db_session, settings)
        seeder.receive_stock(TENANT_ID, test_product.id, test_location.id, 10)
        competitor = StockMutationService(db_session, settings, auto_commit=False)

        repo = RacingStockRepository(
            db_session,
            lambda: competitor.sell_stock(TENANT_ID, test_product.id, test_location.id, 3),
        )
        service = StockMutationService(db_session, settings, stock_repository=repo)

        result = service.sell_stock(TENANT_ID, test_product.id, test_location.id, 2)

        # First swap lost to the competitor, second one landed on fresh state
        assert repo.swaps == 2
        assert result.new_quantity == 5
        events = db_session.execute(
            select(InventoryEvent).where(InventoryEvent.type == InventoryEventType.STOCK_SOLD).order_by(InventoryEvent.id)
        ).scalars().all()
        assert [(e.quantity_delta, e.running_balance) for e in events] == [(-3, 7), (-2, 5)]
        assert LedgerService(db_session).verify_partition(TENANT_ID, test_product.id, test_location.id).consistent

    def test_retry_rechecks_availability(self, db_session, settings, test_product, test_location):
        seeder = StockMutationService(db_session, settings)
        seeder.receive_stock(TENANT_ID, test_product.id, test_location.id, 1)
        competitor = StockMutationService(db_session, settings, auto_commit=False)

        repo = RacingStockRepository(
            db_session,
            lambda: competitor.sell_stock(TENANT_ID, test_product.id, test_location.id, 1),
        )
        service = StockMutationService(db_session, settings, stock_repository=repo, auto_commit=False)

        with pytest.raises(InsufficientStockError) as exc_info:
            service.sell_stock(TENANT_ID, test_product.id, test_location.id, 1)
        assert exc_info.value.available == 0

    def test_gives_up_after_retry_budget(self, db_session, settings, mutation_service, test_product, test_location, monkeypatch):
        mutation_service.receive_stock(TENANT_ID, test_product.id, test_location.id, 10)
        attempts = []

        def always_lose(level, expected_version, **values):
            attempts.append(expected_version)
            return False

        monkeypatch.setattr(mutation_service.stock, "compare_and_swap", always_lose)

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            mutation_service.sell_stock(TENANT_ID, test_product.id, test_location.id, 1)

        assert len(attempts) == settings.stock_mutation_max_retries == 5
        assert exc_info.value.retryable
        assert exc_info.value.key == (TENANT_ID, test_product.id, test_location.id)
        level = mutation_service.get_stock_level(TENANT_ID, test_product.id, test_location.id)
        assert level.quantity == 10
        assert len(db_session.execute(select(InventoryEvent)).scalars().all()) == 1


class TestConcurrentWriters:
    """Separate sessions and threads against a file-backed database."""

    @pytest.fixture
    def file_db(self, tmp_path):
        settings = Settings(_env_file=None, database_url=f"sqlite:///{tmp_path / 'stock.db'}")
        engine = build_engine(settings)
        Base.metadata.create_all(bind=engine)
        factory = build_session_factory(engine)

        with factory() as session:
            product = Product(tenant_id=TENANT_ID, name="Last Unit", sku="LAST-1")
            location = Location(tenant_id=TENANT_ID, name="Shelf")
            session.add_all([product, location])
            session.commit()
            StockMutationService(session, settings).receive_stock(TENANT_ID, product.id, location.id, 1)
            ids = (product.id, location.id)

        yield settings, factory, ids
        engine.dispose()

    def test_interleaved_sessions(self, file_db):
        """Session A reads, B sells and commits, A's swap on the old version fails."""
        settings, factory, (product_id, location_id) = file_db

        with factory() as session_a, factory() as session_b:
            repo_a = StockRepository(session_a)
            level = repo_a.get_stock_level(TENANT_ID, product_id, location_id)
            version_seen = level.version

            StockMutationService(session_b, settings).sell_stock(TENANT_ID, product_id, location_id, 1)

            assert repo_a.compare_and_swap(level, version_seen, quantity=0) is False
            session_a.rollback()

    def test_two_sales_of_last_unit(self, file_db):
        """Two concurrent sales of 1 against quantity 1: exactly one succeeds."""
        settings, factory, (product_id, location_id) = file_db
        barrier = threading.Barrier(2)
        outcomes = []
        lock = threading.Lock()

        def sell():
            with factory() as session:
                service = StockMutationService(session, settings)
                barrier.wait()
                try:
                    result = service.sell_stock(TENANT_ID, product_id, location_id, 1)
                    outcome = ("ok", result.new_quantity)
                except InsufficientStockError as e:
                    outcome = ("insufficient", e.available)
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=sell) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert sorted(outcomes) == [("insufficient", 0), ("ok", 0)]

        with factory() as session:
            ledger = LedgerService(session)
            result = ledger.verify_partition(TENANT_ID, product_id, location_id)
            assert result.live_quantity == 0
            sold = ledger.get_history(TENANT_ID, event_type=InventoryEventType.STOCK_SOLD)
            assert len(sold) == 1
