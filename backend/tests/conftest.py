"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Generator, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stockledger.core.config import Settings
from stockledger.core.timeutils import utcnow
from stockledger.db.base import Base
from stockledger.db.session import enable_sqlite_foreign_keys
# Import all models to ensure they're registered with Base.metadata
from stockledger.models import *  # noqa: F401,F403
from stockledger.models.catalog import Location, Product
from stockledger.schemas.stock import BatchReceipt
from stockledger.services.stock_mutation_service import StockMutationService

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

TENANT_ID = "tenant-a"
OTHER_TENANT_ID = "tenant-b"


@pytest.fixture
def settings() -> Settings:
    """Settings with defaults, ignoring any local .env file."""
    return Settings(_env_file=None, database_url=TEST_DATABASE_URL, debug=True)


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def tenant_id() -> str:
    return TENANT_ID


@pytest.fixture
def test_product(db_session: Session) -> Product:
    """Create a plain (untracked) product."""
    product = Product(tenant_id=TENANT_ID, name="Test Product", sku="TEST-001")
    db_session.add(product)
    db_session.commit()
    db_session.refresh(product)
    return product


@pytest.fixture
def batch_product(db_session: Session) -> Product:
    """Create a batch-tracked prescription product."""
    product = Product(
        tenant_id=TENANT_ID,
        name="Amoxicillin 500mg",
        sku="AMX-500",
        track_batches=True,
        requires_prescription=True,
        drug_schedule="H",
    )
    db_session.add(product)
    db_session.commit()
    db_session.refresh(product)
    return product


@pytest.fixture
def test_location(db_session: Session) -> Location:
    """Create a test location."""
    location = Location(tenant_id=TENANT_ID, name="Main Warehouse")
    db_session.add(location)
    db_session.commit()
    db_session.refresh(location)
    return location


@pytest.fixture
def second_location(db_session: Session) -> Location:
    location = Location(tenant_id=TENANT_ID, name="Store Counter")
    db_session.add(location)
    db_session.commit()
    db_session.refresh(location)
    return location


@pytest.fixture
def foreign_location(db_session: Session) -> Location:
    """Location belonging to another tenant."""
    location = Location(tenant_id=OTHER_TENANT_ID, name="Other Tenant Store")
    db_session.add(location)
    db_session.commit()
    db_session.refresh(location)
    return location


@pytest.fixture
def mutation_service(db_session: Session, settings: Settings) -> StockMutationService:
    return StockMutationService(db_session, settings)


@pytest.fixture
def now() -> datetime:
    return utcnow()


@pytest.fixture
def receive_batch(mutation_service: StockMutationService):
    """Receive stock into a named batch expiring ``expires_in`` from now (None = no expiry)."""

    def _receive(
        product: Product,
        location: Location,
        batch_number: str,
        quantity: int,
        expires_in: Optional[timedelta],
        now: datetime,
        unit_cost: Optional[Decimal] = None,
    ):
        return mutation_service.receive_stock(
            TENANT_ID,
            product.id,
            location.id,
            quantity,
            batch=BatchReceipt(
                batch_number=batch_number,
                expiry_date=now + expires_in if expires_in is not None else None,
                unit_cost=unit_cost,
            ),
        )

    return _receive
