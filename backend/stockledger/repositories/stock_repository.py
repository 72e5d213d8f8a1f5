"""Stock level persistence: lookups, lazy provisioning and version compare-and-swap."""

import logging
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from stockledger.core.exceptions import NotFoundError
from stockledger.models.catalog import Location, Product
from stockledger.models.stock import StockLevel

logger = logging.getLogger(__name__)

_KEY_COLUMNS = ["tenant_id", "product_id", "location_id"]


class StockRepository:
    """Reads and conditional writes of ``StockLevel`` rows for one session."""

    def __init__(self, db: Session):
        self.db = db

    # ===== CATALOGUE LOOKUPS =====

    def get_product(self, tenant_id: str, product_id: int) -> Product:
        product = self.db.execute(
            select(Product).where(Product.id == product_id, Product.tenant_id == tenant_id)
        ).scalar_one_or_none()
        if product is None:
            raise NotFoundError("Product", product_id)
        return product

    def get_location(self, tenant_id: str, location_id: int) -> Location:
        location = self.db.execute(
            select(Location).where(Location.id == location_id, Location.tenant_id == tenant_id)
        ).scalar_one_or_none()
        if location is None:
            raise NotFoundError("Location", location_id)
        return location

    # ===== STOCK LEVEL READS =====

    def get_stock_level(
        self,
        tenant_id: str,
        product_id: int,
        location_id: int,
        fresh: bool = True,
    ) -> Optional[StockLevel]:
        """Load the stock level row. ``fresh`` bypasses the identity map so the
        version read is the one currently committed."""
        stmt = select(StockLevel).where(
            StockLevel.tenant_id == tenant_id,
            StockLevel.product_id == product_id,
            StockLevel.location_id == location_id,
        )
        if fresh:
            stmt = stmt.execution_options(populate_existing=True)
        return self.db.execute(stmt).scalar_one_or_none()

    def total_quantity(self, tenant_id: str, product_id: int) -> int:
        total = self.db.execute(
            select(func.coalesce(func.sum(StockLevel.quantity), 0)).where(
                StockLevel.tenant_id == tenant_id,
                StockLevel.product_id == product_id,
            )
        ).scalar_one()
        return int(total)

    def list_low_stock(self, tenant_id: str, location_id: Optional[int] = None) -> List[StockLevel]:
        stmt = select(StockLevel).where(
            StockLevel.tenant_id == tenant_id,
            StockLevel.quantity <= StockLevel.reorder_point,
        )
        if location_id is not None:
            stmt = stmt.where(StockLevel.location_id == location_id)
        return list(self.db.execute(stmt.order_by(StockLevel.quantity, StockLevel.id)).scalars())

    def list_out_of_stock(self, tenant_id: str, location_id: Optional[int] = None) -> List[StockLevel]:
        stmt = select(StockLevel).where(
            StockLevel.tenant_id == tenant_id,
            StockLevel.quantity == 0,
        )
        if location_id is not None:
            stmt = stmt.where(StockLevel.location_id == location_id)
        return list(self.db.execute(stmt.order_by(StockLevel.id)).scalars())

    # ===== WRITES =====

    def provision_stock_level(self, tenant_id: str, product_id: int, location_id: int) -> StockLevel:
        """Insert a zero-quantity row unless one already exists, then return the row.

        Concurrent provisioners race on the unique key; the loser's insert is
        a no-op instead of an IntegrityError.
        """
        values = {
            "tenant_id": tenant_id,
            "product_id": product_id,
            "location_id": location_id,
            "quantity": 0,
            "reserved_quantity": 0,
            "reorder_point": 0,
            "version": 1,
        }
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            self.db.execute(pg_insert(StockLevel).values(**values).on_conflict_do_nothing(index_elements=_KEY_COLUMNS))
        elif dialect == "sqlite":
            self.db.execute(sqlite_insert(StockLevel).values(**values).on_conflict_do_nothing(index_elements=_KEY_COLUMNS))
        else:
            self.db.add(StockLevel(**values))
            self.db.flush()

        level = self.get_stock_level(tenant_id, product_id, location_id)
        logger.debug(f"Provisioned stock level {level.id} for {(tenant_id, product_id, location_id)}")
        return level

    def compare_and_swap(self, level: StockLevel, expected_version: int, **values) -> bool:
        """Apply ``values`` only if the row still carries ``expected_version``.

        Returns False when another writer bumped the version first. The
        in-memory ``level`` is expired either way so the next access reloads it.
        """
        stmt = (
            update(StockLevel)
            .where(StockLevel.id == level.id, StockLevel.version_is(expected_version))
            .values(version=StockLevel.next_version(expected_version), **values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.expire(level)
        return result.rowcount == 1
