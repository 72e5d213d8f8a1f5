"""Batch registry persistence."""

import logging
from typing import List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, contains_eager

from stockledger.core.exceptions import NotFoundError
from stockledger.core.timeutils import as_utc
from stockledger.models.batch import Batch, BatchStatus
from stockledger.models.stock import StockLevel
from stockledger.schemas.stock import BatchReceipt

logger = logging.getLogger(__name__)

# First-Expiry-First-Out: missing expiry last, ties on receipt order
FEFO_ORDER = (
    Batch.expiry_date.asc().nullslast(),
    Batch.created_at.asc(),
    Batch.id.asc(),
)


class BatchRepository:
    def __init__(self, db: Session):
        self.db = db

    def register(
        self,
        tenant_id: str,
        stock_level: StockLevel,
        quantity: int,
        receipt: BatchReceipt,
    ) -> Batch:
        batch = Batch(
            tenant_id=tenant_id,
            product_id=stock_level.product_id,
            stock_level_id=stock_level.id,
            batch_number=receipt.batch_number,
            initial_quantity=quantity,
            quantity=quantity,
            expiry_date=as_utc(receipt.expiry_date),
            manufacturing_date=receipt.manufacturing_date,
            unit_cost=receipt.unit_cost,
            status=BatchStatus.ACTIVE,
        )
        self.db.add(batch)
        self.db.flush()
        return batch

    def receive(
        self,
        tenant_id: str,
        stock_level: StockLevel,
        quantity: int,
        receipt: BatchReceipt,
    ) -> Batch:
        """Add ``quantity`` to the level's batch with this number, registering it on first receipt."""
        existing = self.find_by_number(stock_level.id, receipt.batch_number)
        if existing is None:
            return self.register(tenant_id, stock_level, quantity, receipt)

        if receipt.expiry_date is not None and as_utc(existing.expiry_date) != as_utc(receipt.expiry_date):
            raise ValueError(
                f"Batch {receipt.batch_number} is already recorded with expiry {existing.expiry_date}"
            )
        self.restock(existing.id, quantity)
        return self.get(tenant_id, existing.id)

    def get(self, tenant_id: str, batch_id: int) -> Batch:
        batch = self.db.execute(
            select(Batch)
            .where(Batch.id == batch_id, Batch.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if batch is None:
            raise NotFoundError("Batch", batch_id)
        return batch

    def find_by_number(self, stock_level_id: int, batch_number: str) -> Optional[Batch]:
        return self.db.execute(
            select(Batch)
            .where(Batch.stock_level_id == stock_level_id, Batch.batch_number == batch_number)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def find_available(
        self,
        tenant_id: str,
        product_id: int,
        location_id: Optional[int] = None,
    ) -> List[Batch]:
        """ACTIVE batches with stock left in FEFO order, stock level eagerly loaded."""
        stmt = (
            select(Batch)
            .join(StockLevel, Batch.stock_level_id == StockLevel.id)
            .where(
                Batch.tenant_id == tenant_id,
                Batch.product_id == product_id,
                Batch.status == BatchStatus.ACTIVE,
                Batch.quantity > 0,
            )
            .options(contains_eager(Batch.stock_level))
            .order_by(*FEFO_ORDER)
            .execution_options(populate_existing=True)
        )
        if location_id is not None:
            stmt = stmt.where(StockLevel.location_id == location_id)
        return list(self.db.execute(stmt).scalars().unique())

    def find_active_for_stock_level(self, stock_level_id: int) -> List[Batch]:
        """ACTIVE batches of one stock level with stock left in FEFO order, expired ones included."""
        return list(
            self.db.execute(
                select(Batch)
                .where(
                    Batch.stock_level_id == stock_level_id,
                    Batch.status == BatchStatus.ACTIVE,
                    Batch.quantity > 0,
                )
                .order_by(*FEFO_ORDER)
                .execution_options(populate_existing=True)
            ).scalars()
        )

    def find_with_expiry(self, tenant_id: str, product_id: Optional[int] = None) -> List[Batch]:
        """ACTIVE batches with stock left and an expiry date."""
        stmt = (
            select(Batch)
            .join(StockLevel, Batch.stock_level_id == StockLevel.id)
            .where(
                Batch.tenant_id == tenant_id,
                Batch.status == BatchStatus.ACTIVE,
                Batch.quantity > 0,
                Batch.expiry_date.is_not(None),
            )
            .options(contains_eager(Batch.stock_level))
            .order_by(Batch.expiry_date.asc(), Batch.id.asc())
        )
        if product_id is not None:
            stmt = stmt.where(Batch.product_id == product_id)
        return list(self.db.execute(stmt).scalars().unique())

    def consume(
        self,
        batch_id: int,
        quantity: int,
        statuses: Sequence[BatchStatus] = (BatchStatus.ACTIVE,),
    ) -> bool:
        """Take ``quantity`` from a batch in one of ``statuses`` if it still holds that much.

        Returns False when the batch changed since it was planned (stale plan).
        """
        result = self.db.execute(
            update(Batch)
            .where(
                Batch.id == batch_id,
                Batch.status.in_(statuses),
                Batch.quantity >= quantity,
            )
            .values(quantity=Batch.quantity - quantity)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def restock(self, batch_id: int, quantity: int) -> None:
        """Add units back to a batch; a DEPLETED batch becomes ACTIVE again."""
        self.db.execute(
            update(Batch)
            .where(Batch.id == batch_id)
            .values(quantity=Batch.quantity + quantity)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(
            update(Batch)
            .where(
                Batch.id == batch_id,
                Batch.status == BatchStatus.DEPLETED,
                Batch.quantity > 0,
            )
            .values(status=BatchStatus.ACTIVE)
            .execution_options(synchronize_session=False)
        )

    def mark_depleted_if_empty(self, batch_id: int) -> bool:
        result = self.db.execute(
            update(Batch)
            .where(
                Batch.id == batch_id,
                Batch.status != BatchStatus.DEPLETED,
                Batch.quantity == 0,
            )
            .values(status=BatchStatus.DEPLETED)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def set_status(self, batch: Batch, status: BatchStatus) -> Batch:
        batch.status = status
        self.db.flush()
        return batch

    def held_quantity(self, stock_level_id: int) -> int:
        """Units still on hand across the stock level's batches (ACTIVE and QUARANTINE)."""
        total = self.db.execute(
            select(func.coalesce(func.sum(Batch.quantity), 0)).where(
                Batch.stock_level_id == stock_level_id,
                Batch.status != BatchStatus.DEPLETED,
            )
        ).scalar_one()
        return int(total)
