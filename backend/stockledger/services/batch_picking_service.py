"""Batch Picking Service - execute FEFO plans against batches and stock levels.

A pick plans with ``FefoAllocator`` and then, in one transaction:

1. Decrements every planned batch with a conditional update that only
   matches while the batch is still ACTIVE and holds the planned quantity
2. Marks emptied batches DEPLETED
3. Records one STOCK_SOLD change per location through the stock mutation
   service (same transaction, no intermediate commit)

If any batch changed between planning and execution the attempt is rolled
back and re-planned, up to ``batch_pick_max_replans`` times. A pick is
never partially executed.

The service owns its transaction: it commits on success and rolls back the
session on failure.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from stockledger.core.config import Settings, get_settings
from stockledger.core.exceptions import ConcurrencyConflictError, InsufficientStockError
from stockledger.models.batch import Batch, BatchStatus
from stockledger.repositories.batch_repository import BatchRepository
from stockledger.schemas.allocation import AllocationResult, PickResult
from stockledger.schemas.stock import StockChangeResult, StockReference
from stockledger.services.fefo_allocator import FefoAllocator
from stockledger.services.stock_mutation_service import StockMutationService

logger = logging.getLogger(__name__)


class StalePlanError(Exception):
    """A planned batch no longer holds the planned quantity."""

    def __init__(self, batch_id: int):
        self.batch_id = batch_id
        super().__init__(f"Batch {batch_id} changed since the plan was made")


class BatchPickingService:
    def __init__(self, db: Session, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.batches = BatchRepository(db)
        self.allocator = FefoAllocator(db, self.settings, batch_repository=self.batches)
        self.mutations = StockMutationService(
            db, self.settings, batch_repository=self.batches, auto_commit=False
        )

    def pick(
        self,
        tenant_id: str,
        product_id: int,
        quantity: int,
        location_id: Optional[int] = None,
        reference: Optional[StockReference] = None,
        actor_id: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PickResult:
        """Sell ``quantity`` units from the earliest-expiring batches.

        Raises:
            ValueError: non-positive quantity
            InsufficientStockError: eligible batches cannot cover the quantity
            ConcurrencyConflictError: the plan kept going stale
        """
        max_attempts = self.settings.batch_pick_max_replans
        key = (tenant_id, product_id, location_id)

        for attempt in range(1, max_attempts + 1):
            allocation = self.allocator.allocate(tenant_id, product_id, quantity, location_id, now)
            if not allocation.success:
                logger.warning(
                    f"Pick of {quantity} for {key} rejected: "
                    f"{allocation.shortfall.available} available in eligible batches"
                )
                raise InsufficientStockError(
                    product_id,
                    location_id,
                    allocation.shortfall.available,
                    allocation.shortfall.requested,
                )

            try:
                depleted = self._consume(allocation)
                changes = self._record_sales(
                    tenant_id, product_id, allocation, reference, actor_id, notes
                )
            except StalePlanError as e:
                self.db.rollback()
                logger.info(f"Pick plan for {key} went stale ({e}), re-planning (attempt {attempt}/{max_attempts})")
                continue
            except Exception:
                self.db.rollback()
                raise

            self.db.commit()
            logger.info(
                f"Picked {quantity} of product {product_id} from "
                f"{len(allocation.allocations)} batch(es), depleted {depleted}"
            )
            return PickResult(
                allocation=allocation,
                stock_changes=changes,
                depleted_batch_ids=depleted,
                attempts=attempt,
            )

        logger.error(f"Pick for {key} gave up after {max_attempts} stale plans")
        raise ConcurrencyConflictError(key, max_attempts)

    def _consume(self, allocation: AllocationResult) -> List[int]:
        depleted = []
        for planned in allocation.allocations:
            if not self.batches.consume(planned.batch_id, planned.quantity_taken):
                raise StalePlanError(planned.batch_id)
            if self.batches.mark_depleted_if_empty(planned.batch_id):
                depleted.append(planned.batch_id)
        return depleted

    def _record_sales(
        self,
        tenant_id: str,
        product_id: int,
        allocation: AllocationResult,
        reference: Optional[StockReference],
        actor_id: Optional[str],
        notes: Optional[str],
    ) -> List[StockChangeResult]:
        # One stock change per location, in plan order
        per_location: Dict[int, int] = {}
        for planned in allocation.allocations:
            per_location[planned.location_id] = per_location.get(planned.location_id, 0) + planned.quantity_taken

        return [
            self.mutations.record_picked_sale(
                tenant_id, product_id, location_id, taken, reference, actor_id, notes
            )
            for location_id, taken in per_location.items()
        ]

    # ===== BATCH STATUS =====

    def quarantine_batch(self, tenant_id: str, batch_id: int) -> Batch:
        """Hold an ACTIVE batch back from allocation."""
        return self._transition(tenant_id, batch_id, BatchStatus.ACTIVE, BatchStatus.QUARANTINE)

    def release_batch(self, tenant_id: str, batch_id: int) -> Batch:
        """Return a quarantined batch to allocation."""
        return self._transition(tenant_id, batch_id, BatchStatus.QUARANTINE, BatchStatus.ACTIVE)

    def _transition(
        self, tenant_id: str, batch_id: int, expected: BatchStatus, target: BatchStatus
    ) -> Batch:
        try:
            batch = self.batches.get(tenant_id, batch_id)
            if batch.status != expected:
                raise ValueError(
                    f"Batch {batch_id} is {batch.status.value}; expected {expected.value}"
                )
            self.batches.set_status(batch, target)
        except Exception:
            self.db.rollback()
            raise
        self.db.commit()
        logger.info(f"Batch {batch_id} moved {expected.value} -> {target.value}")
        return batch
