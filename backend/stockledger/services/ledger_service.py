"""Ledger reconciliation and history.

The inventory event ledger is the single source of truth for how stock got
where it is. For each (tenant, product, location) partition, in creation
order, every event must satisfy::

    running_balance[i] == running_balance[i - 1] + quantity_delta[i]

and the last running balance must equal the live ``StockLevel.quantity``.
``reconcile`` checks the first rule on any event sequence; ``LedgerService``
applies both to stored partitions.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from stockledger.core.exceptions import InvariantViolationError, NotFoundError
from stockledger.models.stock import InventoryEvent, InventoryEventType
from stockledger.repositories.batch_repository import BatchRepository
from stockledger.repositories.inventory_event_repository import InventoryEventRepository
from stockledger.repositories.stock_repository import StockRepository
from stockledger.schemas.ledger import (
    BatchReconciliation,
    PartitionReconciliation,
    ReconciliationResult,
)
from stockledger.schemas.stock import InventoryEventResponse, InventoryEventStats

logger = logging.getLogger(__name__)


def reconcile(events: Iterable[InventoryEvent], opening_balance: Optional[int] = None) -> ReconciliationResult:
    """Check running balances of one partition's events (in creation order).

    Without ``opening_balance`` the first event's prior balance is implied
    as ``running_balance - quantity_delta``. Pure; safe to re-run.
    """
    events = list(events)
    if not events:
        return ReconciliationResult(consistent=True, checked=0, closing_balance=opening_balance)

    if opening_balance is None:
        balance = events[0].running_balance - events[0].quantity_delta
    else:
        balance = opening_balance

    for index, event in enumerate(events):
        if event.running_balance != balance + event.quantity_delta:
            return ReconciliationResult(
                consistent=False,
                first_divergence_index=index,
                checked=index + 1,
            )
        balance = event.running_balance

    return ReconciliationResult(consistent=True, checked=len(events), closing_balance=balance)


def assert_consistent(events: Iterable[InventoryEvent], opening_balance: Optional[int] = None) -> ReconciliationResult:
    result = reconcile(events, opening_balance)
    if not result.consistent:
        raise InvariantViolationError(
            f"Ledger running balance diverges at event index {result.first_divergence_index}",
            index=result.first_divergence_index,
        )
    return result


class LedgerService:
    def __init__(
        self,
        db: Session,
        stock_repository: Optional[StockRepository] = None,
        event_repository: Optional[InventoryEventRepository] = None,
        batch_repository: Optional[BatchRepository] = None,
    ):
        self.db = db
        self.stock = stock_repository or StockRepository(db)
        self.events = event_repository or InventoryEventRepository(db)
        self.batches = batch_repository or BatchRepository(db)

    def reconcile_partition(self, tenant_id: str, product_id: int, location_id: int) -> PartitionReconciliation:
        """Replay a partition from zero and compare the result with the live stock level."""
        events = self.events.list_partition(tenant_id, product_id, location_id)
        ledger = reconcile(events, opening_balance=0)

        level = self.stock.get_stock_level(tenant_id, product_id, location_id)
        live_quantity = level.quantity if level is not None else 0
        matches = ledger.consistent and ledger.closing_balance == live_quantity

        result = PartitionReconciliation(
            tenant_id=tenant_id,
            product_id=product_id,
            location_id=location_id,
            ledger=ledger,
            live_quantity=live_quantity,
            matches_stock_level=matches,
        )
        if not result.consistent:
            logger.error(
                f"Ledger divergence for {(tenant_id, product_id, location_id)}: "
                f"first bad index {ledger.first_divergence_index}, "
                f"ledger balance {ledger.closing_balance}, live quantity {live_quantity}"
            )
        return result

    def verify_partition(self, tenant_id: str, product_id: int, location_id: int) -> PartitionReconciliation:
        result = self.reconcile_partition(tenant_id, product_id, location_id)
        if not result.ledger.consistent:
            raise InvariantViolationError(
                f"Ledger running balance diverges at event index {result.ledger.first_divergence_index}",
                index=result.ledger.first_divergence_index,
            )
        if not result.matches_stock_level:
            raise InvariantViolationError(
                f"Ledger closing balance {result.ledger.closing_balance} does not match "
                f"stock level quantity {result.live_quantity}",
                index=result.ledger.checked - 1 if result.ledger.checked else None,
            )
        return result

    def verify_batch_totals(self, tenant_id: str, product_id: int, location_id: int) -> BatchReconciliation:
        """Compare remaining batch units with the stock level of a batch-tracked product."""
        level = self.stock.get_stock_level(tenant_id, product_id, location_id)
        if level is None:
            raise NotFoundError("StockLevel", (tenant_id, product_id, location_id))

        result = BatchReconciliation(
            tenant_id=tenant_id,
            product_id=product_id,
            location_id=location_id,
            batch_total=self.batches.held_quantity(level.id),
            stock_quantity=level.quantity,
        )
        if not result.consistent:
            logger.error(
                f"Batch total {result.batch_total} differs from stock quantity "
                f"{result.stock_quantity} for {(tenant_id, product_id, location_id)}"
            )
        return result

    def get_history(
        self,
        tenant_id: str,
        product_id: Optional[int] = None,
        location_id: Optional[int] = None,
        event_type: Optional[InventoryEventType] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[InventoryEventResponse]:
        events = self.events.find_many(
            tenant_id, product_id, location_id, event_type, date_from, date_to, limit
        )
        return [InventoryEventResponse.model_validate(event) for event in events]

    def get_stats(
        self,
        tenant_id: str,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> InventoryEventStats:
        return self.events.stats(tenant_id, date_from, date_to)
