"""FEFO Allocator - plan which batches fill a requested quantity.

First-Expiry-First-Out: the batch expiring soonest goes first, so stock
that will perish is sold before stock that will not. Batches without an
expiry date go last; ties break on receipt order.

Allocation is read-only planning. Nothing is locked or decremented here;
``BatchPickingService`` executes a plan and re-validates it at that point.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from stockledger.core.config import Settings, get_settings
from stockledger.core.timeutils import as_utc, utcnow
from stockledger.models.batch import Batch
from stockledger.models.catalog import Product
from stockledger.repositories.batch_repository import BatchRepository
from stockledger.repositories.stock_repository import StockRepository
from stockledger.schemas.allocation import (
    AllocationResult,
    BatchAllocation,
    ExpiringBatch,
    ExpiryPriority,
    ExpirySeverity,
    ExpiryWarning,
    RegulatoryAdvisory,
    Shortfall,
)

logger = logging.getLogger(__name__)

PRESCRIPTION_ADVISORY = "This medicine requires a valid prescription"


def days_until(expiry: datetime, now: datetime) -> int:
    """Whole days until ``expiry``, rounded up."""
    return math.ceil((as_utc(expiry) - as_utc(now)) / timedelta(days=1))


class FefoAllocator:
    """Builds FEFO allocation plans and the expiring-batch report."""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        stock_repository: Optional[StockRepository] = None,
        batch_repository: Optional[BatchRepository] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.stock = stock_repository or StockRepository(db)
        self.batches = batch_repository or BatchRepository(db)

    def allocate(
        self,
        tenant_id: str,
        product_id: int,
        requested_quantity: int,
        location_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> AllocationResult:
        """Plan ``requested_quantity`` units across eligible batches.

        Either the whole quantity is planned or the result carries a
        ``shortfall`` and no allocations. Deterministic for a fixed batch
        state and ``now``.
        """
        if (
            isinstance(requested_quantity, bool)
            or not isinstance(requested_quantity, int)
            or requested_quantity <= 0
        ):
            raise ValueError(f"requested_quantity must be a positive integer, got {requested_quantity!r}")

        now = as_utc(now) if now is not None else utcnow()
        product = self.stock.get_product(tenant_id, product_id)
        advisory = self._regulatory_advisory(product)

        batches = self.eligible_batches(tenant_id, product_id, location_id, now)
        available = sum(batch.quantity for batch in batches)

        if available < requested_quantity:
            shortfall = Shortfall(available=available, requested=requested_quantity)
            logger.info(
                f"FEFO shortfall for product {product_id}: "
                f"{shortfall.missing} missing (available {available}, requested {requested_quantity})"
            )
            return AllocationResult(
                product_id=product_id,
                requested_quantity=requested_quantity,
                shortfall=shortfall,
                regulatory_advisory=advisory,
            )

        allocations: List[BatchAllocation] = []
        warnings: List[ExpiryWarning] = []
        remaining = requested_quantity

        for batch in batches:
            if remaining <= 0:
                break
            take = min(batch.quantity, remaining)
            remaining -= take

            allocations.append(
                BatchAllocation(
                    batch_id=batch.id,
                    batch_number=batch.batch_number,
                    quantity_taken=take,
                    expiry_date=as_utc(batch.expiry_date),
                    location_id=batch.location_id,
                    unit_cost=batch.unit_cost,
                )
            )
            warning = self._expiry_warning(batch, now)
            if warning:
                warnings.append(warning)

        return AllocationResult(
            product_id=product_id,
            requested_quantity=requested_quantity,
            allocations=allocations,
            total_quantity=requested_quantity,
            warnings=warnings,
            regulatory_advisory=advisory,
        )

    def eligible_batches(
        self,
        tenant_id: str,
        product_id: int,
        location_id: Optional[int],
        now: datetime,
    ) -> List[Batch]:
        """ACTIVE, non-empty, unexpired batches in FEFO order."""
        return [
            batch
            for batch in self.batches.find_available(tenant_id, product_id, location_id)
            if batch.expiry_date is None or as_utc(batch.expiry_date) > now
        ]

    def list_expiring_batches(
        self,
        tenant_id: str,
        within_days: Optional[int] = None,
        product_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[ExpiringBatch]:
        """Active batches with stock that expire within ``within_days`` days."""
        days = within_days if within_days is not None else self.settings.expiry_warning_days
        if days < 0:
            raise ValueError("within_days must not be negative")

        now = as_utc(now) if now is not None else utcnow()
        horizon = now + timedelta(days=days)

        report = []
        for batch in self.batches.find_with_expiry(tenant_id, product_id):
            expiry = as_utc(batch.expiry_date)
            if not now < expiry <= horizon:
                continue
            remaining_days = days_until(expiry, now)
            report.append(
                ExpiringBatch(
                    batch_id=batch.id,
                    batch_number=batch.batch_number,
                    product_id=batch.product_id,
                    location_id=batch.location_id,
                    quantity=batch.quantity,
                    expiry_date=expiry,
                    days_until_expiry=remaining_days,
                    priority=self._priority(remaining_days),
                )
            )
        return report

    def _expiry_warning(self, batch: Batch, now: datetime) -> Optional[ExpiryWarning]:
        if batch.expiry_date is None:
            return None
        days = days_until(batch.expiry_date, now)
        if days > self.settings.expiry_warning_days:
            return None

        if days < self.settings.expiry_critical_days:
            severity = ExpirySeverity.CRITICAL
        else:
            severity = ExpirySeverity.WARNING
        return ExpiryWarning(
            batch_id=batch.id,
            batch_number=batch.batch_number,
            days_until_expiry=days,
            severity=severity,
            message=f"Batch {batch.batch_number} expires in {days} days",
        )

    def _priority(self, days: int) -> ExpiryPriority:
        if days < self.settings.expiry_critical_days:
            return ExpiryPriority.HIGH
        if days < self.settings.expiry_medium_priority_days:
            return ExpiryPriority.MEDIUM
        return ExpiryPriority.LOW

    @staticmethod
    def _regulatory_advisory(product: Product) -> Optional[RegulatoryAdvisory]:
        if not product.requires_prescription:
            return None
        return RegulatoryAdvisory(message=PRESCRIPTION_ADVISORY, drug_schedule=product.drug_schedule)
