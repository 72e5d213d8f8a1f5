"""Ledger reconciliation schemas."""

from typing import Optional

from pydantic import BaseModel


class ReconciliationResult(BaseModel):
    consistent: bool
    first_divergence_index: Optional[int] = None
    checked: int = 0
    closing_balance: Optional[int] = None

    model_config = {"frozen": True}


class PartitionReconciliation(BaseModel):
    """Ledger check for one (tenant, product, location) partition against the live stock level."""

    tenant_id: str
    product_id: int
    location_id: int
    ledger: ReconciliationResult
    live_quantity: int
    matches_stock_level: bool

    @property
    def consistent(self) -> bool:
        return self.ledger.consistent and self.matches_stock_level


class BatchReconciliation(BaseModel):
    tenant_id: str
    product_id: int
    location_id: int
    batch_total: int
    stock_quantity: int

    @property
    def consistent(self) -> bool:
        return self.batch_total == self.stock_quantity
