"""Stock schemas."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from stockledger.models.stock import InventoryEventType


class StockReference(BaseModel):
    """Business document that caused a quantity change."""

    type: str = Field(..., max_length=50)  # invoice, purchase_order, stock_transfer, tally_import
    id: str = Field(..., max_length=64)

    model_config = {"frozen": True}


class BatchReceipt(BaseModel):
    """Lot details captured when tracked stock is received."""

    batch_number: str = Field(..., min_length=1, max_length=100)
    expiry_date: Optional[datetime] = None
    manufacturing_date: Optional[date] = None
    unit_cost: Optional[Decimal] = None


class StockChangeRequest(BaseModel):
    """One line item for ``StockMutationService.apply_stock_changes``."""

    tenant_id: str
    product_id: int
    location_id: int
    delta: int
    event_type: InventoryEventType
    reference: Optional[StockReference] = None
    actor_id: Optional[str] = None
    notes: Optional[str] = None
    batch_id: Optional[int] = None  # STOCK_ADJUSTED of a batch-tracked product

    @field_validator("delta")
    @classmethod
    def validate_delta(cls, v: int) -> int:
        if v == 0:
            raise ValueError("delta must be non-zero")
        return v


class StockChangeResult(BaseModel):
    """Outcome of a single applied stock change."""

    stock_level_id: int
    quantity_delta: int
    new_quantity: int
    event_id: int
    version: int

    model_config = {"frozen": True}


class TransferResult(BaseModel):
    """Paired outcome of a stock transfer."""

    outbound: StockChangeResult
    inbound: StockChangeResult

    model_config = {"frozen": True}


class StockLevelResponse(BaseModel):
    """Stock level response schema."""

    id: int
    tenant_id: str
    product_id: int
    location_id: int
    quantity: int
    reserved_quantity: int
    reorder_point: int
    version: int
    updated_at: datetime

    model_config = {"from_attributes": True}


class InventoryEventResponse(BaseModel):
    """Inventory event response schema."""

    id: int
    tenant_id: str
    product_id: int
    location_id: int
    type: InventoryEventType
    quantity_delta: int
    running_balance: int
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    user_id: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class EventTypeStats(BaseModel):
    type: InventoryEventType
    count: int
    net_change: int


class InventoryEventStats(BaseModel):
    """Aggregate view of the ledger for a tenant."""

    total: int
    net_change: int
    by_type: List[EventTypeStats] = []
