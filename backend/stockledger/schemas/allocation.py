"""FEFO allocation and batch picking schemas."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from stockledger.schemas.stock import StockChangeResult


class ExpirySeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class ExpiryPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class BatchAllocation(BaseModel):
    """Quantity planned from one batch."""

    batch_id: int
    batch_number: str
    quantity_taken: int
    expiry_date: Optional[datetime] = None
    location_id: int
    unit_cost: Optional[Decimal] = None

    model_config = {"frozen": True}


class ExpiryWarning(BaseModel):
    batch_id: int
    batch_number: str
    days_until_expiry: int
    severity: ExpirySeverity
    message: str

    model_config = {"frozen": True}


class Shortfall(BaseModel):
    available: int
    requested: int

    model_config = {"frozen": True}

    @property
    def missing(self) -> int:
        return self.requested - self.available


class RegulatoryAdvisory(BaseModel):
    """Surfaced to the caller for prescription-controlled products."""

    message: str
    drug_schedule: Optional[str] = None
    severity: str = "info"

    model_config = {"frozen": True}


class AllocationResult(BaseModel):
    """FEFO allocation plan. Either fully satisfied or carries a shortfall."""

    product_id: int
    requested_quantity: int
    allocations: List[BatchAllocation] = []
    total_quantity: int = 0
    warnings: List[ExpiryWarning] = []
    shortfall: Optional[Shortfall] = None
    regulatory_advisory: Optional[RegulatoryAdvisory] = None

    model_config = {"frozen": True}

    @property
    def success(self) -> bool:
        return self.shortfall is None


class ExpiringBatch(BaseModel):
    """Row of the expiring-batch report."""

    batch_id: int
    batch_number: str
    product_id: int
    location_id: int
    quantity: int
    expiry_date: datetime
    days_until_expiry: int
    priority: ExpiryPriority


class PickResult(BaseModel):
    """Executed FEFO pick: the plan that was applied and the resulting stock changes."""

    allocation: AllocationResult
    stock_changes: List[StockChangeResult]
    depleted_batch_ids: List[int] = []
    attempts: int = 1
