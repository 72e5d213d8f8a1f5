"""SQLAlchemy models."""

from stockledger.models.catalog import Product, Location
from stockledger.models.stock import StockLevel, InventoryEvent, InventoryEventType
from stockledger.models.batch import Batch, BatchStatus

__all__ = [
    "Product",
    "Location",
    "StockLevel",
    "InventoryEvent",
    "InventoryEventType",
    "Batch",
    "BatchStatus",
]
