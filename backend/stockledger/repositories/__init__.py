"""Persistence interface injected into the stock services."""

from stockledger.repositories.batch_repository import BatchRepository
from stockledger.repositories.inventory_event_repository import InventoryEventRepository
from stockledger.repositories.stock_repository import StockRepository

__all__ = ["BatchRepository", "InventoryEventRepository", "StockRepository"]
