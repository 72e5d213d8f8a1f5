"""Stock services."""

from stockledger.services.batch_picking_service import BatchPickingService
from stockledger.services.fefo_allocator import FefoAllocator
from stockledger.services.ledger_service import LedgerService, assert_consistent, reconcile
from stockledger.services.stock_mutation_service import StockMutationService

__all__ = [
    "BatchPickingService",
    "FefoAllocator",
    "LedgerService",
    "StockMutationService",
    "assert_consistent",
    "reconcile",
]
