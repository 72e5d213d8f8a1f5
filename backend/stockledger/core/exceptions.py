"""Error taxonomy for stock mutations, FEFO allocation and ledger checks.

Programmer errors (zero deltas, event types that disagree with the sign of
the delta, non-positive pick quantities) are plain ``ValueError`` and are
not part of this hierarchy. Storage errors from SQLAlchemy propagate as-is.
"""

from typing import Optional, Tuple


class StockLedgerError(Exception):
    """Base class for domain errors. ``http_status`` is used by the API layer."""

    http_status: int = 500


class InsufficientStockError(StockLedgerError):
    """Raised when a decrement exceeds the quantity available."""

    http_status = 400

    def __init__(
        self,
        product_id: int,
        location_id: Optional[int],
        available: int,
        requested: int,
    ):
        self.product_id = product_id
        self.location_id = location_id
        self.available = available
        self.requested = requested
        where = f" at location {location_id}" if location_id is not None else ""
        super().__init__(
            f"Insufficient stock for product {product_id}{where}: "
            f"available {available}, requested {requested}"
        )


class ConcurrencyConflictError(StockLedgerError):
    """Raised when a mutation could not be serialized within the retry budget.

    Transient: the caller may retry the whole operation.
    """

    http_status = 409
    retryable = True

    def __init__(self, key: Tuple, attempts: int):
        self.key = key
        self.attempts = attempts
        super().__init__(
            f"Concurrent modification of stock {key} could not be resolved "
            f"after {attempts} attempt(s)"
        )


class NotFoundError(StockLedgerError):
    """Raised when a referenced product, location, batch or stock level is unknown."""

    http_status = 404

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InvariantViolationError(StockLedgerError):
    """Ledger math does not add up, or an append-only row was touched.

    Indicates a bug or data corruption upstream. Never shown verbatim to end users.
    """

    http_status = 500

    def __init__(self, message: str, index: Optional[int] = None):
        self.index = index
        super().__init__(message)
