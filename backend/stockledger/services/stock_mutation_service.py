"""Stock Mutation Service - the single path through which on-hand quantity changes.

Every sale, purchase-order receipt, transfer, import and manual correction
goes through ``apply_stock_change`` (or one of the thin wrappers below).
For each change the service:

1. Reads the stock level row for (tenant, product, location), creating it
   with quantity 0 on the first positive change
2. Validates that a decrement leaves ``quantity - reserved_quantity >= 0``
3. Writes the new quantity with a compare-and-swap on ``version``
4. Appends an inventory event whose ``running_balance`` is the new quantity

Steps 3 and 4 share one transaction. A lost compare-and-swap means another
writer changed the row since step 1: the service re-reads and tries again,
up to ``stock_mutation_max_retries`` attempts, then gives up with
``ConcurrencyConflictError``.

For products that track batches the batches move in the same transaction,
so their remaining units always add up to the stock level quantity.
Receipts name a batch, transfers carry batches across locations, and
adjustments take units from a named batch or in FEFO order. Sales of
tracked products go through ``BatchPickingService.pick``.

With ``auto_commit=True`` (default) each public operation is its own
transaction: committed on success, rolled back on any error. Upstream flows
that write their own rows (invoice creation, PO receipt) pass
``auto_commit=False`` and own the surrounding transaction; the service then
only flushes and the caller rolls back on error.

No alerts or notifications are dispatched here. Reorder-point observers read
the updated stock level and ledger on their own.
"""

import logging
from typing import Callable, List, Optional, Tuple, TypeVar

from sqlalchemy.orm import Session

from stockledger.core.config import Settings, get_settings
from stockledger.core.exceptions import (
    ConcurrencyConflictError,
    InsufficientStockError,
    NotFoundError,
)
from stockledger.models.batch import Batch, BatchStatus
from stockledger.models.catalog import Product
from stockledger.models.stock import InventoryEventType, StockLevel
from stockledger.repositories.batch_repository import BatchRepository
from stockledger.repositories.inventory_event_repository import InventoryEventRepository
from stockledger.repositories.stock_repository import StockRepository
from stockledger.schemas.stock import (
    BatchReceipt,
    StockChangeRequest,
    StockChangeResult,
    StockLevelResponse,
    StockReference,
    TransferResult,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSFER_TYPES = (InventoryEventType.STOCK_TRANSFERRED_IN, InventoryEventType.STOCK_TRANSFERRED_OUT)


def validate_change(delta: int, event_type: InventoryEventType) -> InventoryEventType:
    """Fail fast on programmer errors: non-integer or zero delta, wrong sign for the event type."""
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise ValueError(f"delta must be an integer, got {delta!r}")
    if delta == 0:
        raise ValueError("delta must be non-zero")
    event_type = InventoryEventType(event_type)
    if not event_type.accepts(delta):
        raise ValueError(f"{event_type.value} is inconsistent with delta {delta}")
    return event_type


class StockMutationService:
    """Service for every change to on-hand quantity."""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        stock_repository: Optional[StockRepository] = None,
        event_repository: Optional[InventoryEventRepository] = None,
        batch_repository: Optional[BatchRepository] = None,
        auto_commit: bool = True,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.stock = stock_repository or StockRepository(db)
        self.events = event_repository or InventoryEventRepository(db)
        self.batches = batch_repository or BatchRepository(db)
        self.auto_commit = auto_commit

    # ===== CORE: SINGLE STOCK CHANGE =====

    def apply_stock_change(
        self,
        tenant_id: str,
        product_id: int,
        location_id: int,
        delta: int,
        event_type: InventoryEventType,
        reference: Optional[StockReference] = None,
        actor_id: Optional[str] = None,
        notes: Optional[str] = None,
        batch_id: Optional[int] = None,
    ) -> StockChangeResult:
        """Apply a signed quantity change and append its ledger event atomically.

        ``batch_id`` names the batch a STOCK_ADJUSTED change of a batch-tracked
        product applies to. Required for increments; decrements without it
        draw ACTIVE batches in FEFO order.

        Raises:
            ValueError: zero delta, an event type that disagrees with its sign,
                or a change of a batch-tracked product that bypasses its batches
            NotFoundError: product, location or batch unknown for the tenant
            InsufficientStockError: decrement exceeds the available quantity
            ConcurrencyConflictError: retry budget exhausted
        """
        event_type = validate_change(delta, event_type)
        return self._run(
            lambda: self._apply(
                tenant_id, product_id, location_id, delta, event_type, reference, actor_id, notes,
                batch_id=batch_id,
            )
        )

    def apply_stock_changes(self, changes: List[StockChangeRequest]) -> List[StockChangeResult]:
        """Apply several line items (invoice, PO, import) as one all-or-nothing unit."""
        for change in changes:
            validate_change(change.delta, change.event_type)

        def _apply_all() -> List[StockChangeResult]:
            return [
                self._apply(
                    change.tenant_id,
                    change.product_id,
                    change.location_id,
                    change.delta,
                    change.event_type,
                    change.reference,
                    change.actor_id,
                    change.notes,
                    batch_id=change.batch_id,
                )
                for change in changes
            ]

        return self._run(_apply_all)

    # ===== WRAPPERS FOR UPSTREAM FLOWS =====

    def receive_stock(
        self,
        tenant_id: str,
        product_id: int,
        location_id: int,
        quantity: int,
        reference: Optional[StockReference] = None,
        actor_id: Optional[str] = None,
        notes: Optional[str] = None,
        batch: Optional[BatchReceipt] = None,
    ) -> StockChangeResult:
        """Add received stock; record it against a batch when lot details are given.

        Products that track batches must come with a ``BatchReceipt``. A batch
        number already recorded at the location is topped up.
        """
        validate_change(quantity, InventoryEventType.STOCK_RECEIVED)

        def _receive() -> StockChangeResult:
            product = self.stock.get_product(tenant_id, product_id)
            if product.track_batches and batch is None:
                raise ValueError(f"Product {product_id} tracks batches; a batch receipt is required")

            result = self._apply(
                tenant_id,
                product_id,
                location_id,
                quantity,
                InventoryEventType.STOCK_RECEIVED,
                reference,
                actor_id,
                notes,
                batches_synced=True,
            )
            if batch is not None:
                level = self.stock.get_stock_level(tenant_id, product_id, location_id, fresh=False)
                received = self.batches.receive(tenant_id, level, quantity, batch)
                logger.info(
                    f"Received {quantity} units into batch {received.batch_number} "
                    f"for product {product_id} at location {location_id}"
                )
            return result

        return self._run(_receive)

    def sell_stock(
        self,
        tenant_id: str,
        product_id: int,
        location_id: int,
        quantity: int,
        reference: Optional[StockReference] = None,
        actor_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> StockChangeResult:
        return self.apply_stock_change(
            tenant_id, product_id, location_id, -quantity,
            InventoryEventType.STOCK_SOLD, reference, actor_id, notes,
        )

    def record_picked_sale(
        self,
        tenant_id: str,
        product_id: int,
        location_id: int,
        quantity: int,
        reference: Optional[StockReference] = None,
        actor_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> StockChangeResult:
        """STOCK_SOLD for units the caller already took from their batches."""
        validate_change(-quantity, InventoryEventType.STOCK_SOLD)
        return self._run(
            lambda: self._apply(
                tenant_id, product_id, location_id, -quantity,
                InventoryEventType.STOCK_SOLD, reference, actor_id, notes,
                batches_synced=True,
            )
        )

    def adjust_stock(
        self,
        tenant_id: str,
        product_id: int,
        location_id: int,
        delta: int,
        reference: Optional[StockReference] = None,
        actor_id: Optional[str] = None,
        notes: Optional[str] = None,
        batch_id: Optional[int] = None,
    ) -> StockChangeResult:
        return self.apply_stock_change(
            tenant_id, product_id, location_id, delta,
            InventoryEventType.STOCK_ADJUSTED, reference, actor_id, notes,
            batch_id=batch_id,
        )

    def set_quantity(
        self,
        tenant_id: str,
        product_id: int,
        location_id: int,
        new_quantity: int,
        reference: Optional[StockReference] = None,
        actor_id: Optional[str] = None,
        notes: Optional[str] = None,
        batch_id: Optional[int] = None,
    ) -> Optional[StockChangeResult]:
        """Direct edit to an absolute quantity, recorded as a STOCK_ADJUSTED event.

        Returns None when the quantity is already ``new_quantity``.
        """
        if isinstance(new_quantity, bool) or not isinstance(new_quantity, int) or new_quantity < 0:
            raise ValueError(f"new_quantity must be a non-negative integer, got {new_quantity!r}")

        return self._run(
            lambda: self._change_quantity(
                tenant_id,
                product_id,
                location_id,
                InventoryEventType.STOCK_ADJUSTED,
                lambda current: new_quantity - current,
                reference,
                actor_id,
                notes or f"Set quantity to {new_quantity}",
                batch_id=batch_id,
            )
        )

    def transfer_stock(
        self,
        tenant_id: str,
        product_id: int,
        from_location_id: int,
        to_location_id: int,
        quantity: int,
        reference: Optional[StockReference] = None,
        actor_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> TransferResult:
        """Move stock between locations with paired out/in events in one transaction.

        Batch-tracked units leave the source batches in FEFO order and arrive
        in batches with the same number and expiry at the destination.
        """
        if from_location_id == to_location_id:
            raise ValueError("Source and destination locations must differ")
        validate_change(quantity, InventoryEventType.STOCK_TRANSFERRED_IN)
        note_text = notes or f"Transfer {from_location_id} -> {to_location_id}"

        def _transfer() -> TransferResult:
            product = self.stock.get_product(tenant_id, product_id)
            self.stock.get_location(tenant_id, to_location_id)
            outbound = self._apply(
                tenant_id, product_id, from_location_id, -quantity,
                InventoryEventType.STOCK_TRANSFERRED_OUT, reference, actor_id, note_text,
                batches_synced=True,
            )
            inbound = self._apply(
                tenant_id, product_id, to_location_id, quantity,
                InventoryEventType.STOCK_TRANSFERRED_IN, reference, actor_id, note_text,
                batches_synced=True,
            )
            if product.track_batches:
                self._move_batches(
                    tenant_id, product_id, from_location_id, to_location_id,
                    outbound.stock_level_id, quantity,
                )
            return TransferResult(outbound=outbound, inbound=inbound)

        return self._run(_transfer)

    # ===== RESERVATIONS AND REORDER POINT (no ledger event) =====

    def reserve_stock(
        self, tenant_id: str, product_id: int, location_id: int, quantity: int
    ) -> StockLevelResponse:
        """Hold ``quantity`` for an in-progress order; sales cannot dip into it."""
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValueError(f"quantity must be a positive integer, got {quantity!r}")

        def _plan(level: StockLevel) -> dict:
            if level.available_quantity < quantity:
                raise InsufficientStockError(product_id, location_id, level.available_quantity, quantity)
            return {"reserved_quantity": level.reserved_quantity + quantity}

        def _reserve() -> StockLevelResponse:
            self._check_key(tenant_id, product_id, location_id)
            return self._update_level(
                tenant_id, product_id, location_id, _plan, missing_available=0, requested=quantity
            )

        return self._run(_reserve)

    def release_reservation(
        self, tenant_id: str, product_id: int, location_id: int, quantity: int
    ) -> StockLevelResponse:
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValueError(f"quantity must be a positive integer, got {quantity!r}")

        def _plan(level: StockLevel) -> dict:
            if quantity > level.reserved_quantity:
                raise ValueError(
                    f"Cannot release {quantity}: only {level.reserved_quantity} reserved "
                    f"for product {product_id} at location {location_id}"
                )
            return {"reserved_quantity": level.reserved_quantity - quantity}

        def _release() -> StockLevelResponse:
            self._check_key(tenant_id, product_id, location_id)
            return self._update_level(tenant_id, product_id, location_id, _plan)

        return self._run(_release)

    def set_reorder_point(
        self, tenant_id: str, product_id: int, location_id: int, reorder_point: int
    ) -> StockLevelResponse:
        if isinstance(reorder_point, bool) or not isinstance(reorder_point, int) or reorder_point < 0:
            raise ValueError(f"reorder_point must be a non-negative integer, got {reorder_point!r}")

        def _set() -> StockLevelResponse:
            self._check_key(tenant_id, product_id, location_id)
            if self.stock.get_stock_level(tenant_id, product_id, location_id) is None:
                self.stock.provision_stock_level(tenant_id, product_id, location_id)
            return self._update_level(
                tenant_id, product_id, location_id, lambda level: {"reorder_point": reorder_point}
            )

        return self._run(_set)

    # ===== READS (unrestricted, may be stale) =====

    def get_stock_level(self, tenant_id: str, product_id: int, location_id: int) -> Optional[StockLevel]:
        return self.stock.get_stock_level(tenant_id, product_id, location_id)

    def get_total_quantity(self, tenant_id: str, product_id: int) -> int:
        return self.stock.total_quantity(tenant_id, product_id)

    def list_low_stock(self, tenant_id: str, location_id: Optional[int] = None) -> List[StockLevel]:
        return self.stock.list_low_stock(tenant_id, location_id)

    def list_out_of_stock(self, tenant_id: str, location_id: Optional[int] = None) -> List[StockLevel]:
        return self.stock.list_out_of_stock(tenant_id, location_id)

    # ===== INTERNALS =====

    def _run(self, operation: Callable[[], T]) -> T:
        """Run ``operation`` as one unit of work (commit/rollback only with auto_commit)."""
        try:
            result = operation()
        except Exception:
            if self.auto_commit:
                self.db.rollback()
            raise
        if self.auto_commit:
            self.db.commit()
        else:
            self.db.flush()
        return result

    def _check_key(self, tenant_id: str, product_id: int, location_id: int) -> Product:
        """Product and location must exist for the tenant."""
        product = self.stock.get_product(tenant_id, product_id)
        self.stock.get_location(tenant_id, location_id)
        return product

    def _apply(
        self,
        tenant_id: str,
        product_id: int,
        location_id: int,
        delta: int,
        event_type: InventoryEventType,
        reference: Optional[StockReference],
        actor_id: Optional[str],
        notes: Optional[str],
        batch_id: Optional[int] = None,
        batches_synced: bool = False,
    ) -> StockChangeResult:
        return self._change_quantity(
            tenant_id, product_id, location_id, event_type,
            lambda current: delta, reference, actor_id, notes,
            batch_id=batch_id, batches_synced=batches_synced,
        )

    def _change_quantity(
        self,
        tenant_id: str,
        product_id: int,
        location_id: int,
        event_type: InventoryEventType,
        delta_for: Callable[[int], int],
        reference: Optional[StockReference],
        actor_id: Optional[str],
        notes: Optional[str],
        batch_id: Optional[int] = None,
        batches_synced: bool = False,
    ) -> Optional[StockChangeResult]:
        """Read, validate, compare-and-swap and append the event, retrying lost swaps.

        ``delta_for`` maps the current quantity to the delta to apply; 0 means no-op.
        ``batches_synced`` is set by callers that move the batches themselves.
        """
        product = self._check_key(tenant_id, product_id, location_id)

        key = (tenant_id, product_id, location_id)
        max_attempts = self.settings.stock_mutation_max_retries

        for attempt in range(1, max_attempts + 1):
            level = self.stock.get_stock_level(*key)

            if level is None:
                delta = delta_for(0)
                if delta == 0:
                    return None
                if not batches_synced:
                    self._check_batch_tracking(product, event_type, delta, batch_id)
                if delta < 0:
                    logger.warning(
                        f"Rejected {event_type.value} of {delta} for {key}: no stock recorded"
                    )
                    raise InsufficientStockError(product_id, location_id, 0, -delta)
                level = self.stock.provision_stock_level(*key)

            current = level.quantity
            available = level.available_quantity
            expected_version = level.version
            level_id = level.id

            delta = delta_for(current)
            if delta == 0:
                return None
            validate_change(delta, event_type)
            if not batches_synced:
                self._check_batch_tracking(product, event_type, delta, batch_id)

            # Negative stock prevention
            if delta < 0 and available + delta < 0:
                logger.warning(
                    f"Rejected {event_type.value} of {delta} for {key}: available {available}"
                )
                raise InsufficientStockError(product_id, location_id, available, -delta)

            new_quantity = current + delta
            if not self.stock.compare_and_swap(level, expected_version, quantity=new_quantity):
                logger.debug(
                    f"Version conflict on stock {key} at version {expected_version} "
                    f"(attempt {attempt}/{max_attempts}), retrying"
                )
                continue

            if product.track_batches and not batches_synced:
                self._adjust_batches(tenant_id, product_id, location_id, level_id, delta, batch_id)

            event = self.events.append(
                tenant_id=tenant_id,
                product_id=product_id,
                location_id=location_id,
                event_type=event_type,
                quantity_delta=delta,
                running_balance=new_quantity,
                reference=reference,
                user_id=actor_id,
                notes=notes,
            )
            logger.info(
                f"{event_type.value} {delta:+d} for {key}: {current} -> {new_quantity} (event {event.id})"
            )
            return StockChangeResult(
                stock_level_id=level_id,
                quantity_delta=delta,
                new_quantity=new_quantity,
                event_id=event.id,
                version=StockLevel.next_version(expected_version),
            )

        logger.error(f"Stock mutation for {key} gave up after {max_attempts} conflicting attempts")
        raise ConcurrencyConflictError(key, max_attempts)

    @staticmethod
    def _check_batch_tracking(
        product: Product, event_type: InventoryEventType, delta: int, batch_id: Optional[int]
    ) -> None:
        """Reject changes that would move a batch-tracked product's quantity without its batches."""
        if not product.track_batches:
            if batch_id is not None:
                raise ValueError(f"Product {product.id} does not track batches")
            return
        if event_type == InventoryEventType.STOCK_SOLD:
            raise ValueError(f"Product {product.id} tracks batches; sell it with BatchPickingService.pick")
        if event_type == InventoryEventType.STOCK_RECEIVED:
            raise ValueError(f"Product {product.id} tracks batches; receive it with receive_stock and a batch receipt")
        if event_type in _TRANSFER_TYPES:
            raise ValueError(f"Product {product.id} tracks batches; move it with transfer_stock")
        if delta > 0 and batch_id is None:
            raise ValueError(f"Product {product.id} tracks batches; an increase needs batch_id")

    def _adjust_batches(
        self,
        tenant_id: str,
        product_id: int,
        location_id: int,
        level_id: int,
        delta: int,
        batch_id: Optional[int],
    ) -> None:
        """Mirror a STOCK_ADJUSTED change onto the stock level's batches."""
        if delta > 0:
            batch = self._level_batch(tenant_id, level_id, batch_id)
            self.batches.restock(batch.id, delta)
            logger.info(f"Batch {batch.batch_number} adjusted by {delta:+d}")
            return
        self._draw_batches(tenant_id, product_id, location_id, level_id, -delta, batch_id)

    def _draw_batches(
        self,
        tenant_id: str,
        product_id: int,
        location_id: int,
        level_id: int,
        quantity: int,
        batch_id: Optional[int] = None,
    ) -> List[Tuple[Batch, int]]:
        """Take ``quantity`` units from the stock level's batches.

        A named batch (ACTIVE or QUARANTINE) must cover the whole quantity.
        Otherwise ACTIVE batches are drawn in FEFO order, expired ones included.
        """
        if batch_id is not None:
            candidates = [self._level_batch(tenant_id, level_id, batch_id)]
            statuses = (BatchStatus.ACTIVE, BatchStatus.QUARANTINE)
        else:
            candidates = self.batches.find_active_for_stock_level(level_id)
            statuses = (BatchStatus.ACTIVE,)

        held = sum(batch.quantity for batch in candidates if batch.status in statuses)
        if held < quantity:
            logger.warning(
                f"Rejected draw of {quantity} from batches of product {product_id} "
                f"at location {location_id}: {held} held"
            )
            raise InsufficientStockError(product_id, location_id, held, quantity)

        drawn = []
        remaining = quantity
        for batch in candidates:
            if remaining == 0:
                break
            take = min(batch.quantity, remaining)
            if not self.batches.consume(batch.id, take, statuses):
                raise ConcurrencyConflictError((tenant_id, product_id, location_id), 1)
            self.batches.mark_depleted_if_empty(batch.id)
            drawn.append((batch, take))
            remaining -= take
        return drawn

    def _move_batches(
        self,
        tenant_id: str,
        product_id: int,
        from_location_id: int,
        to_location_id: int,
        source_level_id: int,
        quantity: int,
    ) -> None:
        drawn = self._draw_batches(tenant_id, product_id, from_location_id, source_level_id, quantity)
        target = self.stock.get_stock_level(tenant_id, product_id, to_location_id, fresh=False)
        for batch, taken in drawn:
            receipt = BatchReceipt(
                batch_number=batch.batch_number,
                expiry_date=batch.expiry_date,
                manufacturing_date=batch.manufacturing_date,
                unit_cost=batch.unit_cost,
            )
            self.batches.receive(tenant_id, target, taken, receipt)
            logger.info(
                f"Moved {taken} units of batch {batch.batch_number} "
                f"from location {from_location_id} to {to_location_id}"
            )

    def _level_batch(self, tenant_id: str, level_id: int, batch_id: Optional[int]) -> Batch:
        batch = self.batches.get(tenant_id, batch_id)
        if batch.stock_level_id != level_id:
            raise ValueError(f"Batch {batch_id} is not held at this product and location")
        return batch

    def _update_level(
        self,
        tenant_id: str,
        product_id: int,
        location_id: int,
        plan: Callable[[StockLevel], dict],
        missing_available: Optional[int] = None,
        requested: Optional[int] = None,
    ) -> StockLevelResponse:
        """Compare-and-swap non-quantity columns (reservations, reorder point)."""
        key = (tenant_id, product_id, location_id)
        max_attempts = self.settings.stock_mutation_max_retries

        for attempt in range(1, max_attempts + 1):
            level = self.stock.get_stock_level(*key)
            if level is None:
                if missing_available is not None:
                    raise InsufficientStockError(product_id, location_id, missing_available, requested)
                raise NotFoundError("StockLevel", key)

            expected_version = level.version
            values = plan(level)
            if self.stock.compare_and_swap(level, expected_version, **values):
                return StockLevelResponse.model_validate(self.stock.get_stock_level(*key))

            logger.debug(
                f"Version conflict on stock {key} at version {expected_version} "
                f"(attempt {attempt}/{max_attempts}), retrying"
            )

        logger.error(f"Stock level update for {key} gave up after {max_attempts} conflicting attempts")
        raise ConcurrencyConflictError(key, max_attempts)
