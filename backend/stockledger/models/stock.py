"""Stock models: StockLevel and InventoryEvent."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    event,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stockledger.core.exceptions import InvariantViolationError
from stockledger.db.base import Base, TimestampMixin, VersionMixin


class InventoryEventType(str, Enum):
    """Kinds of quantity change recorded in the ledger."""

    STOCK_RECEIVED = "STOCK_RECEIVED"  # Purchase order receipt, import
    STOCK_SOLD = "STOCK_SOLD"  # Invoice / sale
    STOCK_ADJUSTED = "STOCK_ADJUSTED"  # Manual correction, direct edit
    STOCK_TRANSFERRED_IN = "STOCK_TRANSFERRED_IN"  # Transfer from another location
    STOCK_TRANSFERRED_OUT = "STOCK_TRANSFERRED_OUT"  # Transfer to another location

    def accepts(self, delta: int) -> bool:
        """Whether ``delta`` has the sign this event type implies."""
        if self in (InventoryEventType.STOCK_RECEIVED, InventoryEventType.STOCK_TRANSFERRED_IN):
            return delta > 0
        if self in (InventoryEventType.STOCK_SOLD, InventoryEventType.STOCK_TRANSFERRED_OUT):
            return delta < 0
        return delta != 0


class StockLevel(Base, TimestampMixin, VersionMixin):
    """Current stock per product per location for one tenant."""

    __tablename__ = "stock_levels"
    __table_args__ = (
        UniqueConstraint("tenant_id", "product_id", "location_id", name="uq_stock_level_key"),
        CheckConstraint("quantity >= 0", name="ck_stock_level_quantity_non_negative"),
        CheckConstraint("reserved_quantity >= 0", name="ck_stock_level_reserved_non_negative"),
        CheckConstraint("quantity - reserved_quantity >= 0", name="ck_stock_level_reserved_within_quantity"),
        CheckConstraint("reorder_point >= 0", name="ck_stock_level_reorder_point_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    location_id: Mapped[int] = mapped_column(
        ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    quantity: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)
    reserved_quantity: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)
    reorder_point: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)

    # Relationships
    product: Mapped["Product"] = relationship("Product", back_populates="stock_levels")
    location: Mapped["Location"] = relationship("Location", back_populates="stock_levels")
    batches: Mapped[list["Batch"]] = relationship("Batch", back_populates="stock_level")

    @property
    def available_quantity(self) -> int:
        return self.quantity - self.reserved_quantity

    @property
    def is_out_of_stock(self) -> bool:
        return self.quantity == 0

    @property
    def is_below_reorder_point(self) -> bool:
        return self.quantity <= self.reorder_point


class InventoryEvent(Base):
    """Ledger of all quantity changes (append-only, single source of truth).

    ``running_balance`` is the stock level quantity right after
    ``quantity_delta`` was applied. Corrections are new offsetting events.
    """

    __tablename__ = "inventory_events"
    __table_args__ = (
        Index("ix_inventory_events_partition", "tenant_id", "product_id", "location_id", "id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="RESTRICT"), nullable=False
    )
    location_id: Mapped[int] = mapped_column(
        ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False
    )
    type: Mapped[InventoryEventType] = mapped_column(SQLEnum(InventoryEventType), nullable=False)
    quantity_delta: Mapped[int] = mapped_column(Integer, nullable=False)
    running_balance: Mapped[int] = mapped_column(Integer, nullable=False)
    reference_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)  # invoice, purchase_order, stock_transfer
    reference_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )


@event.listens_for(InventoryEvent, "before_update")
def _reject_event_update(mapper, connection, target):
    raise InvariantViolationError(f"Inventory event {target.id} is append-only and cannot be modified")


@event.listens_for(InventoryEvent, "before_delete")
def _reject_event_delete(mapper, connection, target):
    raise InvariantViolationError(f"Inventory event {target.id} is append-only and cannot be deleted")


# Forward references
from stockledger.models.catalog import Product, Location  # noqa: E402
from stockledger.models.batch import Batch  # noqa: E402
