"""Batch (lot) model with expiry tracking."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stockledger.db.base import Base, TimestampMixin


class BatchStatus(str, Enum):
    """Lifecycle of a batch."""

    ACTIVE = "ACTIVE"
    DEPLETED = "DEPLETED"  # Quantity reached 0
    QUARANTINE = "QUARANTINE"  # Held back from allocation


class Batch(Base, TimestampMixin):
    """Units of one product at one location sharing a batch number and expiry date."""

    __tablename__ = "batches"
    __table_args__ = (
        UniqueConstraint("stock_level_id", "batch_number", name="uq_batch_stock_level_number"),
        CheckConstraint("quantity >= 0", name="ck_batch_quantity_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    stock_level_id: Mapped[int] = mapped_column(
        ForeignKey("stock_levels.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    batch_number: Mapped[str] = mapped_column(String(100), nullable=False)

    # Quantities
    initial_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)  # remaining units

    # Dates (expiry absent for non-perishable goods)
    expiry_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    manufacturing_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Cost
    unit_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    status: Mapped[BatchStatus] = mapped_column(
        SQLEnum(BatchStatus), default=BatchStatus.ACTIVE, nullable=False, index=True
    )

    # Relationships
    stock_level: Mapped["StockLevel"] = relationship("StockLevel", back_populates="batches")

    @property
    def location_id(self) -> int:
        return self.stock_level.location_id


# Forward references
from stockledger.models.stock import StockLevel  # noqa: E402
