"""Product and location models.

Both are owned by the wider catalogue; the stock core only reads them to
check that a referenced product/location exists for the tenant and to pick
up the batch-tracking and prescription flags.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import Boolean, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stockledger.db.base import Base, TimestampMixin


class Product(Base, TimestampMixin):
    """Product in a tenant's catalogue."""

    __tablename__ = "products"
    __table_args__ = (
        UniqueConstraint("tenant_id", "sku", name="uq_product_tenant_sku"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    sku: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Lots with expiry dates must be registered on receipt (pharma, food)
    track_batches: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Regulatory oversight
    requires_prescription: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    drug_schedule: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # e.g. H, H1, X

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    stock_levels: Mapped[list["StockLevel"]] = relationship("StockLevel", back_populates="product")


class Location(Base, TimestampMixin):
    """Physical location for stock (warehouse, store, pharmacy counter)."""

    __tablename__ = "locations"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    stock_levels: Mapped[list["StockLevel"]] = relationship("StockLevel", back_populates="location")


# Forward references
from stockledger.models.stock import StockLevel  # noqa: E402
