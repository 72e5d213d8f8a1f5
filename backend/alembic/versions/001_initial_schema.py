"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

EVENT_TYPES = (
    "STOCK_RECEIVED",
    "STOCK_SOLD",
    "STOCK_ADJUSTED",
    "STOCK_TRANSFERRED_IN",
    "STOCK_TRANSFERRED_OUT",
)
BATCH_STATUSES = ("ACTIVE", "DEPLETED", "QUARANTINE")


def upgrade() -> None:
    # Products table
    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False, index=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("sku", sa.String(50), nullable=True),
        sa.Column("track_batches", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("requires_prescription", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("drug_schedule", sa.String(20), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("tenant_id", "sku", name="uq_product_tenant_sku"),
    )

    # Locations table
    op.create_table(
        "locations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False, index=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # Stock levels table (one row per tenant/product/location)
    op.create_table(
        "stock_levels",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False, index=True),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.Column("location_id", sa.Integer(), sa.ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reserved_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reorder_point", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("tenant_id", "product_id", "location_id", name="uq_stock_level_key"),
        sa.CheckConstraint("quantity >= 0", name="ck_stock_level_quantity_non_negative"),
        sa.CheckConstraint("reserved_quantity >= 0", name="ck_stock_level_reserved_non_negative"),
        sa.CheckConstraint("quantity - reserved_quantity >= 0", name="ck_stock_level_reserved_within_quantity"),
        sa.CheckConstraint("reorder_point >= 0", name="ck_stock_level_reorder_point_non_negative"),
    )

    # Inventory events table (append-only ledger)
    op.create_table(
        "inventory_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False, index=True),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("location_id", sa.Integer(), sa.ForeignKey("locations.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("type", sa.Enum(*EVENT_TYPES, name="inventoryeventtype"), nullable=False),
        sa.Column("quantity_delta", sa.Integer(), nullable=False),
        sa.Column("running_balance", sa.Integer(), nullable=False),
        sa.Column("reference_type", sa.String(50), nullable=True),
        sa.Column("reference_id", sa.String(64), nullable=True),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("notes", sa.String(500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, index=True),
    )
    op.create_index(
        "ix_inventory_events_partition",
        "inventory_events",
        ["tenant_id", "product_id", "location_id", "id"],
    )

    # Batches table
    op.create_table(
        "batches",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False, index=True),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.Column("stock_level_id", sa.Integer(), sa.ForeignKey("stock_levels.id", ondelete="RESTRICT"), nullable=False, index=True),
        sa.Column("batch_number", sa.String(100), nullable=False),
        sa.Column("initial_quantity", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=True, index=True),
        sa.Column("manufacturing_date", sa.Date(), nullable=True),
        sa.Column("unit_cost", sa.Numeric(10, 2), nullable=True),
        sa.Column("status", sa.Enum(*BATCH_STATUSES, name="batchstatus"), nullable=False, index=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("stock_level_id", "batch_number", name="uq_batch_stock_level_number"),
        sa.CheckConstraint("quantity >= 0", name="ck_batch_quantity_non_negative"),
    )


def downgrade() -> None:
    op.drop_table("batches")
    op.drop_index("ix_inventory_events_partition", table_name="inventory_events")
    op.drop_table("inventory_events")
    op.drop_table("stock_levels")
    op.drop_table("locations")
    op.drop_table("products")
    sa.Enum(name="batchstatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="inventoryeventtype").drop(op.get_bind(), checkfirst=True)
