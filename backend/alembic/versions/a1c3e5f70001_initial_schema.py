"""initial schema

Revision ID: a1c3e5f70001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

from backend.app.db.models.core_types import (
    MovementType,
    OrderItemStatus,
    OrderStatus,
    OutboxStatus,
    ProcurementStatus,
    SupplierOrderStatus,
    SyncRunStatus,
    WarehouseType,
)

# revision identifiers, used by Alembic.
revision: str = "a1c3e5f70001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

BigIntPK = sa.BigInteger().with_variant(sa.Integer, "sqlite")
JSONType = sa.JSON().with_variant(postgresql.JSONB, "postgresql")
Money = sa.Numeric(14, 2)
Qty = sa.Numeric(14, 3)


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "companies",
        sa.Column("id", BigIntPK, primary_key=True),
        sa.Column("name", sa.String(200), nullable=False, unique=True),
        sa.Column("reference_currency", sa.String(3), nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False),
        _ts("created_at"),
    )
    op.create_table(
        "suppliers",
        sa.Column("id", BigIntPK, primary_key=True),
        sa.Column("company_id", sa.BigInteger, sa.ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("adapter_type", sa.String(32), nullable=False),
        sa.Column("api_config", JSONType, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False),
        sa.Column("sync_interval_minutes", sa.Integer, nullable=False),
        _ts("last_sync_at", nullable=True),
        sa.UniqueConstraint("company_id", "name", name="uq_supplier_company_name"),
        sa.CheckConstraint("sync_interval_minutes > 0", name="ck_supplier_sync_interval_pos"),
    )
    op.create_index("ix_suppliers_company_id", "suppliers", ["company_id"])

    op.create_table(
        "brands",
        sa.Column("id", BigIntPK, primary_key=True),
        sa.Column("company_id", sa.BigInteger, sa.ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("master_supplier_id", sa.BigInteger, sa.ForeignKey("suppliers.id", ondelete="SET NULL")),
        sa.UniqueConstraint("company_id", "name", name="uq_brand_company_name"),
    )
    op.create_table(
        "products",
        sa.Column("id", BigIntPK, primary_key=True),
        sa.Column("company_id", sa.BigInteger, sa.ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("sku", sa.String(128), nullable=False),
        sa.Column("name", sa.String(500)),
        sa.Column("description", sa.Text),
        sa.Column("brand_id", sa.BigInteger, sa.ForeignKey("brands.id", ondelete="SET NULL")),
        sa.Column("category", sa.String(500)),
        sa.Column("barcode", sa.String(14)),
        sa.Column("weight_kg", sa.Numeric(12, 4)),
        sa.Column("volume_m3", sa.Numeric(14, 6)),
        sa.Column("length", sa.Numeric(10, 2)),
        sa.Column("width", sa.Numeric(10, 2)),
        sa.Column("height", sa.Numeric(10, 2)),
        sa.Column("is_divisible", sa.Boolean, nullable=False),
        sa.Column("attributes", JSONType, nullable=False),
        sa.Column("images", JSONType, nullable=False),
        sa.Column("source_supplier_id", sa.BigInteger, sa.ForeignKey("suppliers.id", ondelete="SET NULL")),
        sa.Column("is_active", sa.Boolean, nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("company_id", "sku", name="uq_product_company_sku"),
    )
    op.create_table(
        "product_suppliers",
        sa.Column("id", BigIntPK, primary_key=True),
        sa.Column("product_id", sa.BigInteger, sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("supplier_id", sa.BigInteger, sa.ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("external_id", sa.String(128), nullable=False),
        sa.Column("external_sku", sa.String(128)),
        sa.Column("cost_price", Money),
        sa.Column("currency", sa.String(3)),
        sa.Column("mrc_price", Money),
        sa.Column("enforce_mrc", sa.Boolean, nullable=False),
        sa.Column("quantity", Qty, nullable=False),
        sa.Column("is_available", sa.Boolean, nullable=False),
        _ts("updated_at"),
        sa.UniqueConstraint("product_id", "supplier_id", name="uq_offer_product_supplier"),
        sa.UniqueConstraint("supplier_id", "external_id", name="uq_offer_supplier_external_id"),
        sa.CheckConstraint("quantity >= 0", name="ck_offer_quantity_nonneg"),
    )

    op.create_table(
        "warehouses",
        sa.Column("id", BigIntPK, primary_key=True),
        sa.Column("company_id", sa.BigInteger, sa.ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("type", sa.Enum(WarehouseType, name="warehouse_type"), nullable=False),
        sa.Column("supplier_id", sa.BigInteger, sa.ForeignKey("suppliers.id", ondelete="RESTRICT")),
        sa.Column("priority", sa.Integer, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False),
        sa.UniqueConstraint("company_id", "name", name="uq_warehouse_company_name"),
    )
    # stock invariants are added by the next revision
    op.create_table(
        "warehouse_product_links",
        sa.Column(
            "warehouse_id", sa.BigInteger, sa.ForeignKey("warehouses.id", ondelete="RESTRICT"), primary_key=True
        ),
        sa.Column("product_id", sa.BigInteger, sa.ForeignKey("products.id", ondelete="RESTRICT"), primary_key=True),
        sa.Column("quantity", Qty, nullable=False),
        sa.Column("reserved_quantity", Qty, nullable=False),
        sa.Column("price", Money),
        _ts("updated_at"),
    )
    op.create_table(
        "stock_movements",
        sa.Column("id", BigIntPK, primary_key=True),
        sa.Column("company_id", sa.BigInteger, sa.ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("product_id", sa.BigInteger, sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("from_warehouse_id", sa.BigInteger, sa.ForeignKey("warehouses.id", ondelete="RESTRICT")),
        sa.Column("to_warehouse_id", sa.BigInteger, sa.ForeignKey("warehouses.id", ondelete="RESTRICT")),
        sa.Column("movement_type", sa.Enum(MovementType, name="movement_type"), nullable=False),
        sa.Column("quantity", Qty, nullable=False),
        sa.Column("reason", sa.String(255)),
        sa.Column("order_ref", sa.String(64)),
        sa.Column("actor", sa.String(64), nullable=False),
        _ts("created_at"),
        sa.CheckConstraint("quantity > 0", name="ck_stock_movement_qty_pos"),
    )
    op.create_index("ix_stock_movements_product_id", "stock_movements", ["product_id"])
    op.create_index("ix_stock_movements_product_time", "stock_movements", ["product_id", "created_at"])

    op.create_table(
        "exchange_rates",
        sa.Column("currency_code", sa.String(3), primary_key=True),
        sa.Column("rate", sa.Numeric(18, 6), nullable=False),
        _ts("updated_at"),
        sa.CheckConstraint("rate > 0", name="ck_exchange_rate_pos"),
    )
    op.create_table(
        "sales_channels",
        sa.Column("id", BigIntPK, primary_key=True),
        sa.Column("company_id", sa.BigInteger, sa.ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("marketplace_type", sa.String(32), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("pricing_rules", JSONType, nullable=False),
        sa.Column("procurement_schedule", sa.String(64)),
        sa.Column("auto_confirm", sa.Boolean, nullable=False),
        sa.Column("reserve_stock_first", sa.Boolean, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False),
        sa.UniqueConstraint("company_id", "name", name="uq_channel_company_name"),
    )
    op.create_table(
        "marketplace_product_links",
        sa.Column("id", BigIntPK, primary_key=True),
        sa.Column("product_id", sa.BigInteger, sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "channel_id", sa.BigInteger, sa.ForeignKey("sales_channels.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("price", Money),
        sa.Column("additional_expenses", Money, nullable=False),
        sa.Column("supplier_id", sa.BigInteger, sa.ForeignKey("suppliers.id", ondelete="SET NULL")),
        _ts("price_calculated_at", nullable=True),
        sa.Column("calculation_trail", JSONType, nullable=False),
        sa.Column("rules_snapshot", JSONType, nullable=False),
        sa.UniqueConstraint("product_id", "channel_id", name="uq_price_link_product_channel"),
    )
    op.create_table(
        "price_history",
        sa.Column("id", BigIntPK, primary_key=True),
        sa.Column("product_id", sa.BigInteger, sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "channel_id", sa.BigInteger, sa.ForeignKey("sales_channels.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("old_price", Money),
        sa.Column("new_price", Money, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("change_reason", sa.String(64), nullable=False),
        _ts("changed_at"),
    )
    op.create_index("ix_price_history_product_time", "price_history", ["product_id", "changed_at"])

    op.create_table(
        "orders",
        sa.Column("id", BigIntPK, primary_key=True),
        sa.Column("company_id", sa.BigInteger, sa.ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "channel_id", sa.BigInteger, sa.ForeignKey("sales_channels.id", ondelete="RESTRICT"), nullable=False
        ),
        sa.Column("external_order_id", sa.String(128), nullable=False),
        sa.Column("status", sa.Enum(OrderStatus, name="order_status"), nullable=False),
        _ts("created_at"),
        sa.UniqueConstraint("channel_id", "external_order_id", name="uq_order_channel_external"),
    )
    op.create_table(
        "order_items",
        sa.Column("id", BigIntPK, primary_key=True),
        sa.Column("order_id", sa.BigInteger, sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("product_id", sa.BigInteger, sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("quantity", Qty, nullable=False),
        sa.Column("unit_price", Money),
        sa.Column("status", sa.Enum(OrderItemStatus, name="order_item_status"), nullable=False),
        sa.Column(
            "procurement_status", sa.Enum(ProcurementStatus, name="procurement_status"), nullable=False
        ),
        sa.Column("warehouse_id", sa.BigInteger, sa.ForeignKey("warehouses.id", ondelete="SET NULL")),
        sa.Column("reserved_quantity", Qty, nullable=False),
        sa.CheckConstraint("quantity > 0", name="ck_order_item_qty_pos"),
        sa.CheckConstraint("reserved_quantity >= 0", name="ck_order_item_reserved_nonneg"),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])
    op.create_index("ix_order_items_procurement", "order_items", ["procurement_status"])

    op.create_table(
        "procurement_overrides",
        sa.Column("id", BigIntPK, primary_key=True),
        sa.Column("company_id", sa.BigInteger, sa.ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "order_item_id", sa.BigInteger, sa.ForeignKey("order_items.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("reason", sa.String(64), nullable=False),
        sa.Column("notes", sa.Text),
        sa.Column("created_by", sa.String(64)),
        _ts("created_at"),
        sa.UniqueConstraint("company_id", "order_item_id", name="uq_override_company_item"),
    )

    op.create_table(
        "supplier_orders",
        sa.Column("id", BigIntPK, primary_key=True),
        sa.Column("company_id", sa.BigInteger, sa.ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("supplier_id", sa.BigInteger, sa.ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("channel_id", sa.BigInteger, sa.ForeignKey("sales_channels.id", ondelete="SET NULL")),
        sa.Column("status", sa.Enum(SupplierOrderStatus, name="supplier_order_status"), nullable=False),
        sa.Column("total_amount", Money, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("batch_id", sa.String(32), nullable=False),
        sa.Column("external_order_id", sa.String(128)),
        sa.Column("error_message", sa.Text),
        _ts("created_at"),
        _ts("confirmed_at", nullable=True),
        _ts("sent_at", nullable=True),
        _ts("cancelled_at", nullable=True),
    )
    op.create_index("ix_supplier_orders_batch_id", "supplier_orders", ["batch_id"])

    op.create_table(
        "supplier_order_items",
        sa.Column("id", BigIntPK, primary_key=True),
        sa.Column(
            "order_id", sa.BigInteger, sa.ForeignKey("supplier_orders.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("product_id", sa.BigInteger, sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("external_sku", sa.String(128)),
        sa.Column("quantity", Qty, nullable=False),
        sa.Column("price", Money, nullable=False),
        sa.UniqueConstraint("order_id", "product_id", name="uq_supplier_order_item_product"),
        sa.CheckConstraint("quantity > 0", name="ck_supplier_order_item_qty_pos"),
        sa.CheckConstraint("price >= 0", name="ck_supplier_order_item_price_nonneg"),
    )
    op.create_table(
        "supplier_order_item_sources",
        sa.Column(
            "line_id",
            sa.BigInteger,
            sa.ForeignKey("supplier_order_items.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "order_item_id", sa.BigInteger, sa.ForeignKey("order_items.id", ondelete="CASCADE"), primary_key=True
        ),
        sa.Column("quantity", Qty, nullable=False),
    )

    op.create_table(
        "sync_runs",
        sa.Column("id", BigIntPK, primary_key=True),
        sa.Column("company_id", sa.BigInteger, sa.ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("supplier_id", sa.BigInteger, sa.ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False),
        sa.Column("status", sa.Enum(SyncRunStatus, name="sync_run_status"), nullable=False),
        sa.Column("processed", sa.Integer, nullable=False),
        sa.Column("succeeded", sa.Integer, nullable=False),
        sa.Column("failed", sa.Integer, nullable=False),
        sa.Column("retired", sa.Integer, nullable=False),
        sa.Column("errors", JSONType, nullable=False),
        sa.Column("error_message", sa.Text),
        _ts("started_at"),
        _ts("completed_at", nullable=True),
    )
    op.create_table(
        "run_locks",
        sa.Column("id", BigIntPK, primary_key=True),
        sa.Column("scope", sa.String(32), nullable=False),
        sa.Column("key", sa.String(128), nullable=False),
        sa.Column("owner", sa.String(64), nullable=False),
        _ts("acquired_at"),
        sa.UniqueConstraint("scope", "key", name="uq_run_lock_scope_key"),
    )
    op.create_table(
        "outbox_messages",
        sa.Column("id", BigIntPK, primary_key=True),
        sa.Column("topic", sa.String(64), nullable=False),
        sa.Column("payload", JSONType, nullable=False),
        sa.Column("status", sa.Enum(OutboxStatus, name="outbox_status"), nullable=False),
        sa.Column("attempts", sa.Integer, nullable=False),
        sa.Column("max_attempts", sa.Integer, nullable=False),
        _ts("next_attempt_at"),
        sa.Column("last_error", sa.Text),
        _ts("created_at"),
        _ts("processed_at", nullable=True),
    )
    op.create_index("ix_outbox_due", "outbox_messages", ["status", "next_attempt_at"])


def downgrade() -> None:
    for table in (
        "outbox_messages",
        "run_locks",
        "sync_runs",
        "supplier_order_item_sources",
        "supplier_order_items",
        "supplier_orders",
        "procurement_overrides",
        "order_items",
        "orders",
        "price_history",
        "marketplace_product_links",
        "sales_channels",
        "exchange_rates",
        "stock_movements",
        "warehouse_product_links",
        "warehouses",
        "product_suppliers",
        "products",
        "brands",
        "suppliers",
        "companies",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for enum_name in (
        "outbox_status",
        "sync_run_status",
        "supplier_order_status",
        "procurement_status",
        "order_item_status",
        "order_status",
        "movement_type",
        "warehouse_type",
    ):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)
