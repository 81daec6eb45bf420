from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.db.base import Base
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

# BIGINT on Postgres, INTEGER on SQLite so rowid autoincrement keeps working
BigIntPK = BigInteger().with_variant(Integer, "sqlite")
JSONType = JSON().with_variant(JSONB, "postgresql")
Money = Numeric(14, 2)
Qty = Numeric(14, 3)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------- TENANCY ----------
class Company(Base):
    __tablename__ = "companies"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    reference_currency: Mapped[str] = mapped_column(String(3), default="RUB", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


# ---------- MASTER DATA ----------
class Supplier(Base):
    __tablename__ = "suppliers"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # registry type code, e.g. "rest" or "csv_feed"
    adapter_type: Mapped[str] = mapped_column(String(32), nullable=False)
    api_config: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sync_interval_minutes: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("company_id", "name", name="uq_supplier_company_name"),
        CheckConstraint("sync_interval_minutes > 0", name="ck_supplier_sync_interval_pos"),
    )


class Brand(Base):
    __tablename__ = "brands"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    # supplier whose catalog is authoritative for descriptive content
    master_supplier_id: Mapped[int | None] = mapped_column(ForeignKey("suppliers.id", ondelete="SET NULL"))

    __table_args__ = (UniqueConstraint("company_id", "name", name="uq_brand_company_name"),)


class Product(Base):
    __tablename__ = "products"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False)
    sku: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str | None] = mapped_column(String(500))
    description: Mapped[str | None] = mapped_column(Text)
    brand_id: Mapped[int | None] = mapped_column(ForeignKey("brands.id", ondelete="SET NULL"))
    category: Mapped[str | None] = mapped_column(String(500))
    barcode: Mapped[str | None] = mapped_column(String(14))
    weight_kg: Mapped[Decimal | None] = mapped_column(Numeric(12, 4))
    volume_m3: Mapped[Decimal | None] = mapped_column(Numeric(14, 6))
    length: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    width: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    height: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    is_divisible: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    attributes: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    images: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    source_supplier_id: Mapped[int | None] = mapped_column(ForeignKey("suppliers.id", ondelete="SET NULL"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    brand: Mapped[Brand | None] = relationship()
    offers: Mapped[list["SupplierOffer"]] = relationship(back_populates="product")

    __table_args__ = (UniqueConstraint("company_id", "sku", name="uq_product_company_sku"),)


class SupplierOffer(Base):
    """A supplier's price / stock / availability record for one product."""

    __tablename__ = "product_suppliers"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    supplier_id: Mapped[int] = mapped_column(ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False)
    external_id: Mapped[str] = mapped_column(String(128), nullable=False)
    external_sku: Mapped[str | None] = mapped_column(String(128))
    cost_price: Mapped[Decimal | None] = mapped_column(Money)
    currency: Mapped[str | None] = mapped_column(String(3))
    mrc_price: Mapped[Decimal | None] = mapped_column(Money)
    enforce_mrc: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Qty, default=0, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    product: Mapped[Product] = relationship(back_populates="offers")
    supplier: Mapped[Supplier] = relationship()

    __table_args__ = (
        UniqueConstraint("product_id", "supplier_id", name="uq_offer_product_supplier"),
        UniqueConstraint("supplier_id", "external_id", name="uq_offer_supplier_external_id"),
        CheckConstraint("quantity >= 0", name="ck_offer_quantity_nonneg"),
    )


# ---------- WAREHOUSES / STOCK ----------
class Warehouse(Base):
    __tablename__ = "warehouses"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[WarehouseType] = mapped_column(
        Enum(WarehouseType, name="warehouse_type"), default=WarehouseType.physical, nullable=False
    )
    # set for virtual (drop-ship) warehouses only
    supplier_id: Mapped[int | None] = mapped_column(ForeignKey("suppliers.id", ondelete="RESTRICT"))
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (UniqueConstraint("company_id", "name", name="uq_warehouse_company_name"),)


class WarehouseStockLink(Base):
    __tablename__ = "warehouse_product_links"
    warehouse_id: Mapped[int] = mapped_column(ForeignKey("warehouses.id", ondelete="RESTRICT"), primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), primary_key=True)

    quantity: Mapped[Decimal] = mapped_column(Qty, default=0, nullable=False)
    reserved_quantity: Mapped[Decimal] = mapped_column(Qty, default=0, nullable=False)
    price: Mapped[Decimal | None] = mapped_column(Money)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    warehouse: Mapped[Warehouse] = relationship()

    # available is always derived, never stored
    @hybrid_property
    def available_quantity(self) -> Decimal:
        return self.quantity - self.reserved_quantity

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_wpl_quantity_nonneg"),
        CheckConstraint("reserved_quantity >= 0", name="ck_wpl_reserved_nonneg"),
        CheckConstraint("reserved_quantity <= quantity", name="ck_wpl_reserved_le_quantity"),
    )


class StockMovement(Base):
    __tablename__ = "stock_movements"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False)
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    from_warehouse_id: Mapped[int | None] = mapped_column(ForeignKey("warehouses.id", ondelete="RESTRICT"))
    to_warehouse_id: Mapped[int | None] = mapped_column(ForeignKey("warehouses.id", ondelete="RESTRICT"))

    movement_type: Mapped[MovementType] = mapped_column(Enum(MovementType, name="movement_type"), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Qty, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255))
    order_ref: Mapped[str | None] = mapped_column(String(64))
    actor: Mapped[str] = mapped_column(String(64), default="system", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_stock_movement_qty_pos"),
        Index("ix_stock_movements_product_time", "product_id", "created_at"),
    )


# ---------- PRICING ----------
class ExchangeRate(Base):
    __tablename__ = "exchange_rates"
    # units of reference currency per one unit of currency_code
    currency_code: Mapped[str] = mapped_column(String(3), primary_key=True)
    rate: Mapped[Decimal] = mapped_column(Numeric(18, 6), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (CheckConstraint("rate > 0", name="ck_exchange_rate_pos"),)


class SalesChannel(Base):
    """A marketplace account the tenant sells through."""

    __tablename__ = "sales_channels"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    marketplace_type: Mapped[str] = mapped_column(String(32), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="RUB", nullable=False)
    # validated PricingRules dump, written via services.pricing.set_pricing_rules
    pricing_rules: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    procurement_schedule: Mapped[str | None] = mapped_column(String(64))  # crontab
    auto_confirm: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reserve_stock_first: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (UniqueConstraint("company_id", "name", name="uq_channel_company_name"),)


class MarketplacePriceLink(Base):
    __tablename__ = "marketplace_product_links"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    channel_id: Mapped[int] = mapped_column(ForeignKey("sales_channels.id", ondelete="RESTRICT"), nullable=False)
    price: Mapped[Decimal | None] = mapped_column(Money)
    additional_expenses: Mapped[Decimal] = mapped_column(Money, default=0, nullable=False)
    supplier_id: Mapped[int | None] = mapped_column(ForeignKey("suppliers.id", ondelete="SET NULL"))
    price_calculated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    calculation_trail: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    rules_snapshot: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)

    channel: Mapped[SalesChannel] = relationship()

    __table_args__ = (UniqueConstraint("product_id", "channel_id", name="uq_price_link_product_channel"),)


class PriceHistory(Base):
    __tablename__ = "price_history"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    channel_id: Mapped[int] = mapped_column(ForeignKey("sales_channels.id", ondelete="RESTRICT"), nullable=False)
    old_price: Mapped[Decimal | None] = mapped_column(Money)
    new_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    change_reason: Mapped[str] = mapped_column(String(64), default="automatic_calculation", nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (Index("ix_price_history_product_time", "product_id", "changed_at"),)


# ---------- CUSTOMER ORDERS ----------
class CustomerOrder(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False)
    channel_id: Mapped[int] = mapped_column(ForeignKey("sales_channels.id", ondelete="RESTRICT"), nullable=False)
    external_order_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus, name="order_status"), default=OrderStatus.new, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    items: Mapped[list["OrderItem"]] = relationship(back_populates="order", cascade="all, delete-orphan")

    __table_args__ = (UniqueConstraint("channel_id", "external_order_id", name="uq_order_channel_external"),)


class OrderItem(Base):
    __tablename__ = "order_items"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Qty, nullable=False)
    unit_price: Mapped[Decimal | None] = mapped_column(Money)
    status: Mapped[OrderItemStatus] = mapped_column(
        Enum(OrderItemStatus, name="order_item_status"), default=OrderItemStatus.new, nullable=False
    )
    procurement_status: Mapped[ProcurementStatus] = mapped_column(
        Enum(ProcurementStatus, name="procurement_status"), default=ProcurementStatus.pending, nullable=False
    )
    warehouse_id: Mapped[int | None] = mapped_column(ForeignKey("warehouses.id", ondelete="SET NULL"))
    reserved_quantity: Mapped[Decimal] = mapped_column(Qty, default=0, nullable=False)

    order: Mapped[CustomerOrder] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_item_qty_pos"),
        CheckConstraint("reserved_quantity >= 0", name="ck_order_item_reserved_nonneg"),
        Index("ix_order_items_procurement", "procurement_status"),
    )


class ProcurementOverride(Base):
    """Manual, permanent exclusion of an order item from procurement."""

    __tablename__ = "procurement_overrides"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False)
    order_item_id: Mapped[int] = mapped_column(ForeignKey("order_items.id", ondelete="CASCADE"), nullable=False)
    reason: Mapped[str] = mapped_column(String(64), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("company_id", "order_item_id", name="uq_override_company_item"),)


# ---------- PROCUREMENT ----------
class SupplierOrder(Base):
    __tablename__ = "supplier_orders"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False)
    supplier_id: Mapped[int] = mapped_column(ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False)
    channel_id: Mapped[int | None] = mapped_column(ForeignKey("sales_channels.id", ondelete="SET NULL"))
    status: Mapped[SupplierOrderStatus] = mapped_column(
        Enum(SupplierOrderStatus, name="supplier_order_status"),
        default=SupplierOrderStatus.draft,
        nullable=False,
    )
    total_amount: Mapped[Decimal] = mapped_column(Money, default=0, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    batch_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    external_order_id: Mapped[str | None] = mapped_column(String(128))
    error_message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    supplier: Mapped[Supplier] = relationship()
    lines: Mapped[list["SupplierOrderItem"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", order_by="SupplierOrderItem.id"
    )


class SupplierOrderItem(Base):
    __tablename__ = "supplier_order_items"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("supplier_orders.id", ondelete="CASCADE"), nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="RESTRICT"), nullable=False)
    external_sku: Mapped[str | None] = mapped_column(String(128))
    quantity: Mapped[Decimal] = mapped_column(Qty, nullable=False)
    price: Mapped[Decimal] = mapped_column(Money, nullable=False)

    order: Mapped[SupplierOrder] = relationship(back_populates="lines")
    sources: Mapped[list["SupplierOrderItemSource"]] = relationship(
        back_populates="line", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("order_id", "product_id", name="uq_supplier_order_item_product"),
        CheckConstraint("quantity > 0", name="ck_supplier_order_item_qty_pos"),
        CheckConstraint("price >= 0", name="ck_supplier_order_item_price_nonneg"),
    )


class SupplierOrderItemSource(Base):
    """Which customer order items (and how much of each) a purchase line covers."""

    __tablename__ = "supplier_order_item_sources"
    line_id: Mapped[int] = mapped_column(ForeignKey("supplier_order_items.id", ondelete="CASCADE"), primary_key=True)
    order_item_id: Mapped[int] = mapped_column(ForeignKey("order_items.id", ondelete="CASCADE"), primary_key=True)
    quantity: Mapped[Decimal] = mapped_column(Qty, nullable=False)

    line: Mapped[SupplierOrderItem] = relationship(back_populates="sources")
    order_item: Mapped[OrderItem] = relationship()


# ---------- SYNC ----------
class SyncRun(Base):
    __tablename__ = "sync_runs"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="RESTRICT"), nullable=False)
    supplier_id: Mapped[int] = mapped_column(ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=False)
    status: Mapped[SyncRunStatus] = mapped_column(
        Enum(SyncRunStatus, name="sync_run_status"), default=SyncRunStatus.running, nullable=False
    )
    processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    succeeded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    retired: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    errors: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


# ---------- INFRA ----------
class RunLock(Base):
    __tablename__ = "run_locks"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    scope: Mapped[str] = mapped_column(String(32), nullable=False)
    key: Mapped[str] = mapped_column(String(128), nullable=False)
    owner: Mapped[str] = mapped_column(String(64), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("scope", "key", name="uq_run_lock_scope_key"),)


class OutboxMessage(Base):
    __tablename__ = "outbox_messages"
    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    topic: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    status: Mapped[OutboxStatus] = mapped_column(
        Enum(OutboxStatus, name="outbox_status"), default=OutboxStatus.pending, nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (Index("ix_outbox_due", "status", "next_attempt_at"),)
