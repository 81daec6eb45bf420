"""
Customer order lifecycle: intake, reservation pass, shipping, delivery and
cancellation. Order status is always derived from the items
(``backend.services.order_status``).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from backend.app.core.errors import InsufficientStock, InvalidStateError, NotFoundError, ValidationError
from backend.app.db.models.core_types import OrderItemStatus, ProcurementStatus, SupplierOrderStatus
from backend.app.db.models.models_v1 import (
    CustomerOrder,
    OrderItem,
    SalesChannel,
    SupplierOrder,
    SupplierOrderItem,
    SupplierOrderItemSource,
    utcnow,
)
from backend.app.db.session import atomic
from backend.services import inventory
from backend.services.order_status import refresh_order_status
from backend.services.procurement import (
    LIVE,
    AdapterFactory,
    cancel_local,
    recompute_total,
    request_supplier_cancel,
)

logger = logging.getLogger(__name__)

HOLDING_STOCK = (OrderItemStatus.reserved, OrderItemStatus.confirmed)


@dataclass
class ReservationPass:
    order_id: int
    reserved: list[dict[str, Any]] = field(default_factory=list)
    shortfalls: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class CancelResult:
    order_id: int
    released: Decimal = Decimal(0)
    cancelled_supplier_orders: list[int] = field(default_factory=list)
    trimmed_supplier_orders: list[int] = field(default_factory=list)
    kept_supplier_orders: list[int] = field(default_factory=list)


def _ref(item: OrderItem) -> str:
    return f"order_item:{item.id}"


def _lock_order(db: Session, company_id: int, order_id: int) -> CustomerOrder:
    order = (
        db.execute(
            select(CustomerOrder)
            .where(CustomerOrder.id == order_id)
            .where(CustomerOrder.company_id == company_id)
            .with_for_update()
        )
        .scalar_one_or_none()
    )
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return order


def _lock_item(db: Session, company_id: int, item_id: int) -> OrderItem:
    item = (
        db.execute(
            select(OrderItem)
            .join(CustomerOrder, CustomerOrder.id == OrderItem.order_id)
            .where(OrderItem.id == item_id)
            .where(CustomerOrder.company_id == company_id)
            .with_for_update(of=OrderItem)
        )
        .scalar_one_or_none()
    )
    if item is None:
        raise NotFoundError(f"Order item {item_id} not found")
    return item


# ---------- intake ----------
def create_order(
    db: Session,
    *,
    company_id: int,
    channel_id: int,
    external_order_id: str,
    items: Iterable[dict[str, Any]],
) -> CustomerOrder:
    """
    Register a marketplace order. Replaying the same (channel, external id)
    returns the existing order untouched.
    """
    channel = db.get(SalesChannel, channel_id)
    if channel is None or channel.company_id != company_id:
        raise NotFoundError(f"Sales channel {channel_id} not found")

    existing = (
        db.execute(
            select(CustomerOrder)
            .where(CustomerOrder.channel_id == channel_id)
            .where(CustomerOrder.external_order_id == external_order_id)
        )
        .scalar_one_or_none()
    )
    if existing is not None:
        return existing

    order = CustomerOrder(company_id=company_id, channel_id=channel_id, external_order_id=external_order_id)
    for raw in items:
        product_id = raw["product_id"]
        quantity = inventory.validate_quantity(db, product_id, raw["quantity"])
        order.items.append(
            OrderItem(
                product_id=product_id,
                quantity=quantity,
                unit_price=raw.get("unit_price"),
                status=OrderItemStatus.new,
                procurement_status=ProcurementStatus.pending,
                reserved_quantity=Decimal(0),
            )
        )
    if not order.items:
        raise ValidationError("Order must have at least one item")

    db.add(order)
    refresh_order_status(order)
    db.flush()
    logger.info("Order %s (%s) created with %d items", order.id, external_order_id, len(order.items))
    return order


# ---------- reservation ----------
def reserve_order_items(
    db: Session,
    *,
    company_id: int,
    order_id: int,
    preferred_warehouse_id: int | None = None,
    physical_only: bool = True,
) -> ReservationPass:
    """
    Try to reserve every ``new`` item in one warehouse each. Items that
    cannot be covered stay ``new`` and are reported as shortfalls; the
    procurement pass buys them. Items already on a supplier order are
    skipped, their demand is covered by the purchase.
    """
    order = _lock_order(db, company_id, order_id)
    result = ReservationPass(order_id=order.id)

    for item in sorted(order.items, key=lambda i: i.id):
        if item.status != OrderItemStatus.new or item.reserved_quantity > 0:
            continue
        if item.procurement_status == ProcurementStatus.ordered:
            continue
        savepoint = db.begin_nested()
        try:
            res = inventory.reserve(
                db,
                company_id=company_id,
                product_id=item.product_id,
                quantity=item.quantity,
                preferred_warehouse_id=preferred_warehouse_id,
                physical_only=physical_only,
                reason="order_reservation",
                order_ref=_ref(item),
            )
            savepoint.commit()
        except InsufficientStock as exc:
            savepoint.rollback()
            result.shortfalls.append(
                {
                    "order_item_id": item.id,
                    "product_id": item.product_id,
                    "requested": item.quantity,
                    "available": exc.available,
                }
            )
            continue

        item.warehouse_id = res.warehouse_id
        item.reserved_quantity = res.quantity
        item.status = OrderItemStatus.reserved
        if item.procurement_status in (ProcurementStatus.pending, ProcurementStatus.failed):
            item.procurement_status = ProcurementStatus.in_stock
        result.reserved.append(
            {"order_item_id": item.id, "warehouse_id": res.warehouse_id, "quantity": res.quantity}
        )

    refresh_order_status(order)
    db.flush()
    logger.info(
        "Order %s reservation pass: reserved=%d shortfalls=%d",
        order.id, len(result.reserved), len(result.shortfalls),
    )
    return result


# ---------- fulfilment ----------
def confirm_order(db: Session, *, company_id: int, order_id: int) -> CustomerOrder:
    """Reserved items move to confirmed. Used when stock covers an order without a purchase."""
    order = _lock_order(db, company_id, order_id)
    reserved = [i for i in order.items if i.status == OrderItemStatus.reserved]
    if not reserved:
        raise InvalidStateError(f"Order {order_id} has no reserved items to confirm")
    for item in reserved:
        item.status = OrderItemStatus.confirmed
    refresh_order_status(order)
    db.flush()
    return order


def ship_order_item(db: Session, *, company_id: int, item_id: int, actor: str | None = None) -> OrderItem:
    item = _lock_item(db, company_id, item_id)
    if item.status != OrderItemStatus.confirmed:
        raise InvalidStateError(
            f"Order item {item.id} is {item.status.value}, only confirmed items can ship",
            status=item.status.value,
        )

    if item.warehouse_id is not None and item.reserved_quantity > 0:
        inventory.confirm(
            db,
            warehouse_id=item.warehouse_id,
            product_id=item.product_id,
            quantity=item.reserved_quantity,
            order_ref=_ref(item),
            actor=actor,
        )
    item.status = OrderItemStatus.shipped
    refresh_order_status(item.order)
    db.flush()
    logger.info("Order item %s shipped", item.id)
    return item


def deliver_order_item(db: Session, *, company_id: int, item_id: int) -> OrderItem:
    item = _lock_item(db, company_id, item_id)
    if item.status != OrderItemStatus.shipped:
        raise InvalidStateError(
            f"Order item {item.id} is {item.status.value}, only shipped items can be delivered",
            status=item.status.value,
        )
    item.status = OrderItemStatus.delivered
    refresh_order_status(item.order)
    db.flush()
    return item


# ---------- cancellation ----------
def _linked_supplier_orders(db: Session, item_ids: list[int]) -> list[SupplierOrder]:
    stmt = (
        select(SupplierOrder)
        .join(SupplierOrderItem, SupplierOrderItem.order_id == SupplierOrder.id)
        .join(SupplierOrderItemSource, SupplierOrderItemSource.line_id == SupplierOrderItem.id)
        .where(SupplierOrderItemSource.order_item_id.in_(item_ids))
        .where(SupplierOrder.status.in_(LIVE))
        .order_by(SupplierOrder.id)
        .with_for_update(of=SupplierOrder)
    )
    return list(db.execute(stmt).scalars().unique())


def _trim_draft(db: Session, po: SupplierOrder, item_ids: set[int]) -> None:
    """Take this order's contribution out of a shared draft."""
    for line in list(po.lines):
        for src in [s for s in line.sources if s.order_item_id in item_ids]:
            line.quantity -= src.quantity
            line.sources.remove(src)
        if not line.sources or line.quantity <= 0:
            po.lines.remove(line)
    recompute_total(po)
    if not po.lines:
        po.status = SupplierOrderStatus.cancelled
        po.cancelled_at = utcnow()
    db.flush()


def _release_items(db: Session, items: list[OrderItem], actor: str | None) -> Decimal:
    released = Decimal(0)
    for item in items:
        if item.status in HOLDING_STOCK and item.warehouse_id is not None and item.reserved_quantity > 0:
            released += inventory.release(
                db,
                warehouse_id=item.warehouse_id,
                product_id=item.product_id,
                quantity=item.reserved_quantity,
                reason="order_cancelled",
                order_ref=_ref(item),
                actor=actor,
            )
            item.reserved_quantity = Decimal(0)
    return released


async def cancel_order(
    session_factory: sessionmaker[Session],
    adapter_for: AdapterFactory,
    *,
    company_id: int,
    order_id: int,
    reason: str = "customer_cancel",
    actor: str | None = None,
) -> CancelResult:
    """
    Cancel a customer order: release held stock, cancel the items and deal
    with the supplier orders buying for it.

    Supplier orders serving only this order are cancelled (supplier-side
    cancel attempted after commit, failures queued). Shared drafts lose this
    order's quantities. Shared orders already at the supplier are kept and
    logged for manual follow-up.
    """
    result = CancelResult(order_id=order_id)
    remote: list[int] = []

    with session_factory() as db, atomic(db):
        order = _lock_order(db, company_id, order_id)
        items = sorted(order.items, key=lambda i: i.id)
        if any(i.status in (OrderItemStatus.shipped, OrderItemStatus.delivered) for i in items):
            raise InvalidStateError(f"Order {order_id} has shipped items and cannot be cancelled")
        if all(i.status == OrderItemStatus.cancelled for i in items):
            raise InvalidStateError(f"Order {order_id} is already cancelled")

        result.released = _release_items(db, items, actor)

        item_ids = {i.id for i in items}
        for po in _linked_supplier_orders(db, sorted(item_ids)):
            sources = {s.order_item_id for line in po.lines for s in line.sources}
            if sources <= item_ids:
                if cancel_local(db, po, item_status=ProcurementStatus.cancelled):
                    remote.append(po.id)
                result.cancelled_supplier_orders.append(po.id)
            elif po.status == SupplierOrderStatus.draft:
                _trim_draft(db, po, item_ids)
                result.trimmed_supplier_orders.append(po.id)
            else:
                logger.warning(
                    "Supplier order %s (%s) also serves other orders, left in place after cancelling order %s",
                    po.id, po.status.value, order_id,
                )
                result.kept_supplier_orders.append(po.id)

        for item in items:
            item.status = OrderItemStatus.cancelled
            item.procurement_status = ProcurementStatus.cancelled
        refresh_order_status(order)

    logger.info(
        "Order %s cancelled (%s): released=%s supplier orders cancelled=%s trimmed=%s kept=%s",
        order_id, reason, result.released, result.cancelled_supplier_orders,
        result.trimmed_supplier_orders, result.kept_supplier_orders,
    )
    for po_id in remote:
        await request_supplier_cancel(session_factory, adapter_for, order_id=po_id, reason=reason)
    return result


# ---------- queries ----------
def get_order(db: Session, *, company_id: int, order_id: int) -> dict[str, Any]:
    order = db.get(CustomerOrder, order_id)
    if order is None or order.company_id != company_id:
        raise NotFoundError(f"Order {order_id} not found")
    return {
        "id": order.id,
        "channel_id": order.channel_id,
        "external_order_id": order.external_order_id,
        "status": order.status.value,
        "created_at": order.created_at,
        "items": [
            {
                "id": item.id,
                "product_id": item.product_id,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "status": item.status.value,
                "procurement_status": item.procurement_status.value,
                "warehouse_id": item.warehouse_id,
                "reserved_quantity": item.reserved_quantity,
            }
            for item in sorted(order.items, key=lambda i: i.id)
        ],
    }
