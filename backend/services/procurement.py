"""
Procurement orchestrator.

Per sales channel, one pass:

    1. collect order items still to procure (pending / failed, no override)
    2. reserve own physical stock first when the channel asks for it
    3. resolve each remaining demand to the cheapest available supplier offer
    4. group by supplier, one line per product (quantities merged, every
       contributing order item recorded as a line source)
    5. one draft supplier order per supplier, tagged with the run's batch id
    6. auto-confirm channels: confirm and send right away

Item state machine: pending -> ordered -> failed | cancelled; failed items
are picked up again by the next pass. Stock rules live in
``backend.services.inventory``; nothing here touches stock links directly.
"""
from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy import exists, func, select
from sqlalchemy.orm import Session, sessionmaker

from backend.app.core.errors import (
    InsufficientStock,
    InvalidStateError,
    NotFoundError,
    SupplierApiError,
)
from backend.app.db.models.core_types import (
    OrderItemStatus,
    ProcurementStatus,
    SupplierOrderStatus,
)
from backend.app.db.models.models_v1 import (
    Company,
    CustomerOrder,
    OrderItem,
    ProcurementOverride,
    Product,
    SalesChannel,
    Supplier,
    SupplierOffer,
    SupplierOrder,
    SupplierOrderItem,
    SupplierOrderItemSource,
    utcnow,
)
from backend.app.db.session import atomic
from backend.integrations.suppliers.base import OrderLineRequest, OrderRequest, SupplierAdapter
from backend.services import inventory
from backend.services.currency import RateTable, convert, load_rate_table, round_money, to_reference
from backend.services.locks import SCOPE_PROCUREMENT, run_lock
from backend.services.order_status import refresh_order_status
from backend.services.outbox import TOPIC_SUPPLIER_ORDER_CANCEL, enqueue

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[Supplier], SupplierAdapter]

COLLECTABLE = (ProcurementStatus.pending, ProcurementStatus.failed)
OPEN_ITEM_STATUSES = (OrderItemStatus.new, OrderItemStatus.reserved, OrderItemStatus.confirmed)
LIVE = (SupplierOrderStatus.draft, SupplierOrderStatus.confirmed, SupplierOrderStatus.sent)
CANCELLABLE = (
    SupplierOrderStatus.draft,
    SupplierOrderStatus.confirmed,
    SupplierOrderStatus.sent,
    SupplierOrderStatus.error,
)


@dataclass
class ProcurementResult:
    channel_id: int
    batch_id: str
    collected: int = 0
    in_stock: int = 0
    ordered: int = 0
    supplier_order_ids: list[int] = field(default_factory=list)
    unfulfillable: list[dict[str, Any]] = field(default_factory=list)
    sent: list[int] = field(default_factory=list)
    send_errors: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class _Demand:
    offer: SupplierOffer
    quantity: Decimal = Decimal(0)
    sources: list[tuple[OrderItem, Decimal]] = field(default_factory=list)


# ---------- helpers ----------
def recompute_total(order: SupplierOrder) -> Decimal:
    order.total_amount = round_money(sum((line.quantity * line.price for line in order.lines), Decimal(0)))
    return order.total_amount


def _rates(db: Session, company_id: int) -> RateTable:
    company = db.get(Company, company_id)
    if company is None:
        raise NotFoundError(f"Company {company_id} not found")
    return load_rate_table(db, company.reference_currency)


def _get_channel(db: Session, company_id: int, channel_id: int) -> SalesChannel:
    channel = db.get(SalesChannel, channel_id)
    if channel is None or channel.company_id != company_id:
        raise NotFoundError(f"Sales channel {channel_id} not found")
    return channel


def _lock_order(db: Session, company_id: int, order_id: int) -> SupplierOrder:
    order = (
        db.execute(
            select(SupplierOrder)
            .where(SupplierOrder.id == order_id)
            .where(SupplierOrder.company_id == company_id)
            .with_for_update()
        )
        .scalar_one_or_none()
    )
    if order is None:
        raise NotFoundError(f"Supplier order {order_id} not found")
    return order


def _require_draft(order: SupplierOrder) -> None:
    if order.status != SupplierOrderStatus.draft:
        raise InvalidStateError(
            f"Supplier order {order.id} is {order.status.value}, only drafts can be edited",
            status=order.status.value,
        )


def _source_items(order: SupplierOrder) -> list[OrderItem]:
    seen: dict[int, OrderItem] = {}
    for line in order.lines:
        for src in line.sources:
            seen.setdefault(src.order_item_id, src.order_item)
    return [seen[k] for k in sorted(seen)]


def _covered_elsewhere(db: Session, item: OrderItem, order_id: int) -> bool:
    """True when another live supplier order still covers the item."""
    stmt = (
        select(SupplierOrder.id)
        .join(SupplierOrderItem, SupplierOrderItem.order_id == SupplierOrder.id)
        .join(SupplierOrderItemSource, SupplierOrderItemSource.line_id == SupplierOrderItem.id)
        .where(SupplierOrderItemSource.order_item_id == item.id)
        .where(SupplierOrder.id != order_id)
        .where(SupplierOrder.status.in_(LIVE))
    )
    return db.execute(stmt).first() is not None


def _revert_items(db: Session, order: SupplierOrder, status: ProcurementStatus) -> list[OrderItem]:
    items = _source_items(order)
    for item in items:
        if item.procurement_status == ProcurementStatus.ordered and not _covered_elsewhere(db, item, order.id):
            item.procurement_status = status
    for customer_order in _customer_orders(items):
        refresh_order_status(customer_order)
    return items


def _customer_orders(items: list[OrderItem]) -> list[CustomerOrder]:
    orders = {item.order_id: item.order for item in items}
    return [orders[k] for k in sorted(orders)]


def collect_items(db: Session, *, company_id: int, channel_id: int) -> list[OrderItem]:
    """Items of the channel still to procure, manual overrides excluded."""
    overridden = exists().where(
        ProcurementOverride.order_item_id == OrderItem.id,
        ProcurementOverride.company_id == company_id,
    )
    stmt = (
        select(OrderItem)
        .join(CustomerOrder, CustomerOrder.id == OrderItem.order_id)
        .where(CustomerOrder.company_id == company_id)
        .where(CustomerOrder.channel_id == channel_id)
        .where(OrderItem.procurement_status.in_(COLLECTABLE))
        .where(OrderItem.status.in_(OPEN_ITEM_STATUSES))
        .where(~overridden)
        .order_by(OrderItem.id)
        .with_for_update(of=OrderItem)
    )
    return list(db.execute(stmt).scalars())


def best_offer(db: Session, product_id: int, rates: RateTable) -> SupplierOffer | None:
    """Cheapest available offer (in reference currency) from an active supplier."""
    offers = db.execute(
        select(SupplierOffer)
        .join(Supplier, Supplier.id == SupplierOffer.supplier_id)
        .where(SupplierOffer.product_id == product_id)
        .where(SupplierOffer.is_available.is_(True))
        .where(SupplierOffer.cost_price.is_not(None))
        .where(Supplier.is_active.is_(True))
        .order_by(SupplierOffer.supplier_id)
    ).scalars()
    best, best_cost = None, None
    for offer in offers:
        cost = to_reference(offer.cost_price, offer.currency, rates)
        if best_cost is None or cost < best_cost:
            best, best_cost = offer, cost
    return best


def _reserve_own_stock(db: Session, item: OrderItem, company_id: int) -> Decimal:
    """Reserve what physical stock can cover. Returns the demand left."""
    demand = item.quantity - item.reserved_quantity
    if demand <= 0 or item.reserved_quantity > 0:
        # an item keeps a single reservation warehouse
        return max(demand, Decimal(0))
    try:
        res = inventory.reserve(
            db,
            company_id=company_id,
            product_id=item.product_id,
            quantity=demand,
            allow_partial=True,
            physical_only=True,
            reason="procurement_stock_first",
            order_ref=f"order_item:{item.id}",
        )
    except InsufficientStock:
        return demand
    item.warehouse_id = res.warehouse_id
    item.reserved_quantity += res.quantity
    item.status = OrderItemStatus.reserved
    return res.shortfall


# ---------- draft creation ----------
def create_draft_orders(
    db: Session,
    *,
    company_id: int,
    channel_id: int,
    batch_id: str | None = None,
) -> ProcurementResult:
    """Steps 1-5 of a pass, inside the caller's transaction."""
    channel = _get_channel(db, company_id, channel_id)
    rates = _rates(db, company_id)
    result = ProcurementResult(channel_id=channel_id, batch_id=batch_id or uuid.uuid4().hex)

    items = collect_items(db, company_id=company_id, channel_id=channel_id)
    result.collected = len(items)
    groups: dict[int, dict[int, _Demand]] = defaultdict(dict)

    for item in items:
        demand = item.quantity - item.reserved_quantity
        if channel.reserve_stock_first:
            demand = _reserve_own_stock(db, item, company_id)
        if demand <= 0:
            item.procurement_status = ProcurementStatus.in_stock
            result.in_stock += 1
            continue

        offer = best_offer(db, item.product_id, rates)
        if offer is None:
            logger.warning("Order item %s: no available supplier offer for product %s", item.id, item.product_id)
            result.unfulfillable.append(
                {"order_item_id": item.id, "product_id": item.product_id, "reason": "no_supplier_offer"}
            )
            continue

        bucket = groups[offer.supplier_id].setdefault(item.product_id, _Demand(offer=offer))
        bucket.quantity += demand
        bucket.sources.append((item, demand))

    for supplier_id in sorted(groups):
        lines = groups[supplier_id]
        first = lines[min(lines)].offer
        order = SupplierOrder(
            company_id=company_id,
            supplier_id=supplier_id,
            channel_id=channel_id,
            status=SupplierOrderStatus.draft,
            currency=first.currency or rates.reference,
            batch_id=result.batch_id,
            total_amount=Decimal(0),
        )
        db.add(order)
        for product_id in sorted(lines):
            demand = lines[product_id]
            line = SupplierOrderItem(
                product_id=product_id,
                external_sku=demand.offer.external_sku or demand.offer.external_id,
                quantity=demand.quantity,
                price=round_money(convert(demand.offer.cost_price, demand.offer.currency, order.currency, rates)),
            )
            order.lines.append(line)
            for item, qty in demand.sources:
                line.sources.append(SupplierOrderItemSource(order_item=item, quantity=qty))
                item.procurement_status = ProcurementStatus.ordered
                result.ordered += 1
        recompute_total(order)
        db.flush()
        result.supplier_order_ids.append(order.id)
        logger.info(
            "Draft supplier order %s for supplier %s: %d lines, total %s %s (batch %s)",
            order.id, supplier_id, len(order.lines), order.total_amount, order.currency, result.batch_id,
        )

    for customer_order in _customer_orders(items):
        refresh_order_status(customer_order)
    db.flush()
    return result


# ---------- confirm / send ----------
def _advance_reserved(items: list[OrderItem]) -> None:
    for customer_order in _customer_orders(items):
        for item in customer_order.items:
            if item.status == OrderItemStatus.reserved:
                item.status = OrderItemStatus.confirmed
        refresh_order_status(customer_order)


def confirm_supplier_order(db: Session, *, company_id: int, order_id: int) -> SupplierOrder:
    """Manual confirmation of a draft; reserved items of the customer orders it serves move to confirmed."""
    order = _lock_order(db, company_id, order_id)
    _require_draft(order)
    if not order.lines:
        raise InvalidStateError(f"Supplier order {order.id} has no lines")
    order.status = SupplierOrderStatus.confirmed
    order.confirmed_at = utcnow()
    _advance_reserved(_source_items(order))
    db.flush()
    logger.info("Supplier order %s confirmed", order.id)
    return order


def _order_request(order: SupplierOrder) -> OrderRequest:
    return OrderRequest(
        reference=f"PO-{order.id}",
        currency=order.currency,
        lines=[
            OrderLineRequest(
                product_id=line.product_id,
                external_sku=line.external_sku,
                quantity=line.quantity,
                price=line.price,
            )
            for line in order.lines
        ],
        comment=f"batch {order.batch_id}",
    )


async def send_supplier_order(
    session_factory: sessionmaker[Session],
    adapter_for: AdapterFactory,
    *,
    company_id: int,
    order_id: int,
) -> SupplierOrder:
    """
    Push a draft/confirmed order to the supplier. Never retried.

    Success: status ``sent`` with the supplier's reference. Failure: status
    ``error`` and every contributing order item goes back to ``failed`` so
    the next pass picks it up. Errors are re-raised as SupplierApiError,
    anything untyped under kind ``unknown``.
    """
    with session_factory() as db:
        order = _lock_order(db, company_id, order_id)
        if order.status not in (SupplierOrderStatus.draft, SupplierOrderStatus.confirmed):
            raise InvalidStateError(f"Supplier order {order.id} is {order.status.value}, cannot be sent")
        if not order.lines:
            raise InvalidStateError(f"Supplier order {order.id} has no lines")
        request = _order_request(order)
        adapter = adapter_for(order.supplier)
        db.rollback()

    try:
        response = await adapter.create_order(request)
    except Exception as exc:
        error = exc if isinstance(exc, SupplierApiError) else SupplierApiError(
            "unknown", f"{exc.__class__.__name__}: {exc}"
        )
        with session_factory() as db, atomic(db):
            order = _lock_order(db, company_id, order_id)
            order.status = SupplierOrderStatus.error
            order.error_message = error.message
            items = _revert_items(db, order, ProcurementStatus.failed)
        logger.error(
            "Sending supplier order %s failed (%s): %s; %d order items reverted to failed",
            order_id, error.kind, error.message, len(items),
        )
        if error is exc:
            raise
        raise error from exc
    finally:
        await adapter.aclose()

    with session_factory() as db, atomic(db):
        order = _lock_order(db, company_id, order_id)
        order.status = SupplierOrderStatus.sent
        order.external_order_id = response.order_id
        order.error_message = None
        now = utcnow()
        order.confirmed_at = order.confirmed_at or now
        order.sent_at = now
        _advance_reserved(_source_items(order))
    logger.info("Supplier order %s sent, supplier reference %s", order_id, response.order_id)
    return order


# ---------- draft editing ----------
def update_line_quantity(
    db: Session,
    *,
    company_id: int,
    order_id: int,
    line_id: int,
    quantity: Decimal,
) -> SupplierOrderItem:
    order = _lock_order(db, company_id, order_id)
    _require_draft(order)
    line = next((ln for ln in order.lines if ln.id == line_id), None)
    if line is None:
        raise NotFoundError(f"Line {line_id} not found in supplier order {order_id}")
    line.quantity = inventory.validate_quantity(db, line.product_id, quantity)
    recompute_total(order)
    db.flush()
    logger.info("Supplier order %s line %s quantity set to %s", order_id, line_id, line.quantity)
    return line


def remove_line(
    db: Session,
    *,
    company_id: int,
    order_id: int,
    line_id: int,
    reason: str = "manual_removal",
    notes: str | None = None,
    actor: str | None = None,
) -> int:
    """
    Drop a draft line. Every order item it covered gets a permanent
    procurement override and leaves ``ordered``. Returns the number of
    overrides created. A draft left without lines is cancelled.
    """
    order = _lock_order(db, company_id, order_id)
    _require_draft(order)
    line = next((ln for ln in order.lines if ln.id == line_id), None)
    if line is None:
        raise NotFoundError(f"Line {line_id} not found in supplier order {order_id}")

    created = 0
    items = [src.order_item for src in line.sources]
    for item in items:
        already = db.execute(
            select(ProcurementOverride.id)
            .where(ProcurementOverride.company_id == company_id)
            .where(ProcurementOverride.order_item_id == item.id)
        ).first()
        if already is None:
            db.add(
                ProcurementOverride(
                    company_id=company_id,
                    order_item_id=item.id,
                    reason=reason,
                    notes=notes or f"Removed from supplier order {order_id}",
                    created_by=actor,
                )
            )
            created += 1
        if item.procurement_status == ProcurementStatus.ordered:
            item.procurement_status = ProcurementStatus.pending

    order.lines.remove(line)
    recompute_total(order)
    if not order.lines:
        order.status = SupplierOrderStatus.cancelled
        order.cancelled_at = utcnow()
        logger.info("Supplier order %s has no lines left, cancelled", order_id)
    for customer_order in _customer_orders(items):
        refresh_order_status(customer_order)
    db.flush()
    logger.info("Removed line %s from supplier order %s, %d overrides created", line_id, order_id, created)
    return created


# ---------- cancellation ----------
def cancel_local(
    db: Session,
    order: SupplierOrder,
    *,
    item_status: ProcurementStatus = ProcurementStatus.failed,
) -> bool:
    """
    Cancel the local record. Returns True when the supplier already holds the
    order and must be told as well.
    """
    if order.status not in CANCELLABLE:
        raise InvalidStateError(f"Supplier order {order.id} is {order.status.value}, cannot be cancelled")
    remote = order.status == SupplierOrderStatus.sent and bool(order.external_order_id)
    order.status = SupplierOrderStatus.cancelled
    order.cancelled_at = utcnow()
    _revert_items(db, order, item_status)
    db.flush()
    return remote


async def request_supplier_cancel(
    session_factory: sessionmaker[Session],
    adapter_for: AdapterFactory,
    *,
    order_id: int,
    reason: str,
    requeue: bool = True,
) -> bool:
    """
    Best-effort supplier-side cancel. A failure is queued on the outbox for
    retry; with ``requeue=False`` (the outbox handler itself) it is raised.
    """
    with session_factory() as db:
        order = db.get(SupplierOrder, order_id)
        if order is None or not order.external_order_id:
            return False
        external_id = order.external_order_id
        adapter = adapter_for(order.supplier)

    try:
        await adapter.cancel_order(external_id, reason)
    except SupplierApiError as exc:
        await adapter.aclose()
        if not requeue:
            raise
        logger.warning("Supplier-side cancel of order %s failed (%s), queued for retry", order_id, exc)
        with session_factory() as db, atomic(db):
            enqueue(db, TOPIC_SUPPLIER_ORDER_CANCEL, {"supplier_order_id": order_id, "reason": reason})
        return False
    await adapter.aclose()
    logger.info("Supplier order %s cancelled at supplier (%s)", order_id, external_id)
    return True


async def cancel_supplier_order(
    session_factory: sessionmaker[Session],
    adapter_for: AdapterFactory,
    *,
    company_id: int,
    order_id: int,
    reason: str = "manual_cancel",
) -> SupplierOrder:
    with session_factory() as db, atomic(db):
        order = _lock_order(db, company_id, order_id)
        remote = cancel_local(db, order)
    logger.info("Supplier order %s cancelled (%s)", order_id, reason)
    if remote:
        await request_supplier_cancel(session_factory, adapter_for, order_id=order_id, reason=reason)
    return order


# ---------- queries ----------
def list_supplier_orders(
    db: Session,
    *,
    company_id: int,
    status: SupplierOrderStatus | None = SupplierOrderStatus.draft,
    supplier_id: int | None = None,
    batch_id: str | None = None,
) -> list[dict[str, Any]]:
    lines_count = (
        select(func.count(SupplierOrderItem.id))
        .where(SupplierOrderItem.order_id == SupplierOrder.id)
        .correlate(SupplierOrder)
        .scalar_subquery()
    )
    stmt = (
        select(SupplierOrder, Supplier.name, lines_count)
        .join(Supplier, Supplier.id == SupplierOrder.supplier_id)
        .where(SupplierOrder.company_id == company_id)
        .order_by(SupplierOrder.created_at.desc(), SupplierOrder.id.desc())
    )
    if status is not None:
        stmt = stmt.where(SupplierOrder.status == status)
    if supplier_id is not None:
        stmt = stmt.where(SupplierOrder.supplier_id == supplier_id)
    if batch_id is not None:
        stmt = stmt.where(SupplierOrder.batch_id == batch_id)

    return [
        {
            "id": so.id,
            "supplier_id": so.supplier_id,
            "supplier_name": supplier_name,
            "channel_id": so.channel_id,
            "status": so.status.value,
            "total_amount": so.total_amount,
            "currency": so.currency,
            "batch_id": so.batch_id,
            "items_count": count,
            "external_order_id": so.external_order_id,
            "created_at": so.created_at,
        }
        for so, supplier_name, count in db.execute(stmt).all()
    ]


def get_supplier_order(db: Session, *, company_id: int, order_id: int) -> dict[str, Any]:
    order = db.get(SupplierOrder, order_id)
    if order is None or order.company_id != company_id:
        raise NotFoundError(f"Supplier order {order_id} not found")

    lines = []
    for line in order.lines:
        product = db.get(Product, line.product_id)
        offer = (
            db.execute(
                select(SupplierOffer)
                .where(SupplierOffer.product_id == line.product_id)
                .where(SupplierOffer.supplier_id == order.supplier_id)
            )
            .scalars()
            .first()
        )
        lines.append(
            {
                "id": line.id,
                "product_id": line.product_id,
                "sku": product.sku,
                "name": product.name,
                "external_sku": line.external_sku,
                "quantity": line.quantity,
                "price": line.price,
                "offer_available": offer.is_available if offer else False,
                "order_item_ids": sorted(src.order_item_id for src in line.sources),
            }
        )

    return {
        "id": order.id,
        "supplier_id": order.supplier_id,
        "supplier_name": order.supplier.name,
        "channel_id": order.channel_id,
        "status": order.status.value,
        "total_amount": order.total_amount,
        "currency": order.currency,
        "batch_id": order.batch_id,
        "external_order_id": order.external_order_id,
        "error_message": order.error_message,
        "created_at": order.created_at,
        "lines": lines,
        "customer_orders": [
            {"id": co.id, "external_order_id": co.external_order_id, "status": co.status.value}
            for co in _customer_orders(_source_items(order))
        ],
    }


# ---------- full pass ----------
async def run_procurement(
    session_factory: sessionmaker[Session],
    adapter_for: AdapterFactory,
    *,
    company_id: int,
    channel_id: int,
    lock_ttl: int = 3600,
) -> ProcurementResult:
    """One serialized pass for (company, channel): drafts, then confirm + send on auto-confirm channels."""
    with run_lock(session_factory, SCOPE_PROCUREMENT, f"{company_id}:{channel_id}", ttl_seconds=lock_ttl):
        with session_factory() as db, atomic(db):
            result = create_draft_orders(db, company_id=company_id, channel_id=channel_id)
            auto_confirm = _get_channel(db, company_id, channel_id).auto_confirm

        logger.info(
            "Procurement pass %s for channel %s: collected=%d in_stock=%d ordered=%d orders=%d unfulfillable=%d",
            result.batch_id, channel_id, result.collected, result.in_stock, result.ordered,
            len(result.supplier_order_ids), len(result.unfulfillable),
        )

        if auto_confirm:
            for order_id in result.supplier_order_ids:
                with session_factory() as db, atomic(db):
                    confirm_supplier_order(db, company_id=company_id, order_id=order_id)
                try:
                    await send_supplier_order(session_factory, adapter_for, company_id=company_id, order_id=order_id)
                except SupplierApiError as exc:
                    result.send_errors.append({"supplier_order_id": order_id, "kind": exc.kind, "error": exc.message})
                    continue
                result.sent.append(order_id)

    return result
