"""
Stock ledger.

Single entry point for every change to warehouse stock links. Rules:

    available = quantity - reserved    (derived, never stored)
    0 <= reserved <= quantity

Each operation locks the (warehouse, product) row (FOR UPDATE), mutates it,
appends an immutable StockMovement and emits a ``stock.changed`` outbox
event. Functions only flush: the caller owns the transaction (see
``backend.app.db.session.atomic``).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal

from sqlalchemy import case, select
from sqlalchemy.orm import Session

from backend.app.core.errors import InsufficientStock, NotFoundError, TransactionError, ValidationError
from backend.app.db.models.core_types import MovementType, WarehouseType
from backend.app.db.models.models_v1 import (
    Product,
    StockMovement,
    Warehouse,
    WarehouseStockLink,
)
from backend.services.outbox import TOPIC_STOCK_CHANGED, enqueue

logger = logging.getLogger(__name__)

ZERO = Decimal(0)


@dataclass(frozen=True)
class Reservation:
    warehouse_id: int
    product_id: int
    quantity: Decimal
    unit_price: Decimal | None
    # demand left for procurement when a partial reservation was accepted
    shortfall: Decimal = ZERO


# ---------- Helpers ----------
def validate_quantity(db: Session, product_id: int, quantity: Decimal, *, allow_zero: bool = False) -> Decimal:
    quantity = Decimal(quantity)
    if quantity < 0 or (quantity == 0 and not allow_zero):
        raise ValidationError(f"Quantity must be positive (got {quantity})")

    product = db.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    if not product.is_divisible and quantity != quantity.to_integral_value():
        raise ValidationError(f"Product {product_id} is not divisible, got fractional quantity {quantity}")
    return quantity


def _lock_link(db: Session, warehouse_id: int, product_id: int, *, create: bool = False) -> WarehouseStockLink:
    link = (
        db.execute(
            select(WarehouseStockLink)
            .where(WarehouseStockLink.warehouse_id == warehouse_id)
            .where(WarehouseStockLink.product_id == product_id)
            .with_for_update()
        )
        .scalar_one_or_none()
    )
    if link:
        return link
    if not create:
        raise NotFoundError(f"No stock link for product {product_id} in warehouse {warehouse_id}")

    if db.get(Warehouse, warehouse_id) is None:
        raise NotFoundError(f"Warehouse {warehouse_id} not found")
    link = WarehouseStockLink(
        warehouse_id=warehouse_id,
        product_id=product_id,
        quantity=ZERO,
        reserved_quantity=ZERO,
    )
    db.add(link)
    db.flush()
    return link


def _check(link: WarehouseStockLink) -> None:
    if link.reserved_quantity < 0 or link.reserved_quantity > link.quantity or link.quantity < 0:
        raise TransactionError(
            "Stock invariant violated",
            warehouse_id=link.warehouse_id,
            product_id=link.product_id,
            quantity=str(link.quantity),
            reserved=str(link.reserved_quantity),
        )


def _record(
    db: Session,
    *,
    company_id: int,
    product_id: int,
    movement_type: MovementType,
    quantity: Decimal,
    from_warehouse_id: int | None = None,
    to_warehouse_id: int | None = None,
    reason: str | None = None,
    order_ref: str | None = None,
    actor: str | None = None,
) -> StockMovement:
    mv = StockMovement(
        company_id=company_id,
        product_id=product_id,
        from_warehouse_id=from_warehouse_id,
        to_warehouse_id=to_warehouse_id,
        movement_type=movement_type,
        quantity=quantity,
        reason=reason,
        order_ref=order_ref,
        actor=actor or "system",
    )
    db.add(mv)
    return mv


def _emit_changed(db: Session, company_id: int, link: WarehouseStockLink, movement_type: MovementType) -> None:
    enqueue(
        db,
        TOPIC_STOCK_CHANGED,
        {
            "company_id": company_id,
            "warehouse_id": link.warehouse_id,
            "product_id": link.product_id,
            "movement_type": movement_type.value,
            "quantity": str(link.quantity),
            "reserved_quantity": str(link.reserved_quantity),
            "available_quantity": str(link.available_quantity),
        },
    )


def _company_of(db: Session, warehouse_id: int) -> int:
    wh = db.get(Warehouse, warehouse_id)
    if wh is None:
        raise NotFoundError(f"Warehouse {warehouse_id} not found")
    return wh.company_id


def _apply_reserve(
    db: Session,
    link: WarehouseStockLink,
    quantity: Decimal,
    *,
    company_id: int,
    reason: str | None,
    order_ref: str | None,
    actor: str | None,
) -> None:
    link.reserved_quantity += quantity
    _check(link)
    _record(
        db,
        company_id=company_id,
        product_id=link.product_id,
        movement_type=MovementType.reserve,
        quantity=quantity,
        from_warehouse_id=link.warehouse_id,
        reason=reason or "reservation",
        order_ref=order_ref,
        actor=actor,
    )
    _emit_changed(db, company_id, link, MovementType.reserve)


# ---------- Queries ----------
def reservation_candidates(
    db: Session,
    *,
    company_id: int,
    product_id: int,
    preferred_warehouse_id: int | None = None,
    physical_only: bool = False,
) -> list[WarehouseStockLink]:
    """
    Stock links ordered by reservation preference:
    preferred warehouse first, then higher priority, then lowest price.
    """
    preferred_first = case((WarehouseStockLink.warehouse_id == preferred_warehouse_id, 0), else_=1)
    stmt = (
        select(WarehouseStockLink)
        .join(Warehouse, Warehouse.id == WarehouseStockLink.warehouse_id)
        .where(Warehouse.company_id == company_id)
        .where(Warehouse.is_active.is_(True))
        .where(WarehouseStockLink.product_id == product_id)
        .where(WarehouseStockLink.available_quantity > 0)
        .order_by(
            preferred_first,
            Warehouse.priority.desc(),
            case((WarehouseStockLink.price.is_(None), 1), else_=0),
            WarehouseStockLink.price.asc(),
            WarehouseStockLink.warehouse_id.asc(),
        )
    )
    if physical_only:
        stmt = stmt.where(Warehouse.type == WarehouseType.physical)
    return list(db.execute(stmt).scalars())


# ---------- Operations ----------
def reserve(
    db: Session,
    *,
    company_id: int,
    product_id: int,
    quantity: Decimal,
    preferred_warehouse_id: int | None = None,
    allow_partial: bool = False,
    physical_only: bool = False,
    reason: str | None = None,
    order_ref: str | None = None,
    actor: str | None = None,
) -> Reservation:
    """
    Reserve ``quantity`` in the single best warehouse that can cover it.

    A reservation is never split across warehouses. With ``allow_partial``
    the first warehouse in preference order with any stock takes what it
    has and the rest comes back as ``shortfall`` for procurement.
    """
    quantity = validate_quantity(db, product_id, quantity)
    candidates = reservation_candidates(
        db,
        company_id=company_id,
        product_id=product_id,
        preferred_warehouse_id=preferred_warehouse_id,
        physical_only=physical_only,
    )

    total_available = ZERO
    for candidate in candidates:
        # re-read under lock, the unlocked snapshot may be stale
        link = _lock_link(db, candidate.warehouse_id, product_id)
        available = link.available_quantity
        total_available += max(available, ZERO)
        if available >= quantity:
            _apply_reserve(db, link, quantity, company_id=company_id,
                           reason=reason, order_ref=order_ref, actor=actor)
            db.flush()
            return Reservation(link.warehouse_id, product_id, quantity, link.price)

    if allow_partial:
        for candidate in candidates:
            link = _lock_link(db, candidate.warehouse_id, product_id)
            available = link.available_quantity
            if available <= 0:
                continue
            take = available
            if not db.get(Product, product_id).is_divisible:
                take = available.to_integral_value(rounding=ROUND_FLOOR)
                if take <= 0:
                    continue
            _apply_reserve(db, link, take, company_id=company_id,
                           reason=reason, order_ref=order_ref, actor=actor)
            db.flush()
            logger.info(
                "Partial reservation for product %s: %s of %s in warehouse %s",
                product_id, take, quantity, link.warehouse_id,
            )
            return Reservation(link.warehouse_id, product_id, take, link.price, shortfall=quantity - take)

    raise InsufficientStock(product_id, quantity, total_available)


def release(
    db: Session,
    *,
    warehouse_id: int,
    product_id: int,
    quantity: Decimal,
    reason: str | None = None,
    order_ref: str | None = None,
    actor: str | None = None,
) -> Decimal:
    """Drop a reservation. Reserved is floored at zero; returns what was actually released."""
    quantity = validate_quantity(db, product_id, quantity)
    company_id = _company_of(db, warehouse_id)
    link = _lock_link(db, warehouse_id, product_id)

    released = min(quantity, link.reserved_quantity)
    if released < quantity:
        logger.warning(
            "Release of %s for product %s in warehouse %s exceeds reserved %s, flooring at zero",
            quantity, product_id, warehouse_id, link.reserved_quantity,
        )
    link.reserved_quantity -= released
    _check(link)

    if released > 0:
        _record(
            db,
            company_id=company_id,
            product_id=product_id,
            movement_type=MovementType.release,
            quantity=released,
            from_warehouse_id=warehouse_id,
            reason=reason or "reservation_release",
            order_ref=order_ref,
            actor=actor,
        )
        _emit_changed(db, company_id, link, MovementType.release)
    db.flush()
    return released


def confirm(
    db: Session,
    *,
    warehouse_id: int,
    product_id: int,
    quantity: Decimal,
    order_ref: str | None = None,
    reason: str | None = None,
    actor: str | None = None,
) -> WarehouseStockLink:
    """Stock physically leaves: quantity and reserved both go down."""
    quantity = validate_quantity(db, product_id, quantity)
    company_id = _company_of(db, warehouse_id)
    link = _lock_link(db, warehouse_id, product_id)

    if link.quantity < quantity:
        raise InsufficientStock(product_id, quantity, link.quantity)

    link.quantity -= quantity
    link.reserved_quantity = max(ZERO, link.reserved_quantity - quantity)
    _check(link)

    _record(
        db,
        company_id=company_id,
        product_id=product_id,
        movement_type=MovementType.consume,
        quantity=quantity,
        from_warehouse_id=warehouse_id,
        reason=reason or "order_shipment",
        order_ref=order_ref,
        actor=actor,
    )
    _emit_changed(db, company_id, link, MovementType.consume)
    db.flush()
    return link


def set_stock(
    db: Session,
    *,
    warehouse_id: int,
    product_id: int,
    new_quantity: Decimal,
    new_price: Decimal | None = None,
    reason: str | None = None,
    actor: str | None = None,
) -> Decimal:
    """
    Set the on-hand quantity (sync / inventory count). Returns the signed delta.

    A movement is written only when the quantity actually changes, so
    replaying the same snapshot leaves no trace.
    """
    new_quantity = validate_quantity(db, product_id, new_quantity, allow_zero=True)
    company_id = _company_of(db, warehouse_id)
    link = _lock_link(db, warehouse_id, product_id, create=True)

    delta = new_quantity - link.quantity
    link.quantity = new_quantity
    if new_price is not None and link.price != new_price:
        link.price = new_price

    if link.reserved_quantity > new_quantity:
        logger.warning(
            "Stock of product %s in warehouse %s set to %s below reserved %s, clamping reservation",
            product_id, warehouse_id, new_quantity, link.reserved_quantity,
        )
        link.reserved_quantity = new_quantity
    _check(link)

    if delta != 0:
        movement_type = MovementType.adjustment_plus if delta > 0 else MovementType.adjustment_minus
        _record(
            db,
            company_id=company_id,
            product_id=product_id,
            movement_type=movement_type,
            quantity=abs(delta),
            to_warehouse_id=warehouse_id if delta > 0 else None,
            from_warehouse_id=warehouse_id if delta < 0 else None,
            reason=reason or "stock_adjustment",
            actor=actor,
        )
        _emit_changed(db, company_id, link, movement_type)
    db.flush()
    return delta


def move(
    db: Session,
    *,
    from_warehouse_id: int,
    to_warehouse_id: int,
    product_id: int,
    quantity: Decimal,
    reason: str | None = None,
    actor: str | None = None,
) -> None:
    if from_warehouse_id == to_warehouse_id:
        raise ValidationError("from_warehouse_id and to_warehouse_id must differ")
    quantity = validate_quantity(db, product_id, quantity)
    company_id = _company_of(db, from_warehouse_id)
    if _company_of(db, to_warehouse_id) != company_id:
        raise ValidationError("Cannot move stock between companies")

    # lock in a stable order so two opposite moves cannot deadlock
    first, second = sorted((from_warehouse_id, to_warehouse_id))
    locked = {
        first: _lock_link(db, first, product_id, create=True),
        second: _lock_link(db, second, product_id, create=True),
    }
    src, dst = locked[from_warehouse_id], locked[to_warehouse_id]

    if quantity > src.available_quantity:
        raise InsufficientStock(product_id, quantity, src.available_quantity)

    src.quantity -= quantity
    dst.quantity += quantity
    if dst.price is None and src.price is not None:
        dst.price = src.price
    _check(src)
    _check(dst)

    _record(
        db,
        company_id=company_id,
        product_id=product_id,
        movement_type=MovementType.transfer,
        quantity=quantity,
        from_warehouse_id=from_warehouse_id,
        to_warehouse_id=to_warehouse_id,
        reason=reason or "transfer",
        actor=actor,
    )
    _emit_changed(db, company_id, src, MovementType.transfer)
    _emit_changed(db, company_id, dst, MovementType.transfer)
    db.flush()


def get_or_create_virtual_warehouse(db: Session, *, company_id: int, supplier_id: int, supplier_name: str) -> Warehouse:
    wh = (
        db.execute(
            select(Warehouse)
            .where(Warehouse.company_id == company_id)
            .where(Warehouse.type == WarehouseType.virtual)
            .where(Warehouse.supplier_id == supplier_id)
        )
        .scalars()
        .first()
    )
    if wh:
        return wh

    wh = Warehouse(
        company_id=company_id,
        name=f"{supplier_name} (drop-ship)",
        type=WarehouseType.virtual,
        supplier_id=supplier_id,
        # physical stock is preferred over supplier pools
        priority=-100,
    )
    db.add(wh)
    db.flush()
    logger.info("Created virtual warehouse %s for supplier %s", wh.id, supplier_id)
    return wh
