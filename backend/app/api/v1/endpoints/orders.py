from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import get_company_id, get_ctx, get_db, ok
from backend.app.core.context import AppContext
from backend.app.db.session import atomic
from backend.services import orders

router = APIRouter()


class OrderItemCreate(BaseModel):
    product_id: int
    quantity: Decimal = Field(gt=0)
    unit_price: Decimal | None = Field(default=None, ge=0)


class OrderCreate(BaseModel):
    channel_id: int
    external_order_id: str = Field(min_length=1, max_length=128)
    items: list[OrderItemCreate] = Field(min_length=1)


class ReserveRequest(BaseModel):
    preferred_warehouse_id: int | None = None


class CancelRequest(BaseModel):
    reason: str = Field(default="customer_cancel", min_length=1, max_length=255)
    actor: str | None = Field(default=None, max_length=64)


class ShipRequest(BaseModel):
    actor: str | None = Field(default=None, max_length=64)


@router.post("/orders")
def create_order(payload: OrderCreate, company_id: int = Depends(get_company_id), db: Session = Depends(get_db)):
    with atomic(db):
        order = orders.create_order(
            db,
            company_id=company_id,
            channel_id=payload.channel_id,
            external_order_id=payload.external_order_id,
            items=[item.model_dump() for item in payload.items],
        )
        order_id = order.id
    return ok(orders.get_order(db, company_id=company_id, order_id=order_id))


@router.get("/orders/{order_id}")
def get_order(order_id: int, company_id: int = Depends(get_company_id), db: Session = Depends(get_db)):
    return ok(orders.get_order(db, company_id=company_id, order_id=order_id))


@router.post("/orders/{order_id}/reserve")
def reserve_order(
    order_id: int,
    payload: ReserveRequest | None = None,
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
):
    payload = payload or ReserveRequest()
    with atomic(db):
        result = orders.reserve_order_items(
            db, company_id=company_id, order_id=order_id, preferred_warehouse_id=payload.preferred_warehouse_id
        )
    return ok({"reserved": result.reserved, "shortfalls": result.shortfalls})


@router.post("/orders/{order_id}/confirm")
def confirm_order(order_id: int, company_id: int = Depends(get_company_id), db: Session = Depends(get_db)):
    with atomic(db):
        orders.confirm_order(db, company_id=company_id, order_id=order_id)
    return ok(orders.get_order(db, company_id=company_id, order_id=order_id))


@router.post("/orders/{order_id}/cancel")
async def cancel_order(
    order_id: int,
    payload: CancelRequest | None = None,
    company_id: int = Depends(get_company_id),
    ctx: AppContext = Depends(get_ctx),
):
    payload = payload or CancelRequest()
    result = await orders.cancel_order(
        ctx.session_factory,
        ctx.adapter_for,
        company_id=company_id,
        order_id=order_id,
        reason=payload.reason,
        actor=payload.actor,
    )
    return ok(
        {
            "order_id": result.order_id,
            "released": result.released,
            "cancelled_supplier_orders": result.cancelled_supplier_orders,
            "trimmed_supplier_orders": result.trimmed_supplier_orders,
            "kept_supplier_orders": result.kept_supplier_orders,
        }
    )


@router.post("/order-items/{item_id}/ship")
def ship_item(
    item_id: int,
    payload: ShipRequest | None = None,
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
):
    actor = payload.actor if payload else None
    with atomic(db):
        item = orders.ship_order_item(db, company_id=company_id, item_id=item_id, actor=actor)
    return ok({"id": item.id, "status": item.status.value})


@router.post("/order-items/{item_id}/deliver")
def deliver_item(item_id: int, company_id: int = Depends(get_company_id), db: Session = Depends(get_db)):
    with atomic(db):
        item = orders.deliver_order_item(db, company_id=company_id, item_id=item_id)
    return ok({"id": item.id, "status": item.status.value})
