from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backend.app.api.deps import get_company_id, get_ctx, get_db, ok
from backend.app.core.context import AppContext
from backend.app.db.models.core_types import SupplierOrderStatus
from backend.app.db.session import atomic
from backend.services import procurement

router = APIRouter()


# ---------- Schemas ----------
class LineUpdate(BaseModel):
    quantity: Decimal = Field(gt=0)


class LineRemove(BaseModel):
    reason: str = Field(default="manual_removal", min_length=1, max_length=64)
    notes: str | None = None
    actor: str | None = Field(default=None, max_length=64)


class CancelRequest(BaseModel):
    reason: str = Field(default="manual_cancel", min_length=1, max_length=255)


def _summary(order) -> dict:
    return {
        "id": order.id,
        "status": order.status.value,
        "total_amount": order.total_amount,
        "currency": order.currency,
        "external_order_id": order.external_order_id,
        "error_message": order.error_message,
    }


# ---------- Procurement runs ----------
@router.post("/procurement/channels/{channel_id}/run")
async def run_channel_procurement(
    channel_id: int,
    company_id: int = Depends(get_company_id),
    ctx: AppContext = Depends(get_ctx),
):
    result = await procurement.run_procurement(
        ctx.session_factory,
        ctx.adapter_for,
        company_id=company_id,
        channel_id=channel_id,
        lock_ttl=ctx.settings.RUN_LOCK_TTL_SECONDS,
    )
    return ok(
        {
            "batch_id": result.batch_id,
            "collected": result.collected,
            "in_stock": result.in_stock,
            "ordered": result.ordered,
            "supplier_order_ids": result.supplier_order_ids,
            "unfulfillable": result.unfulfillable,
            "sent": result.sent,
            "send_errors": result.send_errors,
        }
    )


# ---------- Supplier orders ----------
@router.get("/supplier-orders")
def list_supplier_orders(
    status: SupplierOrderStatus | None = SupplierOrderStatus.draft,
    supplier_id: int | None = None,
    batch_id: str | None = None,
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
):
    return ok(
        procurement.list_supplier_orders(
            db, company_id=company_id, status=status, supplier_id=supplier_id, batch_id=batch_id
        )
    )


@router.get("/supplier-orders/{order_id}")
def get_supplier_order(order_id: int, company_id: int = Depends(get_company_id), db: Session = Depends(get_db)):
    return ok(procurement.get_supplier_order(db, company_id=company_id, order_id=order_id))


@router.post("/supplier-orders/{order_id}/confirm")
def confirm_supplier_order(order_id: int, company_id: int = Depends(get_company_id), db: Session = Depends(get_db)):
    with atomic(db):
        order = procurement.confirm_supplier_order(db, company_id=company_id, order_id=order_id)
    return ok(_summary(order))


@router.post("/supplier-orders/{order_id}/send")
async def send_supplier_order(
    order_id: int,
    company_id: int = Depends(get_company_id),
    ctx: AppContext = Depends(get_ctx),
):
    order = await procurement.send_supplier_order(
        ctx.session_factory, ctx.adapter_for, company_id=company_id, order_id=order_id
    )
    return ok(_summary(order))


@router.patch("/supplier-orders/{order_id}/lines/{line_id}")
def update_line(
    order_id: int,
    line_id: int,
    payload: LineUpdate,
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
):
    with atomic(db):
        line = procurement.update_line_quantity(
            db, company_id=company_id, order_id=order_id, line_id=line_id, quantity=payload.quantity
        )
        total = line.order.total_amount
    return ok({"line_id": line.id, "quantity": line.quantity, "total_amount": total})


@router.delete("/supplier-orders/{order_id}/lines/{line_id}")
def remove_line(
    order_id: int,
    line_id: int,
    payload: LineRemove | None = None,
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
):
    payload = payload or LineRemove()
    with atomic(db):
        created = procurement.remove_line(
            db,
            company_id=company_id,
            order_id=order_id,
            line_id=line_id,
            reason=payload.reason,
            notes=payload.notes,
            actor=payload.actor,
        )
    return ok({"overrides_created": created})


@router.post("/supplier-orders/{order_id}/cancel")
async def cancel_supplier_order(
    order_id: int,
    payload: CancelRequest | None = None,
    company_id: int = Depends(get_company_id),
    ctx: AppContext = Depends(get_ctx),
):
    payload = payload or CancelRequest()
    order = await procurement.cancel_supplier_order(
        ctx.session_factory, ctx.adapter_for, company_id=company_id, order_id=order_id, reason=payload.reason
    )
    return ok(_summary(order))
