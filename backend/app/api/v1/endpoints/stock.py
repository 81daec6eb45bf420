from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.api.deps import get_company_id, get_db, ok
from backend.app.core.errors import NotFoundError
from backend.app.db.models.models_v1 import StockMovement, Warehouse, WarehouseStockLink
from backend.app.db.session import atomic
from backend.services import inventory

router = APIRouter(prefix="/stock")


# ---------- Schemas ----------
class ReserveCreate(BaseModel):
    product_id: int
    quantity: Decimal = Field(gt=0)
    preferred_warehouse_id: int | None = None
    allow_partial: bool = False
    order_ref: str | None = Field(default=None, max_length=64)


class WarehouseQty(BaseModel):
    warehouse_id: int
    product_id: int
    quantity: Decimal = Field(gt=0)
    order_ref: str | None = Field(default=None, max_length=64)
    reason: str | None = Field(default=None, max_length=255)


class StockAdjust(BaseModel):
    warehouse_id: int
    product_id: int
    quantity: Decimal = Field(ge=0)
    price: Decimal | None = Field(default=None, ge=0)
    reason: str | None = Field(default=None, max_length=255)


class TransferCreate(BaseModel):
    product_id: int
    from_warehouse_id: int
    to_warehouse_id: int
    quantity: Decimal = Field(gt=0)
    reason: str | None = Field(default=None, max_length=255)


# ---------- Helpers ----------
def _own_warehouse(db: Session, company_id: int, warehouse_id: int) -> Warehouse:
    wh = db.get(Warehouse, warehouse_id)
    if wh is None or wh.company_id != company_id:
        raise NotFoundError(f"Warehouse {warehouse_id} not found")
    return wh


def _link_out(link: WarehouseStockLink) -> dict:
    return {
        "warehouse_id": link.warehouse_id,
        "product_id": link.product_id,
        "quantity": link.quantity,
        "reserved_quantity": link.reserved_quantity,
        "available_quantity": link.available_quantity,
        "price": link.price,
    }


# ---------- Endpoints ----------
@router.get("")
def get_stock(
    warehouse_id: int | None = None,
    product_id: int | None = None,
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
):
    """Stock links (read only). available_quantity is derived, never stored."""
    stmt = (
        select(WarehouseStockLink)
        .join(Warehouse, Warehouse.id == WarehouseStockLink.warehouse_id)
        .where(Warehouse.company_id == company_id)
        .order_by(WarehouseStockLink.warehouse_id, WarehouseStockLink.product_id)
    )
    if warehouse_id is not None:
        stmt = stmt.where(WarehouseStockLink.warehouse_id == warehouse_id)
    if product_id is not None:
        stmt = stmt.where(WarehouseStockLink.product_id == product_id)
    return ok([_link_out(link) for link in db.execute(stmt).scalars()])


@router.get("/movements")
def list_movements(
    product_id: int | None = None,
    limit: int = 100,
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
):
    stmt = (
        select(StockMovement)
        .where(StockMovement.company_id == company_id)
        .order_by(StockMovement.id.desc())
        .limit(min(max(limit, 1), 1000))
    )
    if product_id is not None:
        stmt = stmt.where(StockMovement.product_id == product_id)
    return ok(
        [
            {
                "id": mv.id,
                "product_id": mv.product_id,
                "from_warehouse_id": mv.from_warehouse_id,
                "to_warehouse_id": mv.to_warehouse_id,
                "movement_type": mv.movement_type.value,
                "quantity": mv.quantity,
                "reason": mv.reason,
                "order_ref": mv.order_ref,
                "actor": mv.actor,
                "created_at": mv.created_at,
            }
            for mv in db.execute(stmt).scalars()
        ]
    )


@router.post("/reserve")
def reserve_stock(payload: ReserveCreate, company_id: int = Depends(get_company_id), db: Session = Depends(get_db)):
    with atomic(db):
        res = inventory.reserve(
            db,
            company_id=company_id,
            product_id=payload.product_id,
            quantity=payload.quantity,
            preferred_warehouse_id=payload.preferred_warehouse_id,
            allow_partial=payload.allow_partial,
            order_ref=payload.order_ref,
        )
    return ok(
        {
            "warehouse_id": res.warehouse_id,
            "quantity": res.quantity,
            "unit_price": res.unit_price,
            "shortfall": res.shortfall,
        }
    )


@router.post("/release")
def release_stock(payload: WarehouseQty, company_id: int = Depends(get_company_id), db: Session = Depends(get_db)):
    with atomic(db):
        _own_warehouse(db, company_id, payload.warehouse_id)
        released = inventory.release(
            db,
            warehouse_id=payload.warehouse_id,
            product_id=payload.product_id,
            quantity=payload.quantity,
            reason=payload.reason,
            order_ref=payload.order_ref,
        )
    return ok({"released": released})


@router.post("/confirm")
def confirm_stock(payload: WarehouseQty, company_id: int = Depends(get_company_id), db: Session = Depends(get_db)):
    with atomic(db):
        _own_warehouse(db, company_id, payload.warehouse_id)
        link = inventory.confirm(
            db,
            warehouse_id=payload.warehouse_id,
            product_id=payload.product_id,
            quantity=payload.quantity,
            order_ref=payload.order_ref,
            reason=payload.reason,
        )
    return ok(_link_out(link))


@router.post("/adjust")
def adjust_stock(payload: StockAdjust, company_id: int = Depends(get_company_id), db: Session = Depends(get_db)):
    with atomic(db):
        _own_warehouse(db, company_id, payload.warehouse_id)
        delta = inventory.set_stock(
            db,
            warehouse_id=payload.warehouse_id,
            product_id=payload.product_id,
            new_quantity=payload.quantity,
            new_price=payload.price,
            reason=payload.reason,
        )
    return ok({"delta": delta})


@router.post("/transfer")
def transfer_stock(payload: TransferCreate, company_id: int = Depends(get_company_id), db: Session = Depends(get_db)):
    with atomic(db):
        _own_warehouse(db, company_id, payload.from_warehouse_id)
        inventory.move(
            db,
            from_warehouse_id=payload.from_warehouse_id,
            to_warehouse_id=payload.to_warehouse_id,
            product_id=payload.product_id,
            quantity=payload.quantity,
            reason=payload.reason,
        )
    return ok({"product_id": payload.product_id, "quantity": payload.quantity})
