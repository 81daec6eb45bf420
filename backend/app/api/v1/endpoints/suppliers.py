from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.api.deps import get_company_id, get_ctx, get_db, ok
from backend.app.core.context import AppContext
from backend.app.core.errors import InvalidStateError, NotFoundError
from backend.app.db.models.models_v1 import Supplier
from backend.app.db.session import atomic
from backend.jobs.tasks import sync_one_supplier

router = APIRouter(prefix="/suppliers")


class SupplierCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    adapter_type: str = Field(min_length=1, max_length=32)
    api_config: dict[str, Any] = Field(default_factory=dict)
    sync_interval_minutes: int = Field(default=60, gt=0)


def _get_supplier(db: Session, company_id: int, supplier_id: int) -> Supplier:
    supplier = db.get(Supplier, supplier_id)
    if supplier is None or supplier.company_id != company_id:
        raise NotFoundError(f"Supplier {supplier_id} not found")
    return supplier


@router.get("")
def list_suppliers(company_id: int = Depends(get_company_id), db: Session = Depends(get_db)):
    rows = db.execute(select(Supplier).where(Supplier.company_id == company_id).order_by(Supplier.name)).scalars()
    return ok(
        [
            {
                "id": s.id,
                "name": s.name,
                "adapter_type": s.adapter_type,
                "is_active": s.is_active,
                "sync_interval_minutes": s.sync_interval_minutes,
                "last_sync_at": s.last_sync_at,
            }
            for s in rows
        ]
    )


@router.post("")
def create_supplier(
    payload: SupplierCreate,
    company_id: int = Depends(get_company_id),
    ctx: AppContext = Depends(get_ctx),
    db: Session = Depends(get_db),
):
    with atomic(db):
        exists = db.execute(
            select(Supplier.id).where(Supplier.company_id == company_id).where(Supplier.name == payload.name)
        ).first()
        if exists:
            raise InvalidStateError("Supplier already exists", name=payload.name)

        supplier = Supplier(company_id=company_id, **payload.model_dump())
        # rejects unknown adapter codes and missing config keys before anything is stored
        ctx.registry.build(supplier)
        db.add(supplier)
        db.flush()
    return ok({"id": supplier.id, "name": supplier.name})


@router.post("/{supplier_id}/sync")
async def trigger_sync(
    supplier_id: int,
    company_id: int = Depends(get_company_id),
    ctx: AppContext = Depends(get_ctx),
):
    with ctx.session() as db:
        _get_supplier(db, company_id, supplier_id)
    result = await sync_one_supplier(ctx, company_id, supplier_id)
    return ok(
        {
            "run_id": result.run_id,
            "processed": result.processed,
            "succeeded": result.succeeded,
            "failed": result.failed,
            "created": result.created,
            "updated": result.updated,
            "retired": result.retired,
            "errors": result.errors,
        }
    )


@router.post("/{supplier_id}/test-connection")
async def test_connection(
    supplier_id: int,
    company_id: int = Depends(get_company_id),
    ctx: AppContext = Depends(get_ctx),
):
    with ctx.session() as db:
        adapter = ctx.adapter_for(_get_supplier(db, company_id, supplier_id))
    try:
        check = await adapter.test_connection()
    finally:
        await adapter.aclose()
    return ok({"success": check.success, "message": check.message, "response_time_ms": check.response_time_ms})
