from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.api.deps import get_company_id, get_ctx, get_db, ok
from backend.app.core.context import AppContext
from backend.app.db.models.models_v1 import ExchangeRate, MarketplacePriceLink, SalesChannel
from backend.app.db.session import atomic
from backend.app.schemas.pricing import ExchangeRatesUpdate, PriceLinkRead, PricingRules, RecalculateRequest
from backend.jobs.tasks import recalculate_prices
from backend.services import pricing

router = APIRouter()


class ListingUpsert(BaseModel):
    product_id: int
    additional_expenses: Decimal = Field(default=Decimal(0), ge=0)


@router.get("/exchange-rates")
def list_rates(db: Session = Depends(get_db)):
    rows = db.execute(select(ExchangeRate).order_by(ExchangeRate.currency_code)).scalars()
    return ok([{"currency": r.currency_code, "rate": r.rate, "updated_at": r.updated_at} for r in rows])


@router.put("/exchange-rates")
def update_rates(payload: ExchangeRatesUpdate, db: Session = Depends(get_db)):
    with atomic(db):
        count = pricing.update_exchange_rates(db, payload.rates)
    return ok({"updated": count})


@router.put("/channels/{channel_id}/pricing-rules")
def put_pricing_rules(
    channel_id: int,
    payload: PricingRules,
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
):
    with atomic(db):
        channel = pricing.set_pricing_rules(db, company_id=company_id, channel_id=channel_id, rules=payload)
    return ok({"channel_id": channel.id, "pricing_rules": channel.pricing_rules})


@router.put("/channels/{channel_id}/listings")
def put_listing(
    channel_id: int,
    payload: ListingUpsert,
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
):
    with atomic(db):
        link = pricing.upsert_listing(
            db,
            company_id=company_id,
            product_id=payload.product_id,
            channel_id=channel_id,
            additional_expenses=payload.additional_expenses,
        )
    return ok({"id": link.id, "product_id": link.product_id, "channel_id": link.channel_id})


@router.get("/prices")
def list_prices(
    channel_id: int | None = None,
    product_id: int | None = None,
    company_id: int = Depends(get_company_id),
    db: Session = Depends(get_db),
):
    stmt = (
        select(MarketplacePriceLink)
        .join(SalesChannel, SalesChannel.id == MarketplacePriceLink.channel_id)
        .where(SalesChannel.company_id == company_id)
        .order_by(MarketplacePriceLink.channel_id, MarketplacePriceLink.product_id)
    )
    if channel_id is not None:
        stmt = stmt.where(MarketplacePriceLink.channel_id == channel_id)
    if product_id is not None:
        stmt = stmt.where(MarketplacePriceLink.product_id == product_id)
    return ok([PriceLinkRead.model_validate(link).model_dump() for link in db.execute(stmt).scalars()])


@router.post("/prices/recalculate")
def recalculate(
    payload: RecalculateRequest | None = None,
    company_id: int = Depends(get_company_id),
    ctx: AppContext = Depends(get_ctx),
):
    product_ids = payload.product_ids if payload else None
    result = recalculate_prices(ctx, company_id, product_ids)
    return ok(
        {
            "processed": result.processed,
            "succeeded": result.succeeded,
            "failed": result.failed,
            "errors": result.errors,
        }
    )
