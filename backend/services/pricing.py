"""
Price calculation engine.

Derives a marketplace sell price from the product's supplier offers:

    base      = min(offer cost converted to reference currency)
    + markup  (percentage or fixed)
    + additional expenses of the listing
    / (1 - commission%)           gross-up, before rounding
    -> rounding rule
    -> clamp up to the highest enforced MRC
    -> clamp to [min_price, max_price]
    -> convert to channel currency, round to cents

Every step that changes the value writes a line to the calculation trail.
Same offers + rules + rates always give the same price and trail.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Sequence

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from backend.app.core.errors import DomainError, NotFoundError, ValidationError
from backend.app.db.models.core_types import MarkupType, RoundingRule
from backend.app.db.models.models_v1 import (
    Company,
    MarketplacePriceLink,
    PriceHistory,
    Product,
    SalesChannel,
    SupplierOffer,
    utcnow,
)
from backend.app.schemas.pricing import PricingRules
from backend.services.currency import (
    RateTable,
    apply_rounding,
    from_reference,
    load_rate_table,
    round_money,
    to_reference,
    upsert_exchange_rates,
)
from backend.services.outbox import TOPIC_PRICE_RECALCULATE, enqueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OfferQuote:
    supplier_id: int
    cost_price: Decimal | None
    currency: str | None
    mrc_price: Decimal | None = None
    enforce_mrc: bool = False


@dataclass
class PriceResult:
    final_price: Decimal
    trail: list[str] = field(default_factory=list)
    supplier_id: int | None = None
    supplier_price: Decimal | None = None
    currency: str | None = None
    calculated: bool = True


@dataclass
class BatchResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: list[dict] = field(default_factory=list)

    def add_error(self, limit: int, **entry) -> None:
        self.failed += 1
        if len(self.errors) < limit:
            self.errors.append(entry)


def _fmt(value: Decimal) -> str:
    return f"{round_money(value):f}"


def rules_for(channel: SalesChannel) -> PricingRules:
    return PricingRules.model_validate(channel.pricing_rules or {})


def derive_price(
    offers: Sequence[OfferQuote],
    rules: PricingRules,
    rates: RateTable,
    *,
    additional_expenses: Decimal = Decimal(0),
    channel_currency: str | None = None,
    current_price: Decimal | None = None,
) -> PriceResult:
    """Pure price derivation, no I/O."""
    ref = rates.reference
    trail: list[str] = []

    if not offers:
        trail.append("No available supplier offers, price unchanged")
        return PriceResult(
            final_price=current_price if current_price is not None else Decimal(0),
            trail=trail,
            currency=channel_currency or ref,
            calculated=False,
        )

    best: OfferQuote | None = None
    base: Decimal | None = None
    mrc: Decimal | None = None

    for offer in sorted(offers, key=lambda o: o.supplier_id):
        converted = to_reference(offer.cost_price, offer.currency, rates)
        trail.append(
            f"Supplier {offer.supplier_id}: {_fmt(offer.cost_price or Decimal(0))} "
            f"{offer.currency or ref} = {_fmt(converted)} {ref}"
        )
        if base is None or converted < base:
            base, best = converted, offer

        if offer.enforce_mrc and offer.mrc_price:
            mrc_converted = to_reference(offer.mrc_price, offer.currency, rates)
            if mrc is None or mrc_converted > mrc:
                mrc = mrc_converted

    price = base
    trail.append(f"Selected supplier price: {_fmt(price)} {ref}")

    if rules.markup_value:
        if rules.markup_type is MarkupType.percentage:
            price = price * (1 + rules.markup_value / 100)
            trail.append(f"Applied {rules.markup_value}% markup: {_fmt(price)}")
        else:
            price = price + rules.markup_value
            trail.append(f"Applied {rules.markup_value} {ref} fixed markup: {_fmt(price)}")

    if additional_expenses and additional_expenses > 0:
        price = price + additional_expenses
        trail.append(f"Added additional expenses: {_fmt(additional_expenses)} {ref}")

    if rules.commission_percentage > 0:
        price = price / (1 - rules.commission_percentage / 100)
        trail.append(f"Adjusted for {rules.commission_percentage}% commission: {_fmt(price)}")

    if rules.rounding_rule is not RoundingRule.none:
        rounded = apply_rounding(price, rules.rounding_rule)
        if rounded != price:
            price = rounded
            trail.append(f"Applied rounding ({rules.rounding_rule.value}): {_fmt(price)}")

    if mrc is not None and price < mrc:
        logger.info("Calculated price %s below MRC %s, using MRC", _fmt(price), _fmt(mrc))
        price = mrc
        trail.append(f"Price below MRC ({_fmt(mrc)}), using MRC")

    if rules.min_price is not None and price < rules.min_price:
        price = rules.min_price
        trail.append(f"Applied minimum price: {_fmt(price)}")

    if rules.max_price is not None and price > rules.max_price:
        price = rules.max_price
        trail.append(f"Applied maximum price: {_fmt(price)}")

    currency = channel_currency or ref
    if currency != ref:
        price = from_reference(price, currency, rates)
        trail.append(f"Converted to {currency}: {_fmt(price)}")

    return PriceResult(
        final_price=round_money(price),
        trail=trail,
        supplier_id=best.supplier_id if best else None,
        supplier_price=base,
        currency=currency,
    )


def available_offers(db: Session, product_id: int) -> list[OfferQuote]:
    rows = db.execute(
        select(SupplierOffer)
        .where(SupplierOffer.product_id == product_id)
        .where(SupplierOffer.is_available.is_(True))
        .where(SupplierOffer.cost_price.is_not(None))
        .order_by(SupplierOffer.supplier_id)
    ).scalars()
    return [
        OfferQuote(
            supplier_id=o.supplier_id,
            cost_price=o.cost_price,
            currency=o.currency,
            mrc_price=o.mrc_price,
            enforce_mrc=o.enforce_mrc,
        )
        for o in rows
    ]


def calculate(db: Session, product: Product, link: MarketplacePriceLink, rates: RateTable) -> PriceResult:
    """Price for one listing. Rules and rates are read once for the whole call."""
    rules = rules_for(link.channel)
    return derive_price(
        available_offers(db, product.id),
        rules,
        rates,
        additional_expenses=link.additional_expenses or Decimal(0),
        channel_currency=link.channel.currency,
        current_price=link.price,
    )


def recalculate_product(
    db: Session,
    *,
    company_id: int,
    product_id: int,
    rates: RateTable,
    reason: str = "automatic_calculation",
) -> list[MarketplacePriceLink]:
    product = db.get(Product, product_id)
    if product is None or product.company_id != company_id:
        raise NotFoundError(f"Product {product_id} not found")

    links = db.execute(
        select(MarketplacePriceLink)
        .join(SalesChannel, SalesChannel.id == MarketplacePriceLink.channel_id)
        .where(MarketplacePriceLink.product_id == product_id)
        .where(SalesChannel.company_id == company_id)
        .order_by(MarketplacePriceLink.id)
        .with_for_update(of=MarketplacePriceLink)
    ).scalars().all()

    updated: list[MarketplacePriceLink] = []
    for link in links:
        result = calculate(db, product, link, rates)
        if not result.calculated:
            logger.info("No offers for product %s on channel %s, price kept", product_id, link.channel_id)
            link.calculation_trail = result.trail
            continue

        old_price = link.price
        link.price = result.final_price
        link.supplier_id = result.supplier_id
        link.calculation_trail = result.trail
        link.rules_snapshot = rules_for(link.channel).model_dump(mode="json")
        link.price_calculated_at = utcnow()

        if old_price is None or Decimal(old_price) != result.final_price:
            db.add(
                PriceHistory(
                    product_id=product_id,
                    channel_id=link.channel_id,
                    old_price=old_price,
                    new_price=result.final_price,
                    currency=result.currency,
                    change_reason=reason,
                )
            )
        updated.append(link)
        logger.debug("Price for product %s on channel %s: %s", product_id, link.channel_id, result.final_price)

    db.flush()
    return updated


def reference_currency(db: Session, company_id: int) -> str:
    company = db.get(Company, company_id)
    if company is None:
        raise NotFoundError(f"Company {company_id} not found")
    return company.reference_currency


def recalculate_company_prices(
    session_factory: sessionmaker[Session],
    company_id: int,
    *,
    product_ids: Iterable[int] | None = None,
    batch_size: int = 100,
    max_errors: int = 100,
) -> BatchResult:
    """
    Bulk recalculation in batches. One product failing does not stop the
    batch: it is rolled back to its savepoint and reported.
    """
    result = BatchResult()
    with session_factory() as db:
        rates = load_rate_table(db, reference_currency(db, company_id))
        stmt = select(Product.id).where(Product.company_id == company_id).where(Product.is_active.is_(True))
        if product_ids is not None:
            stmt = stmt.where(Product.id.in_(sorted(set(product_ids))))
        ids = list(db.execute(stmt.order_by(Product.id)).scalars())

    logger.info("Price recalculation for company %s: %d products", company_id, len(ids))

    for start in range(0, len(ids), batch_size):
        chunk = ids[start:start + batch_size]
        with session_factory() as db:
            for pid in chunk:
                result.processed += 1
                savepoint = db.begin_nested()
                try:
                    recalculate_product(db, company_id=company_id, product_id=pid, rates=rates)
                    savepoint.commit()
                    result.succeeded += 1
                except (DomainError, PydanticValidationError) as exc:
                    savepoint.rollback()
                    logger.error("Price recalculation failed for product %s: %s", pid, exc)
                    result.add_error(max_errors, product_id=pid, error=str(exc))
            db.commit()

    logger.info(
        "Price recalculation for company %s done: processed=%d succeeded=%d failed=%d",
        company_id, result.processed, result.succeeded, result.failed,
    )
    return result


def set_pricing_rules(db: Session, *, company_id: int, channel_id: int, rules: PricingRules | dict) -> SalesChannel:
    """Validate and store a channel's pricing rules, then queue a recalculation."""
    try:
        validated = rules if isinstance(rules, PricingRules) else PricingRules.model_validate(rules)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid pricing rules: {exc.errors()[0]['msg']}") from exc

    channel = db.get(SalesChannel, channel_id, with_for_update=True)
    if channel is None or channel.company_id != company_id:
        raise NotFoundError(f"Sales channel {channel_id} not found")

    channel.pricing_rules = validated.model_dump(mode="json")
    product_ids = list(
        db.execute(
            select(MarketplacePriceLink.product_id).where(MarketplacePriceLink.channel_id == channel_id)
        ).scalars()
    )
    if product_ids:
        enqueue(db, TOPIC_PRICE_RECALCULATE, {"company_id": company_id, "product_ids": sorted(product_ids)})
    db.flush()
    logger.info("Pricing rules updated for channel %s, %d listings queued", channel_id, len(product_ids))
    return channel


def upsert_listing(
    db: Session,
    *,
    company_id: int,
    product_id: int,
    channel_id: int,
    additional_expenses: Decimal = Decimal(0),
) -> MarketplacePriceLink:
    """Put a product on a channel (or update its extra expenses) and queue its price."""
    product = db.get(Product, product_id)
    channel = db.get(SalesChannel, channel_id)
    if product is None or product.company_id != company_id:
        raise NotFoundError(f"Product {product_id} not found")
    if channel is None or channel.company_id != company_id:
        raise NotFoundError(f"Sales channel {channel_id} not found")
    if additional_expenses < 0:
        raise ValidationError("additional_expenses must not be negative")

    link = (
        db.execute(
            select(MarketplacePriceLink)
            .where(MarketplacePriceLink.product_id == product_id)
            .where(MarketplacePriceLink.channel_id == channel_id)
            .with_for_update()
        )
        .scalar_one_or_none()
    )
    if link is None:
        link = MarketplacePriceLink(product_id=product_id, channel_id=channel_id, calculation_trail=[])
        db.add(link)
    link.additional_expenses = additional_expenses
    enqueue(db, TOPIC_PRICE_RECALCULATE, {"company_id": company_id, "product_ids": [product_id]})
    db.flush()
    return link


def update_exchange_rates(db: Session, rates: dict[str, Decimal]) -> int:
    """Store new rates and queue a full recalculation for every active company."""
    count = upsert_exchange_rates(db, rates)
    company_ids = db.execute(select(Company.id).where(Company.is_active.is_(True)).order_by(Company.id)).scalars()
    for company_id in company_ids:
        enqueue(db, TOPIC_PRICE_RECALCULATE, {"company_id": company_id, "product_ids": None})
    db.flush()
    return count
