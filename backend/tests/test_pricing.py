from decimal import Decimal

import pytest
from sqlalchemy import func, select

from backend.app.core.errors import ValidationError
from backend.app.db.models.core_types import MarkupType, RoundingRule
from backend.app.db.models.models_v1 import (
    ExchangeRate,
    MarketplacePriceLink,
    OutboxMessage,
    PriceHistory,
)
from backend.app.schemas.pricing import PricingRules
from backend.services.currency import RateTable, load_rate_table, upsert_exchange_rates
from backend.services.outbox import TOPIC_PRICE_RECALCULATE
from backend.services.pricing import (
    OfferQuote,
    derive_price,
    recalculate_company_prices,
    recalculate_product,
    set_pricing_rules,
    update_exchange_rates,
    upsert_listing,
)

RATES = RateTable(reference="RUB", rates={"USD": Decimal(90)})
RULES = PricingRules(
    markup_type=MarkupType.percentage,
    markup_value=Decimal(20),
    commission_percentage=Decimal(10),
    rounding_rule=RoundingRule.nearest_10,
)


def test_cheapest_offer_markup_commission_rounding():
    """
    GIVEN
    - two offers: 100 RUB and 12 USD (rate 90)
    - 20% markup, 10% commission, nearest_10 rounding

    THEN
    - base 100, 120 after markup, 133.33 after commission, 130.00 final
    """
    offers = [
        OfferQuote(supplier_id=1, cost_price=Decimal(100), currency="RUB"),
        OfferQuote(supplier_id=2, cost_price=Decimal(12), currency="USD"),
    ]

    result = derive_price(offers, RULES, RATES)

    assert result.final_price == Decimal("130.00")
    assert result.supplier_id == 1
    assert result.supplier_price == Decimal(100)
    assert result.trail == [
        "Supplier 1: 100.00 RUB = 100.00 RUB",
        "Supplier 2: 12.00 USD = 1080.00 RUB",
        "Selected supplier price: 100.00 RUB",
        "Applied 20% markup: 120.00",
        "Adjusted for 10% commission: 133.33",
        "Applied rounding (nearest_10): 130.00",
    ]


def test_same_inputs_same_price_and_trail_regardless_of_offer_order():
    offers = [
        OfferQuote(supplier_id=2, cost_price=Decimal(12), currency="USD"),
        OfferQuote(supplier_id=1, cost_price=Decimal(100), currency="RUB"),
    ]
    first = derive_price(offers, RULES, RATES)
    second = derive_price(list(reversed(offers)), RULES, RATES)

    assert first.final_price == second.final_price
    assert first.trail == second.trail


def test_enforced_mrc_raises_price():
    offers = [OfferQuote(supplier_id=1, cost_price=Decimal(100), currency="RUB", mrc_price=Decimal(200), enforce_mrc=True)]

    result = derive_price(offers, PricingRules(), RATES)

    assert result.final_price == Decimal("200.00")
    assert "Price below MRC (200.00), using MRC" in result.trail


def test_mrc_without_enforcement_is_ignored():
    offers = [OfferQuote(supplier_id=1, cost_price=Decimal(100), currency="RUB", mrc_price=Decimal(200))]

    assert derive_price(offers, PricingRules(), RATES).final_price == Decimal("100.00")


def test_fixed_markup_expenses_and_bounds():
    rules = PricingRules(
        markup_type=MarkupType.fixed,
        markup_value=Decimal(50),
        max_price=Decimal(160),
    )
    offers = [OfferQuote(supplier_id=1, cost_price=Decimal(100), currency="RUB")]

    result = derive_price(offers, rules, RATES, additional_expenses=Decimal(30))

    assert result.final_price == Decimal("160.00")
    assert result.trail[-1] == "Applied maximum price: 160.00"


def test_channel_currency_conversion():
    offers = [OfferQuote(supplier_id=1, cost_price=Decimal(900), currency="RUB")]

    result = derive_price(offers, PricingRules(), RATES, channel_currency="USD")

    assert result.final_price == Decimal("10.00")
    assert result.currency == "USD"


def test_no_offers_keeps_current_price():
    result = derive_price([], RULES, RATES, current_price=Decimal("99.90"))

    assert result.calculated is False
    assert result.final_price == Decimal("99.90")


def test_pricing_rules_validation():
    with pytest.raises(ValueError):
        PricingRules(commission_percentage=Decimal(100))
    with pytest.raises(ValueError):
        PricingRules(min_price=Decimal(10), max_price=Decimal(5))


# ---------- DB-backed ----------
def _listing(factory, db_session):
    company = factory.company()
    channel = factory.channel(company, pricing_rules=RULES.model_dump(mode="json"))
    product = factory.product(company)
    factory.offer(product, factory.supplier(company, "Local"), "100", "RUB")
    factory.offer(product, factory.supplier(company, "Abroad"), "12", "USD")
    db_session.add(ExchangeRate(currency_code="USD", rate=Decimal(90)))
    link = MarketplacePriceLink(product_id=product.id, channel_id=channel.id, calculation_trail=[])
    db_session.add(link)
    db_session.flush()
    return company, channel, product, link


def test_recalculate_product_writes_price_and_history_once(factory, db_session):
    company, channel, product, link = _listing(factory, db_session)
    rates = RateTable(reference="RUB", rates={"USD": Decimal(90)})

    # ---------- ACT ----------
    recalculate_product(db_session, company_id=company.id, product_id=product.id, rates=rates)
    recalculate_product(db_session, company_id=company.id, product_id=product.id, rates=rates)

    # ---------- ASSERT ----------
    assert link.price == Decimal("130.00")
    assert link.price_calculated_at is not None
    assert link.rules_snapshot["rounding_rule"] == "nearest_10"
    history = db_session.execute(select(PriceHistory)).scalars().all()
    assert len(history) == 1
    assert history[0].old_price is None
    assert history[0].new_price == Decimal("130.00")


def test_recalculate_without_offers_keeps_price(factory, db_session):
    company = factory.company()
    channel = factory.channel(company)
    product = factory.product(company)
    link = MarketplacePriceLink(product_id=product.id, channel_id=channel.id, price=Decimal(500), calculation_trail=[])
    db_session.add(link)
    db_session.flush()

    recalculate_product(db_session, company_id=company.id, product_id=product.id, rates=RateTable(reference="RUB"))

    assert link.price == Decimal(500)
    assert link.calculation_trail == ["No available supplier offers, price unchanged"]
    assert db_session.scalar(select(func.count(PriceHistory.id))) == 0


def test_recalculate_company_prices_in_batches(factory, db_session, session_factory):
    company, channel, product, link = _listing(factory, db_session)
    other = factory.product(company, "SKU-2")
    factory.offer(other, factory.supplier(company, "Third"), "45", "RUB")
    db_session.add(MarketplacePriceLink(product_id=other.id, channel_id=channel.id, calculation_trail=[]))
    db_session.commit()

    result = recalculate_company_prices(session_factory, company.id, batch_size=1)

    assert (result.processed, result.succeeded, result.failed) == (2, 2, 0)
    db_session.expire_all()
    prices = dict(db_session.execute(select(MarketplacePriceLink.product_id, MarketplacePriceLink.price)).all())
    assert prices[product.id] == Decimal("130.00")
    # 45 * 1.2 / 0.9 = 60
    assert prices[other.id] == Decimal("60.00")


def test_set_pricing_rules_validates_and_queues_listings(factory, db_session):
    company, channel, product, link = _listing(factory, db_session)

    with pytest.raises(ValidationError):
        set_pricing_rules(db_session, company_id=company.id, channel_id=channel.id, rules={"commission_percentage": 100})

    set_pricing_rules(db_session, company_id=company.id, channel_id=channel.id, rules={"markup_value": "15"})

    assert channel.pricing_rules["markup_value"] == "15"
    msg = db_session.execute(select(OutboxMessage).where(OutboxMessage.topic == TOPIC_PRICE_RECALCULATE)).scalar_one()
    assert msg.payload == {"company_id": company.id, "product_ids": [product.id]}


def test_upsert_listing_and_rate_update_queue_recalculation(factory, db_session):
    company = factory.company()
    channel = factory.channel(company)
    product = factory.product(company)

    link = upsert_listing(db_session, company_id=company.id, product_id=product.id, channel_id=channel.id,
                          additional_expenses=Decimal(25))
    again = upsert_listing(db_session, company_id=company.id, product_id=product.id, channel_id=channel.id,
                           additional_expenses=Decimal(30))
    update_exchange_rates(db_session, {"USD": Decimal(95)})

    assert again.id == link.id
    assert again.additional_expenses == Decimal(30)
    payloads = [m.payload for m in db_session.execute(select(OutboxMessage).order_by(OutboxMessage.id)).scalars()]
    assert payloads[-1] == {"company_id": company.id, "product_ids": None}
    assert len(payloads) == 3


def test_usd_reference_company_prices_euro_offer_in_dollars(db_session):
    upsert_exchange_rates(db_session, {"USD": Decimal(90), "EUR": Decimal(98)})
    rates = load_rate_table(db_session, "USD", base="RUB")

    result = derive_price([OfferQuote(supplier_id=1, cost_price=Decimal(10), currency="EUR")], PricingRules(), rates)

    assert result.final_price == Decimal("10.89")
    assert result.currency == "USD"
