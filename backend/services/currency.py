"""
Currency conversion and price rounding.

Conversion and rounding are pure functions. Amounts are Decimal end to end so a price
derivation is reproducible bit for bit.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.core.config import get_settings
from backend.app.core.errors import ValidationError
from backend.app.db.models.core_types import RoundingRule
from backend.app.db.models.models_v1 import ExchangeRate, utcnow

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

_STEP_RULES: dict[RoundingRule, tuple[Decimal, str]] = {
    RoundingRule.up_10: (Decimal(10), ROUND_CEILING),
    RoundingRule.up_50: (Decimal(50), ROUND_CEILING),
    RoundingRule.up_100: (Decimal(100), ROUND_CEILING),
    RoundingRule.down_10: (Decimal(10), ROUND_FLOOR),
    RoundingRule.down_50: (Decimal(50), ROUND_FLOOR),
    RoundingRule.down_100: (Decimal(100), ROUND_FLOOR),
    RoundingRule.nearest_10: (Decimal(10), ROUND_HALF_UP),
    RoundingRule.nearest_50: (Decimal(50), ROUND_HALF_UP),
    RoundingRule.nearest_100: (Decimal(100), ROUND_HALF_UP),
}

_ENDINGS: dict[RoundingRule, Decimal] = {
    RoundingRule.ending_99: Decimal(99),
    RoundingRule.ending_90: Decimal(90),
}


@dataclass(frozen=True)
class RateTable:
    """
    Snapshot of exchange rates against one reference currency.

    ``rates[code]`` = how many units of the reference currency one unit of
    ``code`` is worth. Read once per calculation so rates never change
    mid-computation.
    """

    reference: str
    rates: Mapping[str, Decimal] = field(default_factory=dict)

    def rate_for(self, currency: str | None) -> Decimal | None:
        if not currency or currency == self.reference:
            return Decimal(1)
        return self.rates.get(currency)


def to_reference(amount: Decimal | None, currency: str | None, table: RateTable) -> Decimal:
    """Convert into the reference currency; missing rates pass the amount through."""
    if amount is None:
        return Decimal(0)
    rate = table.rate_for(currency)
    if rate is None:
        logger.warning("Exchange rate not found for currency %s, amount left unconverted", currency)
        return Decimal(amount)
    return Decimal(amount) * rate


def from_reference(amount: Decimal, currency: str | None, table: RateTable) -> Decimal:
    rate = table.rate_for(currency)
    if rate is None:
        logger.warning("Exchange rate not found for currency %s, amount left unconverted", currency)
        return amount
    return amount / rate


def convert(amount: Decimal, from_currency: str | None, to_currency: str | None, table: RateTable) -> Decimal:
    if (from_currency or table.reference) == (to_currency or table.reference):
        return Decimal(amount)
    return from_reference(to_reference(amount, from_currency, table), to_currency, table)


def apply_rounding(price: Decimal, rule: RoundingRule | str | None) -> Decimal:
    if rule is None:
        return price
    rule = RoundingRule(rule)
    if rule is RoundingRule.none:
        return price

    if rule in _ENDINGS:
        hundreds = (price / 100).to_integral_value(rounding=ROUND_FLOOR) * 100
        return hundreds + _ENDINGS[rule]

    step, mode = _STEP_RULES[rule]
    return (price / step).to_integral_value(rounding=mode) * step


def round_money(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


# ---------- RATE TABLE PERSISTENCE ----------
def load_rate_table(db: Session, reference: str, *, base: str | None = None) -> RateTable:
    """
    Rate snapshot against ``reference``.

    Stored rates are quoted in ``base`` (REFERENCE_CURRENCY, one global
    table); for any other reference they are rebased by that currency's own
    rate. Without a stored rate for the reference nothing can be converted.
    """
    base = base or get_settings().REFERENCE_CURRENCY
    rows = db.execute(select(ExchangeRate.currency_code, ExchangeRate.rate)).all()
    quoted = {code: Decimal(rate) for code, rate in rows}
    quoted[base] = Decimal(1)

    if reference == base:
        return RateTable(reference=reference, rates=quoted)
    reference_rate = quoted.get(reference)
    if reference_rate is None:
        logger.warning("No exchange rate for reference currency %s against %s, rates unavailable", reference, base)
        return RateTable(reference=reference, rates={reference: Decimal(1)})
    return RateTable(reference=reference, rates={code: rate / reference_rate for code, rate in quoted.items()})


def upsert_exchange_rates(db: Session, rates: Mapping[str, Decimal]) -> int:
    """Insert or update rates; caller owns the transaction."""
    count = 0
    for code, rate in sorted(rates.items()):
        code = code.strip().upper()
        if len(code) != 3 or Decimal(rate) <= 0:
            raise ValidationError(f"Invalid exchange rate {code}={rate}")
        existing = db.get(ExchangeRate, code, with_for_update=True)
        if existing is None:
            db.add(ExchangeRate(currency_code=code, rate=Decimal(rate)))
        else:
            existing.rate = Decimal(rate)
            existing.updated_at = utcnow()
        count += 1
    db.flush()
    logger.info("Exchange rates updated: %d currencies", count)
    return count
