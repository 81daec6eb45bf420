from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from backend.app.db.models.core_types import MarkupType, RoundingRule


class PricingRules(BaseModel):
    """Marketplace pricing configuration, validated before it is stored on a channel."""

    model_config = ConfigDict(extra="forbid", use_enum_values=False)

    markup_type: MarkupType = MarkupType.percentage
    markup_value: Decimal = Field(default=Decimal(0), ge=0)
    commission_percentage: Decimal = Field(default=Decimal(0), ge=0, lt=100)
    rounding_rule: RoundingRule = RoundingRule.none
    min_price: Decimal | None = Field(default=None, ge=0)
    max_price: Decimal | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "PricingRules":
        if self.min_price is not None and self.max_price is not None and self.min_price > self.max_price:
            raise ValueError("min_price must not exceed max_price")
        return self


class ExchangeRatesUpdate(BaseModel):
    rates: dict[str, Decimal] = Field(min_length=1)


class RecalculateRequest(BaseModel):
    product_ids: list[int] | None = None


class PriceLinkRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: int
    channel_id: int
    price: Decimal | None
    supplier_id: int | None
    calculation_trail: list[str]
