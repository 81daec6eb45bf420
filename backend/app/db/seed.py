from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.db.models.core_types import WarehouseType
from backend.app.db.models.models_v1 import Company, SalesChannel, Warehouse
from backend.app.db.session import atomic
from backend.app.schemas.pricing import PricingRules
from backend.services.currency import upsert_exchange_rates

logger = logging.getLogger(__name__)

DEMO_RATES = {"USD": Decimal("90"), "EUR": Decimal("98"), "CNY": Decimal("12.5")}


def run_seed(db: Session) -> dict[str, int]:
    """Demo tenant: one physical warehouse, rates and a marketplace channel. Safe to rerun."""
    with atomic(db):
        company = db.scalar(select(Company).where(Company.name == "Demo"))
        if not company:
            company = Company(name="Demo", reference_currency="RUB")
            db.add(company)
            db.flush()

        warehouse = db.scalar(
            select(Warehouse).where(Warehouse.company_id == company.id).where(Warehouse.name == "Main")
        )
        if not warehouse:
            warehouse = Warehouse(company_id=company.id, name="Main", type=WarehouseType.physical, priority=10)
            db.add(warehouse)

        upsert_exchange_rates(db, DEMO_RATES)

        channel = db.scalar(
            select(SalesChannel).where(SalesChannel.company_id == company.id).where(SalesChannel.name == "Ozon")
        )
        if not channel:
            rules = PricingRules(
                markup_value=Decimal(20),
                commission_percentage=Decimal(10),
                rounding_rule="nearest_10",
            )
            channel = SalesChannel(
                company_id=company.id,
                name="Ozon",
                marketplace_type="ozon",
                currency="RUB",
                pricing_rules=rules.model_dump(mode="json"),
                procurement_schedule="0 9 * * 1-5",
            )
            db.add(channel)
        db.flush()
        ids = {"company_id": company.id, "warehouse_id": warehouse.id, "channel_id": channel.id}

    logger.info("Seed OK: %s", ids)
    return ids
