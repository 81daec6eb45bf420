from __future__ import annotations

import os
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from backend.app.core.backoff import BackoffPolicy
from backend.app.core.config import Settings
from backend.app.core.context import AppContext
from backend.app.core.errors import SupplierApiError
from backend.app.db.base import Base
from backend.app.db.models import models_v1  # noqa: F401  (registers tables)
from backend.app.db.models.core_types import WarehouseType
from backend.app.db.models.models_v1 import (
    Company,
    CustomerOrder,
    OrderItem,
    Product,
    SalesChannel,
    Supplier,
    SupplierOffer,
    Warehouse,
    WarehouseStockLink,
)
from backend.app.db.session import build_session_factory
from backend.integrations.suppliers.base import (
    ConnectionCheck,
    OrderRequest,
    OrderResult,
    SupplierAdapter,
)
from backend.integrations.suppliers.registry import SupplierRegistry

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite://")


def _sqlite_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite: let SQLAlchemy drive BEGIN so SAVEPOINTs behave
    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


@pytest.fixture(scope="function")
def engine():
    """Fresh schema per test: in-memory SQLite, or TEST_DATABASE_URL (PostgreSQL)."""
    eng = _sqlite_engine() if TEST_DATABASE_URL.startswith("sqlite") else create_engine(TEST_DATABASE_URL)
    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        Base.metadata.drop_all(bind=eng)
        eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# ---------- fake supplier ----------
class FakeSupplier(SupplierAdapter):
    """In-memory supplier: scripted catalog, recorded orders, optional failures."""

    type_code = "fake"

    def __init__(self, name: str = "fake", config: dict[str, Any] | None = None) -> None:
        super().__init__(name, config)
        self.products: list[dict[str, Any]] = list(self.config.get("products", []))
        self.fail_create: Exception | None = None
        self.fail_cancel: SupplierApiError | None = None
        self.product_failures: list[SupplierApiError] = []
        self.created: list[OrderRequest] = []
        self.cancelled: list[str] = []
        self.closed = 0

    async def get_products(self, params=None):
        if self.product_failures:
            raise self.product_failures.pop(0)
        return [dict(p) for p in self.products]

    async def get_product_details(self, external_id):
        return next(p for p in self.products if str(p["id"]) == external_id)

    async def get_prices(self, external_ids):
        return [{"id": p["id"], "price": p.get("price")} for p in self.products if str(p["id"]) in external_ids]

    async def get_stock_levels(self, external_ids, warehouse_id=None):
        return [{"id": p["id"], "stock": p.get("stock")} for p in self.products if str(p["id"]) in external_ids]

    async def create_order(self, order: OrderRequest) -> OrderResult:
        if self.fail_create is not None:
            raise self.fail_create
        self.created.append(order)
        return OrderResult(order_id=f"EXT-{len(self.created)}", status="accepted")

    async def get_order_status(self, external_order_id):
        return OrderResult(order_id=external_order_id, status="accepted")

    async def cancel_order(self, external_order_id, reason=""):
        if self.fail_cancel is not None:
            raise self.fail_cancel
        self.cancelled.append(external_order_id)
        return True

    async def test_connection(self):
        return ConnectionCheck(success=True, message="ok", response_time_ms=0.0)

    async def aclose(self):
        self.closed += 1


@pytest.fixture
def fake_supplier() -> FakeSupplier:
    return FakeSupplier()


@pytest.fixture
def adapter_for(fake_supplier):
    return lambda supplier: fake_supplier


@pytest.fixture
def app_ctx(engine, fake_supplier):
    settings = Settings(DATABASE_URL="sqlite://", SCHEDULER_ENABLED=False, RETRY_BASE_DELAY=0.0)
    registry = SupplierRegistry()
    ctx = AppContext.create(settings, engine=engine, registry=registry, validate_suppliers=False)
    ctx.adapter_for = lambda supplier: fake_supplier
    return ctx


@pytest.fixture
def fast_policy() -> BackoffPolicy:
    return BackoffPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


# ---------- factories ----------
@pytest.fixture
def factory(db_session):
    return Factory(db_session)


class Factory:
    def __init__(self, db: Session) -> None:
        self.db = db

    def _save(self, obj):
        self.db.add(obj)
        self.db.flush()
        return obj

    def company(self, name: str = "Acme", reference_currency: str = "RUB") -> Company:
        return self._save(Company(name=name, reference_currency=reference_currency))

    def supplier(self, company: Company, name: str = "Supplier A", **kw) -> Supplier:
        kw.setdefault("adapter_type", "rest")
        kw.setdefault("api_config", {"base_url": "https://supplier.test"})
        return self._save(Supplier(company_id=company.id, name=name, **kw))

    def product(self, company: Company, sku: str = "SKU-1", **kw) -> Product:
        kw.setdefault("name", sku)
        kw.setdefault("attributes", {})
        kw.setdefault("images", [])
        return self._save(Product(company_id=company.id, sku=sku, **kw))

    def offer(self, product: Product, supplier: Supplier, cost: str, currency: str = "RUB", **kw) -> SupplierOffer:
        kw.setdefault("external_id", f"{supplier.id}-{product.sku}")
        kw.setdefault("quantity", Decimal(100))
        return self._save(
            SupplierOffer(
                product_id=product.id,
                supplier_id=supplier.id,
                cost_price=Decimal(cost),
                currency=currency,
                **kw,
            )
        )

    def warehouse(self, company: Company, name: str = "Main", priority: int = 0, **kw) -> Warehouse:
        kw.setdefault("type", WarehouseType.physical)
        return self._save(Warehouse(company_id=company.id, name=name, priority=priority, **kw))

    def stock(self, warehouse: Warehouse, product: Product, quantity, reserved=0, price=None) -> WarehouseStockLink:
        return self._save(
            WarehouseStockLink(
                warehouse_id=warehouse.id,
                product_id=product.id,
                quantity=Decimal(quantity),
                reserved_quantity=Decimal(reserved),
                price=Decimal(price) if price is not None else None,
            )
        )

    def channel(self, company: Company, name: str = "Ozon", **kw) -> SalesChannel:
        kw.setdefault("marketplace_type", "ozon")
        kw.setdefault("pricing_rules", {})
        kw.setdefault("reserve_stock_first", False)
        return self._save(SalesChannel(company_id=company.id, name=name, **kw))

    def order(self, channel: SalesChannel, *items: tuple[Product, int], external_id: str | None = None) -> CustomerOrder:
        order = CustomerOrder(
            company_id=channel.company_id,
            channel_id=channel.id,
            external_order_id=external_id or f"MP-{self.db.query(CustomerOrder).count() + 1}",
        )
        for product, qty in items:
            order.items.append(OrderItem(product_id=product.id, quantity=Decimal(qty), reserved_quantity=Decimal(0)))
        return self._save(order)
