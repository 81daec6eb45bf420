import pytest
from fastapi.testclient import TestClient

from backend.app.db.models.models_v1 import Product, SalesChannel, Warehouse
from backend.app.main import create_app


@pytest.fixture
def client(app_ctx):
    with TestClient(create_app(app_ctx)) as c:
        yield c


@pytest.fixture
def shop(factory, db_session):
    company = factory.company()
    channel = factory.channel(company)
    supplier = factory.supplier(company)
    product = factory.product(company)
    factory.offer(product, supplier, "100", "RUB")
    wh = factory.warehouse(company)
    db_session.commit()
    return {"company": company.id, "channel": channel.id, "product": product.id, "warehouse": wh.id}


def _headers(shop):
    return {"X-Company-Id": str(shop["company"])}


def test_health(client):
    res = client.get("/v1/health")

    assert res.status_code == 200
    assert res.json() == {"success": True, "data": {"status": "ok"}}


def test_tenant_header_is_required(client):
    res = client.get("/v1/stock")

    assert res.status_code == 422
    assert res.json()["success"] is False
    assert res.json()["error_code"] == "validation_error"


def test_unknown_order_is_404(client, shop):
    res = client.get("/v1/orders/999", headers=_headers(shop))

    assert res.status_code == 404
    assert res.json()["error_code"] == "not_found"


def test_order_create_and_reserve_flow(factory, db_session, client, shop):
    """
    GIVEN
    - 5 units in the main warehouse

    THEN
    - a posted order is stored once even when replayed
    - the reserve call takes 2 units from the main warehouse
    """
    # ---------- ARRANGE ----------
    with db_session.begin():
        factory.stock(db_session.get(Warehouse, shop["warehouse"]), db_session.get(Product, shop["product"]), 5)
    body = {
        "channel_id": shop["channel"],
        "external_order_id": "OZ-100",
        "items": [{"product_id": shop["product"], "quantity": "2", "unit_price": "150"}],
    }

    # ---------- ACT ----------
    created = client.post("/v1/orders", json=body, headers=_headers(shop))
    replay = client.post("/v1/orders", json=body, headers=_headers(shop))
    order_id = created.json()["data"]["id"]
    reserved = client.post(f"/v1/orders/{order_id}/reserve", headers=_headers(shop))
    stock = client.get("/v1/stock", params={"product_id": shop["product"]}, headers=_headers(shop))

    # ---------- ASSERT ----------
    assert created.status_code == 200
    assert created.json()["data"]["status"] == "new"
    assert replay.json()["data"]["id"] == order_id
    assert reserved.json()["data"]["reserved"][0]["warehouse_id"] == shop["warehouse"]
    assert reserved.json()["data"]["shortfalls"] == []
    link = stock.json()["data"][0]
    assert (link["quantity"], link["reserved_quantity"], link["available_quantity"]) == (5, 2, 3)

    order = client.get(f"/v1/orders/{order_id}", headers=_headers(shop)).json()["data"]
    assert order["items"][0]["status"] == "reserved"
    assert order["items"][0]["procurement_status"] == "in_stock"


def test_insufficient_stock_is_409(client, shop):
    res = client.post(
        "/v1/stock/reserve",
        json={"product_id": shop["product"], "quantity": "3"},
        headers=_headers(shop),
    )

    assert res.status_code == 409
    body = res.json()
    assert body["error_code"] == "insufficient_stock"
    assert body["details"] == {"product_id": shop["product"], "requested": "3", "available": "0"}


def test_procurement_run_creates_draft(factory, db_session, client, shop):
    with db_session.begin():
        factory.order(db_session.get(SalesChannel, shop["channel"]), (db_session.get(Product, shop["product"]), 4))

    run = client.post(f"/v1/procurement/channels/{shop['channel']}/run", headers=_headers(shop))
    drafts = client.get("/v1/supplier-orders", headers=_headers(shop))

    assert run.status_code == 200
    assert run.json()["data"]["ordered"] == 1
    assert run.json()["data"]["sent"] == []
    [draft] = drafts.json()["data"]
    assert draft["id"] == run.json()["data"]["supplier_order_ids"][0]
    assert (draft["status"], draft["currency"], draft["items_count"]) == ("draft", "RUB", 1)
    assert draft["total_amount"] == 400


def test_exchange_rates_roundtrip(client, shop):
    put = client.put("/v1/exchange-rates", json={"rates": {"usd": "90.5"}})
    rates = client.get("/v1/exchange-rates")

    assert put.json()["data"] == {"updated": 1}
    assert [(r["currency"], r["rate"]) for r in rates.json()["data"]] == [("USD", 90.5)]


def test_invalid_pricing_rules_are_rejected(client, shop):
    res = client.put(
        f"/v1/channels/{shop['channel']}/pricing-rules",
        json={"min_price": "200", "max_price": "100"},
        headers=_headers(shop),
    )

    assert res.status_code == 422
    assert res.json()["error_code"] == "validation_error"
