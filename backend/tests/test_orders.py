from decimal import Decimal

import pytest
from sqlalchemy import select

from backend.app.core.errors import InvalidStateError, NotFoundError, ValidationError
from backend.app.db.models.core_types import (
    MovementType,
    OrderItemStatus,
    OrderStatus,
    ProcurementStatus,
    SupplierOrderStatus,
)
from backend.app.db.models.models_v1 import (
    CustomerOrder,
    OrderItem,
    StockMovement,
    SupplierOrder,
    WarehouseStockLink,
)
from backend.services import orders, procurement
from backend.services.order_status import derive_order_status


@pytest.fixture
def shop(factory):
    company = factory.company()
    channel = factory.channel(company)
    supplier = factory.supplier(company)
    product = factory.product(company)
    factory.offer(product, supplier, "100", "RUB")
    wh = factory.warehouse(company)
    return company, channel, product, wh


def test_create_order_is_idempotent(db_session, shop):
    company, channel, product, wh = shop
    items = [{"product_id": product.id, "quantity": Decimal(2), "unit_price": Decimal("150")}]

    first = orders.create_order(db_session, company_id=company.id, channel_id=channel.id,
                                external_order_id="OZ-1", items=items)
    replay = orders.create_order(db_session, company_id=company.id, channel_id=channel.id,
                                 external_order_id="OZ-1", items=items)

    assert replay.id == first.id
    assert first.status == OrderStatus.new
    assert first.items[0].procurement_status == ProcurementStatus.pending
    assert len(db_session.execute(select(CustomerOrder)).scalars().all()) == 1


def test_create_order_validates_items(db_session, shop):
    company, channel, product, wh = shop

    with pytest.raises(ValidationError):
        orders.create_order(db_session, company_id=company.id, channel_id=channel.id,
                            external_order_id="OZ-2", items=[])
    with pytest.raises(ValidationError):
        orders.create_order(db_session, company_id=company.id, channel_id=channel.id, external_order_id="OZ-3",
                            items=[{"product_id": product.id, "quantity": Decimal("0.5")}])
    with pytest.raises(NotFoundError):
        orders.create_order(db_session, company_id=company.id, channel_id=999, external_order_id="OZ-4",
                            items=[{"product_id": product.id, "quantity": 1}])


def test_reservation_pass_reserves_what_stock_covers(factory, db_session, shop):
    """
    GIVEN
    - 5 units in stock
    - an order for 3 units of the stocked product and 1 of an unstocked one

    THEN
    - the stocked item is reserved and marked in_stock
    - the other is reported as a shortfall and stays pending for procurement
    """
    company, channel, product, wh = shop
    factory.stock(wh, product, 5)
    unstocked = factory.product(company, "SKU-2")
    order = factory.order(channel, (product, 3), (unstocked, 1))

    # ---------- ACT ----------
    result = orders.reserve_order_items(db_session, company_id=company.id, order_id=order.id)

    # ---------- ASSERT ----------
    stocked_item, missing_item = sorted(order.items, key=lambda i: i.id)
    assert result.reserved == [{"order_item_id": stocked_item.id, "warehouse_id": wh.id, "quantity": Decimal(3)}]
    assert [s["order_item_id"] for s in result.shortfalls] == [missing_item.id]
    assert stocked_item.status == OrderItemStatus.reserved
    assert stocked_item.procurement_status == ProcurementStatus.in_stock
    assert missing_item.status == OrderItemStatus.new
    assert missing_item.procurement_status == ProcurementStatus.pending
    assert order.status == OrderStatus.processing

    # a second pass touches nothing
    again = orders.reserve_order_items(db_session, company_id=company.id, order_id=order.id)
    assert again.reserved == []


def test_item_on_supplier_order_is_not_reserved_again(factory, db_session, shop):
    """
    GIVEN
    - 10 units in stock
    - an order item already put on a supplier order by a procurement pass

    THEN
    - the reservation pass leaves it alone, stock stays unreserved
    """
    company, channel, product, wh = shop
    link = factory.stock(wh, product, 10)
    order = factory.order(channel, (product, 3))
    procurement.create_draft_orders(db_session, company_id=company.id, channel_id=channel.id)

    # ---------- ACT ----------
    result = orders.reserve_order_items(db_session, company_id=company.id, order_id=order.id)

    # ---------- ASSERT ----------
    item = order.items[0]
    assert result.reserved == []
    assert (item.status, item.procurement_status) == (OrderItemStatus.new, ProcurementStatus.ordered)
    assert item.reserved_quantity == 0
    assert link.reserved_quantity == 0


def test_confirm_ship_deliver(factory, db_session, shop):
    company, channel, product, wh = shop
    link = factory.stock(wh, product, 5)
    order = factory.order(channel, (product, 2))
    item = order.items[0]
    orders.reserve_order_items(db_session, company_id=company.id, order_id=order.id)

    with pytest.raises(InvalidStateError):
        orders.ship_order_item(db_session, company_id=company.id, item_id=item.id)

    orders.confirm_order(db_session, company_id=company.id, order_id=order.id)
    assert order.status == OrderStatus.confirmed

    orders.ship_order_item(db_session, company_id=company.id, item_id=item.id, actor="picker")
    assert item.status == OrderItemStatus.shipped
    assert order.status == OrderStatus.shipped
    assert (link.quantity, link.reserved_quantity) == (Decimal(3), 0)
    consume = db_session.execute(
        select(StockMovement).where(StockMovement.movement_type == MovementType.consume)
    ).scalar_one()
    assert consume.actor == "picker"
    assert consume.order_ref == f"order_item:{item.id}"

    orders.deliver_order_item(db_session, company_id=company.id, item_id=item.id)
    assert order.status == OrderStatus.delivered

    with pytest.raises(InvalidStateError):
        orders.deliver_order_item(db_session, company_id=company.id, item_id=item.id)


def test_confirm_order_requires_reserved_items(factory, db_session, shop):
    company, channel, product, wh = shop
    order = factory.order(channel, (product, 1))

    with pytest.raises(InvalidStateError):
        orders.confirm_order(db_session, company_id=company.id, order_id=order.id)


async def test_cancel_releases_stock_and_cancels_own_supplier_orders(factory, db_session, session_factory,
                                                                     adapter_for, fake_supplier, shop):
    """
    GIVEN
    - an order with one item reserved from stock and one item on a sent supplier order

    THEN
    - the reservation is released
    - the supplier order serving only this order is cancelled, locally and at the supplier
    - every item ends ``cancelled``
    """
    company, channel, product, wh = shop
    link = factory.stock(wh, product, 2)
    bought = factory.product(company, "SKU-BUY")
    factory.offer(bought, factory.supplier(company, "Supplier B"), "20", "RUB")
    order = factory.order(channel, (product, 2), (bought, 1))
    orders.reserve_order_items(db_session, company_id=company.id, order_id=order.id)
    po_id = procurement.create_draft_orders(db_session, company_id=company.id, channel_id=channel.id).supplier_order_ids[0]
    db_session.commit()
    await procurement.send_supplier_order(session_factory, adapter_for, company_id=company.id, order_id=po_id)

    # ---------- ACT ----------
    result = await orders.cancel_order(session_factory, adapter_for, company_id=company.id, order_id=order.id)

    # ---------- ASSERT ----------
    assert result.released == Decimal(2)
    assert result.cancelled_supplier_orders == [po_id]
    assert fake_supplier.cancelled == ["EXT-1"]

    db_session.expire_all()
    assert db_session.get(WarehouseStockLink, (wh.id, product.id)).reserved_quantity == 0
    assert db_session.get(SupplierOrder, po_id).status == SupplierOrderStatus.cancelled
    assert db_session.get(CustomerOrder, order.id).status == OrderStatus.cancelled
    for item in db_session.execute(select(OrderItem)).scalars():
        assert (item.status, item.procurement_status) == (OrderItemStatus.cancelled, ProcurementStatus.cancelled)


async def test_cancel_trims_shared_draft(factory, db_session, session_factory, adapter_for, fake_supplier, shop):
    company, channel, product, wh = shop
    mine = factory.order(channel, (product, 3))
    theirs = factory.order(channel, (product, 5))
    po_id = procurement.create_draft_orders(db_session, company_id=company.id, channel_id=channel.id).supplier_order_ids[0]
    db_session.commit()

    result = await orders.cancel_order(session_factory, adapter_for, company_id=company.id, order_id=mine.id)

    assert result.trimmed_supplier_orders == [po_id]
    db_session.expire_all()
    po = db_session.get(SupplierOrder, po_id)
    assert po.status == SupplierOrderStatus.draft
    assert po.lines[0].quantity == Decimal(5)
    assert po.total_amount == Decimal("500.00")
    assert [src.order_item_id for src in po.lines[0].sources] == [theirs.items[0].id]
    assert fake_supplier.cancelled == []


async def test_cancel_keeps_shared_sent_order(factory, db_session, session_factory, adapter_for, fake_supplier, shop):
    company, channel, product, wh = shop
    mine = factory.order(channel, (product, 3))
    theirs = factory.order(channel, (product, 5))
    po_id = procurement.create_draft_orders(db_session, company_id=company.id, channel_id=channel.id).supplier_order_ids[0]
    db_session.commit()
    await procurement.send_supplier_order(session_factory, adapter_for, company_id=company.id, order_id=po_id)

    result = await orders.cancel_order(session_factory, adapter_for, company_id=company.id, order_id=mine.id)

    assert result.kept_supplier_orders == [po_id]
    db_session.expire_all()
    assert db_session.get(SupplierOrder, po_id).status == SupplierOrderStatus.sent
    assert db_session.get(OrderItem, theirs.items[0].id).procurement_status == ProcurementStatus.ordered
    assert fake_supplier.cancelled == []


async def test_shipped_order_cannot_be_cancelled(factory, db_session, session_factory, adapter_for, shop):
    company, channel, product, wh = shop
    factory.stock(wh, product, 1)
    order = factory.order(channel, (product, 1))
    orders.reserve_order_items(db_session, company_id=company.id, order_id=order.id)
    orders.confirm_order(db_session, company_id=company.id, order_id=order.id)
    orders.ship_order_item(db_session, company_id=company.id, item_id=order.items[0].id)
    db_session.commit()

    with pytest.raises(InvalidStateError):
        await orders.cancel_order(session_factory, adapter_for, company_id=company.id, order_id=order.id)


def test_order_status_is_derived_from_items():
    def items(*pairs):
        return [OrderItem(status=s, procurement_status=p) for s, p in pairs]

    new, pending = OrderItemStatus.new, ProcurementStatus.pending
    assert derive_order_status(items((new, pending))) == OrderStatus.new
    assert derive_order_status(items((new, ProcurementStatus.ordered))) == OrderStatus.processing
    assert derive_order_status(items((OrderItemStatus.reserved, pending), (OrderItemStatus.shipped, pending))) == (
        OrderStatus.confirmed
    )
    assert derive_order_status(items((OrderItemStatus.delivered, pending), (OrderItemStatus.cancelled, pending))) == (
        OrderStatus.delivered
    )
    assert derive_order_status(items((OrderItemStatus.cancelled, pending))) == OrderStatus.cancelled
