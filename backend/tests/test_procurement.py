from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from backend.app.core.errors import InvalidStateError, RunInProgressError, SupplierApiError
from backend.app.db.models.core_types import (
    OrderItemStatus,
    OrderStatus,
    ProcurementStatus,
    SupplierOrderStatus,
)
from backend.app.db.models.models_v1 import (
    ExchangeRate,
    OrderItem,
    OutboxMessage,
    ProcurementOverride,
    RunLock,
    SupplierOrder,
    utcnow,
)
from backend.services import procurement
from backend.services.locks import SCOPE_PROCUREMENT
from backend.services.outbox import TOPIC_SUPPLIER_ORDER_CANCEL


@pytest.fixture
def setup(factory):
    """One company, one channel, one product offered by one supplier at 100 RUB."""
    company = factory.company()
    channel = factory.channel(company)
    supplier = factory.supplier(company)
    product = factory.product(company)
    factory.offer(product, supplier, "100", "RUB", external_sku="SUP-1")
    return company, channel, supplier, product


def _draft(db_session, company, channel):
    result = procurement.create_draft_orders(db_session, company_id=company.id, channel_id=channel.id)
    db_session.commit()
    return result


def _items(db_session, *orders):
    return [item for order in orders for item in order.items]


def test_demand_for_same_product_merges_into_one_line(factory, db_session, setup):
    """
    GIVEN
    - two order items for the same product and supplier, quantities 3 and 5

    THEN
    - one draft with one line of 8, both items ``ordered`` and recorded as sources
    """
    company, channel, supplier, product = setup
    first = factory.order(channel, (product, 3))
    second = factory.order(channel, (product, 5))

    # ---------- ACT ----------
    result = procurement.create_draft_orders(db_session, company_id=company.id, channel_id=channel.id)

    # ---------- ASSERT ----------
    assert result.collected == 2
    assert result.ordered == 2
    assert len(result.supplier_order_ids) == 1

    po = db_session.get(SupplierOrder, result.supplier_order_ids[0])
    assert po.status == SupplierOrderStatus.draft
    assert po.batch_id == result.batch_id
    assert po.currency == "RUB"
    assert len(po.lines) == 1
    line = po.lines[0]
    assert line.quantity == Decimal(8)
    assert line.price == Decimal("100.00")
    assert line.external_sku == "SUP-1"
    assert sorted(src.quantity for src in line.sources) == [Decimal(3), Decimal(5)]
    assert po.total_amount == Decimal("800.00")

    for item in _items(db_session, first, second):
        assert item.procurement_status == ProcurementStatus.ordered
    assert first.status == OrderStatus.processing


def test_cheapest_offer_across_currencies_sets_po_currency(factory, db_session, setup):
    company, channel, local, product = setup
    abroad = factory.supplier(company, "Abroad")
    factory.offer(product, abroad, "1", "USD")
    db_session.add(ExchangeRate(currency_code="USD", rate=Decimal(90)))
    factory.order(channel, (product, 2))

    result = procurement.create_draft_orders(db_session, company_id=company.id, channel_id=channel.id)

    po = db_session.get(SupplierOrder, result.supplier_order_ids[0])
    assert po.supplier_id == abroad.id
    assert po.currency == "USD"
    assert po.lines[0].price == Decimal("1.00")
    assert po.total_amount == Decimal("2.00")


def test_one_draft_per_supplier(factory, db_session, setup):
    company, channel, supplier, product = setup
    other_supplier = factory.supplier(company, "Supplier B")
    other_product = factory.product(company, "SKU-2")
    factory.offer(other_product, other_supplier, "10", "RUB")
    factory.order(channel, (product, 1), (other_product, 4))

    result = procurement.create_draft_orders(db_session, company_id=company.id, channel_id=channel.id)

    orders = [db_session.get(SupplierOrder, i) for i in result.supplier_order_ids]
    assert sorted(po.supplier_id for po in orders) == sorted([supplier.id, other_supplier.id])
    assert {po.batch_id for po in orders} == {result.batch_id}


def test_items_without_offer_are_unfulfillable(factory, db_session, setup):
    company, channel, supplier, product = setup
    orphan = factory.product(company, "NO-OFFER")
    order = factory.order(channel, (orphan, 1))

    result = procurement.create_draft_orders(db_session, company_id=company.id, channel_id=channel.id)

    assert result.supplier_order_ids == []
    assert result.unfulfillable == [
        {"order_item_id": order.items[0].id, "product_id": orphan.id, "reason": "no_supplier_offer"}
    ]
    assert order.items[0].procurement_status == ProcurementStatus.pending


def test_own_stock_is_reserved_first(factory, db_session, setup):
    company, channel, supplier, product = setup
    channel.reserve_stock_first = True
    wh = factory.warehouse(company)
    factory.stock(wh, product, 3)
    covered = factory.order(channel, (product, 2))
    partly = factory.order(channel, (product, 5))

    result = procurement.create_draft_orders(db_session, company_id=company.id, channel_id=channel.id)

    covered_item, partly_item = covered.items[0], partly.items[0]
    assert result.in_stock == 1
    assert covered_item.procurement_status == ProcurementStatus.in_stock
    assert covered_item.status == OrderItemStatus.reserved
    assert covered_item.warehouse_id == wh.id
    # one unit left in stock, four more bought
    assert partly_item.reserved_quantity == Decimal(1)
    assert partly_item.procurement_status == ProcurementStatus.ordered
    po = db_session.get(SupplierOrder, result.supplier_order_ids[0])
    assert po.lines[0].quantity == Decimal(4)


def test_update_line_quantity_recomputes_total(factory, db_session, setup):
    company, channel, supplier, product = setup
    factory.order(channel, (product, 2))
    result = procurement.create_draft_orders(db_session, company_id=company.id, channel_id=channel.id)
    po = db_session.get(SupplierOrder, result.supplier_order_ids[0])

    procurement.update_line_quantity(db_session, company_id=company.id, order_id=po.id,
                                     line_id=po.lines[0].id, quantity=Decimal(6))

    assert po.total_amount == Decimal("600.00")

    procurement.confirm_supplier_order(db_session, company_id=company.id, order_id=po.id)
    with pytest.raises(InvalidStateError):
        procurement.update_line_quantity(db_session, company_id=company.id, order_id=po.id,
                                         line_id=po.lines[0].id, quantity=Decimal(1))


def test_remove_line_overrides_items_and_cancels_empty_draft(factory, db_session, setup):
    """
    GIVEN
    - a draft whose only line covers two order items

    THEN
    - removing the line creates two permanent overrides
    - the emptied draft is cancelled
    - the next pass does not pick the items up again
    """
    company, channel, supplier, product = setup
    order = factory.order(channel, (product, 1))
    other = factory.order(channel, (product, 2))
    result = procurement.create_draft_orders(db_session, company_id=company.id, channel_id=channel.id)
    po = db_session.get(SupplierOrder, result.supplier_order_ids[0])

    # ---------- ACT ----------
    created = procurement.remove_line(db_session, company_id=company.id, order_id=po.id,
                                      line_id=po.lines[0].id, actor="alice")

    # ---------- ASSERT ----------
    assert created == 2
    assert po.status == SupplierOrderStatus.cancelled
    assert po.total_amount == Decimal("0.00")
    overrides = db_session.execute(select(ProcurementOverride)).scalars().all()
    assert {o.created_by for o in overrides} == {"alice"}
    for item in _items(db_session, order, other):
        assert item.procurement_status == ProcurementStatus.pending

    again = procurement.create_draft_orders(db_session, company_id=company.id, channel_id=channel.id)
    assert again.collected == 0


async def test_send_failure_marks_error_and_reverts_items(factory, db_session, session_factory, adapter_for,
                                                          fake_supplier, setup):
    """
    GIVEN
    - a draft covering two order items
    - the supplier fails with a network error on order creation

    THEN
    - the supplier order is ``error`` and both items are ``failed``
    - the failure is raised, not retried
    - the next pass picks the failed items up again
    """
    company, channel, supplier, product = setup
    factory.order(channel, (product, 3))
    factory.order(channel, (product, 5))
    result = _draft(db_session, company, channel)
    po_id = result.supplier_order_ids[0]
    fake_supplier.fail_create = SupplierApiError("network", "connection reset")

    # ---------- ACT ----------
    with pytest.raises(SupplierApiError):
        await procurement.send_supplier_order(session_factory, adapter_for, company_id=company.id, order_id=po_id)

    # ---------- ASSERT ----------
    db_session.expire_all()
    po = db_session.get(SupplierOrder, po_id)
    assert po.status == SupplierOrderStatus.error
    assert po.error_message == "connection reset"
    statuses = db_session.execute(select(OrderItem.procurement_status)).scalars().all()
    assert statuses == [ProcurementStatus.failed, ProcurementStatus.failed]
    assert fake_supplier.created == []
    assert fake_supplier.closed == 1

    retry = procurement.create_draft_orders(db_session, company_id=company.id, channel_id=channel.id)
    assert retry.collected == 2
    assert retry.ordered == 2


async def test_send_success_records_supplier_reference(factory, db_session, session_factory, adapter_for,
                                                       fake_supplier, setup):
    company, channel, supplier, product = setup
    order = factory.order(channel, (product, 2))
    item = order.items[0]
    # held in own stock, waiting for the purchase to go out
    item.status = OrderItemStatus.reserved
    result = _draft(db_session, company, channel)
    po_id = result.supplier_order_ids[0]

    po = await procurement.send_supplier_order(session_factory, adapter_for, company_id=company.id, order_id=po_id)

    assert po.status == SupplierOrderStatus.sent
    assert po.external_order_id == "EXT-1"
    assert po.sent_at is not None
    request = fake_supplier.created[0]
    assert request.reference == f"PO-{po_id}"
    assert request.comment == f"batch {result.batch_id}"
    assert [(ln.external_sku, ln.quantity) for ln in request.lines] == [("SUP-1", Decimal(2))]

    db_session.expire_all()
    assert db_session.get(OrderItem, item.id).status == OrderItemStatus.confirmed
    db_session.rollback()

    with pytest.raises(InvalidStateError):
        await procurement.send_supplier_order(session_factory, adapter_for, company_id=company.id, order_id=po_id)


async def test_cancel_sent_order_tells_supplier(factory, db_session, session_factory, adapter_for,
                                                fake_supplier, setup):
    company, channel, supplier, product = setup
    factory.order(channel, (product, 1))
    po_id = _draft(db_session, company, channel).supplier_order_ids[0]
    await procurement.send_supplier_order(session_factory, adapter_for, company_id=company.id, order_id=po_id)

    po = await procurement.cancel_supplier_order(session_factory, adapter_for, company_id=company.id, order_id=po_id)

    assert po.status == SupplierOrderStatus.cancelled
    assert fake_supplier.cancelled == ["EXT-1"]
    db_session.expire_all()
    assert db_session.execute(select(OrderItem.procurement_status)).scalar_one() == ProcurementStatus.failed


async def test_failed_supplier_cancel_is_queued(factory, db_session, session_factory, adapter_for,
                                                fake_supplier, setup):
    company, channel, supplier, product = setup
    factory.order(channel, (product, 1))
    po_id = _draft(db_session, company, channel).supplier_order_ids[0]
    await procurement.send_supplier_order(session_factory, adapter_for, company_id=company.id, order_id=po_id)
    fake_supplier.fail_cancel = SupplierApiError("server_error", "HTTP 503")

    await procurement.cancel_supplier_order(session_factory, adapter_for, company_id=company.id, order_id=po_id)

    msg = db_session.execute(select(OutboxMessage).where(OutboxMessage.topic == TOPIC_SUPPLIER_ORDER_CANCEL)).scalar_one()
    assert msg.payload == {"supplier_order_id": po_id, "reason": "manual_cancel"}

    db_session.rollback()
    with pytest.raises(SupplierApiError):
        await procurement.request_supplier_cancel(session_factory, adapter_for, order_id=po_id,
                                                  reason="retry", requeue=False)


def test_draft_cancel_needs_no_supplier_call(factory, db_session, setup):
    company, channel, supplier, product = setup
    factory.order(channel, (product, 1))
    result = procurement.create_draft_orders(db_session, company_id=company.id, channel_id=channel.id)
    po = db_session.get(SupplierOrder, result.supplier_order_ids[0])

    assert procurement.cancel_local(db_session, po) is False
    assert po.status == SupplierOrderStatus.cancelled
    with pytest.raises(InvalidStateError):
        procurement.cancel_local(db_session, po)


async def test_auto_confirm_run_sends_orders(factory, db_session, session_factory, adapter_for, fake_supplier, setup):
    company, channel, supplier, product = setup
    channel.auto_confirm = True
    factory.order(channel, (product, 4))
    db_session.commit()

    result = await procurement.run_procurement(session_factory, adapter_for, company_id=company.id,
                                               channel_id=channel.id)

    assert result.sent == result.supplier_order_ids
    assert result.send_errors == []
    assert len(fake_supplier.created) == 1
    db_session.expire_all()
    assert db_session.execute(select(RunLock)).scalars().all() == []


async def test_auto_confirm_collects_send_errors(factory, db_session, session_factory, adapter_for,
                                                 fake_supplier, setup):
    company, channel, supplier, product = setup
    channel.auto_confirm = True
    factory.order(channel, (product, 4))
    db_session.commit()
    fake_supplier.fail_create = SupplierApiError("auth", "HTTP 401")

    result = await procurement.run_procurement(session_factory, adapter_for, company_id=company.id,
                                               channel_id=channel.id)

    assert result.sent == []
    assert result.send_errors == [
        {"supplier_order_id": result.supplier_order_ids[0], "kind": "auth", "error": "HTTP 401"}
    ]


async def test_untyped_send_failure_still_compensates(factory, db_session, session_factory, adapter_for,
                                                     fake_supplier, setup):
    """
    GIVEN
    - an auto-confirm channel
    - the supplier integration blows up with a plain TimeoutError

    THEN
    - the failure is reported as kind ``unknown``, the run finishes
    - the supplier order is ``error`` and the item is ``failed``, not left ``ordered``
    """
    company, channel, supplier, product = setup
    channel.auto_confirm = True
    factory.order(channel, (product, 4))
    db_session.commit()
    fake_supplier.fail_create = TimeoutError("supplier did not answer")

    # ---------- ACT ----------
    result = await procurement.run_procurement(session_factory, adapter_for, company_id=company.id,
                                               channel_id=channel.id)

    # ---------- ASSERT ----------
    po_id = result.supplier_order_ids[0]
    assert result.send_errors == [
        {"supplier_order_id": po_id, "kind": "unknown", "error": "TimeoutError: supplier did not answer"}
    ]
    db_session.expire_all()
    assert db_session.get(SupplierOrder, po_id).status == SupplierOrderStatus.error
    assert db_session.execute(select(OrderItem.procurement_status)).scalars().all() == [ProcurementStatus.failed]
    assert fake_supplier.closed == 1


async def test_concurrent_run_for_same_channel_is_refused(factory, db_session, session_factory, adapter_for, setup):
    company, channel, supplier, product = setup
    db_session.add(RunLock(scope=SCOPE_PROCUREMENT, key=f"{company.id}:{channel.id}", owner="other-worker"))
    db_session.commit()

    with pytest.raises(RunInProgressError):
        await procurement.run_procurement(session_factory, adapter_for, company_id=company.id,
                                          channel_id=channel.id)


async def test_stale_lock_is_taken_over(factory, db_session, session_factory, adapter_for, setup):
    company, channel, supplier, product = setup
    db_session.add(
        RunLock(
            scope=SCOPE_PROCUREMENT,
            key=f"{company.id}:{channel.id}",
            owner="crashed-worker",
            acquired_at=utcnow() - timedelta(hours=2),
        )
    )
    db_session.commit()

    result = await procurement.run_procurement(session_factory, adapter_for, company_id=company.id,
                                               channel_id=channel.id, lock_ttl=3600)

    assert result.collected == 0


def test_list_and_detail_views(factory, db_session, setup):
    company, channel, supplier, product = setup
    order = factory.order(channel, (product, 2), external_id="MP-77")
    result = procurement.create_draft_orders(db_session, company_id=company.id, channel_id=channel.id)
    po_id = result.supplier_order_ids[0]

    listed = procurement.list_supplier_orders(db_session, company_id=company.id)
    detail = procurement.get_supplier_order(db_session, company_id=company.id, order_id=po_id)

    assert [(row["id"], row["supplier_name"], row["items_count"]) for row in listed] == [(po_id, supplier.name, 1)]
    assert procurement.list_supplier_orders(db_session, company_id=company.id, status=SupplierOrderStatus.sent) == []
    assert detail["lines"][0]["sku"] == product.sku
    assert detail["lines"][0]["offer_available"] is True
    assert detail["lines"][0]["order_item_ids"] == [order.items[0].id]
    assert detail["customer_orders"] == [{"id": order.id, "external_order_id": "MP-77", "status": "processing"}]
