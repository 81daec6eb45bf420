from __future__ import annotations

from typing import Iterable

from backend.app.db.models.core_types import OrderItemStatus, OrderStatus, ProcurementStatus
from backend.app.db.models.models_v1 import CustomerOrder, OrderItem

_READY = {OrderItemStatus.reserved, OrderItemStatus.confirmed, OrderItemStatus.shipped, OrderItemStatus.delivered}
_GONE = {OrderItemStatus.shipped, OrderItemStatus.delivered}


def derive_order_status(items: Iterable[OrderItem]) -> OrderStatus:
    """
    Order status is a projection of its items:

    all delivered -> delivered, all shipped/delivered -> shipped,
    all reserved or further -> confirmed, anything in flight -> processing.
    Cancelled items are ignored unless every item is cancelled.
    """
    items = list(items)
    active = [i for i in items if i.status != OrderItemStatus.cancelled]
    if not active:
        return OrderStatus.cancelled if items else OrderStatus.new

    statuses = {i.status for i in active}
    if statuses == {OrderItemStatus.delivered}:
        return OrderStatus.delivered
    if statuses <= _GONE:
        return OrderStatus.shipped
    if statuses <= _READY:
        return OrderStatus.confirmed
    if statuses != {OrderItemStatus.new} or any(i.procurement_status == ProcurementStatus.ordered for i in active):
        return OrderStatus.processing
    return OrderStatus.new


def refresh_order_status(order: CustomerOrder) -> OrderStatus:
    order.status = derive_order_status(order.items)
    return order.status
