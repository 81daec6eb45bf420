"""
Supplier capability interface.

Every supplier integration implements the same async contract. Adapters
return raw supplier records (plain dicts); turning them into the canonical
product shape is the job of ``backend.services.normalization``.

Failures are raised as ``SupplierApiError`` with a ``kind`` the caller uses to
decide between retrying and giving up.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from backend.app.core.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderLineRequest:
    product_id: int
    external_sku: str | None
    quantity: Decimal
    price: Decimal


@dataclass(frozen=True)
class OrderRequest:
    reference: str
    currency: str
    lines: list[OrderLineRequest] = field(default_factory=list)
    comment: str | None = None


@dataclass(frozen=True)
class OrderResult:
    order_id: str
    status: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ConnectionCheck:
    success: bool
    message: str
    response_time_ms: float | None = None


class SupplierAdapter(ABC):
    """Base class for supplier integrations."""

    type_code: str = "unknown"
    required_config: tuple[str, ...] = ()

    def __init__(self, name: str, config: dict[str, Any] | None = None) -> None:
        self.name = name
        self.config = dict(config or {})

    def validate_config(self) -> None:
        missing = [key for key in self.required_config if not self.config.get(key)]
        if missing:
            raise ConfigurationError(
                f"Supplier {self.name!r} ({self.type_code}) is missing config: {', '.join(missing)}",
                supplier=self.name,
                missing=missing,
            )

    async def authenticate(self) -> bool:
        return True

    @abstractmethod
    async def get_products(self, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def get_product_details(self, external_id: str) -> dict[str, Any]:
        ...

    @abstractmethod
    async def get_prices(self, external_ids: list[str]) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def get_stock_levels(
        self, external_ids: list[str], warehouse_id: str | None = None
    ) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def create_order(self, order: OrderRequest) -> OrderResult:
        ...

    @abstractmethod
    async def get_order_status(self, external_order_id: str) -> OrderResult:
        ...

    @abstractmethod
    async def cancel_order(self, external_order_id: str, reason: str = "") -> bool:
        ...

    async def get_warehouses(self) -> list[dict[str, Any]]:
        return []

    async def get_categories(self) -> list[dict[str, Any]]:
        return []

    async def get_brands(self) -> list[dict[str, Any]]:
        return []

    @abstractmethod
    async def test_connection(self) -> ConnectionCheck:
        ...

    async def aclose(self) -> None:
        """Release network resources held by the adapter."""
