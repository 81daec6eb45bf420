"""
Generic REST supplier adapter.

Config (``suppliers.api_config``)::

    base_url        required
    auth_type       none | basic | bearer | api_key
    username / password / token / api_key / api_key_header
    auth_endpoint   optional token exchange endpoint (POST)
    endpoints       overrides for the default paths below
    field_mapping   supplier field name per canonical field, dotted paths allowed
    timeout         seconds, defaults to 30
"""
from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from backend.app.core.errors import SupplierApiError
from backend.integrations.suppliers.base import (
    ConnectionCheck,
    OrderRequest,
    OrderResult,
    SupplierAdapter,
)

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINTS = {
    "products": "/products",
    "product_details": "/products/{id}",
    "prices": "/prices",
    "stock": "/stock",
    "orders": "/orders",
    "order_status": "/orders/{id}",
    "order_cancel": "/orders/{id}/cancel",
    "categories": "/categories",
    "brands": "/brands",
    "warehouses": "/warehouses",
}

# envelope keys suppliers commonly wrap their payload in
_ENVELOPE_KEYS = ("data", "result", "items", "rows", "records", "response")


def classify_status(status: int) -> str:
    if status in (401, 403):
        return "auth"
    if status == 404:
        return "not_found"
    if status == 429:
        return "rate_limited"
    if status >= 500:
        return "server_error"
    return "invalid_request"


class RestSupplierAdapter(SupplierAdapter):
    type_code = "rest"
    required_config = ("base_url",)

    def __init__(
        self,
        name: str,
        config: dict[str, Any] | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(name, config)
        self.endpoints = {**DEFAULT_ENDPOINTS, **(self.config.get("endpoints") or {})}
        self.field_mapping: dict[str, str] = self.config.get("field_mapping") or {}
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    # ---------- HTTP plumbing ----------
    def _auth_headers(self) -> dict[str, str]:
        auth_type = self.config.get("auth_type", "none")
        if auth_type == "bearer" and self.config.get("token"):
            return {"Authorization": f"Bearer {self.config['token']}"}
        if auth_type == "api_key" and self.config.get("api_key"):
            return {self.config.get("api_key_header", "X-API-Key"): self.config["api_key"]}
        return {}

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            auth = None
            if self.config.get("auth_type") == "basic" and self.config.get("username"):
                auth = httpx.BasicAuth(self.config["username"], self.config.get("password", ""))
            self._client = httpx.AsyncClient(
                base_url=self.config["base_url"],
                timeout=float(self.config.get("timeout", 30.0)),
                headers={"Accept": "application/json", **self._auth_headers(), **(self.config.get("headers") or {})},
                auth=auth,
                transport=self._transport,
            )
        return self._client

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        logger.debug("[%s] %s %s", self.name, method, path)
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise SupplierApiError("network", f"{self.name}: request timed out ({path})") from exc
        except httpx.TransportError as exc:
            raise SupplierApiError("network", f"{self.name}: {exc.__class__.__name__} on {path}") from exc

        if response.status_code >= 400:
            kind = classify_status(response.status_code)
            logger.error("[%s] %s %s -> HTTP %s", self.name, method, path, response.status_code)
            raise SupplierApiError(
                kind,
                f"{self.name}: HTTP {response.status_code} on {path}",
                status=response.status_code,
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise SupplierApiError("invalid_response", f"{self.name}: non-JSON response on {path}") from exc

    def _path(self, key: str, **params: str) -> str:
        path = self.endpoints[key]
        for name, value in params.items():
            path = path.replace("{" + name + "}", str(value))
        return path

    # ---------- payload helpers ----------
    @staticmethod
    def extract(payload: Any, key: str) -> Any:
        if isinstance(payload, list):
            return payload
        if not isinstance(payload, dict):
            return []
        if key in payload:
            return payload[key]
        for envelope in _ENVELOPE_KEYS:
            inner = payload.get(envelope)
            if isinstance(inner, list):
                return inner
            if isinstance(inner, dict) and key in inner:
                return inner[key]
        return []

    def field(self, record: dict[str, Any], name: str) -> Any:
        value: Any = record
        for part in self.field_mapping.get(name, name).split("."):
            if not isinstance(value, dict):
                return None
            value = value.get(part)
        return value

    def _remap(self, record: dict[str, Any]) -> dict[str, Any]:
        if not self.field_mapping:
            return record
        out = dict(record)
        for canonical in self.field_mapping:
            out[canonical] = self.field(record, canonical)
        return out

    def _order_result(self, payload: Any) -> OrderResult:
        order = self.extract(payload, "order")
        if not isinstance(order, dict) or not order:
            order = payload if isinstance(payload, dict) else {}
        order_id = self.field(order, "id") or self.field(order, "order_id")
        if not order_id:
            raise SupplierApiError("invalid_response", f"{self.name}: order response without id")
        return OrderResult(order_id=str(order_id), status=str(self.field(order, "status") or "created"), raw=order)

    # ---------- capability interface ----------
    async def authenticate(self) -> bool:
        endpoint = self.config.get("auth_endpoint")
        if not endpoint:
            return True
        payload = await self._request(
            "POST",
            endpoint,
            json={k: self.config.get(k) for k in ("username", "password", "api_key") if self.config.get(k)},
        )
        token = payload.get("token") if isinstance(payload, dict) else None
        if token:
            self.client.headers["Authorization"] = f"Bearer {token}"
        return True

    async def get_products(self, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        query = {k: v for k, v in (params or {}).items() if v is not None}
        payload = await self._request("GET", self._path("products"), params=query)
        return [self._remap(p) for p in self.extract(payload, "products")]

    async def get_product_details(self, external_id: str) -> dict[str, Any]:
        payload = await self._request("GET", self._path("product_details", id=external_id))
        product = self.extract(payload, "product")
        if not product and isinstance(payload, dict):
            product = payload
        return self._remap(product)

    async def get_prices(self, external_ids: list[str]) -> list[dict[str, Any]]:
        payload = await self._request("GET", self._path("prices"), params={"product_ids": ",".join(external_ids)})
        return [self._remap(p) for p in self.extract(payload, "prices")]

    async def get_stock_levels(self, external_ids: list[str], warehouse_id: str | None = None) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"product_ids": ",".join(external_ids)}
        if warehouse_id:
            params["warehouse_id"] = warehouse_id
        payload = await self._request("GET", self._path("stock"), params=params)
        return [self._remap(s) for s in self.extract(payload, "stock")]

    async def create_order(self, order: OrderRequest) -> OrderResult:
        body = {
            "external_order_id": order.reference,
            "currency": order.currency,
            "comment": order.comment,
            "items": [
                {
                    "product_id": line.external_sku,
                    "quantity": str(line.quantity),
                    "price": str(line.price),
                }
                for line in order.lines
            ],
        }
        payload = await self._request("POST", self._path("orders"), json=body)
        return self._order_result(payload)

    async def get_order_status(self, external_order_id: str) -> OrderResult:
        payload = await self._request("GET", self._path("order_status", id=external_order_id))
        return self._order_result(payload)

    async def cancel_order(self, external_order_id: str, reason: str = "") -> bool:
        await self._request("POST", self._path("order_cancel", id=external_order_id), json={"reason": reason})
        return True

    async def get_warehouses(self) -> list[dict[str, Any]]:
        return list(self.extract(await self._request("GET", self._path("warehouses")), "warehouses"))

    async def get_categories(self) -> list[dict[str, Any]]:
        return list(self.extract(await self._request("GET", self._path("categories")), "categories"))

    async def get_brands(self) -> list[dict[str, Any]]:
        return list(self.extract(await self._request("GET", self._path("brands")), "brands"))

    async def test_connection(self) -> ConnectionCheck:
        start = time.perf_counter()
        try:
            await self.authenticate()
            await self._request("GET", self._path("products"), params={"limit": 1})
        except SupplierApiError as exc:
            return ConnectionCheck(success=False, message=exc.message)
        return ConnectionCheck(
            success=True,
            message="Connection successful",
            response_time_ms=round((time.perf_counter() - start) * 1000, 1),
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
