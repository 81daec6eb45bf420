"""
Price-list feed adapter: a supplier publishing its catalog as a CSV or
Excel file (local path or URL). Read-only, orders go through another channel.

Config::

    source      path or http(s) URL, required
    format      csv | xlsx (guessed from the extension when absent)
    delimiter   CSV delimiter, default ";"
    encoding    default utf-8
    sheet       Excel sheet name or index
    columns     {canonical_name: column_in_file}
    id_column   column holding the supplier's product id, default "id"
"""
from __future__ import annotations

import io
import logging
from typing import Any

import httpx
import pandas as pd

from backend.app.core.errors import SupplierApiError
from backend.integrations.suppliers.base import (
    ConnectionCheck,
    OrderRequest,
    OrderResult,
    SupplierAdapter,
)

logger = logging.getLogger(__name__)


class CsvFeedSupplierAdapter(SupplierAdapter):
    type_code = "csv_feed"
    required_config = ("source",)

    @property
    def _format(self) -> str:
        fmt = self.config.get("format")
        if fmt:
            return fmt.lower()
        return "xlsx" if str(self.config["source"]).lower().endswith((".xlsx", ".xls")) else "csv"

    async def _raw(self) -> bytes | str:
        source = str(self.config["source"])
        if not source.startswith(("http://", "https://")):
            return source
        try:
            async with httpx.AsyncClient(timeout=float(self.config.get("timeout", 30.0))) as client:
                response = await client.get(source)
        except httpx.TransportError as exc:
            raise SupplierApiError("network", f"{self.name}: cannot download feed") from exc
        if response.status_code >= 400:
            kind = "server_error" if response.status_code >= 500 else "not_found"
            raise SupplierApiError(kind, f"{self.name}: feed HTTP {response.status_code}", status=response.status_code)
        return response.content

    async def load_frame(self) -> pd.DataFrame:
        raw = await self._raw()
        src = io.BytesIO(raw) if isinstance(raw, bytes) else raw
        try:
            if self._format == "xlsx":
                df = pd.read_excel(src, sheet_name=self.config.get("sheet", 0), dtype=str, engine="openpyxl")
            else:
                df = pd.read_csv(
                    src,
                    sep=self.config.get("delimiter", ";"),
                    encoding=self.config.get("encoding", "utf-8"),
                    dtype=str,
                )
        except FileNotFoundError as exc:
            raise SupplierApiError("not_found", f"{self.name}: feed file not found") from exc
        except (ValueError, UnicodeDecodeError, pd.errors.ParserError) as exc:
            raise SupplierApiError("invalid_response", f"{self.name}: unreadable feed ({exc})") from exc

        df.columns = [str(c).strip() for c in df.columns]
        columns = self.config.get("columns") or {}
        if columns:
            df = df.rename(columns={src_col: canonical for canonical, src_col in columns.items()})
        df = df.fillna("")
        logger.info("[%s] feed loaded: %d rows", self.name, len(df))
        return df

    @property
    def id_column(self) -> str:
        return self.config.get("id_column", "id")

    def _records(self, df: pd.DataFrame) -> list[dict[str, Any]]:
        records = df.to_dict(orient="records")
        if self.id_column in df.columns and self.id_column != "id":
            for rec in records:
                rec.setdefault("id", rec[self.id_column])
        return records

    async def _subset(self, external_ids: list[str]) -> list[dict[str, Any]]:
        wanted = set(external_ids)
        return [r for r in self._records(await self.load_frame()) if str(r.get("id")) in wanted]

    async def get_products(self, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        records = self._records(await self.load_frame())
        params = params or {}
        offset = int(params.get("offset", 0))
        limit = params.get("limit")
        return records[offset:offset + int(limit)] if limit else records[offset:]

    async def get_product_details(self, external_id: str) -> dict[str, Any]:
        found = await self._subset([external_id])
        if not found:
            raise SupplierApiError("not_found", f"{self.name}: product {external_id} not in feed")
        return found[0]

    async def get_prices(self, external_ids: list[str]) -> list[dict[str, Any]]:
        return [
            {"id": r["id"], "price": r.get("price"), "currency": r.get("currency")}
            for r in await self._subset(external_ids)
        ]

    async def get_stock_levels(self, external_ids: list[str], warehouse_id: str | None = None) -> list[dict[str, Any]]:
        return [
            {"id": r["id"], "quantity": r.get("quantity") or r.get("stock")}
            for r in await self._subset(external_ids)
        ]

    async def create_order(self, order: OrderRequest) -> OrderResult:
        raise SupplierApiError("unsupported", f"{self.name}: price-list feeds do not accept orders")

    async def get_order_status(self, external_order_id: str) -> OrderResult:
        raise SupplierApiError("unsupported", f"{self.name}: price-list feeds do not track orders")

    async def cancel_order(self, external_order_id: str, reason: str = "") -> bool:
        raise SupplierApiError("unsupported", f"{self.name}: price-list feeds do not accept orders")

    async def get_categories(self) -> list[dict[str, Any]]:
        df = await self.load_frame()
        if "category" not in df.columns:
            return []
        return [{"name": c} for c in sorted(set(df["category"]) - {""})]

    async def get_brands(self) -> list[dict[str, Any]]:
        df = await self.load_frame()
        if "brand" not in df.columns:
            return []
        return [{"name": b} for b in sorted(set(df["brand"]) - {""})]

    async def test_connection(self) -> ConnectionCheck:
        try:
            df = await self.load_frame()
        except SupplierApiError as exc:
            return ConnectionCheck(success=False, message=exc.message)
        return ConnectionCheck(success=True, message=f"Feed readable, {len(df)} rows")
