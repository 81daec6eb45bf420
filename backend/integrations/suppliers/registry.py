"""
Supplier adapter registry.

Maps the ``suppliers.adapter_type`` code to an implementation. Built once
per process (see ``AppContext``); unknown codes fail at startup with a
ConfigurationError instead of deep in a sync or procurement run.
"""
from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.core.errors import ConfigurationError
from backend.app.db.models.models_v1 import Supplier
from backend.integrations.suppliers.base import SupplierAdapter
from backend.integrations.suppliers.csv_feed import CsvFeedSupplierAdapter
from backend.integrations.suppliers.rest import RestSupplierAdapter

logger = logging.getLogger(__name__)

DEFAULT_ADAPTERS: dict[str, type[SupplierAdapter]] = {
    RestSupplierAdapter.type_code: RestSupplierAdapter,
    CsvFeedSupplierAdapter.type_code: CsvFeedSupplierAdapter,
}


class SupplierRegistry:
    def __init__(
        self,
        adapters: Mapping[str, type[SupplierAdapter]] | None = None,
        *,
        defaults: Mapping[str, Any] | None = None,
    ) -> None:
        self._adapters: dict[str, type[SupplierAdapter]] = dict(DEFAULT_ADAPTERS if adapters is None else adapters)
        # config merged under every supplier's api_config (e.g. HTTP timeout)
        self._defaults = dict(defaults or {})

    @property
    def type_codes(self) -> list[str]:
        return sorted(self._adapters)

    def register(self, type_code: str, adapter_cls: type[SupplierAdapter]) -> None:
        self._adapters[type_code] = adapter_cls

    def adapter_class(self, type_code: str) -> type[SupplierAdapter]:
        try:
            return self._adapters[type_code]
        except KeyError:
            raise ConfigurationError(
                f"Unknown supplier adapter type {type_code!r}",
                adapter_type=type_code,
                known=self.type_codes,
            ) from None

    def build(self, supplier: Supplier) -> SupplierAdapter:
        adapter_cls = self.adapter_class(supplier.adapter_type)
        adapter = adapter_cls(supplier.name, {**self._defaults, **(supplier.api_config or {})})
        adapter.validate_config()
        return adapter

    def validate(self, suppliers: Iterable[Supplier]) -> None:
        for supplier in suppliers:
            self.build(supplier)

    def validate_active_suppliers(self, db: Session) -> int:
        suppliers = list(db.execute(select(Supplier).where(Supplier.is_active.is_(True))).scalars())
        self.validate(suppliers)
        logger.info("Validated adapter config of %d active suppliers", len(suppliers))
        return len(suppliers)
