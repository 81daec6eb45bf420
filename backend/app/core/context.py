from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from backend.app.core.backoff import BackoffPolicy
from backend.app.core.config import Settings, get_settings
from backend.app.db.models.models_v1 import Supplier
from backend.app.db.session import build_engine, build_session_factory
from backend.integrations.suppliers.base import SupplierAdapter
from backend.integrations.suppliers.registry import SupplierRegistry

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """
    Process-wide handles: DB pool, session factory, supplier registry.

    Built once at startup (FastAPI lifespan, CLI entry point) and passed
    down explicitly; ``close()`` drains the pool.
    """

    settings: Settings
    engine: Engine
    session_factory: sessionmaker[Session]
    registry: SupplierRegistry
    policy: BackoffPolicy

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        *,
        engine: Engine | None = None,
        registry: SupplierRegistry | None = None,
        validate_suppliers: bool = True,
    ) -> "AppContext":
        settings = settings or get_settings()
        engine = engine or build_engine(settings)
        ctx = cls(
            settings=settings,
            engine=engine,
            session_factory=build_session_factory(engine),
            registry=registry or SupplierRegistry(defaults={"timeout": settings.SUPPLIER_HTTP_TIMEOUT}),
            policy=BackoffPolicy(
                max_attempts=settings.RETRY_MAX_ATTEMPTS,
                base_delay=settings.RETRY_BASE_DELAY,
                max_delay=settings.RETRY_MAX_DELAY,
            ),
        )
        if validate_suppliers:
            # unknown adapter codes fail here, not in the middle of a run
            with ctx.session() as db:
                ctx.registry.validate_active_suppliers(db)
        logger.info("%s context ready (adapters: %s)", settings.APP_NAME, ", ".join(ctx.registry.type_codes))
        return ctx

    @contextmanager
    def session(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    def adapter_for(self, supplier: Supplier) -> SupplierAdapter:
        return self.registry.build(supplier)

    def close(self) -> None:
        self.engine.dispose()
        logger.info("%s context closed", self.settings.APP_NAME)
