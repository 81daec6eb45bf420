"""
Supplier catalog sync.

Pulls a supplier's current catalog through its adapter, normalizes every
record and reconciles it against local state:

- unknown external id / SKU   -> new Product + SupplierOffer
- known product               -> offer (cost, stock) updated; descriptive
                                 content only when this supplier is the
                                 brand's master content source
- offer missing from snapshot -> unavailable, stock zeroed on the supplier's
                                 virtual warehouse (never deleted)

Each record is applied in its own savepoint: a bad record is reported in the
run's error list and the rest of the batch goes on. Replaying the same
snapshot changes nothing.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, Decimal
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from backend.app.core.backoff import BackoffPolicy
from backend.app.core.errors import DomainError, NotFoundError, ReconciliationError
from backend.app.db.models.core_types import SyncRunStatus
from backend.app.db.models.models_v1 import (
    Brand,
    Product,
    Supplier,
    SupplierOffer,
    SyncRun,
    Warehouse,
    utcnow,
)
from backend.app.db.session import atomic
from backend.integrations.suppliers.base import SupplierAdapter
from backend.integrations.suppliers.retry import call_with_retry
from backend.services import inventory
from backend.services.locks import SCOPE_SYNC, run_lock
from backend.services.normalization import NormalizedProduct, external_id_of, normalize_product
from backend.services.outbox import TOPIC_PRICE_RECALCULATE, enqueue

logger = logging.getLogger(__name__)

# descriptive fields owned by the brand's master content source
CONTENT_FIELDS = (
    "name",
    "description",
    "category",
    "barcode",
    "weight_kg",
    "volume_m3",
    "length",
    "width",
    "height",
    "images",
    "attributes",
    "is_divisible",
)

# offer fields that feed the price calculation
PRICE_FIELDS = ("cost_price", "currency", "mrc_price", "enforce_mrc", "is_available")


@dataclass
class SyncResult:
    run_id: int
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    created: int = 0
    updated: int = 0
    retired: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    repriced_product_ids: list[int] = field(default_factory=list)


def _assign(obj: Any, values: Mapping[str, Any]) -> bool:
    """Set attributes that differ. Returns True when anything changed."""
    changed = False
    for name, value in values.items():
        if getattr(obj, name) != value:
            setattr(obj, name, value)
            changed = True
    return changed


def _content_of(item: NormalizedProduct) -> dict[str, Any]:
    return {name: getattr(item, name) for name in CONTENT_FIELDS}


class _Reconciler:
    def __init__(self, db: Session, supplier: Supplier, warehouse: Warehouse) -> None:
        self.db = db
        self.supplier = supplier
        self.warehouse = warehouse
        self.repriced: set[int] = set()

    def brand(self, name: str | None) -> Brand | None:
        if not name:
            return None
        brand = (
            self.db.execute(
                select(Brand).where(Brand.company_id == self.supplier.company_id).where(Brand.name == name)
            )
            .scalars()
            .first()
        )
        if brand is None:
            brand = Brand(company_id=self.supplier.company_id, name=name)
            self.db.add(brand)
            self.db.flush()
        return brand

    def is_master(self, product: Product) -> bool:
        brand = product.brand
        return brand is not None and brand.master_supplier_id == self.supplier.id

    def product_for(self, item: NormalizedProduct, offer: SupplierOffer | None) -> tuple[Product, bool]:
        if offer is not None:
            return offer.product, False

        product = (
            self.db.execute(
                select(Product)
                .where(Product.company_id == self.supplier.company_id)
                .where(Product.sku == item.sku)
            )
            .scalars()
            .first()
        )
        if product is not None:
            return product, False

        brand = self.brand(item.brand)
        product = Product(
            company_id=self.supplier.company_id,
            sku=item.sku,
            brand_id=brand.id if brand else None,
            source_supplier_id=self.supplier.id,
            is_active=True,
            **_content_of(item),
        )
        self.db.add(product)
        self.db.flush()
        return product, True

    def apply(self, item: NormalizedProduct) -> str:
        """Reconcile one record. Returns "created", "updated" or "unchanged"."""
        offer = (
            self.db.execute(
                select(SupplierOffer)
                .where(SupplierOffer.supplier_id == self.supplier.id)
                .where(SupplierOffer.external_id == item.external_id)
            )
            .scalars()
            .first()
        )
        product, created = self.product_for(item, offer)
        changed = created

        if not created and self.is_master(product):
            if _assign(product, _content_of(item)):
                product.updated_at = utcnow()
                changed = True

        quantity = item.quantity
        if not product.is_divisible:
            quantity = quantity.to_integral_value(rounding=ROUND_FLOOR)
        offer_values = {
            "external_sku": item.supplier_sku or item.sku,
            "cost_price": item.price,
            "currency": item.currency,
            "mrc_price": item.mrc_price,
            "enforce_mrc": item.enforce_mrc,
            "quantity": quantity,
            "is_available": item.is_available,
        }

        if offer is None:
            offer = SupplierOffer(
                product_id=product.id,
                supplier_id=self.supplier.id,
                external_id=item.external_id,
                **offer_values,
            )
            self.db.add(offer)
            self.repriced.add(product.id)
            changed = True
        else:
            before = {name: getattr(offer, name) for name in PRICE_FIELDS}
            if _assign(offer, offer_values):
                offer.updated_at = utcnow()
                changed = True
                if any(getattr(offer, name) != before[name] for name in PRICE_FIELDS):
                    self.repriced.add(product.id)

        delta = inventory.set_stock(
            self.db,
            warehouse_id=self.warehouse.id,
            product_id=product.id,
            new_quantity=quantity if item.is_available else Decimal(0),
            new_price=item.price,
            reason=f"supplier_sync:{self.supplier.id}",
        )
        if delta:
            changed = True
        self.db.flush()

        if created:
            return "created"
        return "updated" if changed else "unchanged"

    def retire_missing(self, seen: set[str]) -> int:
        offers = self.db.execute(
            select(SupplierOffer)
            .where(SupplierOffer.supplier_id == self.supplier.id)
            .order_by(SupplierOffer.id)
        ).scalars()
        retired = 0
        for offer in offers:
            if offer.external_id in seen:
                continue
            if not offer.is_available and offer.quantity == 0:
                continue
            offer.is_available = False
            offer.quantity = Decimal(0)
            offer.updated_at = utcnow()
            inventory.set_stock(
                self.db,
                warehouse_id=self.warehouse.id,
                product_id=offer.product_id,
                new_quantity=Decimal(0),
                reason=f"supplier_sync_retired:{self.supplier.id}",
            )
            self.repriced.add(offer.product_id)
            retired += 1
            logger.info(
                "Offer %s of supplier %s missing from snapshot, marked unavailable",
                offer.external_id, self.supplier.id,
            )
        self.db.flush()
        return retired


def _start_run(session_factory: sessionmaker[Session], company_id: int, supplier_id: int) -> tuple[int, str]:
    with session_factory() as db, atomic(db):
        supplier = db.get(Supplier, supplier_id)
        if supplier is None or supplier.company_id != company_id:
            raise NotFoundError(f"Supplier {supplier_id} not found")
        run = SyncRun(company_id=company_id, supplier_id=supplier_id, status=SyncRunStatus.running)
        db.add(run)
        db.flush()
        return run.id, supplier.name


def _fail_run(session_factory: sessionmaker[Session], run_id: int, message: str) -> None:
    with session_factory() as db, atomic(db):
        run = db.get(SyncRun, run_id)
        run.status = SyncRunStatus.failed
        run.error_message = message
        run.completed_at = utcnow()


async def fetch_catalog(
    adapter: SupplierAdapter,
    *,
    policy: BackoffPolicy,
    params: dict[str, Any] | None = None,
) -> list[dict[str, Any]]:
    await call_with_retry(adapter.authenticate, policy=policy, operation=f"{adapter.name}: authenticate")
    return await call_with_retry(
        lambda: adapter.get_products(params),
        policy=policy,
        operation=f"{adapter.name}: get_products",
    )


def reconcile_snapshot(
    db: Session,
    supplier: Supplier,
    records: list[dict[str, Any]],
    result: SyncResult,
    *,
    max_errors: int = 100,
) -> None:
    warehouse = inventory.get_or_create_virtual_warehouse(
        db,
        company_id=supplier.company_id,
        supplier_id=supplier.id,
        supplier_name=supplier.name,
    )
    reconciler = _Reconciler(db, supplier, warehouse)
    seen: set[str] = set()

    for raw in records:
        result.processed += 1
        raw_id = external_id_of(raw)
        # a listed offer whose record is broken is still listed, never retired
        if raw_id is not None:
            seen.add(raw_id)
        savepoint = db.begin_nested()
        try:
            item = normalize_product(raw)
            outcome = reconciler.apply(item)
            savepoint.commit()
        except (DomainError, SQLAlchemyError) as exc:
            savepoint.rollback()
            error = ReconciliationError(str(exc), external_id=raw_id, sku=raw.get("sku"))
            logger.warning("Sync item failed for supplier %s (%s): %s", supplier.id, raw_id, exc)
            result.failed += 1
            if len(result.errors) < max_errors:
                result.errors.append({"external_id": raw_id, "sku": raw.get("sku"), "error": error.message})
            continue

        seen.add(item.external_id)
        result.succeeded += 1
        if outcome == "created":
            result.created += 1
        elif outcome == "updated":
            result.updated += 1

    if records:
        result.retired = reconciler.retire_missing(seen)
    else:
        logger.warning("Supplier %s returned an empty catalog, nothing retired", supplier.id)

    if reconciler.repriced:
        result.repriced_product_ids = sorted(reconciler.repriced)
        enqueue(
            db,
            TOPIC_PRICE_RECALCULATE,
            {"company_id": supplier.company_id, "product_ids": result.repriced_product_ids},
        )


async def sync_supplier(
    session_factory: sessionmaker[Session],
    adapter: SupplierAdapter,
    *,
    company_id: int,
    supplier_id: int,
    policy: BackoffPolicy | None = None,
    lock_ttl: int = 3600,
    max_errors: int = 100,
) -> SyncResult:
    policy = policy or BackoffPolicy()
    with run_lock(session_factory, SCOPE_SYNC, f"{company_id}:{supplier_id}", ttl_seconds=lock_ttl):
        run_id, supplier_name = _start_run(session_factory, company_id, supplier_id)
        logger.info("Sync run %s started for supplier %s (%s)", run_id, supplier_id, supplier_name)
        result = SyncResult(run_id=run_id)

        try:
            with session_factory() as db:
                params = (db.get(Supplier, supplier_id).api_config or {}).get("sync_params")
            records = await fetch_catalog(adapter, policy=policy, params=params)
        except DomainError as exc:
            _fail_run(session_factory, run_id, exc.message)
            logger.error("Sync run %s failed fetching catalog: %s", run_id, exc)
            raise

        try:
            with session_factory() as db, atomic(db):
                supplier = db.get(Supplier, supplier_id)
                reconcile_snapshot(db, supplier, records, result, max_errors=max_errors)
                supplier.last_sync_at = utcnow()
                run = db.get(SyncRun, run_id)
                run.status = SyncRunStatus.completed
                run.processed = result.processed
                run.succeeded = result.succeeded
                run.failed = result.failed
                run.retired = result.retired
                run.errors = result.errors
                run.completed_at = utcnow()
        except DomainError as exc:
            _fail_run(session_factory, run_id, exc.message)
            logger.error("Sync run %s rolled back: %s", run_id, exc)
            raise

    logger.info(
        "Sync run %s done: processed=%d succeeded=%d failed=%d created=%d updated=%d retired=%d",
        run_id, result.processed, result.succeeded, result.failed,
        result.created, result.updated, result.retired,
    )
    return result
