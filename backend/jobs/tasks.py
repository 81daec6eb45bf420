"""
Job bodies shared by the scheduler and the CLI.

Every job takes the AppContext explicitly. Failures of one channel,
supplier or company are logged and do not stop the others.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import select

from backend.app.core.context import AppContext
from backend.app.core.errors import DomainError, RunInProgressError
from backend.app.db.models.models_v1 import Company, SalesChannel, Supplier, utcnow
from backend.services import outbox
from backend.services.catalog_sync import SyncResult, sync_supplier
from backend.services.locks import SCOPE_PRICING, run_lock
from backend.services.pricing import BatchResult, recalculate_company_prices
from backend.services.procurement import ProcurementResult, request_supplier_cancel, run_procurement

logger = logging.getLogger(__name__)

PROCUREMENT_JOB_PREFIX = "procurement:"


# ---------- procurement ----------
async def run_channel_procurement(ctx: AppContext, company_id: int, channel_id: int) -> ProcurementResult | None:
    try:
        return await run_procurement(
            ctx.session_factory,
            ctx.adapter_for,
            company_id=company_id,
            channel_id=channel_id,
            lock_ttl=ctx.settings.RUN_LOCK_TTL_SECONDS,
        )
    except RunInProgressError:
        logger.info("Procurement for channel %s already running, skipped", channel_id)
    except DomainError as exc:
        logger.error("Procurement for channel %s failed: %s", channel_id, exc)
    return None


def refresh_procurement_jobs(ctx: AppContext, scheduler: BaseScheduler) -> dict[str, int]:
    """Align per-channel cron jobs with each active channel's procurement schedule."""
    with ctx.session() as db:
        channels = db.execute(
            select(SalesChannel.id, SalesChannel.company_id, SalesChannel.procurement_schedule)
            .where(SalesChannel.is_active.is_(True))
            .where(SalesChannel.procurement_schedule.is_not(None))
        ).all()

    wanted: set[str] = set()
    added = replaced = 0
    for channel_id, company_id, schedule in channels:
        job_id = f"{PROCUREMENT_JOB_PREFIX}{channel_id}"
        try:
            trigger = CronTrigger.from_crontab(schedule, timezone=ctx.settings.SCHEDULER_TIMEZONE)
        except ValueError as exc:
            logger.warning("Channel %s has an invalid procurement schedule %r: %s", channel_id, schedule, exc)
            continue
        wanted.add(job_id)

        existing = scheduler.get_job(job_id)
        if existing is not None and str(existing.trigger) == str(trigger):
            continue
        scheduler.add_job(
            run_channel_procurement,
            trigger,
            args=[ctx, company_id, channel_id],
            id=job_id,
            name=f"Procurement for channel {channel_id}",
            replace_existing=True,
        )
        if existing is None:
            added += 1
        else:
            replaced += 1

    removed = 0
    for job in scheduler.get_jobs():
        if job.id.startswith(PROCUREMENT_JOB_PREFIX) and job.id not in wanted:
            scheduler.remove_job(job.id)
            removed += 1

    if added or replaced or removed:
        logger.info("Procurement jobs refreshed: added=%d replaced=%d removed=%d", added, replaced, removed)
    return {"added": added, "replaced": replaced, "removed": removed}


# ---------- catalog sync ----------
def _aware(ts: datetime) -> datetime:
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


async def sync_one_supplier(ctx: AppContext, company_id: int, supplier_id: int) -> SyncResult:
    with ctx.session() as db:
        supplier = db.get(Supplier, supplier_id)
        adapter = ctx.adapter_for(supplier)
    try:
        return await sync_supplier(
            ctx.session_factory,
            adapter,
            company_id=company_id,
            supplier_id=supplier_id,
            policy=ctx.policy,
            lock_ttl=ctx.settings.RUN_LOCK_TTL_SECONDS,
            max_errors=ctx.settings.MAX_REPORTED_ERRORS,
        )
    finally:
        await adapter.aclose()


async def sync_due_suppliers(ctx: AppContext, *, now: datetime | None = None) -> list[SyncResult]:
    """Sync every active supplier whose interval has elapsed since its last sync."""
    now = now or utcnow()
    with ctx.session() as db:
        suppliers = db.execute(
            select(Supplier.id, Supplier.company_id, Supplier.sync_interval_minutes, Supplier.last_sync_at)
            .where(Supplier.is_active.is_(True))
            .order_by(Supplier.id)
        ).all()

    results = []
    for supplier_id, company_id, interval, last_sync_at in suppliers:
        if last_sync_at is not None and now - _aware(last_sync_at) < timedelta(minutes=interval):
            continue
        try:
            results.append(await sync_one_supplier(ctx, company_id, supplier_id))
        except RunInProgressError:
            logger.info("Sync for supplier %s already running, skipped", supplier_id)
        except DomainError as exc:
            logger.error("Scheduled sync for supplier %s failed: %s", supplier_id, exc)
    return results


# ---------- pricing ----------
def recalculate_prices(ctx: AppContext, company_id: int, product_ids: list[int] | None = None) -> BatchResult:
    with run_lock(ctx.session_factory, SCOPE_PRICING, str(company_id), ttl_seconds=ctx.settings.RUN_LOCK_TTL_SECONDS):
        return recalculate_company_prices(
            ctx.session_factory,
            company_id,
            product_ids=product_ids,
            batch_size=ctx.settings.PRICE_BATCH_SIZE,
            max_errors=ctx.settings.MAX_REPORTED_ERRORS,
        )


async def recalculate_all_prices(ctx: AppContext) -> dict[int, BatchResult]:
    with ctx.session() as db:
        company_ids = list(
            db.execute(select(Company.id).where(Company.is_active.is_(True)).order_by(Company.id)).scalars()
        )
    results = {}
    for company_id in company_ids:
        try:
            results[company_id] = recalculate_prices(ctx, company_id)
        except RunInProgressError:
            logger.info("Price recalculation for company %s already running, skipped", company_id)
        except DomainError as exc:
            logger.error("Price recalculation for company %s failed: %s", company_id, exc)
    return results


# ---------- outbox ----------
def outbox_handlers(ctx: AppContext) -> dict[str, outbox.Handler]:
    async def on_stock_changed(payload: dict[str, Any]) -> None:
        # marketplace stock push consumes this; locally it is an audit trail
        logger.debug(
            "Stock changed: product %s in warehouse %s, available %s",
            payload.get("product_id"), payload.get("warehouse_id"), payload.get("available_quantity"),
        )

    async def on_price_recalculate(payload: dict[str, Any]) -> None:
        result = recalculate_prices(ctx, payload["company_id"], payload.get("product_ids"))
        if result.failed:
            logger.warning("Queued price recalculation finished with %d failures", result.failed)

    async def on_supplier_order_cancel(payload: dict[str, Any]) -> None:
        await request_supplier_cancel(
            ctx.session_factory,
            ctx.adapter_for,
            order_id=payload["supplier_order_id"],
            reason=payload.get("reason", "cancelled"),
            requeue=False,
        )

    return {
        outbox.TOPIC_STOCK_CHANGED: on_stock_changed,
        outbox.TOPIC_PRICE_RECALCULATE: on_price_recalculate,
        outbox.TOPIC_SUPPLIER_ORDER_CANCEL: on_supplier_order_cancel,
    }


async def dispatch_outbox(ctx: AppContext) -> outbox.DispatchResult:
    return await outbox.dispatch_due(
        ctx.session_factory,
        outbox_handlers(ctx),
        policy=ctx.policy,
        batch_size=ctx.settings.OUTBOX_BATCH_SIZE,
    )
