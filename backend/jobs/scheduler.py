"""
Background scheduler.

One AsyncIOScheduler per process, owned by the FastAPI lifespan. Fixed
jobs keep the per-channel procurement cron jobs in line with the database,
sync suppliers that are due, drain the outbox and reprice nightly.
"""
from __future__ import annotations

import logging

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from backend.app.core.context import AppContext
from backend.jobs import tasks

logger = logging.getLogger(__name__)

JOB_DEFAULTS = {
    "coalesce": True,
    "max_instances": 1,
    "misfire_grace_time": 60,
}


def build_scheduler(ctx: AppContext) -> AsyncIOScheduler:
    settings = ctx.settings
    scheduler = AsyncIOScheduler(
        jobstores={"default": MemoryJobStore()},
        executors={"default": AsyncIOExecutor()},
        job_defaults=JOB_DEFAULTS,
        timezone=settings.SCHEDULER_TIMEZONE,
    )

    async def refresh() -> None:
        tasks.refresh_procurement_jobs(ctx, scheduler)

    scheduler.add_job(
        refresh,
        "interval",
        minutes=settings.PROCUREMENT_REFRESH_MINUTES,
        id="refresh_procurement_jobs",
        name="Refresh procurement schedules",
        replace_existing=True,
    )
    scheduler.add_job(
        tasks.sync_due_suppliers,
        "interval",
        minutes=settings.SUPPLIER_SYNC_CHECK_MINUTES,
        args=[ctx],
        id="sync_due_suppliers",
        name="Sync due suppliers",
        replace_existing=True,
    )
    scheduler.add_job(
        tasks.dispatch_outbox,
        "interval",
        seconds=settings.OUTBOX_DISPATCH_SECONDS,
        args=[ctx],
        id="dispatch_outbox",
        name="Dispatch outbox",
        replace_existing=True,
    )
    scheduler.add_job(
        tasks.recalculate_all_prices,
        CronTrigger.from_crontab(settings.PRICE_RECALC_CRON, timezone=settings.SCHEDULER_TIMEZONE),
        args=[ctx],
        id="recalculate_all_prices",
        name="Nightly price recalculation",
        replace_existing=True,
    )
    return scheduler


def start_scheduler(ctx: AppContext) -> AsyncIOScheduler:
    scheduler = build_scheduler(ctx)
    scheduler.start()
    # channel jobs exist from the start, not only after the first refresh tick
    tasks.refresh_procurement_jobs(ctx, scheduler)
    for job in scheduler.get_jobs():
        logger.info("Scheduled job: %s - next run: %s", job.name, job.next_run_time)
    return scheduler


def shutdown_scheduler(scheduler: AsyncIOScheduler | None) -> None:
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")
