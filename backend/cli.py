"""
Command line entry point: ``python -m backend.cli <command>``.

Runs the same code paths as the scheduler and the HTTP routes, out of band.
"""
from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys

from backend.app.core.config import get_settings
from backend.app.core.context import AppContext
from backend.app.core.errors import DomainError
from backend.app.core.logging import configure_logging
from backend.app.db.seed import run_seed
from backend.jobs import tasks
from backend.services import procurement

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="backend.cli", description="Trade sync maintenance commands")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("sync-supplier", help="pull a supplier catalog and reconcile it")
    p.add_argument("--company", type=int, required=True)
    p.add_argument("--supplier", type=int, required=True)

    p = sub.add_parser("run-procurement", help="run one procurement pass for a sales channel")
    p.add_argument("--company", type=int, required=True)
    p.add_argument("--channel", type=int, required=True)

    p = sub.add_parser("recalculate-prices", help="recalculate marketplace prices of a company")
    p.add_argument("--company", type=int, required=True)
    p.add_argument("--product", type=int, action="append", dest="products")

    sub.add_parser("dispatch-outbox", help="dispatch due outbox messages once")
    sub.add_parser("seed", help="create the demo tenant")
    return parser


async def _run(ctx: AppContext, args: argparse.Namespace):
    if args.command == "sync-supplier":
        return await tasks.sync_one_supplier(ctx, args.company, args.supplier)
    if args.command == "run-procurement":
        return await procurement.run_procurement(
            ctx.session_factory,
            ctx.adapter_for,
            company_id=args.company,
            channel_id=args.channel,
            lock_ttl=ctx.settings.RUN_LOCK_TTL_SECONDS,
        )
    if args.command == "recalculate-prices":
        return tasks.recalculate_prices(ctx, args.company, args.products)
    if args.command == "dispatch-outbox":
        return await tasks.dispatch_outbox(ctx)
    with ctx.session() as db:
        return run_seed(db)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)

    ctx = AppContext.create(settings, validate_suppliers=args.command != "seed")
    try:
        result = asyncio.run(_run(ctx, args))
    except DomainError as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(json.dumps({"success": False, "error_code": exc.code, "message": exc.message}))
        return 1
    finally:
        ctx.close()

    data = dataclasses.asdict(result) if dataclasses.is_dataclass(result) else result
    print(json.dumps({"success": True, "data": data}, default=str, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
