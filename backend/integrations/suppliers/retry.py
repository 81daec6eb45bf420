from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from backend.app.core.backoff import BackoffPolicy
from backend.app.core.errors import SupplierApiError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: BackoffPolicy,
    operation: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run an idempotent supplier read with capped exponential backoff.

    Only rate limits, 5xx and network failures are retried. Auth, not-found
    and validation failures surface on the first attempt. Never wrap order
    creation in this: a retried purchase may be a duplicated purchase.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except SupplierApiError as exc:
            if not exc.retryable or policy.exhausted(attempt):
                if exc.retryable:
                    logger.error("%s failed after %d attempts: %s", operation, attempt, exc)
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (%s), attempt %d/%d, retrying in %.1fs",
                operation, exc.kind, attempt, policy.max_attempts, delay,
            )
            await sleep(delay)
