"""
Transactional outbox.

Events are written in the same transaction as the state change that caused
them, then dispatched later by ``dispatch_due``. Each message carries its own
attempt counter; failures are rescheduled with capped exponential backoff
and parked as ``dead`` once attempts run out.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from backend.app.core.backoff import BackoffPolicy
from backend.app.db.models.core_types import OutboxStatus
from backend.app.db.models.models_v1 import OutboxMessage, utcnow

logger = logging.getLogger(__name__)

TOPIC_STOCK_CHANGED = "stock.changed"
TOPIC_PRICE_RECALCULATE = "price.recalculate"
TOPIC_SUPPLIER_ORDER_CANCEL = "supplier_order.cancel"

Handler = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass
class DispatchResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    dead: int = 0


def enqueue(
    db: Session,
    topic: str,
    payload: dict[str, Any],
    *,
    max_attempts: int = 5,
    delay_seconds: float = 0,
) -> OutboxMessage:
    msg = OutboxMessage(
        topic=topic,
        payload=payload,
        status=OutboxStatus.pending,
        attempts=0,
        max_attempts=max_attempts,
        next_attempt_at=utcnow() + timedelta(seconds=delay_seconds),
    )
    db.add(msg)
    return msg


def _claim_due_ids(db: Session, now: datetime, limit: int) -> list[int]:
    rows = db.execute(
        select(OutboxMessage.id)
        .where(OutboxMessage.status == OutboxStatus.pending)
        .where(OutboxMessage.next_attempt_at <= now)
        .order_by(OutboxMessage.id.asc())
        .limit(limit)
    ).scalars()
    return list(rows)


def _lease(db: Session, msg_id: int, now: datetime, lease_seconds: float) -> OutboxMessage | None:
    msg = (
        db.execute(
            select(OutboxMessage)
            .where(OutboxMessage.id == msg_id)
            .where(OutboxMessage.status == OutboxStatus.pending)
            .where(OutboxMessage.next_attempt_at <= now)
            .with_for_update(skip_locked=True)
        )
        .scalar_one_or_none()
    )
    if msg is not None:
        msg.attempts += 1
        msg.next_attempt_at = now + timedelta(seconds=lease_seconds)
    return msg


async def dispatch_due(
    session_factory: sessionmaker[Session],
    handlers: Mapping[str, Handler],
    *,
    policy: BackoffPolicy,
    batch_size: int = 50,
    lease_seconds: float = 300,
    now: datetime | None = None,
) -> DispatchResult:
    """
    Deliver due messages, at least once.

    A message is leased before its handler runs: the attempt is counted and
    ``next_attempt_at`` pushed out by ``lease_seconds`` in a committed
    transaction. The handler then runs with no transaction or row lock held;
    if the process dies meanwhile the lease expires and the message is due
    again.
    """
    result = DispatchResult()
    now = now or utcnow()

    with session_factory() as db:
        ids = _claim_due_ids(db, now, batch_size)

    for msg_id in ids:
        with session_factory() as db:
            msg = _lease(db, msg_id, now, lease_seconds)
            if msg is None:
                # picked up by another dispatcher in the meantime
                continue
            topic, payload = msg.topic, dict(msg.payload)
            db.commit()

        result.processed += 1
        handler = handlers.get(topic)
        error: Exception | None = None
        try:
            if handler is None:
                raise LookupError(f"No handler registered for topic {topic!r}")
            await handler(payload)
        except Exception as exc:  # handler failures are recorded on the message
            error = exc

        with session_factory() as db:
            msg = db.get(OutboxMessage, msg_id, with_for_update=True)
            if msg is None or msg.status != OutboxStatus.pending:
                continue
            if error is None:
                msg.status = OutboxStatus.done
                msg.processed_at = utcnow()
                result.succeeded += 1
            else:
                msg.last_error = f"{error.__class__.__name__}: {error}"
                if msg.attempts >= msg.max_attempts:
                    msg.status = OutboxStatus.dead
                    result.dead += 1
                    logger.error("Outbox message %s (%s) is dead after %d attempts: %s",
                                 msg.id, topic, msg.attempts, error)
                else:
                    msg.next_attempt_at = now + timedelta(seconds=policy.delay_for(msg.attempts))
                    result.failed += 1
                    logger.warning("Outbox message %s (%s) failed, attempt %d/%d: %s",
                                   msg.id, topic, msg.attempts, msg.max_attempts, error)
            db.commit()

    if result.processed:
        logger.info(
            "Outbox dispatch: processed=%d succeeded=%d failed=%d dead=%d",
            result.processed, result.succeeded, result.failed, result.dead,
        )
    return result
