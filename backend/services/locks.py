"""
Run-level mutual exclusion.

One row per (scope, key) in ``run_locks``. The row is inserted in its own
short transaction before the run starts and deleted when it ends, so two
workers (or processes) can never run procurement for the same channel or
sync for the same supplier at once.
"""
from __future__ import annotations

import logging
import os
import socket
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterator

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from backend.app.core.errors import RunInProgressError
from backend.app.db.models.models_v1 import RunLock, utcnow

logger = logging.getLogger(__name__)

SCOPE_PROCUREMENT = "procurement"
SCOPE_SYNC = "sync"
SCOPE_PRICING = "pricing"


def _owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def _aware(ts: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def _acquire(db: Session, scope: str, key: str, owner: str, ttl_seconds: int) -> None:
    try:
        db.add(RunLock(scope=scope, key=key, owner=owner))
        db.commit()
        return
    except IntegrityError:
        db.rollback()

    existing = (
        db.execute(
            select(RunLock).where(RunLock.scope == scope).where(RunLock.key == key).with_for_update()
        )
        .scalar_one_or_none()
    )
    if existing is None:
        # released between our insert and the read, try once more
        db.add(RunLock(scope=scope, key=key, owner=owner))
        try:
            db.commit()
            return
        except IntegrityError:
            db.rollback()
            raise RunInProgressError(f"{scope} run for {key} is already in progress", scope=scope, key=key)

    age = utcnow() - _aware(existing.acquired_at)
    if age <= timedelta(seconds=ttl_seconds):
        db.rollback()
        raise RunInProgressError(
            f"{scope} run for {key} is already in progress",
            scope=scope,
            key=key,
            owner=existing.owner,
        )

    logger.warning("Taking over stale %s lock %s held by %s for %s", scope, key, existing.owner, age)
    existing.owner = owner
    existing.acquired_at = utcnow()
    db.commit()


@contextmanager
def run_lock(
    session_factory: sessionmaker[Session],
    scope: str,
    key: str,
    *,
    ttl_seconds: int = 3600,
) -> Iterator[str]:
    owner = _owner()
    with session_factory() as db:
        _acquire(db, scope, key, owner, ttl_seconds)
    logger.debug("Acquired %s lock %s (%s)", scope, key, owner)
    try:
        yield owner
    finally:
        with session_factory() as db:
            db.execute(
                delete(RunLock)
                .where(RunLock.scope == scope)
                .where(RunLock.key == key)
                .where(RunLock.owner == owner)
            )
            db.commit()
        logger.debug("Released %s lock %s", scope, key)
