from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from backend.app.core.config import Settings
from backend.app.core.errors import TransactionError

logger = logging.getLogger(__name__)


def build_engine(settings: Settings) -> Engine:
    kwargs: dict = {"pool_pre_ping": True}
    if not settings.DATABASE_URL.startswith("sqlite"):
        kwargs.update(pool_size=settings.DB_POOL_SIZE, max_overflow=settings.DB_MAX_OVERFLOW)
    return create_engine(settings.DATABASE_URL, **kwargs)


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """
    One unit of work: commit on success, full rollback on any failure.

    Database errors surface as TransactionError; domain errors raised inside
    the block propagate unchanged (after the rollback).
    """
    try:
        yield db
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Transaction rolled back: %s", exc)
        raise TransactionError(f"Database transaction failed: {exc.__class__.__name__}") from exc
    except BaseException:
        db.rollback()
        raise
