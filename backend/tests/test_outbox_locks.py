from datetime import timedelta

import pytest
from sqlalchemy import select

from backend.app.core.errors import RunInProgressError
from backend.app.db.models.core_types import OutboxStatus
from backend.app.db.models.models_v1 import OutboxMessage, RunLock, utcnow
from backend.services.locks import SCOPE_SYNC, run_lock
from backend.services.outbox import dispatch_due, enqueue


def _messages(db_session):
    db_session.expire_all()
    return db_session.execute(select(OutboxMessage).order_by(OutboxMessage.id)).scalars().all()


async def test_dispatch_runs_handlers_and_marks_done(db_session, session_factory, fast_policy):
    enqueue(db_session, "demo.topic", {"n": 1})
    enqueue(db_session, "demo.topic", {"n": 2})
    db_session.commit()
    seen = []

    async def handler(payload):
        seen.append(payload["n"])

    result = await dispatch_due(session_factory, {"demo.topic": handler}, policy=fast_policy)

    assert (result.processed, result.succeeded) == (2, 2)
    assert seen == [1, 2]
    assert {m.status for m in _messages(db_session)} == {OutboxStatus.done}


async def test_failures_are_rescheduled_then_dead(db_session, session_factory, fast_policy):
    """
    GIVEN
    - a message allowed two attempts whose handler always fails

    THEN
    - first dispatch reschedules it, second parks it as dead
    """
    enqueue(db_session, "demo.topic", {}, max_attempts=2)
    db_session.commit()

    async def handler(payload):
        raise RuntimeError("downstream unavailable")

    first = await dispatch_due(session_factory, {"demo.topic": handler}, policy=fast_policy)
    msg = _messages(db_session)[0]
    assert first.failed == 1
    assert (msg.status, msg.attempts) == (OutboxStatus.pending, 1)
    assert msg.last_error == "RuntimeError: downstream unavailable"
    db_session.rollback()

    later = utcnow() + timedelta(minutes=5)
    second = await dispatch_due(session_factory, {"demo.topic": handler}, policy=fast_policy, now=later)
    msg = _messages(db_session)[0]
    assert second.dead == 1
    assert msg.status == OutboxStatus.dead


async def test_handler_runs_after_lease_is_committed(db_session, session_factory, fast_policy):
    """
    GIVEN
    - a due message whose handler reads the outbox through its own session

    THEN
    - the handler sees the committed lease: attempt counted, not yet due again
    - the message ends done
    """
    msg = enqueue(db_session, "demo.topic", {})
    db_session.commit()
    msg_id = msg.id
    seen = []

    async def handler(payload):
        with session_factory() as db:
            leased = db.get(OutboxMessage, msg_id)
            seen.append((leased.status, leased.attempts))
            # not claimable by a concurrent dispatch while leased
            assert db.execute(
                select(OutboxMessage.id).where(OutboxMessage.next_attempt_at <= utcnow())
            ).scalars().all() == []

    # ---------- ACT ----------
    result = await dispatch_due(session_factory, {"demo.topic": handler}, policy=fast_policy)

    # ---------- ASSERT ----------
    assert result.succeeded == 1
    assert seen == [(OutboxStatus.pending, 1)]
    assert _messages(db_session)[0].status == OutboxStatus.done


async def test_message_not_due_is_left_alone(db_session, session_factory, fast_policy):
    enqueue(db_session, "demo.topic", {}, delay_seconds=3600)
    db_session.commit()

    result = await dispatch_due(session_factory, {}, policy=fast_policy)

    assert result.processed == 0


async def test_unknown_topic_counts_as_failure(db_session, session_factory, fast_policy):
    enqueue(db_session, "nobody.listens", {})
    db_session.commit()

    result = await dispatch_due(session_factory, {}, policy=fast_policy)

    assert result.failed == 1
    assert "No handler registered" in _messages(db_session)[0].last_error


def test_run_lock_is_exclusive_and_released(db_session, session_factory):
    with run_lock(session_factory, SCOPE_SYNC, "1:1"):
        with pytest.raises(RunInProgressError):
            with run_lock(session_factory, SCOPE_SYNC, "1:1"):
                pass
        # other keys are independent
        with run_lock(session_factory, SCOPE_SYNC, "1:2"):
            pass

    assert db_session.execute(select(RunLock)).scalars().all() == []


def test_run_lock_released_when_body_fails(db_session, session_factory):
    with pytest.raises(ValueError):
        with run_lock(session_factory, SCOPE_SYNC, "1:1"):
            raise ValueError("boom")

    assert db_session.execute(select(RunLock)).scalars().all() == []
