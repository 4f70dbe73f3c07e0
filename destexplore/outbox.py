"""
Transactional outbox for booking side effects.

Messages are written in the same transaction as the row that caused them and
delivered afterwards by `process_pending`, either right after the request
(background task), from the cron endpoint, or from the optional polling loop.
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from .db import session
from .models import OutboxMessage

EMAIL_BOOKING_CONFIRMATION = "email.booking_confirmation"
CHANNEL_MANAGER_PUSH = "channel_manager.push"
EMAIL_SEQUENCE_SCHEDULE = "email_sequence.schedule"

OUTBOX_MAX_ATTEMPTS = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "5"))
OUTBOX_BACKOFF_SECONDS = float(os.getenv("OUTBOX_BACKOFF_SECONDS", "30"))
OUTBOX_BACKOFF_MAX_SECONDS = float(os.getenv("OUTBOX_BACKOFF_MAX_SECONDS", "3600"))
OUTBOX_WORKER_ENABLED = os.getenv("OUTBOX_WORKER_ENABLED", "").strip().lower() in {"1", "true", "yes", "on"}
OUTBOX_POLL_SECONDS = float(os.getenv("OUTBOX_POLL_SECONDS", "15"))
# A claimed message whose pass died is picked up again once the lease runs out.
OUTBOX_LEASE_SECONDS = float(os.getenv("OUTBOX_LEASE_SECONDS", "300"))

CLAIMABLE = ("pending", "processing")

Handler = Callable[[Engine, dict[str, Any]], None]

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def enqueue(s: Session, kind: str, payload: dict[str, Any], reservation_id: str | None = None) -> OutboxMessage:
    msg = OutboxMessage(
        kind=kind,
        payload=payload,
        reservation_id=reservation_id,
        status="pending",
        attempts=0,
        next_attempt_at=_now(),
    )
    s.add(msg)
    return msg


def backoff_delay(attempts: int) -> timedelta:
    seconds = OUTBOX_BACKOFF_SECONDS * (2 ** max(0, attempts - 1))
    return timedelta(seconds=min(seconds, OUTBOX_BACKOFF_MAX_SECONDS))


def default_handlers() -> dict[str, Handler]:
    # Imported here: the handler modules import the outbox themselves.
    from . import channel_manager, emails, sequences

    return {
        EMAIL_BOOKING_CONFIRMATION: emails.handle_booking_confirmation,
        CHANNEL_MANAGER_PUSH: channel_manager.handle_push,
        EMAIL_SEQUENCE_SCHEDULE: sequences.handle_schedule,
    }


def _claim(engine: Engine, message_id: str, now: datetime) -> tuple[str, dict[str, Any]] | None:
    """Take the lease on a due message. Returns None when another pass holds it."""
    with session(engine) as s:
        result = s.execute(
            update(OutboxMessage)
            .where(OutboxMessage.id == message_id)
            .where(OutboxMessage.status.in_(CLAIMABLE))
            .where(OutboxMessage.next_attempt_at <= now)
            .values(status="processing", next_attempt_at=now + timedelta(seconds=OUTBOX_LEASE_SECONDS))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            s.rollback()
            return None
        s.commit()
        msg = s.get(OutboxMessage, message_id)
        return msg.kind, dict(msg.payload or {})


def _deliver(engine: Engine, message_id: str, handlers: dict[str, Handler], now: datetime) -> str | None:
    claimed = _claim(engine, message_id, now)
    if claimed is None:
        return None
    kind, payload = claimed

    error: str | None = None
    handler = handlers.get(kind)
    if handler is None:
        error = f"No handler registered for {kind}"
    else:
        try:
            handler(engine, payload)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.warning("Outbox message %s (%s) failed: %s", message_id, kind, e)

    with session(engine) as s:
        msg = s.get(OutboxMessage, message_id)
        msg.attempts = (msg.attempts or 0) + 1
        if error is None:
            msg.status = "done"
            msg.last_error = None
            msg.processed_at = now
        else:
            msg.last_error = error
            if msg.attempts >= OUTBOX_MAX_ATTEMPTS:
                msg.status = "dead"
                msg.processed_at = now
                logger.error("Outbox message %s (%s) is dead after %d attempts: %s", message_id, kind, msg.attempts, error)
            else:
                msg.status = "pending"
                msg.next_attempt_at = now + backoff_delay(msg.attempts)
        status = msg.status
        s.add(msg)
        s.commit()
    return status


def process_pending(
    engine: Engine,
    now: datetime | None = None,
    limit: int = 50,
    reservation_id: str | None = None,
    handlers: dict[str, Handler] | None = None,
) -> dict[str, int]:
    """Deliver due messages. Returns counts per resulting status."""
    now = now or _now()
    handlers = handlers if handlers is not None else default_handlers()

    with session(engine) as s:
        q = (
            s.query(OutboxMessage.id)
            .filter(OutboxMessage.status.in_(CLAIMABLE))
            .filter(OutboxMessage.next_attempt_at <= now)
        )
        if reservation_id:
            q = q.filter(OutboxMessage.reservation_id == reservation_id)
        ids = [row.id for row in q.order_by(OutboxMessage.created_at).limit(limit).all()]

    counts = {"processed": 0, "done": 0, "pending": 0, "dead": 0}
    for message_id in ids:
        status = _deliver(engine, message_id, handlers, now)
        if status is None:
            continue
        counts["processed"] += 1
        counts[status] += 1
    return counts


async def run_worker(engine: Engine, poll_seconds: float | None = None) -> None:
    """Poll the outbox forever. Started from the app's startup hook when enabled."""
    poll_seconds = poll_seconds or OUTBOX_POLL_SECONDS
    logger.info("Outbox worker started (poll every %ss)", poll_seconds)
    while True:
        try:
            counts = await asyncio.to_thread(process_pending, engine)
            if counts["processed"]:
                logger.info("Outbox worker pass: %s", counts)
        except Exception as e:
            logger.warning("Outbox worker pass failed: %s", e)
        await asyncio.sleep(poll_seconds)
