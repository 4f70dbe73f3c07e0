"""
Scheduled guest emails after a booking, plus the signed feedback links they carry.

post_booking_followup  booking date + 3 days, 10:00 UTC
post_checkin           check-in date + 1 day, 10:00 UTC
"""

from __future__ import annotations

import logging
import math
import os
from datetime import datetime, time, timedelta, timezone
from typing import Any

import httpx
import jwt
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from . import emails, mailer
from .db import as_utc, insert_ignore, session
from .models import EmailSequenceLog, Reservation
from .security import JWT_ALG, JWT_SECRET

POST_BOOKING_FOLLOWUP = "post_booking_followup"
POST_CHECKIN = "post_checkin"

FEEDBACK_TOKEN_SECRET = os.getenv("FEEDBACK_TOKEN_SECRET", "") or JWT_SECRET
FEEDBACK_TOKEN_TTL_DAYS = 30
SEND_HOUR = time(10, 0)

# Reservation statuses each email still makes sense for.
_SENDABLE = {
    POST_BOOKING_FOLLOWUP: ("tentative", "confirmed"),
    POST_CHECKIN: ("confirmed", "checked_in"),
}

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def issue_feedback_token(reservation_id: str, email: str, now: datetime | None = None) -> str:
    now = now or _now()
    payload = {
        "sub": reservation_id,
        "email": email.strip().lower(),
        "purpose": "feedback",
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(days=FEEDBACK_TOKEN_TTL_DAYS)).timestamp()),
    }
    return jwt.encode(payload, FEEDBACK_TOKEN_SECRET, algorithm=JWT_ALG)


def verify_feedback_token(token: str, reservation_id: str, email: str) -> bool:
    try:
        claims = jwt.decode(token, FEEDBACK_TOKEN_SECRET, algorithms=[JWT_ALG])
    except jwt.PyJWTError:
        return False
    return (
        claims.get("purpose") == "feedback"
        and claims.get("sub") == reservation_id
        and claims.get("email") == (email or "").strip().lower()
    )


def _at_send_hour(day) -> datetime:
    return datetime.combine(day, SEND_HOUR, tzinfo=timezone.utc)


def _schedule(s: Session, reservation_id: str, email_type: str, scheduled_at: datetime) -> None:
    insert_ignore(
        s,
        EmailSequenceLog,
        {
            "reservation_id": reservation_id,
            "email_type": email_type,
            "scheduled_at": scheduled_at,
            "status": "scheduled",
        },
        ["reservation_id", "email_type"],
    )


def schedule_email_sequence(s: Session, reservation_id: str) -> bool:
    """
    Schedule the post-booking follow-up when check-in is more than three
    days after the booking. Returns whether the reservation qualifies;
    scheduling twice leaves a single row.
    """
    reservation = s.get(Reservation, reservation_id)
    if reservation is None:
        logger.warning("Cannot schedule email sequence, reservation %s not found", reservation_id)
        return False
    if reservation.reservation_status not in ("tentative", "confirmed"):
        return False

    booked_at = as_utc(reservation.created_at) or _now()
    check_in_at = datetime.combine(reservation.check_in_date, time(0, 0), tzinfo=timezone.utc)
    days_until_check_in = math.ceil((check_in_at - booked_at).total_seconds() / 86400)
    if days_until_check_in <= 3:
        return False

    _schedule(s, reservation.id, POST_BOOKING_FOLLOWUP, _at_send_hour(booked_at.date() + timedelta(days=3)))
    return True


def schedule_post_checkin(s: Session, reservation: Reservation) -> None:
    _schedule(s, reservation.id, POST_CHECKIN, _at_send_hour(reservation.check_in_date + timedelta(days=1)))


def handle_schedule(engine: Engine, payload: dict[str, Any]) -> None:
    with session(engine) as s:
        schedule_email_sequence(s, payload["reservation_id"])
        s.commit()


def feedback_links(reservation_id: str, guest_email: str) -> dict[str, str]:
    token = issue_feedback_token(reservation_id, guest_email)
    base = emails.SITE_URL.rstrip("/")
    return {
        "rating": f"{base}/feedback/reservation-staff-rating?reservationId={reservation_id}&token={token}",
        "issue": f"{base}/feedback/booking-issue?reservationId={reservation_id}&token={token}",
        "contact": f"{base}/contact",
    }


def _sequence_email(email_type: str, ctx: emails.BookingContext) -> mailer.Email:
    guest_name = f"{ctx.guest.first_name} {ctx.guest.last_name}".strip()
    links = feedback_links(ctx.reservation.id, ctx.guest.email)
    if email_type == POST_BOOKING_FOLLOWUP:
        subject = "Cum a fost experiența ta de rezervare?"
        body = (
            f"Salut {guest_name},\n\n"
            f"Rezervarea ta {ctx.reservation.confirmation_number} la {ctx.business.name} "
            f"({emails.format_date(ctx.reservation.check_in_date)} - {emails.format_date(ctx.reservation.check_out_date)}) "
            "este înregistrată.\n\n"
            f"Evaluează experiența: {links['rating']}\n"
            f"Raportează o problemă: {links['issue']}\n"
            f"Contact: {links['contact']}\n"
        )
    else:
        subject = f"Bun venit în {ctx.omd.name}!"
        explore = f"{emails.SITE_URL.rstrip('/')}/{ctx.omd.slug}/explore"
        body = (
            f"Salut {guest_name},\n\n"
            f"Bun venit în {ctx.omd.name}! Descoperă restaurante și experiențe locale: {explore}\n\n"
            f"Ceva nu e în regulă? {links['issue']}\n"
        )
    return mailer.Email(to=[mailer.Recipient(ctx.guest.email, guest_name)], subject=subject, text=body)


def _mark(row: EmailSequenceLog, status: str, now: datetime, error: str | None = None) -> None:
    row.status = status
    row.error = error
    if status == "sent":
        row.sent_at = now


def run_due_sequence_emails(
    engine: Engine,
    now: datetime | None = None,
    limit: int = 50,
    transport: httpx.BaseTransport | None = None,
) -> dict[str, int]:
    """Send scheduled emails that are due. Each row ends up sent, skipped or failed."""
    now = now or _now()
    counts = {"processed": 0, "sent": 0, "skipped": 0, "failed": 0}

    with session(engine) as s:
        due = (
            s.query(EmailSequenceLog)
            .filter(EmailSequenceLog.status == "scheduled")
            .filter(EmailSequenceLog.scheduled_at <= now)
            .order_by(EmailSequenceLog.scheduled_at)
            .limit(limit)
            .all()
        )

        for row in due:
            counts["processed"] += 1
            try:
                ctx = emails.load_booking_context(s, row.reservation_id)
            except emails.NotFound as e:
                _mark(row, "failed", now, str(e))
                counts["failed"] += 1
                continue

            status = ctx.reservation.reservation_status
            if status not in _SENDABLE.get(row.email_type, ()):
                _mark(row, "skipped", now, f"reservation is {status}")
                counts["skipped"] += 1
                continue

            email = _sequence_email(row.email_type, ctx)
            try:
                result = mailer.send(email, transport=transport)
            except mailer.MailerSendError as e:
                logger.warning("Sequence email %s for reservation %s failed: %s", row.email_type, row.reservation_id, e)
                _mark(row, "failed", now, str(e))
                emails.log_email(s, ctx.guest.email, email.subject, "failed", error=str(e))
                counts["failed"] += 1
                continue

            _mark(row, "sent", now)
            emails.log_email(s, ctx.guest.email, email.subject, "sent", message_id=result.message_id)
            counts["sent"] += 1

        s.commit()

    return counts
