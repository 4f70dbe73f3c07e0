"""
Reservation status changes.

Every write to `Reservation.reservation_status` goes through `transition`,
whether it comes from staff, the Octorate webhook or anything else.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from . import outbox, sequences
from .models import Reservation, ReservationStatusChange

STATUSES = ("tentative", "confirmed", "checked_in", "checked_out", "cancelled", "no_show")

LEGAL_TRANSITIONS: dict[str, frozenset[str]] = {
    "tentative": frozenset({"confirmed", "cancelled"}),
    "confirmed": frozenset({"checked_in", "cancelled", "no_show"}),
    "checked_in": frozenset({"checked_out"}),
    "checked_out": frozenset(),
    "cancelled": frozenset(),
    "no_show": frozenset(),
}

logger = logging.getLogger(__name__)


class IllegalTransition(Exception):
    def __init__(self, from_status: str, to_status: str):
        super().__init__(f"Cannot change reservation status from {from_status} to {to_status}")
        self.from_status = from_status
        self.to_status = to_status


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in LEGAL_TRANSITIONS.get(from_status, frozenset())


def transition(
    s: Session,
    reservation: Reservation,
    to_status: str,
    source: str,
    now: datetime | None = None,
) -> ReservationStatusChange | None:
    """
    Move `reservation` to `to_status` inside the caller's transaction.

    Returns the audit row, or None when the reservation already has that
    status. The caller commits.
    """
    if to_status not in STATUSES:
        raise IllegalTransition(reservation.reservation_status, to_status)

    from_status = reservation.reservation_status
    if from_status == to_status:
        return None
    if not can_transition(from_status, to_status):
        raise IllegalTransition(from_status, to_status)

    now = now or datetime.now(tz=timezone.utc)
    reservation.reservation_status = to_status
    reservation.updated_at = now
    s.add(reservation)

    change = ReservationStatusChange(
        reservation_id=reservation.id,
        from_status=from_status,
        to_status=to_status,
        source=source,
        changed_at=now,
    )
    s.add(change)

    if to_status == "confirmed":
        outbox.enqueue(s, outbox.EMAIL_SEQUENCE_SCHEDULE, {"reservation_id": reservation.id}, reservation_id=reservation.id)
    elif to_status == "checked_in":
        sequences.schedule_post_checkin(s, reservation)

    logger.info("Reservation %s: %s -> %s (source=%s)", reservation.id, from_status, to_status, source)
    return change
