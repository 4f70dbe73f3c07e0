"""
Guest feedback: issue reports and staff ratings reached through the signed
links in follow-up emails, plus public destination ratings.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from . import sequences
from .models import BookingIssueReport, DestinationRating, GuestProfile, Reservation, ReservationStaffRating
from .tenancy import lookup_omd

ISSUE_TYPES = ("booking_error", "payment_issue", "room_issue", "service_issue", "other")
CONTACT_PREFERENCES = ("email", "phone", "none")
MAX_DESCRIPTION = 2000
MAX_COMMENT = 1000

logger = logging.getLogger(__name__)


class FeedbackError(Exception):
    status_code = 400


class NotFound(FeedbackError):
    status_code = 404


class InvalidToken(FeedbackError):
    status_code = 401


def _check_rating(rating, message: str) -> None:
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise FeedbackError(message)


def _guest_reservation(s: Session, reservation_id: str, token: str) -> tuple[Reservation, str]:
    r = s.get(Reservation, reservation_id)
    if r is None:
        raise NotFound("Reservation not found")
    guest = s.get(GuestProfile, r.guest_id)
    if guest is None or not guest.email:
        raise NotFound("Guest email not found")
    if not sequences.verify_feedback_token(token, r.id, guest.email):
        raise InvalidToken("Invalid or expired token")
    return r, guest.email


def report_booking_issue(
    s: Session,
    reservation_id: str | None,
    token: str | None,
    issue_type: str | None,
    description: str | None,
    contact_preference: str | None = None,
) -> BookingIssueReport:
    description = (description or "").strip()
    if not reservation_id or not token or not issue_type or not description:
        raise FeedbackError("Missing required fields")
    if issue_type not in ISSUE_TYPES:
        raise FeedbackError(f"issueType must be one of {', '.join(ISSUE_TYPES)}")
    if contact_preference and contact_preference not in CONTACT_PREFERENCES:
        raise FeedbackError(f"contactPreference must be one of {', '.join(CONTACT_PREFERENCES)}")
    if len(description) > MAX_DESCRIPTION:
        raise FeedbackError(f"description is longer than {MAX_DESCRIPTION} characters")

    r, email = _guest_reservation(s, reservation_id, token)
    report = BookingIssueReport(
        reservation_id=r.id,
        hotel_id=r.hotel_id,
        issue_type=issue_type,
        description=description,
        contact_preference=contact_preference or "email",
        guest_email=email,
        status="open",
    )
    s.add(report)
    s.flush()
    logger.info("Booking issue %s reported for reservation %s (%s)", report.id, r.id, issue_type)
    return report


def rate_reservation_staff(
    s: Session,
    reservation_id: str | None,
    token: str | None,
    rating,
    comment: str | None = None,
    now: datetime | None = None,
) -> ReservationStaffRating:
    """One rating per reservation; submitting again replaces it."""
    if not reservation_id or not token or rating is None:
        raise FeedbackError("Missing required fields")
    _check_rating(rating, "Rating must be between 1 and 5")

    now = now or datetime.now(tz=timezone.utc)
    r, email = _guest_reservation(s, reservation_id, token)
    row = s.query(ReservationStaffRating).filter(ReservationStaffRating.reservation_id == r.id).one_or_none()
    if row is None:
        row = ReservationStaffRating(reservation_id=r.id, hotel_id=r.hotel_id, guest_email=email, created_at=now)
        s.add(row)
    row.rating = rating
    row.comment = (comment or "").strip()[:MAX_COMMENT] or None
    row.updated_at = now
    s.flush()
    return row


def rate_destination(
    s: Session,
    omd_slug: str | None,
    rating,
    name: str | None,
    email: str | None,
    comment: str | None = None,
    now: datetime | None = None,
) -> DestinationRating:
    """One rating per destination and email; submitting again replaces it."""
    name = (name or "").strip()
    email = (email or "").strip().lower()
    if not omd_slug or rating is None or not name or not email:
        raise FeedbackError("Câmpuri obligatorii lipsă")
    _check_rating(rating, "Evaluarea trebuie să fie între 1 și 5")

    omd = lookup_omd(s, omd_slug)
    if omd is None:
        raise NotFound("Destinația nu a fost găsită")

    now = now or datetime.now(tz=timezone.utc)
    row = (
        s.query(DestinationRating)
        .filter(DestinationRating.omd_id == omd.id, DestinationRating.email == email)
        .one_or_none()
    )
    if row is None:
        row = DestinationRating(omd_id=omd.id, email=email, created_at=now)
        s.add(row)
    row.rating = rating
    row.name = name[:100]
    row.comment = (comment or "").strip()[:MAX_COMMENT] or None
    row.updated_at = now
    s.flush()
    return row
