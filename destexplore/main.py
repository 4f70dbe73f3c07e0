from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import math
import os
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Literal
from urllib.parse import urlencode

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from . import (
    availability,
    booking,
    channel_manager,
    emails,
    events,
    feedback,
    mailer,
    octorate,
    octorate_sync,
    outbox,
    pricing,
    ratelimit,
    reservations,
    sequences,
)
from .crypto import TokenDecryptionError
from .db import get_engine, session
from .models import Business, ContactInquiry, GuestProfile, Hotel, Omd, Reservation, Room
from .ratelimit import rate_limited
from .security import STAFF_ROLES, require_cron, require_roles
from .tenancy import hotels_for_omd, lookup_omd

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
OCTORATE_WEBHOOK_SECRET = os.getenv("OCTORATE_WEBHOOK_SECRET", "")
OAUTH_STATE_COOKIE = "octorate_oauth_state"

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(
    title="DestExplore Booking Service",
    version="0.1.0",
    description="Availability, pricing and bookings for destination hotels, with transactional email and Octorate PMS sync.",
)


@app.on_event("startup")
async def _startup():
    if outbox.OUTBOX_WORKER_ENABLED:
        asyncio.create_task(outbox.run_worker(get_engine()))


@app.get("/health")
def health():
    return {"status": "ok"}


def _error(status_code: int, message: str, /, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


@app.exception_handler(ratelimit.RateLimitExceeded)
async def _rate_limit_exceeded(request: Request, exc: ratelimit.RateLimitExceeded):
    retry_after = max(1, math.ceil(exc.retry_after))
    response = _error(429, "Too many requests", message="Rate limit exceeded. Please try again later.", retryAfter=retry_after)
    response.headers["Retry-After"] = str(retry_after)
    response.headers["X-RateLimit-Limit"] = str(exc.limit)
    response.headers["X-RateLimit-Remaining"] = "0"
    return response


def _money(value) -> str:
    return f"{Decimal(str(value or 0)):.2f}"


def _require_date_order(check_in: date, check_out: date) -> None:
    if check_out <= check_in:
        raise HTTPException(status_code=400, detail="check_out must be after check_in")


def _check_hotel_access(s, principal: dict, hotel: Hotel) -> None:
    """Scope staff tokens that carry an omd_id or business_id claim to their own hotels."""
    role = principal.get("role")
    if role == "super_admin":
        return
    business = s.get(Business, hotel.business_id)
    if role == "omd_admin" and principal.get("omd_id") and (business is None or business.omd_id != principal["omd_id"]):
        raise HTTPException(status_code=403, detail="Forbidden")
    if role == "business_admin" and principal.get("business_id") and hotel.business_id != principal["business_id"]:
        raise HTTPException(status_code=403, detail="Forbidden")


# --- Availability & pricing ---------------------------------------------------


class QuoteOut(BaseModel):
    currency: str
    nights: int
    base_rate: str
    taxes: str
    fees: str
    total: str
    average_nightly: str
    nightly: list[dict]


class RoomCheckOut(BaseModel):
    room_id: str
    can_book: bool
    reasons: list[str]
    nights: int
    min_stay: int
    quote: QuoteOut | None = None


class AvailabilityOut(BaseModel):
    hotel_id: str
    available: bool
    degraded: bool
    source: str
    rooms: list[RoomCheckOut]


def _quote_out(q: pricing.StayQuote | None) -> QuoteOut | None:
    if q is None:
        return None
    return QuoteOut(
        currency=q.currency,
        nights=q.nights,
        base_rate=_money(q.base_rate),
        taxes=_money(q.taxes),
        fees=_money(q.fees),
        total=_money(q.total),
        average_nightly=_money(q.average_nightly),
        nightly=[{"date": n.night.isoformat(), "price": _money(n.price), "rule_id": n.rule_id} for n in q.nightly],
    )


def _room_check_out(c: availability.RoomCheck) -> RoomCheckOut:
    return RoomCheckOut(
        room_id=c.room_id,
        can_book=c.can_book,
        reasons=list(c.reasons),
        nights=c.nights,
        min_stay=c.min_stay,
        quote=_quote_out(c.quote),
    )


def _availability_out(r: availability.AvailabilityResult) -> AvailabilityOut:
    return AvailabilityOut(
        hotel_id=r.hotel_id,
        available=r.available,
        degraded=r.degraded,
        source=r.source,
        rooms=[_room_check_out(c) for c in r.rooms],
    )


@app.get("/api/omds/{slug}/hotels")
def list_omd_hotels(
    slug: str,
    check_in: date | None = None,
    check_out: date | None = None,
    adults: int = Query(default=1, ge=0),
    children: int = Query(default=0, ge=0),
    engine=Depends(get_engine),
):
    if (check_in is None) != (check_out is None):
        raise HTTPException(status_code=400, detail="check_in and check_out must be given together")
    if check_in is not None:
        _require_date_order(check_in, check_out)

    with session(engine) as s:
        omd = lookup_omd(s, slug)
        if omd is None:
            raise HTTPException(status_code=404, detail="Destination not found")
        hotels = hotels_for_omd(s, omd.id)
        results: dict[str, availability.AvailabilityResult] = {}
        if check_in is not None:
            filtered = availability.filter_available_hotels(s, hotels, check_in, check_out, adults, children)
            hotels = [h for h, _ in filtered]
            results = {h.id: r for h, r in filtered}

        items = []
        for h in hotels:
            business = s.get(Business, h.business_id)
            item = {
                "id": h.id,
                "business_id": h.business_id,
                "name": business.name if business else None,
                "slug": business.slug if business else None,
                "pms_type": h.pms_type,
            }
            if h.id in results:
                item["available"] = results[h.id].available
                item["degraded"] = results[h.id].degraded
            items.append(item)

    return {"omd": {"id": omd.id, "slug": omd.slug, "name": omd.name}, "items": items}


@app.get("/api/hotels/{hotel_id}/availability", response_model=AvailabilityOut)
def hotel_availability(
    hotel_id: str,
    check_in: date,
    check_out: date,
    adults: int = Query(default=1, ge=0),
    children: int = Query(default=0, ge=0),
    engine=Depends(get_engine),
):
    _require_date_order(check_in, check_out)
    with session(engine) as s:
        if s.get(Hotel, hotel_id) is None:
            raise HTTPException(status_code=404, detail="Hotel not found")
        result = availability.check_hotel_availability(s, hotel_id, check_in, check_out, adults, children)
    return _availability_out(result)


@app.get("/api/rooms/{room_id}/price")
def room_nightly_price(room_id: str, night: date = Query(alias="date"), engine=Depends(get_engine)):
    with session(engine) as s:
        room = s.get(Room, room_id)
        if room is None:
            raise HTTPException(status_code=404, detail="Room not found")
        rules = availability.room_rules(s, room.id)
    price, rule = pricing.resolve_nightly_price(room.base_price, rules, night)
    return {
        "room_id": room_id,
        "date": night.isoformat(),
        "price": _money(price),
        "rule_id": rule.rule_id if rule else None,
        "min_stay": pricing.required_min_stay(room.min_stay_nights, rules, night),
    }


@app.get("/api/rooms/{room_id}/quote", response_model=RoomCheckOut)
def room_quote(
    room_id: str,
    check_in: date,
    check_out: date,
    adults: int = Query(default=1, ge=0),
    children: int = Query(default=0, ge=0),
    engine=Depends(get_engine),
):
    _require_date_order(check_in, check_out)
    with session(engine) as s:
        room = s.get(Room, room_id)
        if room is None:
            raise HTTPException(status_code=404, detail="Room not found")
        check = availability.check_room(s, room, check_in, check_out, adults, children)
    return _room_check_out(check)


# --- Bookings & reservations --------------------------------------------------


class ReservationOut(BaseModel):
    id: str
    confirmation_number: str
    hotel_id: str
    room_id: str
    guest_id: str
    check_in_date: date
    check_out_date: date
    adults: int
    children: int
    infants: int
    reservation_status: str
    payment_status: str
    base_rate: str
    taxes: str
    fees: str
    total_amount: str
    currency: str
    confirmation_sent: bool
    octorate_booking_id: str | None = None
    octorate_push_status: str | None = None
    created_at: datetime


def _reservation_out(r: Reservation) -> ReservationOut:
    return ReservationOut(
        id=r.id,
        confirmation_number=r.confirmation_number,
        hotel_id=r.hotel_id,
        room_id=r.room_id,
        guest_id=r.guest_id,
        check_in_date=r.check_in_date,
        check_out_date=r.check_out_date,
        adults=r.adults,
        children=r.children or 0,
        infants=r.infants or 0,
        reservation_status=r.reservation_status,
        payment_status=r.payment_status,
        base_rate=_money(r.base_rate),
        taxes=_money(r.taxes),
        fees=_money(r.fees),
        total_amount=_money(r.total_amount),
        currency=r.currency,
        confirmation_sent=bool(r.confirmation_sent),
        octorate_booking_id=r.octorate_booking_id,
        octorate_push_status=r.octorate_push_status,
        created_at=r.created_at,
    )


@app.post("/api/bookings", response_model=ReservationOut, status_code=201)
async def create_booking(
    payload: booking.BookingRequest,
    background: BackgroundTasks,
    engine=Depends(get_engine),
):
    with session(engine) as s:
        try:
            reservation = booking.create_tentative_booking(s, payload)
        except booking.NotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except booking.BookingRejected as e:
            raise HTTPException(status_code=409, detail={"message": "Room cannot be booked", "reasons": e.reasons})

    background.add_task(outbox.process_pending, engine, reservation_id=reservation.id)

    await events.booking_created(reservation)
    return _reservation_out(reservation)


@app.get("/api/reservations/{reservation_id}", response_model=ReservationOut)
def get_reservation(
    reservation_id: str,
    engine=Depends(get_engine),
    principal=Depends(require_roles(*STAFF_ROLES)),
):
    with session(engine) as s:
        r = s.get(Reservation, reservation_id)
        if r is None:
            raise HTTPException(status_code=404, detail="Reservation not found")
        _check_hotel_access(s, principal, s.get(Hotel, r.hotel_id))
    return _reservation_out(r)


class StatusChangeIn(BaseModel):
    status: Literal["tentative", "confirmed", "checked_in", "checked_out", "cancelled", "no_show"]
    source: str = Field(default="admin", min_length=1)


@app.post("/api/reservations/{reservation_id}/status", response_model=ReservationOut)
async def change_reservation_status(
    reservation_id: str,
    payload: StatusChangeIn,
    background: BackgroundTasks,
    engine=Depends(get_engine),
    principal=Depends(require_roles(*STAFF_ROLES)),
):
    with session(engine) as s:
        r = s.get(Reservation, reservation_id)
        if r is None:
            raise HTTPException(status_code=404, detail="Reservation not found")
        _check_hotel_access(s, principal, s.get(Hotel, r.hotel_id))
        from_status = r.reservation_status
        try:
            change = reservations.transition(s, r, payload.status, source=payload.source)
        except reservations.IllegalTransition as e:
            raise HTTPException(status_code=409, detail=str(e))
        s.commit()

    if change is not None:
        background.add_task(outbox.process_pending, engine, reservation_id=r.id)
        await events.reservation_status_changed(r.id, r.reservation_status, payload.source, from_status=from_status)
    return _reservation_out(r)


# --- Email --------------------------------------------------------------------


class ReservationRef(BaseModel):
    reservationId: str | None = None


@app.post("/api/email/booking-confirmation")
def send_booking_confirmation_email(payload: ReservationRef, engine=Depends(get_engine)):
    if not payload.reservationId:
        return _error(400, "Missing reservationId")

    with session(engine) as s:
        try:
            return emails.send_booking_confirmation(s, payload.reservationId)
        except emails.NotFound as e:
            return _error(404, str(e))
        except emails.MissingRecipient as e:
            return _error(400, str(e))
        except mailer.MailerSendError as e:
            logger.warning("Booking confirmation for %s failed: %s", payload.reservationId, e)
            return _error(500, "Failed to send email", details=str(e), body=e.body)


class ContactIn(BaseModel):
    nume: str | None = None
    email: str | None = None
    mesaj: str | None = None
    omdSlug: str | None = None


@app.post("/api/contact/submit", dependencies=[Depends(rate_limited("public"))])
def submit_contact(payload: ContactIn, engine=Depends(get_engine)):
    if not (payload.nume and payload.email and payload.mesaj):
        return _error(400, "Toate câmpurile sunt obligatorii")

    try:
        with session(engine) as s:
            omd = lookup_omd(s, payload.omdSlug) if payload.omdSlug else None
            inquiry = ContactInquiry(
                name=payload.nume,
                email=payload.email,
                message=payload.mesaj,
                status="new",
                omd_id=omd.id if omd else None,
            )
            s.add(inquiry)
            s.commit()
    except SQLAlchemyError as e:
        logger.warning("Contact inquiry insert failed: %s", e)
        return _error(500, "A apărut o eroare. Vă rugăm încercați din nou.")

    email_sent = False
    try:
        mailer.send(emails.contact_notification(inquiry, omd))
        email_sent = True
    except (mailer.MailerSendError, emails.MissingRecipient) as e:
        # The inquiry is stored; staff see it in the admin list even without the email.
        logger.warning("Contact notification for inquiry %s not sent: %s", inquiry.id, e)

    return {"success": True, "id": inquiry.id, "emailSent": email_sent}


class OmdApprovedIn(BaseModel):
    omdId: str | None = None


@app.post("/api/email/omd-approved")
def send_omd_approved_email(
    payload: OmdApprovedIn,
    engine=Depends(get_engine),
    _principal=Depends(require_roles("super_admin")),
):
    if not payload.omdId:
        return _error(400, "omdId is required")

    with session(engine) as s:
        omd = s.get(Omd, payload.omdId)
        if omd is None:
            return _error(404, "OMD not found")
        admin_count, recipients = emails.omd_admin_recipients(s, omd.id)
        if admin_count == 0:
            return _error(404, "No OMD admin found for destination")
        if not recipients:
            return _error(400, "No valid recipient email found")

        email = emails.omd_approved_email(omd, recipients)
        try:
            result = mailer.send(email)
        except mailer.MailerSendError as e:
            logger.warning("OMD approval email for %s not sent: %s", omd.id, e)
            for r in recipients:
                emails.log_email(s, r.email, email.subject, "failed", error=str(e))
            s.commit()
            return {"success": True, "emailSent": False, "error": str(e)}

        for addr in result.sent_to:
            emails.log_email(s, addr, email.subject, "sent", message_id=result.message_id)
        s.commit()

    return {
        "success": True,
        "emailSent": True,
        "messageId": result.message_id,
        "sentTo": result.sent_to,
        "originalRecipients": [r.email for r in recipients],
    }


class ApprovalIn(BaseModel):
    recipientName: str | None = None
    businessName: str | None = None
    businessType: str | None = None
    recipientEmail: str | None = None


@app.post("/api/email/send-approval")
def send_business_approval_email(
    payload: ApprovalIn,
    engine=Depends(get_engine),
    _principal=Depends(require_roles("super_admin")),
):
    if not (payload.recipientName and payload.businessName and payload.businessType and payload.recipientEmail):
        return _error(400, "Missing required fields")

    email = emails.business_approved_email(
        payload.recipientName, payload.businessName, payload.businessType, payload.recipientEmail
    )
    with session(engine) as s:
        try:
            result = mailer.send(email)
        except mailer.MailerSendError as e:
            logger.warning("Business approval email to %s not sent: %s", payload.recipientEmail, e)
            emails.log_email(s, payload.recipientEmail, email.subject, "failed", error=str(e))
            s.commit()
            return {"success": True, "emailSent": False, "error": str(e)}
        emails.log_email(s, payload.recipientEmail, email.subject, "sent", message_id=result.message_id)
        s.commit()

    return {"success": True, "emailSent": True, "messageId": result.message_id, "sentTo": result.sent_to}


@app.post("/api/email/sequence/schedule")
def schedule_sequence(payload: ReservationRef, engine=Depends(get_engine)):
    if not payload.reservationId:
        return _error(400, "reservationId is required")
    with session(engine) as s:
        if s.get(Reservation, payload.reservationId) is None:
            return _error(404, "Reservation not found")
        scheduled = sequences.schedule_email_sequence(s, payload.reservationId)
        s.commit()
    return {"success": True, "scheduled": scheduled}


@app.api_route("/api/email/sequence/trigger", methods=["GET", "POST"])
def trigger_sequence(engine=Depends(get_engine), _cron=Depends(require_cron)):
    counts = sequences.run_due_sequence_emails(engine)
    if not counts["processed"]:
        return {"success": True, "message": "No emails to send", **counts}
    return {"success": True, **counts}


class VerifyTokenIn(BaseModel):
    reservationId: str | None = None
    token: str | None = None


@app.post("/api/feedback/verify-token", dependencies=[Depends(rate_limited("feedback"))])
def verify_feedback_token(payload: VerifyTokenIn, engine=Depends(get_engine)):
    if not payload.reservationId or not payload.token:
        return JSONResponse(status_code=400, content={"valid": False, "error": "Missing reservationId or token"})

    with session(engine) as s:
        r = s.get(Reservation, payload.reservationId)
        if r is None:
            return JSONResponse(status_code=404, content={"valid": False, "error": "Reservation not found"})
        guest = s.get(GuestProfile, r.guest_id)
        if guest is None or not guest.email:
            return JSONResponse(status_code=404, content={"valid": False, "error": "Guest email not found"})
        hotel = s.get(Hotel, r.hotel_id)
        business = s.get(Business, hotel.business_id) if hotel else None

    if not sequences.verify_feedback_token(payload.token, r.id, guest.email):
        return JSONResponse(status_code=401, content={"valid": False, "error": "Invalid or expired token"})

    return {
        "valid": True,
        "reservation": {
            "id": r.id,
            "confirmationNumber": r.confirmation_number,
            "businessName": business.name if business else None,
        },
    }


class BookingIssueIn(BaseModel):
    reservationId: str | None = None
    token: str | None = None
    issueType: str | None = None
    description: str | None = None
    contactPreference: str | None = None


class StaffRatingIn(BaseModel):
    reservationId: str | None = None
    token: str | None = None
    rating: int | None = None
    comment: str | None = None


class DestinationRatingIn(BaseModel):
    omdSlug: str | None = None
    rating: int | None = None
    comment: str | None = None
    name: str | None = None
    email: str | None = None


def _save_feedback(engine, write, failure_message: str):
    """Run one feedback write in its own transaction and shape the response."""
    try:
        with session(engine) as s:
            row = write(s)
            s.commit()
    except feedback.FeedbackError as e:
        return _error(e.status_code, str(e))
    except SQLAlchemyError as e:
        logger.warning("%s: %s", failure_message, e)
        return _error(500, failure_message)
    return {"success": True, "id": row.id}


@app.post("/api/feedback/booking-issue", dependencies=[Depends(rate_limited("feedback"))])
def submit_booking_issue(payload: BookingIssueIn, engine=Depends(get_engine)):
    return _save_feedback(
        engine,
        lambda s: feedback.report_booking_issue(
            s, payload.reservationId, payload.token, payload.issueType, payload.description, payload.contactPreference
        ),
        "Failed to submit issue report",
    )


@app.post("/api/feedback/reservation-staff-rating", dependencies=[Depends(rate_limited("feedback"))])
def submit_staff_rating(payload: StaffRatingIn, engine=Depends(get_engine)):
    return _save_feedback(
        engine,
        lambda s: feedback.rate_reservation_staff(s, payload.reservationId, payload.token, payload.rating, payload.comment),
        "Failed to submit rating",
    )


@app.post("/api/feedback/destination-rating", dependencies=[Depends(rate_limited("feedback"))])
def submit_destination_rating(payload: DestinationRatingIn, engine=Depends(get_engine)):
    return _save_feedback(
        engine,
        lambda s: feedback.rate_destination(s, payload.omdSlug, payload.rating, payload.name, payload.email, payload.comment),
        "Eroare la trimiterea evaluării",
    )


# --- Channel manager & outbox ---------------------------------------------------


@app.post("/api/channel-manager/push")
def push_to_channel_manager(
    payload: ReservationRef,
    engine=Depends(get_engine),
    principal=Depends(require_roles(*STAFF_ROLES)),
):
    if not payload.reservationId:
        return _error(400, "reservationId is required")
    with session(engine) as s:
        r = s.get(Reservation, payload.reservationId)
        if r is None:
            return _error(404, "Reservation not found")
        _check_hotel_access(s, principal, s.get(Hotel, r.hotel_id))
        result = channel_manager.push_reservation(s, r)
        s.commit()
    return result.as_dict()


@app.post("/api/outbox/process")
def process_outbox(
    limit: int = Query(default=50, ge=1, le=500),
    engine=Depends(get_engine),
    _cron=Depends(require_cron),
):
    return outbox.process_pending(engine, limit=limit)


# --- Octorate -------------------------------------------------------------------


def _staff_hotel(s, hotel_id: str, principal: dict) -> Hotel:
    hotel = s.get(Hotel, hotel_id)
    if hotel is None:
        raise HTTPException(status_code=404, detail="Hotel not found")
    _check_hotel_access(s, principal, hotel)
    return hotel


@app.get("/api/octorate/oauth/authorize")
def octorate_authorize(
    hotel_id: str,
    response: Response,
    engine=Depends(get_engine),
    principal=Depends(require_roles(*STAFF_ROLES)),
):
    with session(engine) as s:
        _staff_hotel(s, hotel_id, principal)
    state = octorate_sync.issue_oauth_state(hotel_id)
    response.set_cookie(
        OAUTH_STATE_COOKIE,
        state,
        max_age=octorate_sync.OAUTH_STATE_TTL_MINUTES * 60,
        httponly=True,
        samesite="lax",
    )
    return {"authUrl": octorate.authorization_url(state)}


def _dashboard_redirect(**params) -> RedirectResponse:
    url = f"{octorate.SITE_URL.rstrip('/')}/business/dashboard?{urlencode(params)}"
    resp = RedirectResponse(url, status_code=302)
    resp.delete_cookie(OAUTH_STATE_COOKIE)
    return resp


@app.get("/api/octorate/oauth/callback")
def octorate_callback(
    request: Request,
    code: str | None = None,
    state: str | None = None,
    accommodation_id: str | None = None,
    error: str | None = None,
    engine=Depends(get_engine),
):
    if error:
        return _dashboard_redirect(octorate="error", message=error)
    if not code or not state:
        return _dashboard_redirect(octorate="error", message="missing_code_or_state")

    cookie_state = request.cookies.get(OAUTH_STATE_COOKIE)
    if cookie_state and not hmac.compare_digest(cookie_state, state):
        return _dashboard_redirect(octorate="error", message="state_mismatch")
    try:
        hotel_id = octorate_sync.read_oauth_state(state)
    except octorate_sync.InvalidOAuthState as e:
        logger.warning("Octorate OAuth callback with invalid state: %s", e)
        return _dashboard_redirect(octorate="error", message="invalid_state")
    if not accommodation_id:
        return _dashboard_redirect(octorate="error", message="missing_accommodation_id")

    try:
        tokens = octorate.exchange_code(code)
    except octorate.OctorateError as e:
        logger.warning("Octorate code exchange failed for hotel %s: %s", hotel_id, e)
        return _dashboard_redirect(octorate="error", message="token_exchange_failed")

    with session(engine) as s:
        hotel = s.get(Hotel, hotel_id)
        if hotel is None:
            return _dashboard_redirect(octorate="error", message="hotel_not_found")
        conn = octorate_sync.save_connection(s, hotel, tokens, accommodation_id)
        s.commit()

    logger.info("Hotel %s connected to Octorate accommodation %s (connection %s)", hotel_id, accommodation_id, conn.id)
    return _dashboard_redirect(octorate="connected")


@app.post("/api/octorate/hotels/{hotel_id}/disconnect")
def octorate_disconnect(
    hotel_id: str,
    engine=Depends(get_engine),
    principal=Depends(require_roles(*STAFF_ROLES)),
):
    with session(engine) as s:
        hotel = _staff_hotel(s, hotel_id, principal)
        count = octorate_sync.disconnect(s, hotel)
        s.commit()
    return {"success": True, "disconnected": count}


@app.post("/api/octorate/hotels/{hotel_id}/sync/{kind}")
def octorate_sync_now(
    hotel_id: str,
    kind: Literal["inventory", "availability", "rates"],
    start_date: date | None = None,
    end_date: date | None = None,
    engine=Depends(get_engine),
    principal=Depends(require_roles(*STAFF_ROLES)),
):
    start = start_date or datetime.now(tz=timezone.utc).date()
    end = end_date or start + timedelta(days=octorate_sync.DEFAULT_SYNC_DAYS)
    if end < start:
        raise HTTPException(status_code=400, detail="end_date must not be before start_date")

    with session(engine) as s:
        hotel = _staff_hotel(s, hotel_id, principal)
        conn = octorate_sync.active_connection(s, hotel.id)
        if conn is None:
            raise HTTPException(status_code=400, detail="Hotel is not connected to Octorate")
        try:
            with octorate_sync.open_client(s, conn) as client:
                if kind == "inventory":
                    synced = octorate_sync.pull_room_types(s, conn, client)
                elif kind == "availability":
                    synced = octorate_sync.pull_availability(s, conn, client, start, end)
                else:
                    synced = octorate_sync.pull_rates(s, conn, client, start, end)
            s.commit()
        except octorate_sync.NotConnected as e:
            raise HTTPException(status_code=400, detail=str(e))
        except octorate.OctorateRateLimited as e:
            raise HTTPException(status_code=429, detail=str(e))
        except (octorate.OctorateError, TokenDecryptionError) as e:
            logger.warning("Octorate %s sync failed for hotel %s: %s", kind, hotel_id, e)
            raise HTTPException(status_code=502, detail=str(e))

    return {"success": True, "kind": kind, "synced": synced}


@app.get("/api/octorate/hotels/{hotel_id}/sync/status")
def octorate_sync_status(
    hotel_id: str,
    engine=Depends(get_engine),
    principal=Depends(require_roles(*STAFF_ROLES)),
):
    with session(engine) as s:
        hotel = _staff_hotel(s, hotel_id, principal)
        return octorate_sync.sync_status(s, hotel)


def _valid_signature(body: bytes, signature: str | None) -> bool:
    if not OCTORATE_WEBHOOK_SECRET:
        return True
    if not signature:
        return False
    expected = hmac.new(OCTORATE_WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower().removeprefix("sha256="))


@app.post("/api/octorate/webhook")
async def octorate_webhook(request: Request, engine=Depends(get_engine)):
    body = await request.body()
    if not _valid_signature(body, request.headers.get("x-octorate-signature")):
        return _error(401, "Invalid signature")

    try:
        data = json.loads(body or b"{}")
    except ValueError:
        return _error(400, "Invalid JSON body")
    if not isinstance(data, dict):
        return _error(400, "Invalid JSON body")
    payload = data.get("payload") or {}
    if not isinstance(payload, dict):
        return _error(400, "Invalid JSON body")
    event_type = data.get("eventType")
    accommodation_id = data.get("accommodationId")
    if not event_type or not accommodation_id:
        return _error(400, "eventType and accommodationId are required")

    with session(engine) as s:
        conn = octorate_sync.connection_for_accommodation(s, accommodation_id)
        if conn is None:
            return _error(404, "Connection not found")
        try:
            event, changed = octorate_sync.process_webhook(s, conn, event_type, payload)
        except Exception as e:
            return _error(500, str(e) or type(e).__name__)
        status_changes = [(r.id, r.reservation_status) for r in changed]

    for reservation_id, status in status_changes:
        await events.reservation_status_changed(reservation_id, status, "octorate_webhook")
    return {"success": True, "eventId": event.id}
