"""
Transactional emails: booking confirmation, contact inquiries, approvals.

Message bodies are short plain-text/HTML renditions; the booking
confirmation itself is a MailerSend template filled with variables.
"""

from __future__ import annotations

import html
import logging
import os
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any

import httpx
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from . import availability, mailer, pricing
from .db import session
from .models import Business, ContactInquiry, EmailLog, GuestProfile, Hotel, Omd, Reservation, Room, UserProfile

SITE_URL = os.getenv("SITE_URL", "https://destexplore.eu")
MAILER_SEND_BOOKING_TEMPLATE_ID = os.getenv("MAILER_SEND_BOOKING_TEMPLATE_ID", "")
MARKETING_CONTACT_EMAIL = os.getenv("MARKETING_CONTACT_EMAIL", "")

logger = logging.getLogger(__name__)


class NotFound(Exception):
    def __init__(self, what: str):
        super().__init__(f"{what} not found")
        self.what = what


class MissingRecipient(Exception):
    """No address to send to."""


@dataclass
class BookingContext:
    reservation: Reservation
    guest: GuestProfile
    room: Room
    hotel: Hotel
    business: Business
    omd: Omd


def load_booking_context(s: Session, reservation_id: str) -> BookingContext:
    reservation = s.get(Reservation, reservation_id)
    if reservation is None:
        raise NotFound("Reservation")
    guest = s.get(GuestProfile, reservation.guest_id)
    if guest is None:
        raise NotFound("Guest profile")
    room = s.get(Room, reservation.room_id)
    if room is None:
        raise NotFound("Room")
    hotel = s.get(Hotel, reservation.hotel_id)
    if hotel is None:
        raise NotFound("Hotel")
    business = s.get(Business, hotel.business_id)
    if business is None:
        raise NotFound("Business")
    omd = s.get(Omd, business.omd_id)
    if omd is None:
        raise NotFound("OMD")
    return BookingContext(reservation=reservation, guest=guest, room=room, hotel=hotel, business=business, omd=omd)


def format_date(d: date) -> str:
    return f"{d:%B} {d.day}, {d.year}"


def _stay_total(s: Session, ctx: BookingContext) -> Decimal:
    r = ctx.reservation
    if r.total_amount and Decimal(str(r.total_amount)) > 0:
        return Decimal(str(r.total_amount))
    # Reservations created outside the booking writer (PMS imports) may carry no price.
    quote = pricing.quote_stay(
        ctx.room.base_price,
        availability.room_rules(s, ctx.room.id),
        r.check_in_date,
        r.check_out_date,
        currency=r.currency or "RON",
        taxes=r.taxes or Decimal("0"),
        fees=r.fees or Decimal("0"),
    )
    return quote.total


def booking_confirmation_variables(s: Session, ctx: BookingContext) -> dict[str, str]:
    r = ctx.reservation
    total = _stay_total(s, ctx)
    return {
        "name": f"{ctx.guest.first_name} {ctx.guest.last_name}".strip(),
        "destination_name": ctx.omd.name,
        "business_name": ctx.business.name,
        "total_due": f"{total:.2f} {r.currency or 'RON'}",
        "check_in_date": format_date(r.check_in_date),
        "check_out_date": format_date(r.check_out_date),
        "number_of_guests": str((r.adults or 0) + (r.children or 0)),
        "room_type": ctx.room.name or ctx.room.room_type,
    }


def log_email(
    s: Session,
    recipient: str,
    subject: str,
    status: str,
    message_id: str | None = None,
    error: str | None = None,
) -> EmailLog:
    row = EmailLog(recipient_email=recipient, subject=subject, status=status, message_id=message_id, error=error)
    s.add(row)
    return row


def send_booking_confirmation(
    s: Session,
    reservation_id: str,
    transport: httpx.BaseTransport | None = None,
) -> dict[str, Any]:
    """
    Send the booking confirmation to the guest and the business.

    Raises NotFound for any missing link in reservation, guest, room, hotel,
    business and OMD (in that order), MissingRecipient when the business has
    no contact email outside trial mode, and MailerSendError when sending
    fails. The outcome is written to EmailLog and committed either way.
    """
    ctx = load_booking_context(s, reservation_id)

    business_email = (ctx.business.contact or {}).get("email")
    if not business_email and not mailer.MAILER_SEND_TRIAL_MODE:
        raise MissingRecipient("Business email not found in contact information")

    recipients = [mailer.Recipient(ctx.guest.email, f"{ctx.guest.first_name} {ctx.guest.last_name}".strip())]
    if business_email:
        recipients.append(mailer.Recipient(business_email, ctx.business.name))

    variables = booking_confirmation_variables(s, ctx)
    subject = f"Booking confirmation {ctx.reservation.confirmation_number} - {ctx.business.name}"
    email = mailer.Email(
        to=recipients,
        subject=subject,
        template_id=MAILER_SEND_BOOKING_TEMPLATE_ID or None,
        variables=variables,
        text=None if MAILER_SEND_BOOKING_TEMPLATE_ID else booking_confirmation_text(variables),
    )

    try:
        result = mailer.send(email, transport=transport)
    except mailer.MailerSendError as e:
        for r in recipients:
            log_email(s, r.email, subject, "failed", error=str(e))
        s.commit()
        raise

    for addr in result.sent_to:
        log_email(s, addr, subject, "sent", message_id=result.message_id)
    ctx.reservation.confirmation_sent = True
    s.add(ctx.reservation)
    s.commit()

    return {
        "success": True,
        "messageId": result.message_id,
        "sentTo": result.sent_to,
        "variables": variables,
    }


def booking_confirmation_text(v: dict[str, str]) -> str:
    return (
        f"Hello {v['name']},\n\n"
        f"Your stay at {v['business_name']} ({v['destination_name']}) is booked.\n"
        f"Room: {v['room_type']}\n"
        f"Check-in: {v['check_in_date']}\n"
        f"Check-out: {v['check_out_date']}\n"
        f"Guests: {v['number_of_guests']}\n"
        f"Total due: {v['total_due']}\n"
    )


def handle_booking_confirmation(engine: Engine, payload: dict[str, Any]) -> None:
    reservation_id = payload["reservation_id"]
    with session(engine) as s:
        reservation = s.get(Reservation, reservation_id)
        if reservation is not None and reservation.confirmation_sent:
            return
        send_booking_confirmation(s, reservation_id)


def contact_notification(inquiry: ContactInquiry, omd: Omd | None) -> mailer.Email:
    recipient = MARKETING_CONTACT_EMAIL or mailer.MAILER_SEND_TRIAL_EMAIL
    if not recipient:
        raise MissingRecipient("MARKETING_CONTACT_EMAIL is not configured")
    origin = omd.name if omd is not None else "DestExplore"
    body = (
        f"Nume: {inquiry.name}\n"
        f"Email: {inquiry.email}\n"
        f"Destinație: {origin}\n\n"
        f"{inquiry.message}\n\n"
        f"{SITE_URL}/admin"
    )
    return mailer.Email(
        to=[mailer.Recipient(recipient, "Super Admin DestExplore")],
        subject="Nou mesaj din formularul de prezentare DestExplore",
        text=body,
        html="<p>" + html.escape(body).replace("\n", "<br>") + "</p>",
        reply_to=mailer.Recipient(inquiry.email, inquiry.name),
    )


def omd_admin_recipients(s: Session, omd_id: str) -> tuple[int, list[mailer.Recipient]]:
    """Number of OMD admins, and a recipient for each admin that has an email."""
    admins = (
        s.query(UserProfile)
        .filter(UserProfile.omd_id == omd_id)
        .filter(UserProfile.role == "omd_admin")
        .all()
    )
    recipients = [mailer.Recipient(a.email, a.name or a.email) for a in admins if a.email]
    if mailer.MAILER_SEND_TRIAL_MODE:
        # One copy is enough when everything lands in the trial inbox.
        recipients = recipients[:1]
    return len(admins), recipients


def omd_approved_email(omd: Omd, recipients: list[mailer.Recipient]) -> mailer.Email:
    dashboard = f"{SITE_URL}/{omd.slug}/admin"
    body = (
        f"Destinația {omd.name} a fost aprobată pe DestExplore.\n\n"
        f"Poți accesa panoul de administrare aici: {dashboard}\n"
    )
    return mailer.Email(
        to=recipients,
        subject=f"Destinația {omd.name} a fost aprobată",
        text=body,
        html="<p>" + html.escape(body).replace("\n", "<br>") + "</p>",
    )


_WELCOME = {
    "hotel": "Listarea hotelului tău este acum activă și gata să primească rezervări de la călători.",
    "restaurant": "Restaurantul tău este acum activ și gata să primească clienți.",
    "experience": "Experiența ta este acum activă și gata să creeze momente memorabile pentru vizitatori.",
}

_NEXT_STEPS = {
    "hotel": "Poți acum să configurezi camerele, să gestionezi disponibilitatea și să începi să accepți rezervări.",
    "restaurant": "Poți acum să gestionezi meniul, să actualizezi programul și să începi să accepți cereri de rezervare.",
    "experience": "Poți acum să configurezi sloturile de timp, să gestionezi disponibilitatea și să începi să accepți rezervări.",
}


def business_approved_email(recipient_name: str, business_name: str, business_type: str, recipient_email: str) -> mailer.Email:
    welcome = _WELCOME.get(business_type, "Listarea afacerii tale este acum activă.")
    next_steps = _NEXT_STEPS.get(business_type, "Poți acum să gestionezi detaliile afacerii tale și să începi să primești solicitări.")
    body = (
        f"Salut {recipient_name},\n\n"
        f"{welcome}\n{next_steps}\n\n"
        f"Panou de control: {SITE_URL}/business/dashboard\n"
        f"Ai întrebări? {SITE_URL}/contact\n"
    )
    return mailer.Email(
        to=[mailer.Recipient(recipient_email, recipient_name)],
        subject=f"Felicitări! Afacerea ta {business_name} a fost aprobată",
        text=body,
        html="<p>" + html.escape(body).replace("\n", "<br>") + "</p>",
    )
