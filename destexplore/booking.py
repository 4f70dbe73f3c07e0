from __future__ import annotations

import logging
import secrets
from datetime import date, datetime, timezone

from pydantic import BaseModel, Field, model_validator
from sqlalchemy.orm import Session

from . import availability, outbox
from .db import insert_ignore
from .models import BookingChannel, GuestProfile, Hotel, Reservation, Room

WEBSITE_CHANNEL = "website"

logger = logging.getLogger(__name__)


class BookingRequest(BaseModel):
    room_id: str
    hotel_id: str | None = None
    check_in: date
    check_out: date
    adults: int = Field(default=1, ge=0)
    children: int = Field(default=0, ge=0)
    infants: int = Field(default=0, ge=0)

    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: str = Field(min_length=3, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    phone: str | None = None
    special_requests: str | None = None

    @model_validator(mode="after")
    def _dates_in_order(self):
        if self.check_out <= self.check_in:
            raise ValueError("check_out must be after check_in")
        return self


class BookingRejected(Exception):
    def __init__(self, reasons: list[str]):
        super().__init__("; ".join(reasons) or "Room cannot be booked")
        self.reasons = reasons


class NotFound(Exception):
    pass


def find_or_create_guest(s: Session, req: BookingRequest) -> GuestProfile:
    email = req.email.strip().lower()
    insert_ignore(
        s,
        GuestProfile,
        {
            "first_name": req.first_name.strip(),
            "last_name": req.last_name.strip(),
            "email": email,
            "phone": req.phone,
            "created_at": datetime.now(tz=timezone.utc),
        },
        ["email"],
    )
    return s.query(GuestProfile).filter(GuestProfile.email == email).one()


def find_or_create_channel(s: Session, name: str = WEBSITE_CHANNEL) -> BookingChannel:
    insert_ignore(
        s,
        BookingChannel,
        {"name": name, "display_name": name.capitalize(), "channel_type": "direct"},
        ["name"],
    )
    return s.query(BookingChannel).filter(BookingChannel.name == name).one()


def _confirmation_number(now: datetime) -> str:
    # The suffix keeps two bookings in the same millisecond apart.
    return f"WEB-{int(now.timestamp() * 1000)}-{secrets.token_hex(2).upper()}"


def create_tentative_booking(s: Session, req: BookingRequest) -> Reservation:
    """
    Write a tentative reservation and its side-effect messages, then commit.

    Raises NotFound when the room or its hotel is missing and BookingRejected
    when the room cannot take the stay. Email, PMS push and sequence
    scheduling are only enqueued here; they run after the commit.
    """
    # Row lock on the room serializes bookings for it until commit, so two
    # requests cannot both see the last free unit.
    room = s.query(Room).filter(Room.id == req.room_id).with_for_update().one_or_none()
    if room is None:
        raise NotFound("Room not found")
    hotel = s.get(Hotel, room.hotel_id)
    if hotel is None or (req.hotel_id and req.hotel_id != hotel.id):
        raise NotFound("Hotel not found")

    check = availability.check_room(s, room, req.check_in, req.check_out, req.adults, req.children)
    if not check.can_book:
        logger.info("Booking rejected for room %s (%s..%s): %s", room.id, req.check_in, req.check_out, check.reasons)
        raise BookingRejected(check.reasons)

    guest = find_or_create_guest(s, req)
    channel = find_or_create_channel(s)

    now = datetime.now(tz=timezone.utc)
    quote = check.quote
    reservation = Reservation(
        confirmation_number=_confirmation_number(now),
        hotel_id=hotel.id,
        room_id=room.id,
        guest_id=guest.id,
        channel_id=channel.id,
        check_in_date=req.check_in,
        check_out_date=req.check_out,
        adults=req.adults,
        children=req.children,
        infants=req.infants,
        special_requests=req.special_requests,
        reservation_status="tentative",
        payment_status="pending",
        base_rate=quote.base_rate,
        taxes=quote.taxes,
        fees=quote.fees,
        total_amount=quote.total,
        currency=quote.currency,
        created_at=now,
        updated_at=now,
    )
    s.add(reservation)
    s.flush()

    payload = {"reservation_id": reservation.id}
    outbox.enqueue(s, outbox.EMAIL_SEQUENCE_SCHEDULE, payload, reservation_id=reservation.id)
    outbox.enqueue(s, outbox.CHANNEL_MANAGER_PUSH, payload, reservation_id=reservation.id)
    outbox.enqueue(s, outbox.EMAIL_BOOKING_CONFIRMATION, payload, reservation_id=reservation.id)

    s.commit()
    logger.info("Reservation %s created (%s, room=%s, total=%s)", reservation.id, reservation.confirmation_number, room.id, quote.total)
    return reservation
