from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import date

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import pricing
from .models import Hotel, Reservation, Room, RoomAvailability, RoomPricingRule

# Optional stored procedure (PostgreSQL only), e.g. check_hotel_availability_simple_bookings.
AVAILABILITY_PROCEDURE = os.getenv("AVAILABILITY_PROCEDURE", "").strip()

# Statuses that hold inventory.
ACTIVE_STATUSES = ("tentative", "confirmed", "checked_in")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoomCheck:
    room_id: str
    can_book: bool
    reasons: list[str] = field(default_factory=list)
    nights: int = 0
    min_stay: int = 1
    quote: pricing.StayQuote | None = None


@dataclass(frozen=True)
class AvailabilityResult:
    hotel_id: str
    available: bool
    # True when the configured procedure failed and the in-process check answered instead.
    degraded: bool = False
    source: str = "inventory"  # procedure|inventory
    rooms: list[RoomCheck] = field(default_factory=list)


def room_rules(s: Session, room_id: str) -> list[pricing.PriceRule]:
    rows = (
        s.query(RoomPricingRule)
        .filter(RoomPricingRule.room_id == room_id)
        .filter(RoomPricingRule.is_active.is_(True))
        .all()
    )
    return pricing.rules_from_rows(rows)


def _booked_by_night(s: Session, room_id: str, check_in: date, check_out: date) -> dict[date, int]:
    overlapping = (
        s.query(Reservation)
        .filter(Reservation.room_id == room_id)
        .filter(Reservation.reservation_status.in_(ACTIVE_STATUSES))
        .filter(Reservation.check_in_date < check_out)
        .filter(Reservation.check_out_date > check_in)
        .all()
    )
    booked: dict[date, int] = {}
    for r in overlapping:
        for night in pricing.stay_nights(max(r.check_in_date, check_in), min(r.check_out_date, check_out)):
            booked[night] = booked.get(night, 0) + 1
    return booked


def _capacity_by_night(s: Session, room: Room, check_in: date, check_out: date) -> dict[date, int]:
    capacity = {night: int(room.quantity or 0) for night in pricing.stay_nights(check_in, check_out)}
    rows = (
        s.query(RoomAvailability)
        .filter(RoomAvailability.room_id == room.id)
        .filter(RoomAvailability.day >= check_in)
        .filter(RoomAvailability.day < check_out)
        .all()
    )
    for row in rows:
        if row.availability_status == "blocked":
            capacity[row.day] = 0
        else:
            capacity[row.day] = max(0, int(row.available_quantity or 0))
    return capacity


def check_room(
    s: Session,
    room: Room,
    check_in: date,
    check_out: date,
    adults: int = 1,
    children: int = 0,
    currency: str = "RON",
) -> RoomCheck:
    """
    Decide whether `room` can take the stay, and at what price.

    Every failing condition is reported in `reasons`; `can_book` is True only
    when there are none.
    """
    reasons: list[str] = []

    if check_out <= check_in:
        return RoomCheck(room_id=room.id, can_book=False, reasons=["check_out must be after check_in"])

    if not room.is_active:
        reasons.append("room is not active")

    guests = max(0, int(adults or 0)) + max(0, int(children or 0))
    if guests < 1:
        reasons.append("at least one guest is required")
    if guests > int(room.max_occupancy or 0):
        reasons.append(f"party of {guests} exceeds max occupancy {room.max_occupancy}")

    rules = room_rules(s, room.id)
    nights = (check_out - check_in).days
    min_stay = pricing.required_min_stay(room.min_stay_nights, rules, check_in)
    if nights < min_stay:
        reasons.append(f"minimum stay is {min_stay} nights")

    capacity = _capacity_by_night(s, room, check_in, check_out)
    booked = _booked_by_night(s, room.id, check_in, check_out)
    sold_out = [n for n, cap in capacity.items() if booked.get(n, 0) >= cap]
    if sold_out:
        reasons.append("no inventory left on " + ", ".join(n.isoformat() for n in sorted(sold_out)))

    quote = pricing.quote_stay(room.base_price, rules, check_in, check_out, currency=currency)
    return RoomCheck(
        room_id=room.id,
        can_book=not reasons,
        reasons=reasons,
        nights=nights,
        min_stay=min_stay,
        quote=quote,
    )


def _call_procedure(s: Session, hotel_id: str, check_in: date, check_out: date, adults: int, children: int) -> bool:
    stmt = text(
        f"SELECT {AVAILABILITY_PROCEDURE}(:p_hotel_id, :p_check_in, :p_check_out, :p_adults, :p_children)"
    )
    # Run inside a savepoint so a failing procedure does not poison the session.
    with s.begin_nested():
        value = s.execute(
            stmt,
            {
                "p_hotel_id": hotel_id,
                "p_check_in": check_in,
                "p_check_out": check_out,
                "p_adults": adults,
                "p_children": children,
            },
        ).scalar()
    return bool(value)


def _procedure_enabled(s: Session) -> bool:
    if not AVAILABILITY_PROCEDURE:
        return False
    return s.get_bind().dialect.name == "postgresql"


def check_hotel_availability(
    s: Session,
    hotel_id: str,
    check_in: date,
    check_out: date,
    adults: int = 1,
    children: int = 0,
) -> AvailabilityResult:
    """
    Whether at least one active room type of the hotel can take the stay.

    When a database procedure is configured it is asked first. If it errors,
    the answer comes from the in-process inventory check and the result is
    flagged `degraded`; a failure never turns into "the hotel has rooms,
    so it is available".
    """
    degraded = False
    if _procedure_enabled(s):
        try:
            available = _call_procedure(s, hotel_id, check_in, check_out, adults, children)
            return AvailabilityResult(hotel_id=hotel_id, available=available, source="procedure")
        except SQLAlchemyError as e:
            logger.warning(
                "Availability procedure %s failed for hotel %s, using inventory check: %s",
                AVAILABILITY_PROCEDURE,
                hotel_id,
                e,
            )
            degraded = True

    rooms = (
        s.query(Room)
        .filter(Room.hotel_id == hotel_id)
        .filter(Room.is_active.is_(True))
        .all()
    )
    checks = [check_room(s, r, check_in, check_out, adults, children) for r in rooms]
    return AvailabilityResult(
        hotel_id=hotel_id,
        available=any(c.can_book for c in checks),
        degraded=degraded,
        source="inventory",
        rooms=checks,
    )


def filter_available_hotels(
    s: Session,
    hotels: list[Hotel],
    check_in: date,
    check_out: date,
    adults: int = 1,
    children: int = 0,
) -> list[tuple[Hotel, AvailabilityResult]]:
    out = []
    for hotel in hotels:
        result = check_hotel_availability(s, hotel.id, check_in, check_out, adults, children)
        if result.available:
            out.append((hotel, result))
    return out
