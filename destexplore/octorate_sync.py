"""
Octorate connection lifecycle and data sync.

Pulls overwrite local rooms, per-night availability and single-day price
rules for mapped room types. Booking push sends a local reservation to the
PMS once. Webhook events are logged before they are acted on.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import httpx
import jwt
from sqlalchemy.orm import Session

from . import octorate, reservations
from .crypto import decrypt_token, encrypt_token
from .models import (
    GuestProfile,
    Hotel,
    OctorateConnection,
    OctorateRoomMapping,
    OctorateWebhookEvent,
    Reservation,
    Room,
    RoomAvailability,
    RoomPricingRule,
)
from .security import JWT_ALG, JWT_SECRET, issue_token

OAUTH_STATE_TTL_MINUTES = 10
DEFAULT_SYNC_DAYS = 30

logger = logging.getLogger(__name__)


class InvalidOAuthState(Exception):
    pass


class NotConnected(Exception):
    pass


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def issue_oauth_state(hotel_id: str) -> str:
    return issue_token(
        sub=hotel_id,
        role="octorate_oauth",
        ttl_minutes=OAUTH_STATE_TTL_MINUTES,
        extra_claims={"hotel_id": hotel_id, "purpose": "octorate_oauth"},
    )


def read_oauth_state(state: str) -> str:
    try:
        claims = jwt.decode(state, JWT_SECRET, algorithms=[JWT_ALG])
    except jwt.PyJWTError as e:
        raise InvalidOAuthState(str(e)) from e
    if claims.get("purpose") != "octorate_oauth" or not claims.get("hotel_id"):
        raise InvalidOAuthState("state is not an Octorate OAuth state")
    return claims["hotel_id"]


def active_connection(s: Session, hotel_id: str) -> OctorateConnection | None:
    return (
        s.query(OctorateConnection)
        .filter(OctorateConnection.hotel_id == hotel_id)
        .filter(OctorateConnection.is_active.is_(True))
        .filter(OctorateConnection.is_connected.is_(True))
        .order_by(OctorateConnection.id)
        .first()
    )


def connection_for_accommodation(s: Session, accommodation_id: str) -> OctorateConnection | None:
    return (
        s.query(OctorateConnection)
        .filter(OctorateConnection.octorate_accommodation_id == str(accommodation_id))
        .filter(OctorateConnection.is_active.is_(True))
        .filter(OctorateConnection.is_connected.is_(True))
        .first()
    )


def save_connection(s: Session, hotel: Hotel, tokens: octorate.TokenSet, accommodation_id: str) -> OctorateConnection:
    """Store a fresh connection for `hotel`, replacing any previous one. The caller commits."""
    for old in s.query(OctorateConnection).filter(OctorateConnection.hotel_id == hotel.id).all():
        old.is_active = False
        old.is_connected = False
        s.add(old)

    conn = OctorateConnection(
        business_id=hotel.business_id,
        hotel_id=hotel.id,
        octorate_accommodation_id=str(accommodation_id),
        access_token=encrypt_token(tokens.access_token),
        refresh_token=encrypt_token(tokens.refresh_token),
        token_expires_at=tokens.expires_at,
        is_active=True,
        is_connected=True,
    )
    s.add(conn)
    s.flush()

    hotel.pms_type = "octorate"
    hotel.octorate_connection_id = conn.id
    s.add(hotel)
    return conn


def disconnect(s: Session, hotel: Hotel) -> int:
    conns = s.query(OctorateConnection).filter(OctorateConnection.hotel_id == hotel.id).all()
    for conn in conns:
        conn.is_active = False
        conn.is_connected = False
        s.add(conn)
    hotel.pms_type = "internal"
    hotel.octorate_connection_id = None
    s.add(hotel)
    return len(conns)


def open_client(s: Session, conn: OctorateConnection, transport: httpx.BaseTransport | None = None) -> octorate.OctorateClient:
    tokens = octorate.TokenSet(
        access_token=decrypt_token(conn.access_token),
        refresh_token=decrypt_token(conn.refresh_token),
        expires_at=conn.token_expires_at,
    )

    def _store(new: octorate.TokenSet) -> None:
        # Persist right away: the old refresh token may already be spent.
        conn.access_token = encrypt_token(new.access_token)
        conn.refresh_token = encrypt_token(new.refresh_token)
        conn.token_expires_at = new.expires_at
        s.add(conn)
        s.commit()

    return octorate.OctorateClient(conn.octorate_accommodation_id, tokens, on_tokens=_store, transport=transport)


def _mappings(s: Session, conn: OctorateConnection) -> dict[str, str]:
    rows = s.query(OctorateRoomMapping).filter(OctorateRoomMapping.octorate_connection_id == conn.id).all()
    return {r.octorate_room_id: r.room_id for r in rows}


def _touch(conn: OctorateConnection, now: datetime) -> None:
    conn.last_sync_at = now


def pull_room_types(s: Session, conn: OctorateConnection, client: octorate.OctorateClient) -> int:
    now = _now()
    room_types = client.get(f"/accommodations/{conn.octorate_accommodation_id}/room-types") or []
    mapped = _mappings(s, conn)

    for rt in room_types:
        octorate_id = str(rt["id"])
        room = None
        if octorate_id in mapped:
            room = s.get(Room, mapped[octorate_id])
        if room is None:
            room = (
                s.query(Room)
                .filter(Room.hotel_id == conn.hotel_id)
                .filter(Room.octorate_room_id == octorate_id)
                .first()
            )
        if room is None:
            room = Room(hotel_id=conn.hotel_id, room_type="standard", quantity=1)
            s.add(room)

        room.name = rt.get("name") or room.name or octorate_id
        room.max_occupancy = int(rt.get("maxOccupancy") or room.max_occupancy or 2)
        room.base_price = Decimal(str(rt.get("basePrice") or room.base_price or 0))
        room.is_active = True
        room.octorate_room_id = octorate_id
        room.is_synced_from_octorate = True
        room.last_synced_from_octorate_at = now
        s.flush()

        if octorate_id not in mapped:
            s.add(
                OctorateRoomMapping(
                    octorate_connection_id=conn.id,
                    room_id=room.id,
                    octorate_room_id=octorate_id,
                    sync_status="synced",
                    last_synced_at=now,
                )
            )
            mapped[octorate_id] = room.id

    _touch(conn, now)
    s.add(conn)
    return len(room_types)


def _date_params(start: date, end: date) -> dict[str, str]:
    return {"start_date": start.isoformat(), "end_date": end.isoformat()}


def pull_availability(s: Session, conn: OctorateConnection, client: octorate.OctorateClient, start: date, end: date) -> int:
    now = _now()
    rows = client.get(f"/accommodations/{conn.octorate_accommodation_id}/availability", params=_date_params(start, end)) or []
    mapped = _mappings(s, conn)
    if not mapped:
        raise NotConnected("No room mappings found; pull inventory first")

    written = 0
    for item in rows:
        room_id = mapped.get(str(item.get("roomTypeId")))
        if room_id is None:
            continue
        day = date.fromisoformat(str(item["date"])[:10])
        available = bool(item.get("available"))
        quantity = item.get("quantity")
        if quantity is None:
            quantity = 1 if available else 0

        row = (
            s.query(RoomAvailability)
            .filter(RoomAvailability.room_id == room_id)
            .filter(RoomAvailability.day == day)
            .first()
        )
        if row is None:
            row = RoomAvailability(room_id=room_id, day=day)
        row.available_quantity = int(quantity)
        row.availability_status = "available" if available else "blocked"
        row.is_synced_from_octorate = True
        row.last_synced_from_octorate_at = now
        s.add(row)
        written += 1

    _touch(conn, now)
    s.add(conn)
    return written


def pull_rates(s: Session, conn: OctorateConnection, client: octorate.OctorateClient, start: date, end: date) -> int:
    now = _now()
    rows = client.get(f"/accommodations/{conn.octorate_accommodation_id}/rates", params=_date_params(start, end)) or []
    mapped = _mappings(s, conn)
    if not mapped:
        raise NotConnected("No room mappings found; pull inventory first")

    written = 0
    for item in rows:
        room_id = mapped.get(str(item.get("roomTypeId")))
        if room_id is None:
            continue
        day = date.fromisoformat(str(item["date"])[:10])
        # One-day rules are the narrowest span, so a synced rate beats any local season rule.
        rule = (
            s.query(RoomPricingRule)
            .filter(RoomPricingRule.room_id == room_id)
            .filter(RoomPricingRule.is_synced_from_octorate.is_(True))
            .filter(RoomPricingRule.start_date == day)
            .filter(RoomPricingRule.end_date == day)
            .first()
        )
        if rule is None:
            rule = RoomPricingRule(room_id=room_id, start_date=day, end_date=day, pricing_type="octorate")
        rule.price_per_night = Decimal(str(item["price"]))
        rule.is_active = True
        rule.is_synced_from_octorate = True
        s.add(rule)
        written += 1

    _touch(conn, now)
    s.add(conn)
    return written


def push_booking(s: Session, reservation: Reservation, conn: OctorateConnection, client: octorate.OctorateClient) -> dict[str, Any] | None:
    """Create the booking in Octorate. Returns None when it was already pushed."""
    if reservation.octorate_booking_id or reservation.octorate_push_status in ("pushed", "confirmed"):
        return None

    mapping = (
        s.query(OctorateRoomMapping)
        .filter(OctorateRoomMapping.octorate_connection_id == conn.id)
        .filter(OctorateRoomMapping.room_id == reservation.room_id)
        .first()
    )
    if mapping is None:
        raise NotConnected(f"Room {reservation.room_id} is not mapped to an Octorate room type")

    guest = s.get(GuestProfile, reservation.guest_id)
    body = {
        "accommodationId": conn.octorate_accommodation_id,
        "roomTypeId": mapping.octorate_room_id,
        "checkInDate": reservation.check_in_date.isoformat(),
        "checkOutDate": reservation.check_out_date.isoformat(),
        "guests": {
            "adults": reservation.adults,
            "children": reservation.children or 0,
            "infants": reservation.infants or 0,
        },
        "guestInfo": {
            "firstName": guest.first_name if guest else "",
            "lastName": guest.last_name if guest else "",
            "email": guest.email if guest else "",
            "phone": (guest.phone or "") if guest else "",
        },
    }
    if reservation.special_requests:
        body["specialRequests"] = reservation.special_requests

    try:
        resp = client.post(f"/accommodations/{conn.octorate_accommodation_id}/bookings", json=body) or {}
    except octorate.OctorateError:
        reservation.octorate_push_status = "failed"
        s.add(reservation)
        s.commit()
        raise

    reservation.octorate_booking_id = str(resp.get("bookingId") or "") or None
    reservation.octorate_push_status = "pushed"
    reservation.pushed_to_octorate_at = _now()
    s.add(reservation)
    return resp


def _window(payload: dict[str, Any]) -> tuple[date, date]:
    today = _now().date()
    start = date.fromisoformat(payload["start_date"][:10]) if payload.get("start_date") else today
    end = date.fromisoformat(payload["end_date"][:10]) if payload.get("end_date") else today + timedelta(days=DEFAULT_SYNC_DAYS)
    return start, end


def _reservation_for_booking(s: Session, conn: OctorateConnection, booking_id: Any) -> Reservation | None:
    if not booking_id:
        return None
    return (
        s.query(Reservation)
        .filter(Reservation.octorate_booking_id == str(booking_id))
        .filter(Reservation.hotel_id == conn.hotel_id)
        .first()
    )


def _apply_event(
    s: Session,
    conn: OctorateConnection,
    event_type: str,
    payload: dict[str, Any],
    transport: httpx.BaseTransport | None,
) -> list[Reservation]:
    changed: list[Reservation] = []

    if event_type == "PORTAL_SUBSCRIPTION_CALENDAR":
        start, end = _window(payload)
        if payload.get("availability") or payload.get("rates"):
            with open_client(s, conn, transport=transport) as client:
                if payload.get("availability"):
                    pull_availability(s, conn, client, start, end)
                if payload.get("rates"):
                    pull_rates(s, conn, client, start, end)

    elif event_type == "booking_confirmation":
        reservation = _reservation_for_booking(s, conn, payload.get("bookingId"))
        if reservation is not None:
            if reservations.transition(s, reservation, "confirmed", source="octorate_webhook") is not None:
                changed.append(reservation)
            reservation.octorate_push_status = "confirmed"
            reservation.octorate_confirmation_received_at = _now()
            s.add(reservation)

    elif event_type == "booking_cancellation":
        reservation = _reservation_for_booking(s, conn, payload.get("bookingId"))
        if reservation is not None:
            if reservations.transition(s, reservation, "cancelled", source="octorate_webhook") is not None:
                changed.append(reservation)

    else:
        logger.info("Ignoring Octorate webhook event %s for connection %s", event_type, conn.id)

    return changed


def process_webhook(
    s: Session,
    conn: OctorateConnection,
    event_type: str,
    payload: dict[str, Any],
    transport: httpx.BaseTransport | None = None,
) -> tuple[OctorateWebhookEvent, list[Reservation]]:
    """
    Log the event, act on it, and record the outcome on the log row.

    Returns the event row and the reservations whose status changed. Errors
    are stored on the event row and re-raised after committing it.
    """
    event = OctorateWebhookEvent(octorate_connection_id=conn.id, event_type=event_type, payload=payload, processed=False)
    s.add(event)
    s.commit()

    try:
        changed = _apply_event(s, conn, event_type, payload, transport)
    except Exception as e:
        s.rollback()
        event = s.get(OctorateWebhookEvent, event.id)
        event.error_message = str(e) or type(e).__name__
        s.add(event)
        s.commit()
        logger.error("Octorate webhook %s (%s) failed: %s", event.id, event_type, e)
        raise

    event.processed = True
    event.processed_at = _now()
    s.add(event)
    s.commit()
    return event, changed


def sync_status(s: Session, hotel: Hotel) -> dict[str, Any]:
    conn = active_connection(s, hotel.id)
    if conn is None:
        return {"connected": False, "pmsType": hotel.pms_type}

    mapped_rooms = s.query(OctorateRoomMapping).filter(OctorateRoomMapping.octorate_connection_id == conn.id).count()
    synced_days = (
        s.query(RoomAvailability)
        .join(Room, Room.id == RoomAvailability.room_id)
        .filter(Room.hotel_id == hotel.id)
        .filter(RoomAvailability.is_synced_from_octorate.is_(True))
        .count()
    )
    synced_rates = (
        s.query(RoomPricingRule)
        .join(Room, Room.id == RoomPricingRule.room_id)
        .filter(Room.hotel_id == hotel.id)
        .filter(RoomPricingRule.is_synced_from_octorate.is_(True))
        .count()
    )
    return {
        "connected": True,
        "pmsType": hotel.pms_type,
        "connectionId": conn.id,
        "accommodationId": conn.octorate_accommodation_id,
        "lastSyncAt": conn.last_sync_at.isoformat() if conn.last_sync_at else None,
        "tokenExpiresAt": conn.token_expires_at.isoformat() if conn.token_expires_at else None,
        "mappedRooms": mapped_rooms,
        "syncedAvailabilityDays": synced_days,
        "syncedRates": synced_rates,
    }
