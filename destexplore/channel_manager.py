from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

import httpx
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from . import octorate, octorate_sync
from .crypto import TokenDecryptionError
from .db import session
from .models import Hotel, OctorateConnection, Reservation

logger = logging.getLogger(__name__)


@dataclass
class PushResult:
    success: bool
    channel_manager: str | None = None
    booking_id: str | None = None
    error: str | None = None
    skipped: bool = False

    def as_dict(self) -> dict[str, Any]:
        d = asdict(self)
        return {
            "success": d["success"],
            "channelManager": d["channel_manager"],
            "bookingId": d["booking_id"],
            "error": d["error"],
            "skipped": d["skipped"],
        }


class PushFailed(Exception):
    def __init__(self, result: PushResult):
        super().__init__(result.error or "Channel manager push failed")
        self.result = result


def _push_octorate(s: Session, hotel: Hotel, reservation: Reservation, transport: httpx.BaseTransport | None) -> PushResult:
    if reservation.octorate_push_status in ("pushed", "confirmed"):
        return PushResult(
            success=True,
            channel_manager="octorate",
            booking_id=reservation.octorate_booking_id,
            skipped=True,
            error="Booking already pushed to Octorate",
        )

    conn = s.get(OctorateConnection, hotel.octorate_connection_id) if hotel.octorate_connection_id else None
    if conn is None or not conn.is_active or not conn.is_connected:
        return PushResult(success=False, channel_manager="octorate", error="Octorate connection not found")

    try:
        with octorate_sync.open_client(s, conn, transport=transport) as client:
            resp = octorate_sync.push_booking(s, reservation, conn, client)
    except (octorate.OctorateError, octorate_sync.NotConnected, TokenDecryptionError) as e:
        logger.warning("Octorate push failed for reservation %s: %s", reservation.id, e)
        return PushResult(success=False, channel_manager="octorate", error=str(e))

    if resp is None:
        return PushResult(success=True, channel_manager="octorate", booking_id=reservation.octorate_booking_id, skipped=True)
    return PushResult(success=True, channel_manager="octorate", booking_id=reservation.octorate_booking_id)


def push_reservation(s: Session, reservation: Reservation, transport: httpx.BaseTransport | None = None) -> PushResult:
    """
    Route a reservation to the hotel's channel manager.

    `internal` hotels need no push. Failures are returned, not raised, and
    leave `octorate_push_status = "failed"` on the reservation. The caller commits.
    """
    hotel = s.get(Hotel, reservation.hotel_id)
    if hotel is None:
        return PushResult(success=False, error="Hotel not found")

    pms_type = hotel.pms_type or "internal"
    if pms_type == "internal":
        result = PushResult(success=True, channel_manager="internal")
    elif pms_type == "octorate":
        result = _push_octorate(s, hotel, reservation, transport)
    else:
        result = PushResult(success=False, error=f"Unknown channel manager type: {pms_type}")

    if not result.success and pms_type != "internal":
        reservation.octorate_push_status = "failed"
        s.add(reservation)
    return result


def handle_push(engine: Engine, payload: dict[str, Any]) -> None:
    with session(engine) as s:
        reservation = s.get(Reservation, payload["reservation_id"])
        if reservation is None:
            raise LookupError(f"Reservation {payload['reservation_id']} not found")
        result = push_reservation(s, reservation)
        s.commit()
    if not result.success:
        raise PushFailed(result)
