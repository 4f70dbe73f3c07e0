import json
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from destexplore import events
from destexplore.models import Reservation


class FakeExchange:
    def __init__(self):
        self.published = []

    async def publish(self, message, routing_key):
        self.published.append((routing_key, json.loads(message.body)))


class FakeChannel:
    def __init__(self, exchange):
        self.exchange = exchange

    async def declare_exchange(self, name, kind, durable):
        assert name == events.EVENTS_EXCHANGE
        return self.exchange


class FakeConnection:
    def __init__(self, exchange):
        self.exchange = exchange
        self.closed = False

    async def channel(self):
        return FakeChannel(self.exchange)

    async def close(self):
        self.closed = True


@pytest.fixture
def exchange(monkeypatch):
    ex = FakeExchange()

    async def _connect(url):
        return FakeConnection(ex)

    monkeypatch.setattr(events.aio_pika, "connect_robust", _connect)
    return ex


def _reservation():
    return Reservation(
        id="res-1",
        confirmation_number="WEB-1-AB12",
        hotel_id="hotel-1",
        room_id="room-1",
        guest_id="guest-1",
        check_in_date=date(2030, 7, 10),
        check_out_date=date(2030, 7, 13),
        total_amount=Decimal("300"),
        currency="RON",
    )


def test_envelope_wraps_data_with_type_and_time():
    now = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)
    body = json.loads(events.envelope("booking.created", {"amount": Decimal("1.50")}, now=now))
    assert body == {"type": "booking.created", "time": "2030-01-01T12:00:00+00:00", "data": {"amount": "1.50"}}


@pytest.mark.anyio
async def test_booking_created_event(exchange):
    assert await events.booking_created(_reservation()) is True
    ((key, body),) = exchange.published
    assert key == "booking.created"
    assert body["data"] == {
        "reservation_id": "res-1",
        "confirmation_number": "WEB-1-AB12",
        "hotel_id": "hotel-1",
        "room_id": "room-1",
        "check_in_date": "2030-07-10",
        "check_out_date": "2030-07-13",
        "total_amount": "300.00",
        "currency": "RON",
    }


@pytest.mark.anyio
async def test_status_change_event_omits_unknown_previous_status(exchange):
    await events.reservation_status_changed("res-1", "confirmed", "admin", from_status="tentative")
    await events.reservation_status_changed("res-1", "cancelled", "octorate_webhook")
    (_, first), (_, second) = exchange.published
    assert first["data"] == {"reservation_id": "res-1", "to_status": "confirmed", "source": "admin", "from_status": "tentative"}
    assert second["data"] == {"reservation_id": "res-1", "to_status": "cancelled", "source": "octorate_webhook"}
    assert first["type"] == "reservation.status_changed"


@pytest.mark.anyio
async def test_broker_down_is_reported_not_raised():
    # The autouse fixture has already taken the broker down.
    assert await events.booking_created(_reservation()) is False


@pytest.mark.anyio
async def test_strict_mode_raises(monkeypatch):
    monkeypatch.setattr(events, "EVENTS_STRICT", True)
    with pytest.raises(ConnectionError):
        await events.reservation_status_changed("res-1", "confirmed", "admin")
