import hashlib
import hmac
import json
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest
from conftest import auth_headers

from destexplore import channel_manager, main, octorate, octorate_sync
from destexplore.crypto import decrypt_token
from destexplore.db import session
from destexplore.models import (
    GuestProfile,
    Hotel,
    OctorateConnection,
    OctorateRoomMapping,
    OctorateWebhookEvent,
    OutboxMessage,
    Reservation,
    ReservationStatusChange,
    Room,
    RoomAvailability,
    RoomPricingRule,
)


def _tokens(access="access-1"):
    return octorate.TokenSet(access_token=access, refresh_token="refresh-1", expires_at=datetime.now(tz=timezone.utc) + timedelta(hours=1))


def _connect(engine, ids, accommodation_id="acc-1"):
    with session(engine) as s:
        hotel = s.get(Hotel, ids["hotel_id"])
        conn = octorate_sync.save_connection(s, hotel, _tokens(), accommodation_id)
        s.commit()
        return conn.id


def _map_room(engine, conn_id, room_id, octorate_room_id="rt-1"):
    with session(engine) as s:
        s.add(OctorateRoomMapping(octorate_connection_id=conn_id, room_id=room_id, octorate_room_id=octorate_room_id))
        s.commit()


def _reservation(engine, ids, **kwargs):
    with session(engine) as s:
        guest = GuestProfile(first_name="Ion", last_name="Popescu", email="ion@example.com", phone="+40700000000")
        s.add(guest)
        s.flush()
        values = {
            "confirmation_number": "WEB-9",
            "hotel_id": ids["hotel_id"],
            "room_id": ids["room_id"],
            "guest_id": guest.id,
            "check_in_date": date(2030, 7, 10),
            "check_out_date": date(2030, 7, 13),
            "adults": 2,
        }
        values.update(kwargs)
        r = Reservation(**values)
        s.add(r)
        s.commit()
        return r.id


def _octorate_api(routes, seen=None):
    """MockTransport answering by path suffix."""

    def handler(request):
        if seen is not None:
            seen.append(request)
        for suffix, response in routes.items():
            if request.url.path.endswith(suffix):
                if callable(response):
                    return response(request)
                return httpx.Response(200, json=response)
        return httpx.Response(404, json={"message": "not found"})

    return httpx.MockTransport(handler)


def test_save_connection_encrypts_tokens_and_marks_hotel(engine, seed):
    ids = seed()
    conn_id = _connect(engine, ids)
    with session(engine) as s:
        conn = s.get(OctorateConnection, conn_id)
        hotel = s.get(Hotel, ids["hotel_id"])
        assert conn.access_token != "access-1"
        assert decrypt_token(conn.access_token) == "access-1"
        assert hotel.pms_type == "octorate"
        assert hotel.octorate_connection_id == conn_id


def test_reconnecting_replaces_the_previous_connection(engine, seed):
    ids = seed()
    first = _connect(engine, ids, "acc-1")
    second = _connect(engine, ids, "acc-2")
    with session(engine) as s:
        assert s.get(OctorateConnection, first).is_active is False
        assert octorate_sync.active_connection(s, ids["hotel_id"]).id == second


def test_oauth_state_round_trip_and_rejection():
    state = octorate_sync.issue_oauth_state("hotel-1")
    assert octorate_sync.read_oauth_state(state) == "hotel-1"
    with pytest.raises(octorate_sync.InvalidOAuthState):
        octorate_sync.read_oauth_state("not-a-token")


def test_pull_room_types_creates_rooms_and_mappings(engine, seed):
    ids = seed()
    conn_id = _connect(engine, ids)
    transport = _octorate_api(
        {"/room-types": [{"id": 11, "name": "Suite", "maxOccupancy": 4, "basePrice": "250"}]}
    )
    with session(engine) as s:
        conn = s.get(OctorateConnection, conn_id)
        with octorate_sync.open_client(s, conn, transport=transport) as client:
            assert octorate_sync.pull_room_types(s, conn, client) == 1
        s.commit()

        mapping = s.query(OctorateRoomMapping).one()
        room = s.get(Room, mapping.room_id)
        assert mapping.octorate_room_id == "11"
        assert room.name == "Suite"
        assert room.max_occupancy == 4
        assert room.base_price == Decimal("250")
        assert room.is_synced_from_octorate is True
        assert s.get(OctorateConnection, conn_id).last_sync_at is not None

    # A second pull updates the same room instead of adding one.
    with session(engine) as s:
        conn = s.get(OctorateConnection, conn_id)
        with octorate_sync.open_client(s, conn, transport=transport) as client:
            octorate_sync.pull_room_types(s, conn, client)
        s.commit()
        assert s.query(OctorateRoomMapping).count() == 1


def test_pull_availability_and_rates_write_mapped_rooms(engine, seed):
    ids = seed()
    conn_id = _connect(engine, ids)
    _map_room(engine, conn_id, ids["room_id"])
    seen = []
    transport = _octorate_api(
        {
            "/availability": [
                {"roomTypeId": "rt-1", "date": "2030-07-10", "available": True, "quantity": 3},
                {"roomTypeId": "rt-1", "date": "2030-07-11", "available": False},
                {"roomTypeId": "unmapped", "date": "2030-07-10", "available": True},
            ],
            "/rates": [{"roomTypeId": "rt-1", "date": "2030-07-10", "price": "180.50"}],
        },
        seen,
    )
    with session(engine) as s:
        conn = s.get(OctorateConnection, conn_id)
        with octorate_sync.open_client(s, conn, transport=transport) as client:
            assert octorate_sync.pull_availability(s, conn, client, date(2030, 7, 10), date(2030, 7, 12)) == 2
            assert octorate_sync.pull_rates(s, conn, client, date(2030, 7, 10), date(2030, 7, 12)) == 1
        s.commit()

        rows = {r.day: r for r in s.query(RoomAvailability).all()}
        assert rows[date(2030, 7, 10)].available_quantity == 3
        assert rows[date(2030, 7, 11)].availability_status == "blocked"
        assert rows[date(2030, 7, 11)].available_quantity == 0
        rule = s.query(RoomPricingRule).one()
        assert (rule.start_date, rule.end_date) == (date(2030, 7, 10), date(2030, 7, 10))
        assert rule.price_per_night == Decimal("180.50")
        assert rule.pricing_type == "octorate"

    assert seen[0].headers["Authorization"] == "Bearer access-1"
    assert seen[0].url.params["start_date"] == "2030-07-10"


def test_pull_availability_without_mappings_is_not_connected(engine, seed):
    ids = seed()
    conn_id = _connect(engine, ids)
    transport = _octorate_api({"/availability": []})
    with session(engine) as s:
        conn = s.get(OctorateConnection, conn_id)
        with octorate_sync.open_client(s, conn, transport=transport) as client:
            with pytest.raises(octorate_sync.NotConnected):
                octorate_sync.pull_availability(s, conn, client, date(2030, 7, 10), date(2030, 7, 12))


def test_refreshed_tokens_are_persisted_encrypted(engine, seed):
    ids = seed()
    conn_id = _connect(engine, ids)

    def _room_types(request):
        if request.headers["Authorization"] == "Bearer access-1":
            return httpx.Response(401)
        return httpx.Response(200, json=[])

    transport = _octorate_api(
        {"/identity/refresh": {"access_token": "access-2", "expires_in": 3600}, "/room-types": _room_types}
    )
    with session(engine) as s:
        conn = s.get(OctorateConnection, conn_id)
        with octorate_sync.open_client(s, conn, transport=transport) as client:
            octorate_sync.pull_room_types(s, conn, client)

    with session(engine) as s:
        conn = s.get(OctorateConnection, conn_id)
        assert decrypt_token(conn.access_token) == "access-2"
        assert decrypt_token(conn.refresh_token) == "refresh-1"


def test_push_booking_sends_guest_and_dates_once(engine, seed):
    ids = seed()
    conn_id = _connect(engine, ids)
    _map_room(engine, conn_id, ids["room_id"])
    rid = _reservation(engine, ids, special_requests="Late arrival")
    seen = []
    transport = _octorate_api({"/bookings": {"bookingId": 555}}, seen)

    with session(engine) as s:
        conn = s.get(OctorateConnection, conn_id)
        r = s.get(Reservation, rid)
        with octorate_sync.open_client(s, conn, transport=transport) as client:
            assert octorate_sync.push_booking(s, r, conn, client) == {"bookingId": 555}
            assert octorate_sync.push_booking(s, r, conn, client) is None
        s.commit()
        r = s.get(Reservation, rid)
        assert r.octorate_booking_id == "555"
        assert r.octorate_push_status == "pushed"

    (req,) = seen
    body = json.loads(req.content)
    assert body["roomTypeId"] == "rt-1"
    assert body["checkInDate"] == "2030-07-10"
    assert body["guestInfo"]["email"] == "ion@example.com"
    assert body["specialRequests"] == "Late arrival"


def test_push_failure_marks_reservation_failed(engine, seed):
    ids = seed()
    conn_id = _connect(engine, ids)
    _map_room(engine, conn_id, ids["room_id"])
    rid = _reservation(engine, ids)
    transport = _octorate_api({"/bookings": lambda request: httpx.Response(500, text="boom")})

    with session(engine) as s:
        conn = s.get(OctorateConnection, conn_id)
        r = s.get(Reservation, rid)
        with octorate_sync.open_client(s, conn, transport=transport) as client:
            with pytest.raises(octorate.OctorateError):
                octorate_sync.push_booking(s, r, conn, client)

    with session(engine) as s:
        assert s.get(Reservation, rid).octorate_push_status == "failed"


def test_channel_manager_internal_hotel_needs_no_push(engine, seed):
    ids = seed()
    rid = _reservation(engine, ids)
    with session(engine) as s:
        result = channel_manager.push_reservation(s, s.get(Reservation, rid))
    assert result.success
    assert result.channel_manager == "internal"


def test_channel_manager_unknown_type_fails(engine, seed):
    ids = seed(pms_type="cloudbeds")
    rid = _reservation(engine, ids)
    with session(engine) as s:
        result = channel_manager.push_reservation(s, s.get(Reservation, rid))
        s.commit()
        assert s.get(Reservation, rid).octorate_push_status == "failed"
    assert not result.success
    assert result.error == "Unknown channel manager type: cloudbeds"
    assert result.as_dict()["channelManager"] is None


def test_channel_manager_octorate_without_connection_fails(engine, seed):
    ids = seed(pms_type="octorate")
    rid = _reservation(engine, ids)
    with session(engine) as s:
        result = channel_manager.push_reservation(s, s.get(Reservation, rid))
    assert not result.success
    assert result.error == "Octorate connection not found"


def test_channel_manager_pushes_to_octorate(engine, seed):
    ids = seed()
    conn_id = _connect(engine, ids)
    _map_room(engine, conn_id, ids["room_id"])
    rid = _reservation(engine, ids)
    transport = _octorate_api({"/bookings": {"bookingId": "OB-1"}})
    with session(engine) as s:
        result = channel_manager.push_reservation(s, s.get(Reservation, rid), transport=transport)
        s.commit()
    assert result.as_dict() == {
        "success": True,
        "channelManager": "octorate",
        "bookingId": "OB-1",
        "error": None,
        "skipped": False,
    }


def test_handle_push_raises_so_the_outbox_retries(engine, seed):
    ids = seed(pms_type="octorate")
    rid = _reservation(engine, ids)
    with pytest.raises(channel_manager.PushFailed):
        channel_manager.handle_push(engine, {"reservation_id": rid})


def _webhook(client, body, secret=None):
    raw = json.dumps(body).encode()
    headers = {"Content-Type": "application/json"}
    if secret:
        headers["X-Octorate-Signature"] = "sha256=" + hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()
    return client.post("/api/octorate/webhook", content=raw, headers=headers)


def test_webhook_confirmation_confirms_reservation(client, engine, seed):
    ids = seed()
    _connect(engine, ids)
    rid = _reservation(engine, ids, octorate_booking_id="OB-1", octorate_push_status="pushed")

    r = _webhook(client, {"eventType": "booking_confirmation", "accommodationId": "acc-1", "payload": {"bookingId": "OB-1"}})
    assert r.status_code == 200, r.text

    with session(engine) as s:
        res = s.get(Reservation, rid)
        assert res.reservation_status == "confirmed"
        assert res.octorate_push_status == "confirmed"
        assert res.octorate_confirmation_received_at is not None
        change = s.query(ReservationStatusChange).one()
        assert change.source == "octorate_webhook"
        event = s.get(OctorateWebhookEvent, r.json()["eventId"])
        assert event.processed is True
        assert s.query(OutboxMessage).filter(OutboxMessage.kind == "email_sequence.schedule").count() == 1


def test_webhook_cancellation_cancels_reservation(client, engine, seed):
    ids = seed()
    _connect(engine, ids)
    rid = _reservation(engine, ids, octorate_booking_id="OB-2", reservation_status="confirmed")

    r = _webhook(client, {"eventType": "booking_cancellation", "accommodationId": "acc-1", "payload": {"bookingId": "OB-2"}})
    assert r.status_code == 200, r.text
    with session(engine) as s:
        assert s.get(Reservation, rid).reservation_status == "cancelled"


def test_webhook_illegal_transition_is_logged_as_error(client, engine, seed):
    ids = seed()
    _connect(engine, ids)
    _reservation(engine, ids, octorate_booking_id="OB-3", reservation_status="checked_out")

    r = _webhook(client, {"eventType": "booking_cancellation", "accommodationId": "acc-1", "payload": {"bookingId": "OB-3"}})
    assert r.status_code == 500
    with session(engine) as s:
        event = s.query(OctorateWebhookEvent).one()
        assert event.processed is False
        assert "checked_out" in event.error_message


def test_webhook_calendar_event_pulls_availability(engine, seed):
    ids = seed()
    conn_id = _connect(engine, ids)
    _map_room(engine, conn_id, ids["room_id"])
    transport = _octorate_api({"/availability": [{"roomTypeId": "rt-1", "date": "2030-07-10", "available": True, "quantity": 2}]})

    with session(engine) as s:
        conn = s.get(OctorateConnection, conn_id)
        event, changed = octorate_sync.process_webhook(
            s,
            conn,
            "PORTAL_SUBSCRIPTION_CALENDAR",
            {"availability": True, "start_date": "2030-07-10", "end_date": "2030-07-11"},
            transport=transport,
        )
        assert changed == []
        assert event.processed is True
        assert s.query(RoomAvailability).one().available_quantity == 2


def test_webhook_unknown_accommodation_and_bad_requests(client, engine, seed):
    seed()
    r = _webhook(client, {"eventType": "booking_confirmation", "accommodationId": "nope", "payload": {}})
    assert r.status_code == 404
    assert _webhook(client, {"accommodationId": "acc-1"}).status_code == 400
    r = client.post("/api/octorate/webhook", content=b"{not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 400


def test_webhook_rejects_json_that_is_not_an_object(client, engine, seed):
    ids = seed()
    _connect(engine, ids)
    for body in ([1, 2], "booking_confirmation", None):
        r = _webhook(client, body)
        assert r.status_code == 400, body
        assert r.json() == {"error": "Invalid JSON body"}

    r = _webhook(client, {"eventType": "booking_confirmation", "accommodationId": "acc-1", "payload": ["OB-1"]})
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid JSON body"}
    with session(engine) as s:
        assert s.query(OctorateWebhookEvent).count() == 0


def test_webhook_signature_is_checked_when_secret_configured(client, engine, seed, monkeypatch):
    ids = seed()
    _connect(engine, ids)
    monkeypatch.setattr(main, "OCTORATE_WEBHOOK_SECRET", "hook-secret")
    body = {"eventType": "something_else", "accommodationId": "acc-1", "payload": {}}

    assert _webhook(client, body).status_code == 401
    assert _webhook(client, body, secret="wrong").status_code == 401
    assert _webhook(client, body, secret="hook-secret").status_code == 200


def test_oauth_authorize_and_callback_connect_the_hotel(client, engine, seed, monkeypatch):
    ids = seed()
    monkeypatch.setattr(octorate, "exchange_code", lambda code, transport=None: _tokens("from-code"))

    assert client.get("/api/octorate/oauth/authorize", params={"hotel_id": ids["hotel_id"]}).status_code == 401

    r = client.get("/api/octorate/oauth/authorize", params={"hotel_id": ids["hotel_id"]}, headers=auth_headers("business_admin"))
    assert r.status_code == 200, r.text
    state = r.json()["authUrl"].split("state=")[1].split("&")[0]

    r = client.get(
        "/api/octorate/oauth/callback",
        params={"code": "c-1", "state": state, "accommodation_id": "acc-9"},
        follow_redirects=False,
    )
    assert r.status_code == 302
    assert r.headers["location"].endswith("/business/dashboard?octorate=connected")

    with session(engine) as s:
        conn = octorate_sync.active_connection(s, ids["hotel_id"])
        assert conn.octorate_accommodation_id == "acc-9"
        assert decrypt_token(conn.access_token) == "from-code"


def test_oauth_callback_rejects_forged_state(client, seed):
    seed()
    r = client.get(
        "/api/octorate/oauth/callback",
        params={"code": "c-1", "state": "forged", "accommodation_id": "acc-9"},
        follow_redirects=False,
    )
    assert r.status_code == 302
    assert "octorate=error" in r.headers["location"]
    assert "invalid_state" in r.headers["location"]


def test_sync_routes(client, engine, seed):
    ids = seed()
    headers = auth_headers("business_admin")
    r = client.post(f"/api/octorate/hotels/{ids['hotel_id']}/sync/availability", headers=headers)
    assert r.status_code == 400

    _connect(engine, ids)
    r = client.get(f"/api/octorate/hotels/{ids['hotel_id']}/sync/status", headers=headers)
    assert r.status_code == 200, r.text
    assert r.json()["connected"] is True
    assert r.json()["accommodationId"] == "acc-1"

    r = client.post(f"/api/octorate/hotels/{ids['hotel_id']}/disconnect", headers=headers)
    assert r.json() == {"success": True, "disconnected": 1}
    r = client.get(f"/api/octorate/hotels/{ids['hotel_id']}/sync/status", headers=headers)
    assert r.json() == {"connected": False, "pmsType": "internal"}


def test_channel_manager_push_route(client, engine, seed):
    ids = seed()
    rid = _reservation(engine, ids)
    headers = auth_headers("business_admin")

    assert client.post("/api/channel-manager/push", json={}, headers=headers).status_code == 400
    assert client.post("/api/channel-manager/push", json={"reservationId": "missing"}, headers=headers).status_code == 404

    r = client.post("/api/channel-manager/push", json={"reservationId": rid}, headers=headers)
    assert r.status_code == 200, r.text
    assert r.json()["success"] is True
    assert r.json()["channelManager"] == "internal"
