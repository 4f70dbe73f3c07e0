from datetime import date, datetime, timedelta, timezone

import pytest

from destexplore import mailer, sequences
from destexplore.db import as_utc, session
from destexplore.models import EmailLog, EmailSequenceLog, GuestProfile, Reservation


def _reservation(engine, ids, created_at, check_in, status="confirmed", email="ion@example.com"):
    with session(engine) as s:
        guest = GuestProfile(first_name="Ion", last_name="Popescu", email=email)
        s.add(guest)
        s.flush()
        r = Reservation(
            confirmation_number="WEB-7",
            hotel_id=ids["hotel_id"],
            room_id=ids["room_id"],
            guest_id=guest.id,
            check_in_date=check_in,
            check_out_date=check_in + timedelta(days=2),
            reservation_status=status,
            created_at=created_at,
        )
        s.add(r)
        s.commit()
        return r.id


def _logs(engine, rid):
    with session(engine) as s:
        return s.query(EmailSequenceLog).filter(EmailSequenceLog.reservation_id == rid).all()


@pytest.fixture
def sent(monkeypatch):
    outbox = []

    def _send(email, transport=None):
        outbox.append(email)
        return mailer.SendResult(message_id="msg-1", sent_to=[r.email for r in email.to], trial_mode=False)

    monkeypatch.setattr(mailer, "send", _send)
    return outbox


def test_follow_up_is_scheduled_three_days_after_booking_at_ten(engine, seed):
    booked = datetime(2030, 7, 1, 18, 30, tzinfo=timezone.utc)
    rid = _reservation(engine, seed(), created_at=booked, check_in=date(2030, 7, 20))
    with session(engine) as s:
        assert sequences.schedule_email_sequence(s, rid) is True
        s.commit()
    (log,) = _logs(engine, rid)
    assert log.email_type == "post_booking_followup"
    assert log.status == "scheduled"
    assert as_utc(log.scheduled_at) == datetime(2030, 7, 4, 10, 0, tzinfo=timezone.utc)


def test_check_in_within_three_days_is_not_scheduled(engine, seed):
    booked = datetime(2030, 7, 1, 9, 0, tzinfo=timezone.utc)
    rid = _reservation(engine, seed(), created_at=booked, check_in=date(2030, 7, 4))
    with session(engine) as s:
        assert sequences.schedule_email_sequence(s, rid) is False
        s.commit()
    assert _logs(engine, rid) == []


def test_scheduling_twice_leaves_one_row(engine, seed):
    booked = datetime(2030, 7, 1, 9, 0, tzinfo=timezone.utc)
    rid = _reservation(engine, seed(), created_at=booked, check_in=date(2030, 8, 1))
    for _ in range(2):
        with session(engine) as s:
            sequences.schedule_email_sequence(s, rid)
            s.commit()
    assert len(_logs(engine, rid)) == 1


def test_cancelled_reservation_is_not_scheduled(engine, seed):
    booked = datetime(2030, 7, 1, 9, 0, tzinfo=timezone.utc)
    rid = _reservation(engine, seed(), created_at=booked, check_in=date(2030, 8, 1), status="cancelled")
    with session(engine) as s:
        assert sequences.schedule_email_sequence(s, rid) is False


def test_due_emails_are_sent_once_with_feedback_links(engine, seed, sent):
    booked = datetime(2030, 7, 1, 9, 0, tzinfo=timezone.utc)
    rid = _reservation(engine, seed(), created_at=booked, check_in=date(2030, 8, 1))
    with session(engine) as s:
        sequences.schedule_email_sequence(s, rid)
        s.commit()

    # Not due yet.
    assert sequences.run_due_sequence_emails(engine, now=datetime(2030, 7, 4, 9, 59, tzinfo=timezone.utc))["processed"] == 0

    counts = sequences.run_due_sequence_emails(engine, now=datetime(2030, 7, 4, 10, 0, tzinfo=timezone.utc))
    assert counts == {"processed": 1, "sent": 1, "skipped": 0, "failed": 0}
    (email,) = sent
    assert email.to[0].email == "ion@example.com"
    assert f"reservationId={rid}&token=" in email.text

    (log,) = _logs(engine, rid)
    assert log.status == "sent"
    assert log.sent_at is not None

    # Already sent: nothing left to do.
    assert sequences.run_due_sequence_emails(engine, now=datetime(2030, 7, 5, tzinfo=timezone.utc))["processed"] == 0
    with session(engine) as s:
        assert s.query(EmailLog).filter(EmailLog.status == "sent").count() == 1


def test_follow_up_for_cancelled_reservation_is_skipped(engine, seed, sent):
    booked = datetime(2030, 7, 1, 9, 0, tzinfo=timezone.utc)
    rid = _reservation(engine, seed(), created_at=booked, check_in=date(2030, 8, 1))
    with session(engine) as s:
        sequences.schedule_email_sequence(s, rid)
        s.get(Reservation, rid).reservation_status = "cancelled"
        s.commit()

    counts = sequences.run_due_sequence_emails(engine, now=datetime(2030, 7, 10, tzinfo=timezone.utc))
    assert counts["skipped"] == 1
    assert sent == []
    (log,) = _logs(engine, rid)
    assert log.status == "skipped"


def test_send_failure_marks_row_failed(engine, seed, monkeypatch):
    booked = datetime(2030, 7, 1, 9, 0, tzinfo=timezone.utc)
    rid = _reservation(engine, seed(), created_at=booked, check_in=date(2030, 8, 1))
    with session(engine) as s:
        sequences.schedule_email_sequence(s, rid)
        s.commit()
    monkeypatch.setattr(mailer, "MAILER_SEND_API_KEY", "")

    counts = sequences.run_due_sequence_emails(engine, now=datetime(2030, 7, 10, tzinfo=timezone.utc))
    assert counts["failed"] == 1
    (log,) = _logs(engine, rid)
    assert log.status == "failed"
    assert "MAILER_SEND_API_KEY" in log.error


def test_feedback_token_is_bound_to_reservation_and_email():
    token = sequences.issue_feedback_token("res-1", "Ion@Example.com")
    assert sequences.verify_feedback_token(token, "res-1", "ion@example.com")
    assert not sequences.verify_feedback_token(token, "res-2", "ion@example.com")
    assert not sequences.verify_feedback_token(token, "res-1", "other@example.com")
    assert not sequences.verify_feedback_token("garbage", "res-1", "ion@example.com")


def test_feedback_token_expires():
    issued = datetime.now(tz=timezone.utc) - timedelta(days=sequences.FEEDBACK_TOKEN_TTL_DAYS + 1)
    token = sequences.issue_feedback_token("res-1", "ion@example.com", now=issued)
    assert not sequences.verify_feedback_token(token, "res-1", "ion@example.com")


def test_verify_token_endpoint(client, engine, seed):
    booked = datetime(2030, 7, 1, 9, 0, tzinfo=timezone.utc)
    rid = _reservation(engine, seed(), created_at=booked, check_in=date(2030, 8, 1))
    token = sequences.issue_feedback_token(rid, "ion@example.com")

    r = client.post("/api/feedback/verify-token", json={"reservationId": rid, "token": token})
    assert r.status_code == 200, r.text
    assert r.json()["valid"] is True
    assert r.json()["reservation"] == {"id": rid, "confirmationNumber": "WEB-7", "businessName": "Hotel Continental"}

    r = client.post("/api/feedback/verify-token", json={"reservationId": rid, "token": token + "x"})
    assert r.status_code == 401
    assert r.json()["valid"] is False

    assert client.post("/api/feedback/verify-token", json={"reservationId": rid}).status_code == 400
    assert client.post("/api/feedback/verify-token", json={"reservationId": "missing", "token": token}).status_code == 404


def test_trigger_endpoint_guarded_by_cron_secret(client, monkeypatch):
    from destexplore import security

    monkeypatch.setattr(security, "CRON_SECRET", "s3cret")
    assert client.post("/api/email/sequence/trigger").status_code == 401

    r = client.get("/api/email/sequence/trigger", headers={"Authorization": "Bearer s3cret"})
    assert r.status_code == 200, r.text
    assert r.json()["message"] == "No emails to send"


def test_schedule_endpoint(client, engine, seed):
    assert client.post("/api/email/sequence/schedule", json={}).status_code == 400
    assert client.post("/api/email/sequence/schedule", json={"reservationId": "missing"}).status_code == 404

    rid = _reservation(engine, seed(), created_at=datetime(2030, 7, 1, tzinfo=timezone.utc), check_in=date(2030, 8, 1))
    r = client.post("/api/email/sequence/schedule", json={"reservationId": rid})
    assert r.status_code == 200, r.text
    assert r.json() == {"success": True, "scheduled": True}
