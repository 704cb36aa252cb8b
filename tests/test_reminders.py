from datetime import datetime, timezone

import pytest

from jadwalin import config, main
from jadwalin.mailer import MailDeliveryError, MailNotConfigured, build_reminder_message, send_message
from jadwalin.main import Reminder, badge_count, due_reminders, select
from jadwalin.timetable import format_due, now_ms, reminder_ics

HOUR_MS = 60 * 60 * 1000


def test_reminder_ics_is_a_one_hour_request():
    due = int(datetime(2025, 9, 8, 0, 30, tzinfo=timezone.utc).timestamp() * 1000)
    ics = reminder_ics("r1", "Kuis; Bab 1", due)
    assert "METHOD:REQUEST" in ics
    assert "UID:r1@jadwalin" in ics
    assert "SUMMARY:Kuis\\; Bab 1" in ics
    assert "DTSTART:20250908T003000Z" in ics
    assert "DTEND:20250908T013000Z" in ics
    assert "TRIGGER:-PT30M" in ics


def test_reminder_message_has_calendar_attachment():
    due = now_ms() + HOUR_MS
    msg = build_reminder_message("andi@x.id", "Andi", "r1", "Tugas Basis Data", due, "PTI104 - Basis Data")
    assert msg["To"] == "andi@x.id"
    assert msg["Subject"] == "Pengingat: Tugas Basis Data"
    attachments = list(msg.iter_attachments())
    assert len(attachments) == 1
    assert attachments[0].get_content_type() == "text/calendar"
    assert attachments[0].get_filename() == "reminder.ics"
    assert b"METHOD:REQUEST" in attachments[0].get_payload(decode=True)
    assert format_due(due) in msg.get_body(preferencelist=("plain",)).get_content()


def test_send_message_requires_smtp(monkeypatch):
    monkeypatch.setattr(config, "SMTP_HOST", "")
    with pytest.raises(MailNotConfigured):
        send_message(build_reminder_message("a@x.id", "A", "r1", "T", now_ms()))


def test_reminder_crud_is_owner_scoped(client, student, make_user, token_for, db):
    auth = token_for(student)
    later = client.post("/reminders", params=auth, json={"title": "UAS", "due_utc": now_ms() + 48 * HOUR_MS}).json()
    sooner = client.post("/reminders", params=auth, json={"title": "Kuis", "due_utc": now_ms() + HOUR_MS}).json()
    assert [r["id"] for r in client.get("/reminders", params=auth).json()] == [sooner["id"], later["id"]]
    assert badge_count(db, "reminder", student.id) == 2
    assert client.post("/reminders", params=auth, json={"title": "X", "due_utc": 1, "related_subject_id": "nope"}).status_code == 404

    other = token_for(make_user("mahasiswa"))
    assert client.patch(f"/reminders/{later['id']}", params=other, json={"title": "Hack"}).status_code == 404
    assert client.delete(f"/reminders/{later['id']}", params=other).status_code == 404
    assert client.get("/reminders", params={**other, "user_id": student.id}).status_code == 403

    res = client.patch(f"/reminders/{later['id']}", params=auth, json={"is_active": False})
    assert res.json()["is_active"] is False
    assert client.delete(f"/reminders/{later['id']}", params=auth).status_code == 200


def test_send_email_endpoint(client, student, token_for, monkeypatch, db):
    auth = token_for(student)
    plain = client.post("/reminders", params=auth, json={"title": "Kuis", "due_utc": now_ms() + HOUR_MS}).json()
    assert client.post(f"/reminders/{plain['id']}/send-email", params=auth).status_code == 400

    mailed = client.post("/reminders", params=auth, json={"title": "UTS", "due_utc": now_ms() + HOUR_MS, "send_email": True}).json()

    sent = []
    monkeypatch.setattr(main, "send_message", lambda msg: sent.append(msg))
    res = client.post(f"/reminders/{mailed['id']}/send-email", params=auth)
    assert res.status_code == 200
    assert sent[0]["To"] == student.email
    assert db.scalar(select(Reminder).where(Reminder.id == mailed["id"])).email_sent_at is not None

    def broken(msg):
        raise MailDeliveryError("connection refused")

    monkeypatch.setattr(main, "send_message", broken)
    res = client.post(f"/reminders/{mailed['id']}/send-email", params=auth)
    assert res.status_code == 502
    assert "connection refused" in res.json()["detail"]

    def unconfigured(msg):
        raise MailNotConfigured("SMTP is not configured")

    monkeypatch.setattr(main, "send_message", unconfigured)
    assert client.post(f"/reminders/{mailed['id']}/send-email", params=auth).status_code == 503

    client.patch(f"/reminders/{mailed['id']}", params=auth, json={"is_active": False})
    assert client.post(f"/reminders/{mailed['id']}/send-email", params=auth).status_code == 400


def test_due_reminders_window(db, student):
    now = now_ms()
    rows = [
        Reminder(user_id=student.id, title="due", due_utc=now + 10 * 60 * 1000, send_email=True),
        Reminder(user_id=student.id, title="too late", due_utc=now + 3 * HOUR_MS, send_email=True),
        Reminder(user_id=student.id, title="no mail", due_utc=now + 10 * 60 * 1000, send_email=False),
        Reminder(user_id=student.id, title="inactive", due_utc=now + 10 * 60 * 1000, send_email=True, is_active=False),
        Reminder(user_id=student.id, title="past", due_utc=now - HOUR_MS, send_email=True),
        Reminder(user_id=student.id, title="sent", due_utc=now + 5 * 60 * 1000, send_email=True, email_sent_at=datetime.utcnow()),
    ]
    db.add_all(rows)
    db.commit()
    assert [r.title for r in due_reminders(db, now, HOUR_MS)] == ["due"]
