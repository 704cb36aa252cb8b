import io
from datetime import datetime
from types import SimpleNamespace

from jadwalin.main import badge_count
from jadwalin.timetable import hhmm_to_ms, is_overlap, local_zone, next_upcoming, parse_schedule_ics, schedule_ics


def slot(day, start, end, **extra):
    return {"day_of_week": day, "start_utc": hhmm_to_ms(start), "end_utc": hhmm_to_ms(end), **extra}


def test_is_overlap_half_open():
    assert is_overlap(0, 10, 5, 15)
    assert not is_overlap(0, 10, 10, 20)
    assert is_overlap(0, 30, 10, 20)


def test_next_upcoming_skips_started_events():
    # 2025-09-03 is a Wednesday (day 3).
    now = datetime(2025, 9, 3, 9, 0, tzinfo=local_zone())
    events = [
        SimpleNamespace(id="started", day_of_week=3, start_utc=hhmm_to_ms("08:00")),
        SimpleNamespace(id="later", day_of_week=3, start_utc=hhmm_to_ms("13:00")),
        SimpleNamespace(id="monday", day_of_week=1, start_utc=hhmm_to_ms("07:00")),
    ]
    assert next_upcoming(events, now).id == "later"
    assert next_upcoming(events[:1] + events[2:], now).id == "monday"
    assert next_upcoming(events[:1], now) is None
    assert next_upcoming([], now) is None


def test_schedule_ics_expands_weeks():
    now = datetime(2025, 9, 3, 9, 0, tzinfo=local_zone())
    ics = schedule_ics([{"id": "ev1", "title": "PTI101 - Algo, Dasar", "location": "A10", **slot(1, "07:30", "10:00")}], now=now)
    assert ics.startswith("BEGIN:VCALENDAR\r\n")
    assert ics.count("BEGIN:VEVENT") == 16
    assert ics.count("BEGIN:VALARM") == 48
    assert "UID:ev1-0@jadwalin" in ics and "UID:ev1-15@jadwalin" in ics
    # Monday 2025-09-08 07:30 WIB is 00:30 UTC.
    assert "DTSTART:20250908T003000Z" in ics
    assert "SUMMARY:PTI101 - Algo\\, Dasar" in ics
    assert "TRIGGER:-PT10M" in ics and "TRIGGER:-PT1M" in ics


def test_parse_schedule_ics_keeps_complete_events():
    content = "\r\n".join(
        [
            "BEGIN:VCALENDAR",
            "BEGIN:VEVENT",
            "SUMMARY:PTI104 - Basis Data",
            "DTSTART:20250911T003000Z",
            "DTEND:20250911T030000Z",
            "LOCATION:A10.03.02",
            "URL:https://meet.example/x",
            "END:VEVENT",
            "BEGIN:VEVENT",
            "SUMMARY:Tanpa akhir",
            "DTSTART;TZID=Asia/Jakarta:20250912T080000",
            "END:VEVENT",
            "END:VCALENDAR",
        ]
    )
    events = parse_schedule_ics(content)
    assert events == [
        {
            "notes": "PTI104 - Basis Data",
            "day_of_week": 4,
            "start_utc": hhmm_to_ms("07:30"),
            "end_utc": hhmm_to_ms("10:00"),
            "location": "A10.03.02",
            "join_url": "https://meet.example/x",
        }
    ]


def test_schedule_crud_is_scoped_to_owner(client, student, make_user, token_for, db):
    auth = token_for(student)
    res = client.post("/schedule", params=auth, json=slot(1, "07:30", "10:00", location="A10"))
    assert res.status_code == 201
    event = res.json()
    assert badge_count(db, "jadwal", student.id) == 1
    assert client.post("/schedule", params=auth, json=slot(1, "10:00", "09:00")).status_code == 400

    other = make_user("mahasiswa")
    assert client.get(f"/schedule/{event['id']}", params=token_for(other)).status_code == 404
    assert client.get("/schedule", params={**token_for(other), "user_id": student.id}).status_code == 403
    assert client.get("/schedule", params=token_for(other)).json() == []

    res = client.put(f"/schedule/{event['id']}", params=auth, json={"location": "B20"})
    assert res.json()["location"] == "B20"
    assert client.delete(f"/schedule/{event['id']}", params=auth).status_code == 200
    assert client.get("/schedule", params=auth).json() == []


def test_conflicts_day_duplicate_reschedule(client, student, token_for):
    auth = token_for(student)
    first = client.post("/schedule", params=auth, json=slot(2, "08:00", "10:00")).json()
    client.post("/schedule", params=auth, json=slot(2, "13:00", "15:00"))

    query = {**auth, "day_of_week": 2, "start_utc": hhmm_to_ms("09:00"), "end_utc": hhmm_to_ms("11:00")}
    assert [e["id"] for e in client.get("/schedule/conflicts", params=query).json()] == [first["id"]]
    assert client.get("/schedule/conflicts", params={**query, "exclude_id": first["id"]}).json() == []

    copy = client.post(f"/schedule/{first['id']}/duplicate", params=auth, json={"day_of_week": 4})
    assert copy.status_code == 201
    assert copy.json()["day_of_week"] == 4 and copy.json()["id"] != first["id"]

    moved = client.post(f"/schedule/{first['id']}/reschedule", params=auth, json=slot(2, "15:00", "16:00")).json()
    assert moved["start_utc"] == hhmm_to_ms("15:00")

    tuesday = client.get("/schedule/day/2", params=auth).json()
    assert [e["start_utc"] for e in tuesday] == [hhmm_to_ms("13:00"), hhmm_to_ms("15:00")]
    assert client.get("/schedule/day/9", params=auth).status_code == 400

    assert client.delete("/schedule", params=auth).json() == {"deleted": 3}


def test_export_and_import_roundtrip(client, student, token_for, open_subject):
    auth = token_for(student)
    assert client.get("/schedule/export.ics", params=auth).status_code == 404
    subject, _ = open_subject()
    client.post("/schedule", params=auth, json=slot(1, "07:30", "10:00", subject_id=subject["id"]))
    client.post("/schedule", params=auth, json=slot(3, "13:00", "14:00"))

    res = client.get("/schedule/export.ics", params=auth)
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/calendar")
    assert "attachment" in res.headers["content-disposition"]
    assert "SUMMARY:PTI101 - Algoritma dan Pemrograman" in res.text
    assert "SUMMARY:Jadwal Pribadi" in res.text

    client.delete("/schedule", params=auth)
    res = client.post("/schedule/import", params=auth, files={"file": ("jadwal.ics", io.BytesIO(res.content), "text/calendar")})
    assert res.json() == {"imported": 32}

    res = client.post("/schedule/import", params=auth, files={"file": ("x.ics", io.BytesIO(b"BEGIN:VCALENDAR\r\nEND:VCALENDAR"), "text/calendar")})
    assert res.status_code == 400


def test_next_endpoint(client, student, token_for):
    auth = token_for(student)
    assert client.get("/schedule/next", params=auth).json() == {"event": None}
    for day in range(7):
        client.post("/schedule", params=auth, json=slot(day, "23:58", "23:59"))
    assert client.get("/schedule/next", params=auth).json()["event"] is not None


def test_sync_from_krs(client, kaprodi, student, token_for, open_subject):
    subject, offering = open_subject(slot_day=1, slot_start_utc=hhmm_to_ms("07:30"), slot_end_utc=hhmm_to_ms("10:00"), slot_ruang="A10")
    no_slot, no_slot_offering = open_subject(kode="PTI102")
    auth = token_for(student)
    for s, o in ((subject, offering), (no_slot, no_slot_offering)):
        client.post("/krs", params=auth, json={"user_id": student.id, "subject_id": s["id"], "offering_id": o["id"], "term": "T1"})

    res = client.post("/schedule/sync-krs", params=auth, json={"term": "T1"})
    assert res.json() == {"created": 1, "skipped": 1}
    events = client.get("/schedule", params=auth).json()
    assert [(e["subject_id"], e["day_of_week"], e["location"]) for e in events] == [(subject["id"], 1, "A10")]

    client.put(f"/offerings/{no_slot_offering['id']}", params=token_for(kaprodi), json={"slot_day": 2, "slot_start_utc": 0, "slot_end_utc": 3600000})
    res = client.post("/schedule/sync-krs", params=auth, json={"term": "T1"})
    assert res.json() == {"created": 1, "skipped": 1}


def test_parse_schedule_ics_skips_overnight_and_reads_tzid():
    content = "\r\n".join(
        [
            "BEGIN:VCALENDAR",
            "BEGIN:VEVENT",
            "SUMMARY:Begadang",
            "DTSTART:20250911T220000",
            "DTEND:20250912T010000",
            "END:VEVENT",
            "BEGIN:VEVENT",
            "SUMMARY:Terbalik",
            "DTSTART:20250911T100000",
            "DTEND:20250911T090000",
            "END:VEVENT",
            "BEGIN:VEVENT",
            "SUMMARY:Kuliah Umum\\, Aula",
            "  Utama",
            "DTSTART;TZID=UTC:20250911T003000",
            "DTEND;TZID=UTC:20250911T020000",
            "END:VEVENT",
            "END:VCALENDAR",
        ]
    )
    assert parse_schedule_ics(content) == [
        {"notes": "Kuliah Umum, Aula Utama", "day_of_week": 4, "start_utc": hhmm_to_ms("07:30"), "end_utc": hhmm_to_ms("09:00")}
    ]


def test_import_drops_overnight_events_and_bumps_badge(client, student, token_for, db):
    auth = token_for(student)
    content = (
        "BEGIN:VCALENDAR\r\n"
        "BEGIN:VEVENT\r\nSUMMARY:Malam\r\nDTSTART:20250911T220000\r\nDTEND:20250912T010000\r\nEND:VEVENT\r\n"
        "BEGIN:VEVENT\r\nSUMMARY:Pagi\r\nDTSTART:20250911T070000\r\nDTEND:20250911T080000\r\nEND:VEVENT\r\n"
        "END:VCALENDAR\r\n"
    )
    res = client.post("/schedule/import", params=auth, files={"file": ("jadwal.ics", io.BytesIO(content.encode()), "text/calendar")})
    assert res.json() == {"imported": 1}
    events = client.get("/schedule", params=auth).json()
    assert [(e["start_utc"], e["end_utc"]) for e in events] == [(hhmm_to_ms("07:00"), hhmm_to_ms("08:00"))]
    assert badge_count(db, "jadwal", student.id) == 1

    client.post(f"/schedule/{events[0]['id']}/duplicate", params=auth, json={"day_of_week": 5})
    db.expire_all()
    assert badge_count(db, "jadwal", student.id) == 2

    res = client.post("/schedule/import", params=auth, files={"file": ("x.ics", io.BytesIO(b"\xff\xfe\x00BEGIN"), "text/calendar")})
    assert res.status_code == 400
