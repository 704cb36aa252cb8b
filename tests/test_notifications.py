from datetime import datetime, timedelta

from jadwalin.main import (
    ActivityLog,
    badge_count,
    clear_all_badges,
    clear_badge,
    get_badge,
    has_unread,
    increment_badge,
    mark_badge_read,
    mark_notification_shown,
    should_show_notification,
    unread_badges,
    update_badge,
)


def test_update_badge_read_state(db, student):
    badge = update_badge(db, "krs", student.id, 0)
    assert badge.is_read is True and badge.last_notified_count == 0 and badge.has_ever_notified is False

    update_badge(db, "krs", student.id, 2)
    assert get_badge(db, "krs", student.id).is_read is False
    mark_badge_read(db, "krs", student.id)
    update_badge(db, "krs", student.id, 1)
    assert get_badge(db, "krs", student.id).is_read is True
    update_badge(db, "krs", student.id, 3)
    assert has_unread(db, "krs", student.id)
    clear_badge(db, "krs", student.id)
    assert badge_count(db, "krs", student.id) == 0
    assert not has_unread(db, "krs", student.id)


def test_new_badge_with_count_starts_unread(db, student):
    update_badge(db, "khs", student.id, 4)
    increment_badge(db, "jadwal", student.id)
    increment_badge(db, "jadwal", student.id)
    db.commit()
    assert badge_count(db, "jadwal", student.id) == 2
    assert {b.type for b in unread_badges(db, student.id)} == {"khs", "jadwal"}
    assert clear_all_badges(db, student.id) == 2
    assert badge_count(db, "khs", student.id) == 0


def test_should_show_notification(db, student):
    assert should_show_notification(db, "reminder", student.id) is False
    update_badge(db, "reminder", student.id, 2)
    # A count already present on first load is not announced.
    assert should_show_notification(db, "reminder", student.id) is False
    mark_notification_shown(db, "reminder", student.id, 2)
    assert should_show_notification(db, "reminder", student.id) is False
    increment_badge(db, "reminder", student.id)
    assert should_show_notification(db, "reminder", student.id) is True
    mark_notification_shown(db, "reminder", student.id, 3)
    assert should_show_notification(db, "reminder", student.id) is False


def test_badge_endpoints(client, student, token_for):
    auth = token_for(student)
    assert client.put("/notifications/badges/bogus", params=auth, json={"count": 1}).status_code == 400
    assert client.put("/notifications/badges/krs", params=auth, json={"count": -1}).status_code == 422

    res = client.post("/notifications/badges/krs/increment", params=auth)
    assert res.json()["count"] == 1
    state = client.get("/notifications/badges/krs", params=auth).json()
    assert state == {"type": "krs", "count": 1, "has_unread": True, "should_show": False}

    client.post("/notifications/badges/krs/shown", params=auth, json={"count": 1})
    client.put("/notifications/badges/krs", params=auth, json={"count": 4})
    assert client.get("/notifications/badges/krs", params=auth).json()["should_show"] is True
    assert [b["type"] for b in client.get("/notifications/badges/unread", params=auth).json()] == ["krs"]

    client.post("/notifications/badges/krs/read", params=auth)
    assert client.get("/notifications/badges/unread", params=auth).json() == []
    assert client.post("/notifications/badges/khs/shown", params=auth, json={"count": 1}).status_code == 404
    assert client.post("/notifications/badges/krs/clear", params=auth).json()["count"] == 0
    assert client.delete("/notifications/badges", params=auth).json() == {"deleted": 1}


def test_activities_feed(client, student, admin, token_for, db):
    auth = token_for(student)
    assert client.post("/activities", params=auth, json={"title": "x"}).status_code == 400
    assert client.post("/activities", params=auth, json={"title": "x", "category": "other", "action": "flew"}).status_code == 400
    res = client.post(
        "/activities",
        params=auth,
        json={"title": "Materi diunduh", "category": "material", "action": "completed", "metadata": {"material_id": "m1"}},
    )
    assert res.status_code == 201
    entry = res.json()
    assert (entry["icon"], entry["color"]) == ("Download", "text-cyan-500")
    assert entry["metadata"] == {"material_id": "m1"}

    custom = client.post("/activities", params=auth, json={"title": "x", "category": "other", "action": "updated", "icon": "Zap"}).json()
    assert custom["icon"] == "Zap"

    rows = client.get("/activities", params={**auth, "category": "material"}).json()
    assert [r["title"] for r in rows] == ["Materi diunduh"]
    assert len(client.get("/activities", params={**auth, "limit": 1}).json()) == 1

    old = db.get(ActivityLog, entry["id"])
    old.created_at = datetime.utcnow() - timedelta(days=120)
    db.commit()
    assert client.delete("/activities", params=auth).json() == {"status": "cleaned", "count": 1}

    assert client.get("/audit", params=auth).status_code == 403
    feed = client.get("/audit", params=token_for(admin)).json()
    assert [r["id"] for r in feed] == [custom["id"]]


def test_announcements_filtering(client, kaprodi, admin, student, token_for):
    assert client.post("/announcements", params=token_for(student), json={"title": "t", "description": "d", "target_roles": ["mahasiswa"]}).status_code == 403
    assert client.post("/announcements", params=token_for(kaprodi), json={"title": "t", "description": "d", "target_roles": []}).status_code == 422

    for_students = client.post(
        "/announcements",
        params=token_for(kaprodi),
        json={"title": "Libur", "description": "Kampus tutup", "target_roles": ["mahasiswa", "dosen"]},
    ).json()
    for_staff = client.post(
        "/announcements",
        params=token_for(admin),
        json={"title": "Rapat", "description": "Rapat dosen", "target_roles": ["dosen"]},
    ).json()
    hidden = client.post(
        "/announcements",
        params=token_for(admin),
        json={"title": "Draft", "description": "Belum", "target_roles": ["mahasiswa"], "is_active": False},
    ).json()
    assert for_students["target_roles"] == ["mahasiswa", "dosen"]

    auth = token_for(student)
    assert len(client.get("/announcements", params=auth).json()) == 3
    visible = client.get("/announcements", params={**auth, "role": "mahasiswa", "active_only": True}).json()
    assert [a["id"] for a in visible] == [for_students["id"]]

    res = client.put(f"/announcements/{hidden['id']}", params=token_for(kaprodi), json={"is_active": True, "target_roles": ["kaprodi"]})
    assert res.json()["target_roles"] == ["kaprodi"]
    assert client.delete(f"/announcements/{for_staff['id']}", params=token_for(kaprodi)).status_code == 200
    assert client.delete(f"/announcements/{for_staff['id']}", params=token_for(kaprodi)).status_code == 404
