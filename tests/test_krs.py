from jadwalin.main import ActivityLog, Grade, KrsItem, select

TERM = "2025/2026-Ganjil"


def enroll(client, token, user, subject, offering=None, term=TERM):
    payload = {"user_id": user.id, "subject_id": subject["id"], "term": term}
    if offering:
        payload["offering_id"] = offering["id"]
    return client.post("/krs", params=token, json=payload)


def test_enroll_creates_item_grade_and_activity(client, student, token_for, open_subject, db):
    subject, offering = open_subject()
    res = enroll(client, token_for(student), student, subject, offering)
    assert res.status_code == 201
    item = res.json()
    assert item["subject"]["kode"] == "PTI101"
    assert item["offering"]["kelas"] == "A"
    assert isinstance(item["created_at"], int)

    grade = db.scalar(select(Grade).where(Grade.user_id == student.id))
    assert grade.term == TERM
    assert grade.offering_id == offering["id"]
    assert grade.nilai_angka is None and grade.nilai_huruf is None

    activity = db.scalar(select(ActivityLog).where(ActivityLog.user_id == student.id, ActivityLog.category == "krs"))
    assert activity.action == "created"
    assert activity.icon == "Users"


def test_duplicate_enrollment_rejected(client, student, token_for, open_subject):
    subject, offering = open_subject()
    assert enroll(client, token_for(student), student, subject, offering).status_code == 201
    res = enroll(client, token_for(student), student, subject, offering)
    assert res.status_code == 400
    assert "already" in res.json()["detail"]
    assert enroll(client, token_for(student), student, subject, offering, term="2026/2027-Ganjil").status_code == 201


def test_enrollment_checks_subject_and_offering(client, kaprodi, student, token_for, open_subject, subject_payload):
    auth = token_for(student)
    assert enroll(client, auth, student, {"id": "missing"}).status_code == 404

    archived = client.post("/subjects", params=token_for(kaprodi), json=subject_payload(kode="PTI900", status="arsip")).json()
    res = enroll(client, auth, student, archived)
    assert res.status_code == 400
    assert "not active" in res.json()["detail"]

    subject, offering = open_subject()
    assert enroll(client, auth, student, subject, {"id": "missing"}).status_code == 404

    other, other_offering = open_subject(kode="PTI102")
    assert enroll(client, auth, student, subject, other_offering).status_code == 400

    client.put(f"/offerings/{offering['id']}", params=token_for(kaprodi), json={"status": "tutup"})
    res = enroll(client, auth, student, subject, offering)
    assert res.status_code == 400
    assert "closed" in res.json()["detail"]


def test_full_class_rejected(client, student, make_user, token_for, open_subject):
    subject, offering = open_subject(capacity=1)
    assert enroll(client, token_for(student), student, subject, offering).status_code == 201
    second = make_user("mahasiswa")
    res = enroll(client, token_for(second), second, subject, offering)
    assert res.status_code == 400
    assert res.json()["detail"] == "Class is full"


def test_students_enroll_only_themselves(client, student, dosen, kaprodi, make_user, token_for, open_subject):
    subject, offering = open_subject()
    other = make_user("mahasiswa")
    assert enroll(client, token_for(student), other, subject, offering).status_code == 403
    assert enroll(client, token_for(dosen), student, subject, offering).status_code == 403
    assert enroll(client, token_for(kaprodi), other, subject, offering).status_code == 201


def test_delete_removes_only_empty_grade(client, dosen, student, token_for, open_subject, db):
    first, first_offering = open_subject()
    second, second_offering = open_subject(kode="PTI102")
    a = enroll(client, token_for(student), student, first, first_offering).json()
    b = enroll(client, token_for(student), student, second, second_offering).json()
    client.put("/grades", params=token_for(dosen), json={"user_id": student.id, "subject_id": second["id"], "term": TERM, "nilai_angka": 80})

    res = client.delete(f"/krs/{a['id']}", params=token_for(student))
    assert res.json() == {"status": "deleted", "grade_removed": True}
    res = client.delete(f"/krs/{b['id']}", params=token_for(student))
    assert res.json() == {"status": "deleted", "grade_removed": False}

    grades = db.scalars(select(Grade).where(Grade.user_id == student.id)).all()
    assert [(g.subject_id, g.nilai_huruf) for g in grades] == [(second["id"], "A-")]
    assert client.delete(f"/krs/{a['id']}", params=token_for(student)).status_code == 404


def test_clear_term_and_summary(client, student, make_user, token_for, open_subject, db):
    first, first_offering = open_subject(sks=3)
    second, second_offering = open_subject(kode="PTI102", sks=2)
    auth = token_for(student)
    enroll(client, auth, student, first, first_offering)
    enroll(client, auth, student, second, second_offering)

    summary = client.get("/krs/summary", params={**auth, "user_id": student.id, "term": TERM}).json()
    assert summary["total_sks"] == 5
    assert summary["item_count"] == 2
    assert summary["under_minimum"] is True
    assert summary["over_limit"] is False
    assert (summary["min_sks"], summary["max_sks"]) == (12, 24)

    other = make_user("mahasiswa")
    assert client.get("/krs/summary", params={**token_for(other), "user_id": student.id, "term": TERM}).status_code == 403
    assert client.get("/krs", params={**token_for(other), "user_id": student.id}).status_code == 403

    res = client.delete("/krs", params={**auth, "user_id": student.id, "term": TERM})
    assert res.json() == {"deleted": 2, "grades_removed": 2}
    assert db.scalar(select(KrsItem)) is None
    assert client.get("/krs", params=auth).json() == []
