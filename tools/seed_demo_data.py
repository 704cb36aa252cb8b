import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
BACKEND = ROOT / "backend"
os.chdir(BACKEND)
if str(BACKEND) not in sys.path:
    sys.path.insert(0, str(BACKEND))

from jadwalin.main import (  # noqa: E402
    ROLE_DOSEN,
    ROLE_KAPRODI,
    ROLE_MAHASISWA,
    Base,
    CourseOffering,
    SessionLocal,
    Subject,
    SubjectLecturer,
    User,
    engine,
    ensure_super_admin,
    hash_password,
    select,
)
from jadwalin.students import next_nim, student_email  # noqa: E402
from jadwalin.timetable import current_term, hhmm_to_ms  # noqa: E402


STAFF = [
    {"name": "Dr. Rina Kaprodi", "email": "kaprodi@jadwalin.local", "role": ROLE_KAPRODI, "prodi": "S1 Pendidikan Teknologi Informasi"},
    {"name": "Budi Santoso, M.Kom", "email": "budi@jadwalin.local", "role": ROLE_DOSEN, "prodi": None},
    {"name": "Sari Wulandari, M.T", "email": "sari@jadwalin.local", "role": ROLE_DOSEN, "prodi": None},
]

STUDENTS = ["Andi Pratama", "Dewi Lestari", "Eko Saputra", "Fitri Handayani"]

# kode, nama, sks, semester, day, start, end, ruang, color
SUBJECTS = [
    ("PTI101", "Algoritma dan Pemrograman", 3, 1, 1, "07:30", "10:00", "A10.01.05", "#3B82F6"),
    ("PTI102", "Pengantar Teknologi Informasi", 2, 1, 2, "10:00", "11:40", "A10.01.06", "#10B981"),
    ("PTI103", "Matematika Diskrit", 3, 1, 3, "13:00", "15:30", "A10.02.01", "#F59E0B"),
    ("PTI104", "Basis Data", 3, 1, 4, "07:30", "10:00", "A10.03.02", "#8B5CF6"),
    ("PTI105", "Pendidikan Pancasila", 2, 1, 5, "09:00", "10:40", "A10.01.01", "#EF4444"),
]


def upsert_staff(db, password: str) -> list[User]:
    out = []
    for row in STAFF:
        user = db.scalar(select(User).where(User.email == row["email"]))
        if not user:
            user = User(password=hash_password(password), **row)
            db.add(user)
        out.append(user)
    db.flush()
    return out


def upsert_students(db, angkatan: int, password: str) -> list[User]:
    out = []
    for name in STUDENTS:
        user = db.scalar(select(User).where(User.name == name, User.angkatan == angkatan))
        if not user:
            last = db.scalar(select(User).where(User.angkatan == angkatan, User.nim.is_not(None)).order_by(User.nim.desc()).limit(1))
            nim, seq = next_nim(angkatan, last.nim if last else None)
            user = User(
                name=name,
                email=student_email(name, angkatan, seq),
                password=hash_password(password),
                role=ROLE_MAHASISWA,
                nim=nim,
                angkatan=angkatan,
                prodi="S1 Pendidikan Teknologi Informasi",
                fakultas="Teknik",
            )
            db.add(user)
            db.flush()
        out.append(user)
    return out


def upsert_subjects(db, angkatan: int, lecturers: list[User]) -> int:
    term = current_term()
    created = 0
    for i, (kode, nama, sks, semester, day, start, end, ruang, color) in enumerate(SUBJECTS):
        if db.scalar(select(Subject).where(Subject.kode == kode)):
            continue
        subject = Subject(
            kode=kode,
            nama=nama,
            sks=sks,
            semester=semester,
            prodi="S1 Pendidikan Teknologi Informasi",
            angkatan=angkatan,
            kelas="A",
            color=color,
            slot_day=day,
            slot_start_utc=hhmm_to_ms(start),
            slot_end_utc=hhmm_to_ms(end),
            slot_ruang=ruang,
        )
        db.add(subject)
        db.flush()
        db.add(SubjectLecturer(subject_id=subject.id, user_id=lecturers[i % len(lecturers)].id))
        db.add(
            CourseOffering(
                subject_id=subject.id,
                angkatan=angkatan,
                kelas="A",
                semester=semester,
                term=term,
                capacity=40,
                status="buka",
                slot_day=day,
                slot_start_utc=hhmm_to_ms(start),
                slot_end_utc=hhmm_to_ms(end),
                slot_ruang=ruang,
            )
        )
        created += 1
    return created


def main() -> None:
    ap = argparse.ArgumentParser(description="Seed demo users, subjects and open offerings")
    ap.add_argument("--angkatan", type=int, default=2025)
    ap.add_argument("--password", type=str, default="password123")
    args = ap.parse_args()

    Base.metadata.create_all(engine)
    with SessionLocal() as db:
        ensure_super_admin(db)
        staff = upsert_staff(db, args.password)
        students = upsert_students(db, args.angkatan, args.password)
        lecturers = [u for u in staff if u.role == ROLE_DOSEN]
        created = upsert_subjects(db, args.angkatan, lecturers)
        db.commit()
        print(
            {
                "staff": len(staff),
                "students": [(s.nim, s.email) for s in students],
                "subjects_created": created,
                "term": current_term(),
            }
        )


if __name__ == "__main__":
    main()
