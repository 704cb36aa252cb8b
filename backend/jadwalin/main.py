from __future__ import annotations

import csv
import io
import json
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional, Union

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from passlib.context import CryptContext
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    select,
    text,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.inspection import inspect
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from jadwalin import config
from jadwalin.config import configure_logging
from jadwalin.grading import GRADE_SCALE, grade_info, resolve_grade, weighted_gpa
from jadwalin.mailer import MailDeliveryError, MailNotConfigured, build_reminder_message, send_message
from jadwalin.students import next_nim, nim_prefix, random_password, student_email, student_info
from jadwalin.timetable import current_term, is_overlap, next_upcoming, now_ms, parse_schedule_ics, schedule_ics

logger = logging.getLogger(__name__)

serializer = URLSafeTimedSerializer(config.SESSION_SECRET, salt="jadwalin")
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

ROLE_MAHASISWA = "mahasiswa"
ROLE_DOSEN = "dosen"
ROLE_KAPRODI = "kaprodi"
ROLE_SUPER_ADMIN = "super_admin"
STAFF_ROLES = (ROLE_DOSEN, ROLE_KAPRODI)

ATTENDANCE_STATUSES = {"present", "absent", "late", "excused"}
BADGE_TYPES = {"krs", "jadwal", "asynchronous", "khs", "reminder"}
ACTIVITY_ACTIONS = {"created", "updated", "deleted", "submitted", "uploaded", "completed", "changed"}
ACTIVITY_DEFAULTS = {
    "schedule": ("Calendar", "text-blue-500"),
    "krs": ("Users", "text-purple-500"),
    "reminder": ("Bell", "text-orange-500"),
    "subject": ("BookOpen", "text-green-500"),
    "attendance": ("CheckCircle", "text-teal-500"),
    "assignment": ("FileText", "text-indigo-500"),
    "material": ("Download", "text-cyan-500"),
    "profile": ("User", "text-pink-500"),
    "password": ("Lock", "text-red-500"),
    "other": ("Star", "text-yellow-500"),
}


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String)
    email: Mapped[str] = mapped_column(String, unique=True, index=True)
    password: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    role: Mapped[str] = mapped_column(String, default=ROLE_MAHASISWA)
    nim: Mapped[Optional[str]] = mapped_column(String, unique=True, nullable=True, index=True)
    nip: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    phone_number: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    angkatan: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    prodi: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    fakultas: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    avatar_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    jenis_kelamin: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    semester_awal: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Subject(Base):
    __tablename__ = "subjects"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    kode: Mapped[str] = mapped_column(String, unique=True, index=True)
    nama: Mapped[str] = mapped_column(String)
    sks: Mapped[int] = mapped_column(Integer)
    semester: Mapped[int] = mapped_column(Integer)
    prodi: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="aktif")
    angkatan: Mapped[int] = mapped_column(Integer)
    kelas: Mapped[str] = mapped_column(String)
    color: Mapped[str] = mapped_column(String, default="#3B82F6")
    slot_day: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    slot_start_utc: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    slot_end_utc: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    slot_ruang: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class SubjectLecturer(Base):
    __tablename__ = "subject_lecturers"
    __table_args__ = (UniqueConstraint("subject_id", "user_id"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    subject_id: Mapped[str] = mapped_column(String, ForeignKey("subjects.id"), index=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)


class CourseOffering(Base):
    __tablename__ = "course_offerings"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    subject_id: Mapped[str] = mapped_column(String, ForeignKey("subjects.id"), index=True)
    angkatan: Mapped[int] = mapped_column(Integer)
    kelas: Mapped[str] = mapped_column(String)
    semester: Mapped[int] = mapped_column(Integer)
    term: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    capacity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String, default="buka")
    slot_day: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    slot_start_utc: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    slot_end_utc: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    slot_ruang: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class KrsItem(Base):
    __tablename__ = "krs_items"
    __table_args__ = (UniqueConstraint("user_id", "subject_id", "term"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    subject_id: Mapped[str] = mapped_column(String, ForeignKey("subjects.id"), index=True)
    offering_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("course_offerings.id"), nullable=True, index=True)
    term: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Grade(Base):
    __tablename__ = "grades"
    __table_args__ = (UniqueConstraint("user_id", "subject_id", "term"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    subject_id: Mapped[str] = mapped_column(String, ForeignKey("subjects.id"), index=True)
    offering_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("course_offerings.id"), nullable=True)
    term: Mapped[str] = mapped_column(String)
    nilai_angka: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    nilai_huruf: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ScheduleEvent(Base):
    __tablename__ = "schedule_events"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    subject_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("subjects.id"), nullable=True)
    day_of_week: Mapped[int] = mapped_column(Integer)
    start_utc: Mapped[int] = mapped_column(Integer)
    end_utc: Mapped[int] = mapped_column(Integer)
    location: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    join_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    color: Mapped[Optional[str]] = mapped_column(String, nullable=True)


class Reminder(Base):
    __tablename__ = "reminders"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    title: Mapped[str] = mapped_column(String)
    due_utc: Mapped[int] = mapped_column(BigInteger)
    related_subject_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("subjects.id"), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    send_email: Mapped[bool] = mapped_column(Boolean, default=False)
    email_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class Announcement(Base):
    __tablename__ = "announcements"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    title: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text)
    image_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    file_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    target_roles_json: Mapped[str] = mapped_column(Text, default="[]")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_by_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Assignment(Base):
    __tablename__ = "assignments"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    subject_id: Mapped[str] = mapped_column(String, ForeignKey("subjects.id"), index=True)
    title: Mapped[str] = mapped_column(String)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    due_utc: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    allowed_file_types_json: Mapped[str] = mapped_column(Text, default='[".pdf", ".doc", ".docx"]')
    max_file_size: Mapped[int] = mapped_column(Integer, default=10485760)
    max_files: Mapped[int] = mapped_column(Integer, default=3)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Submission(Base):
    __tablename__ = "submissions"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    assignment_id: Mapped[str] = mapped_column(String, ForeignKey("assignments.id"), index=True)
    student_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    submitted_at: Mapped[int] = mapped_column(BigInteger)
    status: Mapped[str] = mapped_column(String, default="draft")
    grade: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    graded_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    graded_by: Mapped[Optional[str]] = mapped_column(String, ForeignKey("users.id"), nullable=True)


class Material(Base):
    __tablename__ = "materials"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    subject_id: Mapped[str] = mapped_column(String, ForeignKey("subjects.id"), index=True)
    title: Mapped[str] = mapped_column(String)
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Attendance(Base):
    __tablename__ = "attendance"
    __table_args__ = (UniqueConstraint("subject_id", "student_id", "meeting"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    subject_id: Mapped[str] = mapped_column(String, ForeignKey("subjects.id"), index=True)
    student_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    meeting: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String, default="present")
    recorded_by: Mapped[Optional[str]] = mapped_column(String, ForeignKey("users.id"), nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class ActivityLog(Base):
    __tablename__ = "activity_logs"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    title: Mapped[str] = mapped_column(String)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String)
    action: Mapped[str] = mapped_column(String)
    icon: Mapped[str] = mapped_column(String, default="Star")
    color: Mapped[str] = mapped_column(String, default="text-gray-500")
    metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)


class NotificationBadge(Base):
    __tablename__ = "notification_badges"
    __table_args__ = (UniqueConstraint("type", "user_id"),)
    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    type: Mapped[str] = mapped_column(String)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    count: Mapped[int] = mapped_column(Integer, default=0)
    last_updated: Mapped[int] = mapped_column(BigInteger, default=now_ms)
    is_read: Mapped[bool] = mapped_column(Boolean, default=True)
    last_notified_count: Mapped[int] = mapped_column(Integer, default=0)
    has_ever_notified: Mapped[bool] = mapped_column(Boolean, default=False)


engine = create_engine(config.DATABASE_URL, future=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
app = FastAPI(title="Jadwalin - Academic Scheduling and Records")
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class LoginIn(BaseModel):
    email: str
    password: str = Field(min_length=1)


class RegisterIn(BaseModel):
    email: str
    password: str = Field(min_length=6)
    name: str = Field(min_length=1)
    role: Literal["mahasiswa", "dosen", "kaprodi", "super_admin"] = ROLE_MAHASISWA


class ChangePasswordIn(BaseModel):
    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=6)


class SetPasswordIn(BaseModel):
    user_id: str
    new_password: str = Field(min_length=6)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    name: str
    email: str
    role: str
    nim: Optional[str] = None
    nip: Optional[str] = None
    phone_number: Optional[str] = None
    angkatan: Optional[int] = None
    prodi: Optional[str] = None
    fakultas: Optional[str] = None
    avatar_url: Optional[str] = None
    jenis_kelamin: Optional[str] = None
    semester_awal: Optional[str] = None


class StudentCreateIn(BaseModel):
    role: Literal["mahasiswa"]
    name: str = Field(min_length=3)
    phone_number: str = Field(min_length=10)
    birth_date: str
    birth_place: str = Field(min_length=2)
    angkatan: int = Field(ge=2000, le=2100)


class StaffCreateIn(BaseModel):
    role: Literal["dosen", "kaprodi", "super_admin"]
    name: str = Field(min_length=3)
    email: str
    password: Optional[str] = Field(default=None, min_length=6)
    prodi: Optional[str] = None
    nip: Optional[str] = None
    phone_number: Optional[str] = None


UserCreateIn = Union[StudentCreateIn, StaffCreateIn]


class UserUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=3)
    email: Optional[str] = None
    password: Optional[str] = Field(default=None, min_length=6)
    role: Optional[Literal["mahasiswa", "dosen", "kaprodi", "super_admin"]] = None
    nim: Optional[str] = Field(default=None, min_length=11, max_length=11)
    angkatan: Optional[int] = Field(default=None, ge=2000, le=2100)
    prodi: Optional[str] = None


class ProfileIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    phone_number: Optional[str] = None
    nip: Optional[str] = None
    prodi: Optional[str] = None
    avatar_url: Optional[str] = None
    jenis_kelamin: Optional[str] = None
    semester_awal: Optional[str] = None


class SubjectIn(BaseModel):
    kode: str = Field(min_length=1)
    nama: str = Field(min_length=1)
    sks: int = Field(ge=1, le=6)
    semester: int = Field(ge=1, le=8)
    prodi: Optional[str] = None
    status: Literal["aktif", "arsip"] = "aktif"
    angkatan: int = Field(ge=2000, le=2050)
    kelas: str = Field(min_length=1)
    color: str = "#3B82F6"
    pengampu_ids: Optional[list[str]] = None
    slot_day: Optional[int] = Field(default=None, ge=0, le=6)
    slot_start_utc: Optional[int] = Field(default=None, ge=0)
    slot_end_utc: Optional[int] = Field(default=None, ge=0)
    slot_ruang: Optional[str] = None


class SubjectUpdateIn(BaseModel):
    kode: Optional[str] = Field(default=None, min_length=1)
    nama: Optional[str] = Field(default=None, min_length=1)
    sks: Optional[int] = Field(default=None, ge=1, le=6)
    semester: Optional[int] = Field(default=None, ge=1, le=8)
    prodi: Optional[str] = None
    status: Optional[Literal["aktif", "arsip"]] = None
    angkatan: Optional[int] = Field(default=None, ge=2000, le=2050)
    kelas: Optional[str] = Field(default=None, min_length=1)
    color: Optional[str] = None
    pengampu_ids: Optional[list[str]] = None
    slot_day: Optional[int] = Field(default=None, ge=0, le=6)
    slot_start_utc: Optional[int] = Field(default=None, ge=0)
    slot_end_utc: Optional[int] = Field(default=None, ge=0)
    slot_ruang: Optional[str] = None


class ForceDeleteIn(BaseModel):
    subject_ids: list[str] = Field(min_length=1)


class OfferingIn(BaseModel):
    subject_id: str = Field(min_length=1)
    angkatan: int = Field(ge=2000, le=2050)
    kelas: str = Field(min_length=1)
    semester: int = Field(ge=1, le=8)
    term: Optional[str] = None
    capacity: Optional[int] = Field(default=None, ge=1, le=200)
    status: Literal["buka", "tutup"] = "buka"
    slot_day: Optional[int] = Field(default=None, ge=0, le=6)
    slot_start_utc: Optional[int] = Field(default=None, ge=0)
    slot_end_utc: Optional[int] = Field(default=None, ge=0)
    slot_ruang: Optional[str] = None


class OfferingUpdateIn(BaseModel):
    angkatan: Optional[int] = Field(default=None, ge=2000, le=2050)
    kelas: Optional[str] = Field(default=None, min_length=1)
    semester: Optional[int] = Field(default=None, ge=1, le=8)
    term: Optional[str] = None
    capacity: Optional[int] = Field(default=None, ge=1, le=200)
    status: Optional[Literal["buka", "tutup"]] = None
    slot_day: Optional[int] = Field(default=None, ge=0, le=6)
    slot_start_utc: Optional[int] = Field(default=None, ge=0)
    slot_end_utc: Optional[int] = Field(default=None, ge=0)
    slot_ruang: Optional[str] = None


class KrsIn(BaseModel):
    user_id: str = Field(min_length=1)
    subject_id: str = Field(min_length=1)
    offering_id: Optional[str] = None
    term: str = Field(min_length=1)


class GradeIn(BaseModel):
    user_id: str
    subject_id: str
    term: str = Field(min_length=1)
    offering_id: Optional[str] = None
    nilai_angka: Optional[float] = None
    nilai_huruf: Optional[str] = None


class ScheduleEventIn(BaseModel):
    subject_id: Optional[str] = None
    day_of_week: int = Field(ge=0, le=6)
    start_utc: int = Field(ge=0)
    end_utc: int = Field(ge=0)
    location: Optional[str] = None
    join_url: Optional[str] = None
    notes: Optional[str] = None
    color: Optional[str] = None


class ScheduleEventUpdateIn(BaseModel):
    subject_id: Optional[str] = None
    day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    start_utc: Optional[int] = Field(default=None, ge=0)
    end_utc: Optional[int] = Field(default=None, ge=0)
    location: Optional[str] = None
    join_url: Optional[str] = None
    notes: Optional[str] = None
    color: Optional[str] = None


class DuplicateIn(BaseModel):
    day_of_week: int = Field(ge=0, le=6)


class RescheduleIn(BaseModel):
    day_of_week: int = Field(ge=0, le=6)
    start_utc: int = Field(ge=0)
    end_utc: int = Field(ge=0)


class SyncKrsIn(BaseModel):
    term: str = Field(min_length=1)


class ReminderIn(BaseModel):
    title: str = Field(min_length=1)
    due_utc: int
    related_subject_id: Optional[str] = None
    is_active: bool = True
    send_email: bool = False


class ReminderUpdateIn(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    due_utc: Optional[int] = None
    related_subject_id: Optional[str] = None
    is_active: Optional[bool] = None
    send_email: Optional[bool] = None


class AnnouncementIn(BaseModel):
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    image_url: Optional[str] = None
    file_url: Optional[str] = None
    target_roles: list[Literal["mahasiswa", "dosen", "kaprodi"]] = Field(min_length=1)
    is_active: bool = True


class AnnouncementUpdateIn(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = Field(default=None, min_length=1)
    image_url: Optional[str] = None
    file_url: Optional[str] = None
    target_roles: Optional[list[Literal["mahasiswa", "dosen", "kaprodi"]]] = Field(default=None, min_length=1)
    is_active: Optional[bool] = None


class AssignmentIn(BaseModel):
    subject_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: Optional[str] = None
    due_utc: Optional[int] = None
    allowed_file_types: list[str] = Field(default_factory=lambda: [".pdf", ".doc", ".docx"])
    max_file_size: int = 10485760
    max_files: int = Field(default=3, ge=1, le=10)


class AssignmentUpdateIn(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    due_utc: Optional[int] = None
    allowed_file_types: Optional[list[str]] = None
    max_file_size: Optional[int] = None
    max_files: Optional[int] = Field(default=None, ge=1, le=10)


class SubmissionIn(BaseModel):
    assignment_id: str
    student_id: Optional[str] = None
    note: Optional[str] = None
    submitted_at: Optional[int] = None
    status: Literal["draft", "submitted"] = "draft"


class SubmissionUpdateIn(BaseModel):
    note: Optional[str] = None
    status: Optional[Literal["draft", "submitted", "graded"]] = None
    grade: Optional[float] = Field(default=None, ge=0, le=100)
    feedback: Optional[str] = None


class MaterialIn(BaseModel):
    subject_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    content: Optional[str] = None


class MaterialUpdateIn(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1)
    content: Optional[str] = None


class AttendanceIn(BaseModel):
    subject_id: str
    student_id: str
    meeting: int = Field(ge=1, le=16)
    status: Literal["present", "absent", "late", "excused"] = "present"


class ActivityIn(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    action: Optional[str] = None
    icon: Optional[str] = None
    color: Optional[str] = None
    metadata: Optional[dict] = None


class BadgeCountIn(BaseModel):
    count: int = Field(ge=0)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def issue_token(user: User) -> str:
    return serializer.dumps({"user_id": user.id})


def current_user(session_token: str = Query(...), db: Session = Depends(get_db)) -> User:
    return session_user(session_token, db)


def session_user(session_token: str, db: Session) -> User:
    try:
        payload = serializer.loads(session_token, max_age=config.SESSION_MAX_AGE)
    except SignatureExpired as exc:
        raise HTTPException(status_code=401, detail="Session expired") from exc
    except BadSignature as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc
    user = db.get(User, payload.get("user_id"))
    if not user:
        raise HTTPException(status_code=401, detail="Invalid user")
    return user


def require_roles(*roles: str):
    def checker(user: User = Depends(current_user)) -> User:
        if user.role != ROLE_SUPER_ADMIN and user.role not in roles:
            raise HTTPException(status_code=403, detail=f"Role {' or '.join(roles)} required")
        return user

    return checker


require_kaprodi = require_roles(ROLE_KAPRODI)
require_lecturer = require_roles(ROLE_DOSEN, ROLE_KAPRODI)
require_super_admin = require_roles(ROLE_SUPER_ADMIN)


def ensure_self_or(user: User, target_user_id: str, *roles: str) -> None:
    if user.id == target_user_id or user.role == ROLE_SUPER_ADMIN or user.role in roles:
        return
    raise HTTPException(status_code=403, detail="Not allowed for another user")


def hash_password(raw: str) -> str:
    return pwd_context.hash(raw)


def verify_password(raw: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return pwd_context.verify(raw, hashed)


def serialize(instance):
    return {c.key: getattr(instance, c.key) for c in inspect(instance).mapper.column_attrs}


def to_epoch_ms(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)


def user_out(user: User) -> dict:
    return UserOut.model_validate(user).model_dump()


def write_activity(
    db: Session,
    user_id: str,
    category: str,
    action: str,
    title: str,
    description: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> ActivityLog:
    icon, color = ACTIVITY_DEFAULTS.get(category, ACTIVITY_DEFAULTS["other"])
    entry = ActivityLog(
        user_id=user_id,
        title=title,
        description=description,
        category=category,
        action=action,
        icon=icon,
        color=color,
        metadata_json=json.dumps(metadata) if metadata is not None else None,
    )
    db.add(entry)
    db.commit()
    return entry


def activity_out(entry: ActivityLog) -> dict:
    out = serialize(entry)
    raw = out.pop("metadata_json")
    out["metadata"] = json.loads(raw) if raw else None
    return out


def subject_summary(subject: Optional[Subject]) -> Optional[dict]:
    if not subject:
        return None
    return {
        "id": subject.id,
        "kode": subject.kode,
        "nama": subject.nama,
        "sks": subject.sks,
        "semester": subject.semester,
        "color": subject.color,
        "status": subject.status,
    }


def offering_summary(offering: Optional[CourseOffering]) -> Optional[dict]:
    if not offering:
        return None
    return {
        "id": offering.id,
        "angkatan": offering.angkatan,
        "kelas": offering.kelas,
        "semester": offering.semester,
        "term": offering.term,
        "capacity": offering.capacity,
        "status": offering.status,
    }


def enrollment_count(db: Session, offering_id: str) -> int:
    return db.scalar(select(func.count()).select_from(KrsItem).where(KrsItem.offering_id == offering_id)) or 0


# Notification badges: per (type, user) counters the clients poll.


def get_badge(db: Session, badge_type: str, user_id: str) -> Optional[NotificationBadge]:
    return db.scalar(select(NotificationBadge).where(NotificationBadge.type == badge_type, NotificationBadge.user_id == user_id))


def update_badge(db: Session, badge_type: str, user_id: str, count: int) -> NotificationBadge:
    badge = get_badge(db, badge_type, user_id)
    if badge:
        if count == 0:
            badge.is_read = True
        elif count > badge.count:
            badge.is_read = False
        badge.count = count
        badge.last_updated = now_ms()
        return badge
    badge = NotificationBadge(
        type=badge_type,
        user_id=user_id,
        count=count,
        last_updated=now_ms(),
        is_read=count == 0,
        last_notified_count=0,
        has_ever_notified=False,
    )
    db.add(badge)
    db.flush()
    return badge


def increment_badge(db: Session, badge_type: str, user_id: str) -> NotificationBadge:
    return update_badge(db, badge_type, user_id, badge_count(db, badge_type, user_id) + 1)


def clear_badge(db: Session, badge_type: str, user_id: str) -> NotificationBadge:
    return update_badge(db, badge_type, user_id, 0)


def mark_badge_read(db: Session, badge_type: str, user_id: str) -> Optional[NotificationBadge]:
    badge = get_badge(db, badge_type, user_id)
    if badge:
        badge.is_read = True
    return badge


def badge_count(db: Session, badge_type: str, user_id: str) -> int:
    badge = get_badge(db, badge_type, user_id)
    return badge.count if badge else 0


def has_unread(db: Session, badge_type: str, user_id: str) -> bool:
    badge = get_badge(db, badge_type, user_id)
    return bool(badge and not badge.is_read and badge.count > 0)


def unread_badges(db: Session, user_id: str) -> list[NotificationBadge]:
    stmt = select(NotificationBadge).where(
        NotificationBadge.user_id == user_id,
        NotificationBadge.is_read.is_(False),
        NotificationBadge.count > 0,
    )
    return list(db.scalars(stmt).all())


def clear_all_badges(db: Session, user_id: str) -> int:
    result = db.execute(delete(NotificationBadge).where(NotificationBadge.user_id == user_id))
    return result.rowcount or 0


def should_show_notification(db: Session, badge_type: str, user_id: str) -> bool:
    badge = get_badge(db, badge_type, user_id)
    if not badge:
        return False
    # First sighting of a non-zero count is the initial load, not news.
    if not badge.has_ever_notified and badge.count > 0:
        return False
    return badge.count > (badge.last_notified_count or 0)


def mark_notification_shown(db: Session, badge_type: str, user_id: str, count: int) -> Optional[NotificationBadge]:
    badge = get_badge(db, badge_type, user_id)
    if badge:
        badge.last_notified_count = count
        badge.has_ever_notified = True
    return badge


def validate_badge_type(badge_type: str) -> None:
    if badge_type not in BADGE_TYPES:
        raise HTTPException(status_code=400, detail="Invalid badge type")


def menu_items(role: str) -> list[dict]:
    common = [
        {"path": "/dashboard", "title": "Dashboard", "icon": "home"},
        {"path": "/jadwal", "title": "Jadwal", "icon": "calendar"},
        {"path": "/reminders", "title": "Pengingat", "icon": "bell"},
    ]
    asynchronous = {"path": "/asynchronous", "title": "Asynchronous", "icon": "monitor"}
    attendance = {"path": "/kehadiran", "title": "Kehadiran", "icon": "users"}
    grade_entry = {"path": "/entry-nilai", "title": "Entry Nilai", "icon": "edit"}
    if role == ROLE_MAHASISWA:
        children = [asynchronous, {"path": "/krs", "title": "KRS", "icon": "file-text"}, {"path": "/khs", "title": "KHS", "icon": "award"}]
        return common + [{"path": "#", "title": "Perkuliahan", "icon": "book", "children": children}]
    if role == ROLE_DOSEN:
        return common + [{"path": "#", "title": "Perkuliahan", "icon": "book", "children": [asynchronous, attendance, grade_entry]}]
    if role == ROLE_KAPRODI:
        return common + [
            {"path": "/subjects", "title": "Mata Kuliah", "icon": "library"},
            {"path": "#", "title": "Perkuliahan", "icon": "book", "children": [asynchronous, attendance, grade_entry]},
        ]
    return common + [
        {"path": "/role-management", "title": "Manajemen Role", "icon": "shield"},
        {"path": "/announcements", "title": "Pengumuman", "icon": "megaphone"},
    ]


def ensure_super_admin(db: Session) -> None:
    if db.scalar(select(User).where(User.role == ROLE_SUPER_ADMIN)):
        return
    db.add(
        User(
            name="Super Admin",
            email=config.SUPER_ADMIN_EMAIL,
            password=hash_password(config.SUPER_ADMIN_PASSWORD),
            role=ROLE_SUPER_ADMIN,
        )
    )
    logger.info("Seeded super admin %s", config.SUPER_ADMIN_EMAIL)


@app.on_event("startup")
def startup():
    configure_logging()
    Base.metadata.create_all(engine)
    with SessionLocal() as db:
        ensure_super_admin(db)
        db.commit()


@app.get("/health")
def health(db: Session = Depends(get_db)):
    started = time.perf_counter()
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Health check failed: %s", exc)
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )
    elapsed = int((time.perf_counter() - started) * 1000)
    return {
        "status": "healthy",
        "database": "connected",
        "response_time": f"{elapsed}ms",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# Auth


@app.post("/auth/login")
def login(payload: LoginIn, db: Session = Depends(get_db)):
    user = db.scalar(select(User).where(User.email == payload.email.strip().lower()))
    if not user:
        raise HTTPException(status_code=404, detail="Email is not registered")
    if not user.password:
        raise HTTPException(status_code=401, detail="Password has not been set")
    if not verify_password(payload.password, user.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"session_token": issue_token(user), "user": user_out(user)}


@app.post("/auth/register", status_code=201)
def register(payload: RegisterIn, session_token: Optional[str] = Query(None), db: Session = Depends(get_db)):
    # Staff accounts are only created by a super admin.
    if payload.role != ROLE_MAHASISWA:
        if not session_token or session_user(session_token, db).role != ROLE_SUPER_ADMIN:
            raise HTTPException(status_code=403, detail="Only a super admin can register staff accounts")
    email = payload.email.strip().lower()
    if db.scalar(select(User).where(User.email == email)):
        raise HTTPException(status_code=400, detail="Email already registered")
    user = User(email=email, password=hash_password(payload.password), name=payload.name, role=payload.role)
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info("Registered %s as %s", email, payload.role)
    return {"status": "created", "user": user_out(user)}


@app.get("/auth/session")
def session_info(user: User = Depends(current_user)):
    return {"user": user_out(user)}


@app.post("/auth/logout")
def logout(_: User = Depends(current_user)):
    return {"status": "ok"}


@app.get("/auth/menu")
def menu(user: User = Depends(current_user)):
    return menu_items(user.role)


@app.post("/auth/change-password")
def change_password(payload: ChangePasswordIn, db: Session = Depends(get_db), user: User = Depends(current_user)):
    if not verify_password(payload.current_password, user.password):
        raise HTTPException(status_code=400, detail="Current password does not match")
    user.password = hash_password(payload.new_password)
    db.commit()
    write_activity(db, user.id, "password", "changed", "Password diubah")
    return {"status": "changed"}


@app.post("/auth/set-password")
def set_password(payload: SetPasswordIn, db: Session = Depends(get_db), user: User = Depends(current_user)):
    ensure_self_or(user, payload.user_id)
    target = db.get(User, payload.user_id)
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    if target.password:
        raise HTTPException(status_code=400, detail="User already has a password; use change-password")
    target.password = hash_password(payload.new_password)
    db.commit()
    return {"status": "set"}


# Users and profiles


@app.get("/users")
def list_users(role: Optional[str] = None, db: Session = Depends(get_db), _: User = Depends(require_kaprodi)):
    stmt = select(User).order_by(User.created_at.desc())
    if role:
        stmt = stmt.where(User.role == role)
    return [user_out(u) for u in db.scalars(stmt).all()]


@app.get("/users/{user_id}")
def get_user(user_id: str, db: Session = Depends(get_db), user: User = Depends(current_user)):
    ensure_self_or(user, user_id, ROLE_KAPRODI, ROLE_DOSEN)
    target = db.get(User, user_id)
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    return user_out(target)


@app.post("/users", status_code=201)
def create_user(payload: UserCreateIn, db: Session = Depends(get_db), _: User = Depends(require_super_admin)):
    if isinstance(payload, StudentCreateIn):
        prefix = nim_prefix(payload.angkatan)
        last = db.scalar(
            select(User)
            .where(User.angkatan == payload.angkatan, User.nim.startswith(prefix))
            .order_by(User.nim.desc())
            .limit(1)
        )
        nim, seq = next_nim(payload.angkatan, last.nim if last else None)
        email = student_email(payload.name, payload.angkatan, seq)
        if db.scalar(select(User).where(User.email == email)):
            raise HTTPException(status_code=400, detail="Email already registered; try a different name")
        password = random_password(8)
        student = User(
            name=payload.name,
            email=email,
            password=hash_password(password),
            role=ROLE_MAHASISWA,
            nim=nim,
            angkatan=payload.angkatan,
            phone_number=payload.phone_number,
            prodi=config.DEFAULT_PRODI,
            fakultas=config.FAKULTAS_TEKNIK,
        )
        db.add(student)
        db.commit()
        db.refresh(student)
        logger.info("Created student %s (%s)", nim, email)
        return {"user": user_out(student), "credentials": {"email": email, "password": password, "nim": nim}}

    if payload.role == ROLE_KAPRODI and not payload.prodi:
        raise HTTPException(status_code=400, detail="Prodi is required for kaprodi")
    email = payload.email.strip().lower()
    if db.scalar(select(User).where(User.email == email)):
        raise HTTPException(status_code=400, detail="Email already registered")
    staff = User(
        name=payload.name,
        email=email,
        password=hash_password(payload.password) if payload.password else None,
        role=payload.role,
        prodi=payload.prodi,
        nip=payload.nip,
        phone_number=payload.phone_number,
    )
    db.add(staff)
    db.commit()
    db.refresh(staff)
    logger.info("Created %s account %s", payload.role, email)
    return {"user": user_out(staff)}


@app.patch("/users/{user_id}")
def update_user(user_id: str, payload: UserUpdateIn, db: Session = Depends(get_db), _: User = Depends(require_super_admin)):
    target = db.get(User, user_id)
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    data = payload.model_dump(exclude_unset=True)
    if data.get("email"):
        data["email"] = data["email"].strip().lower()
        if data["email"] != target.email and db.scalar(select(User).where(User.email == data["email"])):
            raise HTTPException(status_code=400, detail="Email already in use")
    if data.get("nim") and data["nim"] != target.nim:
        if db.scalar(select(User).where(User.nim == data["nim"], User.id != user_id)):
            raise HTTPException(status_code=400, detail="NIM already in use")
    if data.get("password"):
        data["password"] = hash_password(data["password"])
    for k, v in data.items():
        if v is None and k in ("name", "email", "role", "password"):
            continue
        setattr(target, k, v)
    db.commit()
    db.refresh(target)
    return user_out(target)


@app.delete("/users/{user_id}")
def delete_user(user_id: str, db: Session = Depends(get_db), _: User = Depends(require_super_admin)):
    target = db.get(User, user_id)
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    if target.role == ROLE_SUPER_ADMIN:
        raise HTTPException(status_code=403, detail="Super admin cannot be deleted")
    for model, column in (
        (KrsItem, KrsItem.user_id),
        (Grade, Grade.user_id),
        (ScheduleEvent, ScheduleEvent.user_id),
        (Reminder, Reminder.user_id),
        (Submission, Submission.student_id),
        (Attendance, Attendance.student_id),
        (ActivityLog, ActivityLog.user_id),
        (NotificationBadge, NotificationBadge.user_id),
        (SubjectLecturer, SubjectLecturer.user_id),
    ):
        db.execute(delete(model).where(column == user_id))
    email, role = target.email, target.role
    db.delete(target)
    db.commit()
    logger.warning("Deleted user %s (%s)", email, role)
    return {"status": "deleted"}


@app.get("/profile/{user_id}")
def get_profile(user_id: str, db: Session = Depends(get_db), user: User = Depends(current_user)):
    ensure_self_or(user, user_id)
    target = db.get(User, user_id)
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    out = user_out(target)
    if target.role == ROLE_MAHASISWA:
        out["student_info"] = student_info(target.email, target.nim)
    return out


@app.put("/profile/{user_id}")
def update_profile(user_id: str, payload: ProfileIn, db: Session = Depends(get_db), user: User = Depends(current_user)):
    ensure_self_or(user, user_id)
    target = db.get(User, user_id)
    if not target:
        raise HTTPException(status_code=404, detail="User not found")
    if payload.prodi and not config.is_valid_prodi(payload.prodi):
        raise HTTPException(status_code=400, detail="Unknown prodi")
    for k, v in payload.model_dump(exclude_unset=True).items():
        setattr(target, k, v)
    db.commit()
    db.refresh(target)
    write_activity(db, target.id, "profile", "updated", "Profil diperbarui")
    return user_out(target)


@app.get("/meta/prodi")
def list_prodi(_: User = Depends(current_user)):
    return [config.prodi_by_kode(p["kode"]) for p in config.PRODI_LIST]


# Subjects


def lecturer_ids_by_subject(db: Session, subject_ids: list[str]) -> dict[str, list[str]]:
    out: dict[str, list[str]] = {sid: [] for sid in subject_ids}
    if not subject_ids:
        return out
    for link in db.scalars(select(SubjectLecturer).where(SubjectLecturer.subject_id.in_(subject_ids))).all():
        out.setdefault(link.subject_id, []).append(link.user_id)
    return out


def set_lecturers(db: Session, subject_id: str, user_ids: list[str]) -> None:
    unique_ids = list(dict.fromkeys(user_ids))
    if unique_ids:
        found = set(db.scalars(select(User.id).where(User.id.in_(unique_ids), User.role.in_(STAFF_ROLES))).all())
        missing = [uid for uid in unique_ids if uid not in found]
        if missing:
            raise HTTPException(status_code=400, detail=f"Unknown lecturers: {missing}")
    db.execute(delete(SubjectLecturer).where(SubjectLecturer.subject_id == subject_id))
    for uid in unique_ids:
        db.add(SubjectLecturer(subject_id=subject_id, user_id=uid))


def subject_out(db: Session, subject: Subject) -> dict:
    out = serialize(subject)
    out["pengampu_ids"] = lecturer_ids_by_subject(db, [subject.id])[subject.id]
    return out


@app.get("/subjects")
def list_subjects(
    status: Optional[str] = None,
    angkatan: Optional[int] = None,
    kelas: Optional[str] = None,
    db: Session = Depends(get_db),
    _: User = Depends(current_user),
):
    stmt = select(Subject).order_by(Subject.semester.asc(), Subject.kode.asc())
    if status:
        stmt = stmt.where(Subject.status == status)
    if angkatan is not None:
        stmt = stmt.where(Subject.angkatan == angkatan)
    if kelas:
        stmt = stmt.where(Subject.kelas == kelas)
    subjects = db.scalars(stmt).all()
    ids = [s.id for s in subjects]
    lecturers = lecturer_ids_by_subject(db, ids)
    krs_counts = dict(
        db.execute(select(KrsItem.subject_id, func.count()).where(KrsItem.subject_id.in_(ids)).group_by(KrsItem.subject_id)).all()
    ) if ids else {}
    offerings: dict[str, list[dict]] = {sid: [] for sid in ids}
    if ids:
        for o in db.scalars(select(CourseOffering).where(CourseOffering.subject_id.in_(ids))).all():
            offerings[o.subject_id].append({"id": o.id, "angkatan": o.angkatan, "kelas": o.kelas, "status": o.status})
    rows = []
    for s in subjects:
        out = serialize(s)
        out["pengampu_ids"] = lecturers.get(s.id, [])
        out["offerings"] = offerings.get(s.id, [])
        out["krs_count"] = krs_counts.get(s.id, 0)
        rows.append(out)
    return rows


@app.get("/subjects/{subject_id}")
def get_subject(subject_id: str, db: Session = Depends(get_db), _: User = Depends(current_user)):
    subject = db.get(Subject, subject_id)
    if not subject:
        raise HTTPException(status_code=404, detail="Subject not found")
    return subject_out(db, subject)


@app.post("/subjects", status_code=201)
def create_subject(payload: SubjectIn, db: Session = Depends(get_db), user: User = Depends(require_kaprodi)):
    if db.scalar(select(Subject).where(Subject.kode == payload.kode)):
        raise HTTPException(status_code=400, detail="Subject code already in use")
    data = payload.model_dump(exclude={"pengampu_ids"})
    subject = Subject(**data)
    db.add(subject)
    db.flush()
    set_lecturers(db, subject.id, payload.pengampu_ids or [])
    db.commit()
    db.refresh(subject)

    # Every new subject gets a closed offering for its own cohort in the current term.
    try:
        db.add(
            CourseOffering(
                subject_id=subject.id,
                angkatan=subject.angkatan,
                kelas=subject.kelas,
                semester=subject.semester,
                term=current_term(),
                capacity=config.DEFAULT_OFFERING_CAPACITY,
                status="tutup",
            )
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Could not create default offering for subject %s", subject.kode)

    write_activity(db, user.id, "subject", "created", f"Mata kuliah {subject.kode} dibuat", subject.nama)
    return subject_out(db, subject)


@app.put("/subjects/{subject_id}")
def update_subject(subject_id: str, payload: SubjectUpdateIn, db: Session = Depends(get_db), user: User = Depends(require_kaprodi)):
    subject = db.get(Subject, subject_id)
    if not subject:
        raise HTTPException(status_code=404, detail="Subject not found")
    data = payload.model_dump(exclude_unset=True)
    if data.get("kode") and db.scalar(select(Subject).where(Subject.kode == data["kode"], Subject.id != subject_id)):
        raise HTTPException(status_code=400, detail="Subject code already in use")
    pengampu_ids = data.pop("pengampu_ids", None)
    for k, v in data.items():
        setattr(subject, k, v)
    if pengampu_ids is not None:
        set_lecturers(db, subject.id, pengampu_ids)
    db.commit()
    db.refresh(subject)
    write_activity(db, user.id, "subject", "updated", f"Mata kuliah {subject.kode} diperbarui")
    return subject_out(db, subject)


@app.delete("/subjects/{subject_id}")
def delete_subject(subject_id: str, db: Session = Depends(get_db), user: User = Depends(require_kaprodi)):
    subject = db.get(Subject, subject_id)
    if not subject:
        raise HTTPException(status_code=404, detail="Subject not found")
    if db.scalar(select(func.count()).select_from(KrsItem).where(KrsItem.subject_id == subject_id)):
        raise HTTPException(status_code=400, detail="Subject has already been taken by students")
    db.execute(delete(CourseOffering).where(CourseOffering.subject_id == subject_id))
    db.execute(delete(SubjectLecturer).where(SubjectLecturer.subject_id == subject_id))
    kode = subject.kode
    db.delete(subject)
    db.commit()
    write_activity(db, user.id, "subject", "deleted", f"Mata kuliah {kode} dihapus")
    return {"status": "deleted"}


@app.post("/subjects/force-delete")
def force_delete_subjects(payload: ForceDeleteIn, db: Session = Depends(get_db), user: User = Depends(require_kaprodi)):
    offering_ids = list(db.scalars(select(CourseOffering.id).where(CourseOffering.subject_id.in_(payload.subject_ids))).all())
    try:
        krs_filter = KrsItem.subject_id.in_(payload.subject_ids)
        if offering_ids:
            krs_filter = krs_filter | KrsItem.offering_id.in_(offering_ids)
        deleted_krs = db.execute(delete(KrsItem).where(krs_filter)).rowcount or 0
        db.execute(delete(Grade).where(Grade.subject_id.in_(payload.subject_ids)))
        deleted_offerings = db.execute(delete(CourseOffering).where(CourseOffering.subject_id.in_(payload.subject_ids))).rowcount or 0
        db.execute(delete(SubjectLecturer).where(SubjectLecturer.subject_id.in_(payload.subject_ids)))
        deleted_subjects = db.execute(delete(Subject).where(Subject.id.in_(payload.subject_ids))).rowcount or 0
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    logger.warning(
        "Force-deleted %s subjects, %s offerings, %s KRS items (by %s)",
        deleted_subjects,
        deleted_offerings,
        deleted_krs,
        user.email,
    )
    return {
        "deleted_subjects": deleted_subjects,
        "deleted_offerings": deleted_offerings,
        "deleted_krs_items": deleted_krs,
    }


@app.post("/import/csv/subjects")
def import_subject_csv(file: UploadFile = File(...), db: Session = Depends(get_db), _: User = Depends(require_kaprodi)):
    try:
        data = file.file.read().decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="CSV must be UTF-8 encoded") from exc
    inserted = 0
    errors = []
    existing = set(db.scalars(select(Subject.kode)).all())
    for i, row in enumerate(csv.DictReader(io.StringIO(data)), start=2):
        # Surplus cells land under the None key.
        if row.get(None):
            errors.append({"line": i, "error": "Row has more fields than the header", "row": {k: v for k, v in row.items() if k is not None}})
            continue
        try:
            parsed = SubjectIn(**{k: v for k, v in row.items() if k is not None and v not in (None, "")})
        except (TypeError, ValueError) as exc:
            errors.append({"line": i, "error": str(exc), "row": row})
            continue
        if parsed.kode in existing:
            errors.append({"line": i, "error": f"Duplicate kode {parsed.kode}", "row": row})
            continue
        db.add(Subject(**parsed.model_dump(exclude={"pengampu_ids"})))
        existing.add(parsed.kode)
        inserted += 1
    db.commit()
    return {"inserted": inserted, "errors": errors}


# Offerings


def offering_out(db: Session, offering: CourseOffering, enrolled: Optional[int] = None) -> dict:
    out = serialize(offering)
    out["subject"] = subject_summary(db.get(Subject, offering.subject_id))
    out["enrolled"] = enrollment_count(db, offering.id) if enrolled is None else enrolled
    return out


@app.get("/offerings")
def list_offerings(
    subject_id: Optional[str] = None,
    angkatan: Optional[int] = None,
    kelas: Optional[str] = None,
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    _: User = Depends(current_user),
):
    stmt = select(CourseOffering).order_by(CourseOffering.angkatan.desc(), CourseOffering.semester.asc(), CourseOffering.kelas.asc())
    if subject_id:
        stmt = stmt.where(CourseOffering.subject_id == subject_id)
    if angkatan is not None:
        stmt = stmt.where(CourseOffering.angkatan == angkatan)
    if kelas:
        stmt = stmt.where(CourseOffering.kelas == kelas)
    if status:
        stmt = stmt.where(CourseOffering.status == status)
    offerings = db.scalars(stmt).all()
    counts = dict(
        db.execute(
            select(KrsItem.offering_id, func.count()).where(KrsItem.offering_id.in_([o.id for o in offerings])).group_by(KrsItem.offering_id)
        ).all()
    ) if offerings else {}
    return [offering_out(db, o, counts.get(o.id, 0)) for o in offerings]


@app.post("/offerings", status_code=201)
def create_offering(payload: OfferingIn, db: Session = Depends(get_db), _: User = Depends(require_kaprodi)):
    if not db.get(Subject, payload.subject_id):
        raise HTTPException(status_code=404, detail="Subject not found")
    duplicate = db.scalar(
        select(CourseOffering).where(
            CourseOffering.subject_id == payload.subject_id,
            CourseOffering.angkatan == payload.angkatan,
            CourseOffering.kelas == payload.kelas,
        )
    )
    if duplicate:
        raise HTTPException(status_code=400, detail="An offering for this subject, angkatan and kelas already exists")
    offering = CourseOffering(**payload.model_dump())
    db.add(offering)
    db.commit()
    db.refresh(offering)
    return offering_out(db, offering, 0)


@app.put("/offerings/{offering_id}")
def update_offering(offering_id: str, payload: OfferingUpdateIn, db: Session = Depends(get_db), _: User = Depends(require_kaprodi)):
    offering = db.get(CourseOffering, offering_id)
    if not offering:
        raise HTTPException(status_code=404, detail="Offering not found")
    for k, v in payload.model_dump(exclude_unset=True).items():
        setattr(offering, k, v)
    db.commit()
    db.refresh(offering)
    logger.info("Offering %s updated (status=%s)", offering.id, offering.status)
    return offering_out(db, offering)


@app.delete("/offerings/{offering_id}")
def delete_offering(offering_id: str, db: Session = Depends(get_db), _: User = Depends(require_kaprodi)):
    offering = db.get(CourseOffering, offering_id)
    if not offering:
        raise HTTPException(status_code=404, detail="Offering not found")
    if enrollment_count(db, offering_id) > 0:
        raise HTTPException(status_code=400, detail="Offering has already been taken by students")
    db.delete(offering)
    db.commit()
    return {"status": "deleted"}


# KRS


def krs_out(db: Session, item: KrsItem) -> dict:
    return {
        "id": item.id,
        "user_id": item.user_id,
        "subject_id": item.subject_id,
        "offering_id": item.offering_id,
        "term": item.term,
        "created_at": to_epoch_ms(item.created_at),
        "subject": subject_summary(db.get(Subject, item.subject_id)),
        "offering": offering_summary(db.get(CourseOffering, item.offering_id)) if item.offering_id else None,
    }


def remove_krs_item(db: Session, item: KrsItem) -> bool:
    """Delete a KRS item and its grade row when that row holds no value."""
    grade = db.scalar(
        select(Grade).where(Grade.user_id == item.user_id, Grade.subject_id == item.subject_id, Grade.term == item.term)
    )
    db.delete(item)
    removed_grade = False
    if grade and grade.nilai_angka is None and not grade.nilai_huruf:
        db.delete(grade)
        removed_grade = True
    return removed_grade


@app.get("/krs")
def list_krs(
    user_id: Optional[str] = None,
    term: Optional[str] = None,
    subject_id: Optional[str] = None,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    if user.role == ROLE_MAHASISWA:
        if user_id and user_id != user.id:
            raise HTTPException(status_code=403, detail="Not allowed for another user")
        user_id = user.id
    stmt = select(KrsItem).order_by(KrsItem.created_at.desc())
    if user_id:
        stmt = stmt.where(KrsItem.user_id == user_id)
    if term:
        stmt = stmt.where(KrsItem.term == term)
    if subject_id:
        stmt = stmt.where(KrsItem.subject_id == subject_id)
    return [krs_out(db, item) for item in db.scalars(stmt).all()]


@app.get("/krs/summary")
def krs_summary(user_id: str, term: str, db: Session = Depends(get_db), user: User = Depends(current_user)):
    ensure_self_or(user, user_id, ROLE_KAPRODI)
    rows = db.execute(
        select(Subject.sks).join(KrsItem, KrsItem.subject_id == Subject.id).where(KrsItem.user_id == user_id, KrsItem.term == term)
    ).all()
    total = sum(r[0] for r in rows)
    return {
        "user_id": user_id,
        "term": term,
        "item_count": len(rows),
        "total_sks": total,
        "min_sks": config.KRS_MIN_SKS,
        "max_sks": config.KRS_MAX_SKS,
        "over_limit": total > config.KRS_MAX_SKS,
        "under_minimum": total < config.KRS_MIN_SKS,
    }


@app.post("/krs", status_code=201)
def add_krs(payload: KrsIn, db: Session = Depends(get_db), user: User = Depends(require_roles(ROLE_MAHASISWA, ROLE_KAPRODI))):
    if user.role == ROLE_MAHASISWA and payload.user_id != user.id:
        raise HTTPException(status_code=403, detail="Students can only enroll themselves")
    if not db.get(User, payload.user_id):
        raise HTTPException(status_code=404, detail="User not found")

    existing = db.scalar(
        select(KrsItem).where(KrsItem.user_id == payload.user_id, KrsItem.subject_id == payload.subject_id, KrsItem.term == payload.term)
    )
    if existing:
        raise HTTPException(status_code=400, detail="Subject is already in the KRS")

    subject = db.get(Subject, payload.subject_id)
    if not subject:
        raise HTTPException(status_code=404, detail="Subject not found")
    if subject.status != "aktif":
        raise HTTPException(status_code=400, detail=f'Subject "{subject.nama}" is not active (status: {subject.status})')

    if payload.offering_id:
        offering = db.get(CourseOffering, payload.offering_id)
        if not offering:
            raise HTTPException(status_code=404, detail="Offering not found")
        if offering.subject_id != subject.id:
            raise HTTPException(status_code=400, detail="Offering does not belong to the subject")
        if offering.status != "buka":
            raise HTTPException(status_code=400, detail=f"Offering is closed (status: {offering.status})")
        if offering.capacity:
            enrolled = enrollment_count(db, offering.id)
            if enrolled >= offering.capacity:
                logger.info("KRS rejected: offering %s full (%s/%s)", offering.id, enrolled, offering.capacity)
                raise HTTPException(status_code=400, detail="Class is full")

    item = KrsItem(user_id=payload.user_id, subject_id=payload.subject_id, offering_id=payload.offering_id, term=payload.term)
    db.add(item)
    grade = db.scalar(
        select(Grade).where(Grade.user_id == payload.user_id, Grade.subject_id == payload.subject_id, Grade.term == payload.term)
    )
    if not grade:
        db.add(Grade(user_id=payload.user_id, subject_id=payload.subject_id, offering_id=payload.offering_id, term=payload.term))
    db.commit()
    db.refresh(item)
    logger.info("KRS item %s created for user %s subject %s term %s", item.id, item.user_id, subject.kode, item.term)
    write_activity(
        db,
        payload.user_id,
        "krs",
        "created",
        f"{subject.nama} ditambahkan ke KRS",
        f"{subject.sks} SKS",
        {"subject_id": subject.id, "sks": subject.sks, "term": payload.term},
    )
    return krs_out(db, item)


@app.delete("/krs/{krs_id}")
def delete_krs(krs_id: str, db: Session = Depends(get_db), user: User = Depends(current_user)):
    item = db.get(KrsItem, krs_id)
    if not item:
        raise HTTPException(status_code=404, detail="KRS item not found")
    ensure_self_or(user, item.user_id, ROLE_KAPRODI)
    subject = db.get(Subject, item.subject_id)
    owner = item.user_id
    label = subject.nama if subject else item.subject_id
    removed_grade = remove_krs_item(db, item)
    db.commit()
    write_activity(db, owner, "krs", "deleted", f"{label} dihapus dari KRS")
    return {"status": "deleted", "grade_removed": removed_grade}


@app.delete("/krs")
def clear_krs(user_id: str, term: str, db: Session = Depends(get_db), user: User = Depends(current_user)):
    ensure_self_or(user, user_id, ROLE_KAPRODI)
    items = db.scalars(select(KrsItem).where(KrsItem.user_id == user_id, KrsItem.term == term)).all()
    removed_grades = sum(1 for item in items if remove_krs_item(db, item))
    db.commit()
    write_activity(db, user_id, "krs", "deleted", "KRS dikosongkan", term)
    return {"deleted": len(items), "grades_removed": removed_grades}


# Grades


@app.get("/grades/scale")
def grade_scale(_: User = Depends(current_user)):
    return [{"value": v, "bobot": b, "min_score": lo, "max_score": hi} for v, b, lo, hi in GRADE_SCALE]


@app.get("/grades")
def list_grades(
    user_id: Optional[str] = None,
    term: Optional[str] = None,
    subject_id: Optional[str] = None,
    offering_id: Optional[str] = None,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    if user.role == ROLE_MAHASISWA:
        if user_id and user_id != user.id:
            raise HTTPException(status_code=403, detail="Not allowed for another user")
        user_id = user.id
    stmt = select(Grade)
    if user_id:
        stmt = stmt.where(Grade.user_id == user_id)
    if term:
        stmt = stmt.where(Grade.term == term)
    if subject_id:
        stmt = stmt.where(Grade.subject_id == subject_id)
    if offering_id:
        stmt = stmt.where(Grade.offering_id == offering_id)
    rows = []
    for g in db.scalars(stmt).all():
        out = serialize(g)
        info = grade_info(g.nilai_huruf) if g.nilai_huruf else None
        out["bobot"] = info["bobot"] if info else None
        rows.append(out)
    return rows


@app.put("/grades")
def upsert_grade(payload: GradeIn, db: Session = Depends(get_db), user: User = Depends(require_lecturer)):
    try:
        nilai_angka, nilai_huruf = resolve_grade(payload.nilai_angka, payload.nilai_huruf)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not db.get(Subject, payload.subject_id):
        raise HTTPException(status_code=404, detail="Subject not found")
    student = db.get(User, payload.user_id)
    if not student:
        raise HTTPException(status_code=404, detail="User not found")
    grade = db.scalar(
        select(Grade).where(Grade.user_id == payload.user_id, Grade.subject_id == payload.subject_id, Grade.term == payload.term)
    )
    if not grade:
        grade = Grade(user_id=payload.user_id, subject_id=payload.subject_id, term=payload.term, offering_id=payload.offering_id)
        db.add(grade)
    grade.nilai_angka = nilai_angka
    grade.nilai_huruf = nilai_huruf
    if payload.offering_id:
        grade.offering_id = payload.offering_id
    if nilai_huruf:
        increment_badge(db, "khs", student.id)
    db.commit()
    db.refresh(grade)
    logger.info("Grade %s set for user %s subject %s by %s", nilai_huruf, student.id, payload.subject_id, user.email)
    return serialize(grade)


def grade_rows(db: Session, user_id: str, term: Optional[str] = None):
    stmt = select(Grade, Subject).join(Subject, Subject.id == Grade.subject_id).where(Grade.user_id == user_id)
    if term:
        stmt = stmt.where(Grade.term == term)
    return db.execute(stmt).all()


@app.get("/grades/gpa")
def gpa(user_id: str, term: Optional[str] = None, db: Session = Depends(get_db), user: User = Depends(current_user)):
    ensure_self_or(user, user_id, ROLE_KAPRODI)
    result = weighted_gpa((g.nilai_huruf, s.sks) for g, s in grade_rows(db, user_id, term))
    kind = "ips" if term else "ipk"
    return {"user_id": user_id, "term": term, kind: result["gpa"], **result}


@app.get("/grades/transcript/{user_id}")
def transcript(user_id: str, db: Session = Depends(get_db), user: User = Depends(current_user)):
    ensure_self_or(user, user_id, ROLE_KAPRODI)
    student = db.get(User, user_id)
    if not student:
        raise HTTPException(status_code=404, detail="User not found")
    rows = grade_rows(db, user_id)
    by_term: dict[str, list] = {}
    for g, s in rows:
        by_term.setdefault(g.term, []).append((g, s))
    terms = []
    for term in sorted(by_term):
        entries = sorted(by_term[term], key=lambda gs: gs[1].kode)
        terms.append(
            {
                "term": term,
                "ips": weighted_gpa((g.nilai_huruf, s.sks) for g, s in entries)["gpa"],
                "rows": [
                    {
                        "kode": s.kode,
                        "nama": s.nama,
                        "sks": s.sks,
                        "nilai_angka": g.nilai_angka,
                        "nilai_huruf": g.nilai_huruf,
                        "bobot": grade_info(g.nilai_huruf)["bobot"] if g.nilai_huruf else None,
                    }
                    for g, s in entries
                ],
            }
        )
    overall = weighted_gpa((g.nilai_huruf, s.sks) for g, s in rows)
    return {"user": user_out(student), "terms": terms, "ipk": overall["gpa"], "total_sks": overall["total_sks"]}


# Schedule


def scoped_user_id(user: User, user_id: Optional[str]) -> str:
    if user_id and user_id != user.id:
        if user.role != ROLE_SUPER_ADMIN:
            raise HTTPException(status_code=403, detail="Not allowed for another user")
        return user_id
    return user.id


def owned_event(db: Session, event_id: str, user: User) -> ScheduleEvent:
    event = db.get(ScheduleEvent, event_id)
    if not event or (event.user_id != user.id and user.role != ROLE_SUPER_ADMIN):
        raise HTTPException(status_code=404, detail="Schedule event not found")
    return event


def check_slot(start_utc: int, end_utc: int) -> None:
    if end_utc <= start_utc:
        raise HTTPException(status_code=400, detail="end_utc must be after start_utc")


@app.get("/schedule")
def list_schedule(user_id: Optional[str] = None, db: Session = Depends(get_db), user: User = Depends(current_user)):
    owner = scoped_user_id(user, user_id)
    stmt = select(ScheduleEvent).where(ScheduleEvent.user_id == owner).order_by(ScheduleEvent.day_of_week, ScheduleEvent.start_utc)
    return [serialize(e) for e in db.scalars(stmt).all()]


@app.post("/schedule", status_code=201)
def create_schedule_event(payload: ScheduleEventIn, db: Session = Depends(get_db), user: User = Depends(current_user)):
    check_slot(payload.start_utc, payload.end_utc)
    event = ScheduleEvent(user_id=user.id, **payload.model_dump())
    db.add(event)
    increment_badge(db, "jadwal", user.id)
    db.commit()
    db.refresh(event)
    write_activity(db, user.id, "schedule", "created", "Jadwal ditambahkan")
    return serialize(event)


@app.get("/schedule/conflicts")
def schedule_conflicts(
    day_of_week: int = Query(ge=0, le=6),
    start_utc: int = Query(ge=0),
    end_utc: int = Query(ge=0),
    exclude_id: Optional[str] = None,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    stmt = select(ScheduleEvent).where(ScheduleEvent.user_id == user.id, ScheduleEvent.day_of_week == day_of_week)
    return [
        serialize(e)
        for e in db.scalars(stmt).all()
        if e.id != exclude_id and is_overlap(e.start_utc, e.end_utc, start_utc, end_utc)
    ]


@app.get("/schedule/day/{day_of_week}")
def schedule_by_day(day_of_week: int, db: Session = Depends(get_db), user: User = Depends(current_user)):
    if not 0 <= day_of_week <= 6:
        raise HTTPException(status_code=400, detail="day_of_week must be 0..6")
    stmt = (
        select(ScheduleEvent)
        .where(ScheduleEvent.user_id == user.id, ScheduleEvent.day_of_week == day_of_week)
        .order_by(ScheduleEvent.start_utc)
    )
    return [serialize(e) for e in db.scalars(stmt).all()]


@app.get("/schedule/next")
def schedule_next(db: Session = Depends(get_db), user: User = Depends(current_user)):
    events = db.scalars(select(ScheduleEvent).where(ScheduleEvent.user_id == user.id)).all()
    upcoming = next_upcoming(events)
    return {"event": serialize(upcoming) if upcoming else None}


@app.get("/schedule/export.ics")
def export_schedule(db: Session = Depends(get_db), user: User = Depends(current_user)):
    events = db.scalars(select(ScheduleEvent).where(ScheduleEvent.user_id == user.id)).all()
    if not events:
        raise HTTPException(status_code=404, detail="No schedule to export")
    subjects = {s.id: s for s in db.scalars(select(Subject).where(Subject.id.in_([e.subject_id for e in events if e.subject_id]))).all()}
    payload = []
    for e in events:
        subject = subjects.get(e.subject_id) if e.subject_id else None
        row = serialize(e)
        row["title"] = f"{subject.kode} - {subject.nama}" if subject else "Jadwal Pribadi"
        payload.append(row)
    filename = f"jadwal-{'-'.join(user.name.split())}.ics"
    return Response(
        content=schedule_ics(payload),
        media_type="text/calendar; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/schedule/import")
def import_schedule(file: UploadFile = File(...), db: Session = Depends(get_db), user: User = Depends(current_user)):
    try:
        content = file.file.read().decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="Calendar file must be UTF-8 encoded") from exc
    parsed = parse_schedule_ics(content)
    if not parsed:
        raise HTTPException(status_code=400, detail="No valid events found in the file")
    for row in parsed:
        check_slot(row["start_utc"], row["end_utc"])
        db.add(ScheduleEvent(user_id=user.id, color="#3b82f6", **row))
    update_badge(db, "jadwal", user.id, badge_count(db, "jadwal", user.id) + len(parsed))
    db.commit()
    write_activity(db, user.id, "schedule", "created", f"{len(parsed)} jadwal diimpor")
    return {"imported": len(parsed)}


@app.post("/schedule/sync-krs")
def sync_schedule_from_krs(payload: SyncKrsIn, db: Session = Depends(get_db), user: User = Depends(current_user)):
    scheduled = set(db.scalars(select(ScheduleEvent.subject_id).where(ScheduleEvent.user_id == user.id)).all())
    created = 0
    skipped = 0
    for item in db.scalars(select(KrsItem).where(KrsItem.user_id == user.id, KrsItem.term == payload.term)).all():
        if item.subject_id in scheduled:
            skipped += 1
            continue
        subject = db.get(Subject, item.subject_id)
        offering = db.get(CourseOffering, item.offering_id) if item.offering_id else None
        source = offering if offering and offering.slot_day is not None else subject
        if not source or source.slot_day is None or source.slot_start_utc is None or source.slot_end_utc is None:
            skipped += 1
            continue
        db.add(
            ScheduleEvent(
                user_id=user.id,
                subject_id=item.subject_id,
                day_of_week=source.slot_day,
                start_utc=source.slot_start_utc,
                end_utc=source.slot_end_utc,
                location=source.slot_ruang,
                color=subject.color if subject else None,
            )
        )
        scheduled.add(item.subject_id)
        created += 1
    if created:
        update_badge(db, "jadwal", user.id, badge_count(db, "jadwal", user.id) + created)
    db.commit()
    return {"created": created, "skipped": skipped}


@app.delete("/schedule")
def clear_schedule(db: Session = Depends(get_db), user: User = Depends(current_user)):
    deleted = db.execute(delete(ScheduleEvent).where(ScheduleEvent.user_id == user.id)).rowcount or 0
    db.commit()
    return {"deleted": deleted}


@app.get("/schedule/{event_id}")
def get_schedule_event(event_id: str, db: Session = Depends(get_db), user: User = Depends(current_user)):
    return serialize(owned_event(db, event_id, user))


@app.put("/schedule/{event_id}")
def update_schedule_event(event_id: str, payload: ScheduleEventUpdateIn, db: Session = Depends(get_db), user: User = Depends(current_user)):
    event = owned_event(db, event_id, user)
    for k, v in payload.model_dump(exclude_unset=True).items():
        setattr(event, k, v)
    check_slot(event.start_utc, event.end_utc)
    db.commit()
    db.refresh(event)
    return serialize(event)


@app.post("/schedule/{event_id}/duplicate", status_code=201)
def duplicate_schedule_event(event_id: str, payload: DuplicateIn, db: Session = Depends(get_db), user: User = Depends(current_user)):
    event = owned_event(db, event_id, user)
    data = serialize(event)
    data.pop("id")
    data["day_of_week"] = payload.day_of_week
    copy = ScheduleEvent(**data)
    db.add(copy)
    increment_badge(db, "jadwal", user.id)
    db.commit()
    db.refresh(copy)
    return serialize(copy)


@app.post("/schedule/{event_id}/reschedule")
def reschedule_event(event_id: str, payload: RescheduleIn, db: Session = Depends(get_db), user: User = Depends(current_user)):
    check_slot(payload.start_utc, payload.end_utc)
    event = owned_event(db, event_id, user)
    event.day_of_week = payload.day_of_week
    event.start_utc = payload.start_utc
    event.end_utc = payload.end_utc
    db.commit()
    db.refresh(event)
    return serialize(event)


@app.delete("/schedule/{event_id}")
def delete_schedule_event(event_id: str, db: Session = Depends(get_db), user: User = Depends(current_user)):
    event = owned_event(db, event_id, user)
    db.delete(event)
    db.commit()
    return {"status": "deleted"}


# Reminders


def owned_reminder(db: Session, reminder_id: str, user: User) -> Reminder:
    reminder = db.get(Reminder, reminder_id)
    if not reminder or (reminder.user_id != user.id and user.role != ROLE_SUPER_ADMIN):
        raise HTTPException(status_code=404, detail="Reminder not found")
    return reminder


def due_reminders(db: Session, now: int, window_ms: int) -> list[Reminder]:
    stmt = (
        select(Reminder)
        .where(
            Reminder.is_active.is_(True),
            Reminder.send_email.is_(True),
            Reminder.email_sent_at.is_(None),
            Reminder.due_utc >= now,
            Reminder.due_utc <= now + window_ms,
        )
        .order_by(Reminder.due_utc)
    )
    return list(db.scalars(stmt).all())


def send_reminder_email(db: Session, reminder: Reminder) -> None:
    owner = db.get(User, reminder.user_id)
    subject = db.get(Subject, reminder.related_subject_id) if reminder.related_subject_id else None
    message = build_reminder_message(
        to=owner.email,
        user_name=owner.name,
        reminder_id=reminder.id,
        title=reminder.title,
        due_ms=reminder.due_utc,
        subject_label=f"{subject.kode} - {subject.nama}" if subject else None,
    )
    send_message(message)
    reminder.email_sent_at = datetime.utcnow()
    db.commit()


@app.get("/reminders")
def list_reminders(user_id: Optional[str] = None, db: Session = Depends(get_db), user: User = Depends(current_user)):
    owner = scoped_user_id(user, user_id)
    stmt = select(Reminder).where(Reminder.user_id == owner).order_by(Reminder.due_utc.asc())
    return [serialize(r) for r in db.scalars(stmt).all()]


@app.post("/reminders", status_code=201)
def create_reminder(payload: ReminderIn, db: Session = Depends(get_db), user: User = Depends(current_user)):
    if payload.related_subject_id and not db.get(Subject, payload.related_subject_id):
        raise HTTPException(status_code=404, detail="Subject not found")
    reminder = Reminder(user_id=user.id, **payload.model_dump())
    db.add(reminder)
    increment_badge(db, "reminder", user.id)
    db.commit()
    db.refresh(reminder)
    write_activity(db, user.id, "reminder", "created", f"Pengingat: {reminder.title}")
    return serialize(reminder)


@app.patch("/reminders/{reminder_id}")
def update_reminder(reminder_id: str, payload: ReminderUpdateIn, db: Session = Depends(get_db), user: User = Depends(current_user)):
    reminder = owned_reminder(db, reminder_id, user)
    data = payload.model_dump(exclude_unset=True)
    if "due_utc" in data and data["due_utc"] != reminder.due_utc:
        reminder.email_sent_at = None
    for k, v in data.items():
        setattr(reminder, k, v)
    db.commit()
    db.refresh(reminder)
    return serialize(reminder)


@app.delete("/reminders/{reminder_id}")
def delete_reminder(reminder_id: str, db: Session = Depends(get_db), user: User = Depends(current_user)):
    reminder = owned_reminder(db, reminder_id, user)
    db.delete(reminder)
    db.commit()
    return {"status": "deleted"}


@app.post("/reminders/{reminder_id}/send-email")
def email_reminder(reminder_id: str, db: Session = Depends(get_db), user: User = Depends(current_user)):
    reminder = owned_reminder(db, reminder_id, user)
    if not reminder.send_email:
        raise HTTPException(status_code=400, detail="Reminder does not have e-mail delivery enabled")
    if not reminder.is_active:
        raise HTTPException(status_code=400, detail="Reminder is not active")
    try:
        send_reminder_email(db, reminder)
    except MailNotConfigured as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except MailDeliveryError as exc:
        raise HTTPException(status_code=502, detail=f"Failed to send e-mail: {exc}") from exc
    return {"status": "sent"}


# Announcements


def announcement_out(a: Announcement) -> dict:
    out = serialize(a)
    out["target_roles"] = json.loads(out.pop("target_roles_json") or "[]")
    return out


@app.get("/announcements")
def list_announcements(
    role: Optional[str] = None,
    active_only: bool = False,
    db: Session = Depends(get_db),
    _: User = Depends(current_user),
):
    stmt = select(Announcement).order_by(Announcement.created_at.desc())
    rows = [announcement_out(a) for a in db.scalars(stmt).all()]
    if role and active_only:
        rows = [r for r in rows if r["is_active"] and role in r["target_roles"]]
    return rows


@app.post("/announcements", status_code=201)
def create_announcement(payload: AnnouncementIn, db: Session = Depends(get_db), user: User = Depends(require_kaprodi)):
    data = payload.model_dump()
    a = Announcement(created_by_id=user.id, target_roles_json=json.dumps(data.pop("target_roles")), **data)
    db.add(a)
    db.commit()
    db.refresh(a)
    logger.info("Announcement %s created for %s", a.id, a.target_roles_json)
    return announcement_out(a)


@app.put("/announcements/{announcement_id}")
def update_announcement(announcement_id: str, payload: AnnouncementUpdateIn, db: Session = Depends(get_db), _: User = Depends(require_kaprodi)):
    a = db.get(Announcement, announcement_id)
    if not a:
        raise HTTPException(status_code=404, detail="Announcement not found")
    data = payload.model_dump(exclude_unset=True)
    if "target_roles" in data:
        a.target_roles_json = json.dumps(data.pop("target_roles"))
    for k, v in data.items():
        setattr(a, k, v)
    db.commit()
    db.refresh(a)
    return announcement_out(a)


@app.delete("/announcements/{announcement_id}")
def delete_announcement(announcement_id: str, db: Session = Depends(get_db), _: User = Depends(require_kaprodi)):
    a = db.get(Announcement, announcement_id)
    if not a:
        raise HTTPException(status_code=404, detail="Announcement not found")
    db.delete(a)
    db.commit()
    return {"status": "deleted"}


# Assignments, submissions, materials, attendance


def assignment_out(db: Session, a: Assignment) -> dict:
    out = serialize(a)
    out["allowed_file_types"] = json.loads(out.pop("allowed_file_types_json") or "[]")
    out["subject"] = subject_summary(db.get(Subject, a.subject_id))
    out["submission_count"] = db.scalar(select(func.count()).select_from(Submission).where(Submission.assignment_id == a.id)) or 0
    return out


def submission_out(db: Session, s: Submission) -> dict:
    out = serialize(s)
    student = db.get(User, s.student_id)
    out["student"] = {"id": student.id, "name": student.name, "email": student.email} if student else None
    return out


@app.get("/assignments")
def list_assignments(subject_id: Optional[str] = None, db: Session = Depends(get_db), _: User = Depends(current_user)):
    stmt = select(Assignment).order_by(Assignment.due_utc.desc())
    if subject_id:
        stmt = stmt.where(Assignment.subject_id == subject_id)
    return [assignment_out(db, a) for a in db.scalars(stmt).all()]


@app.get("/assignments/{assignment_id}")
def get_assignment(assignment_id: str, db: Session = Depends(get_db), _: User = Depends(current_user)):
    a = db.get(Assignment, assignment_id)
    if not a:
        raise HTTPException(status_code=404, detail="Assignment not found")
    out = assignment_out(db, a)
    subs = db.scalars(select(Submission).where(Submission.assignment_id == a.id).order_by(Submission.submitted_at.desc())).all()
    out["submissions"] = [submission_out(db, s) for s in subs]
    return out


@app.post("/assignments", status_code=201)
def create_assignment(payload: AssignmentIn, db: Session = Depends(get_db), user: User = Depends(require_lecturer)):
    subject = db.get(Subject, payload.subject_id)
    if not subject:
        raise HTTPException(status_code=404, detail="Subject not found")
    data = payload.model_dump()
    a = Assignment(allowed_file_types_json=json.dumps(data.pop("allowed_file_types")), **data)
    db.add(a)
    students = set(db.scalars(select(KrsItem.user_id).where(KrsItem.subject_id == subject.id)).all())
    for student_id in students:
        increment_badge(db, "asynchronous", student_id)
    db.commit()
    db.refresh(a)
    write_activity(db, user.id, "assignment", "created", f"Tugas {a.title} dibuat", subject.nama)
    return assignment_out(db, a)


@app.put("/assignments/{assignment_id}")
def update_assignment(assignment_id: str, payload: AssignmentUpdateIn, db: Session = Depends(get_db), _: User = Depends(require_lecturer)):
    a = db.get(Assignment, assignment_id)
    if not a:
        raise HTTPException(status_code=404, detail="Assignment not found")
    data = payload.model_dump(exclude_unset=True)
    if "allowed_file_types" in data:
        a.allowed_file_types_json = json.dumps(data.pop("allowed_file_types") or [])
    for k, v in data.items():
        setattr(a, k, v)
    db.commit()
    db.refresh(a)
    return assignment_out(db, a)


@app.delete("/assignments/{assignment_id}")
def delete_assignment(assignment_id: str, db: Session = Depends(get_db), _: User = Depends(require_lecturer)):
    a = db.get(Assignment, assignment_id)
    if not a:
        raise HTTPException(status_code=404, detail="Assignment not found")
    if db.scalar(select(func.count()).select_from(Submission).where(Submission.assignment_id == a.id)):
        raise HTTPException(status_code=400, detail="Assignment already has submissions")
    db.delete(a)
    db.commit()
    return {"status": "deleted"}


@app.get("/submissions")
def list_submissions(
    assignment_id: Optional[str] = None,
    student_id: Optional[str] = None,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    if user.role == ROLE_MAHASISWA:
        student_id = user.id
    stmt = select(Submission).order_by(Submission.submitted_at.desc())
    if assignment_id:
        stmt = stmt.where(Submission.assignment_id == assignment_id)
    if student_id:
        stmt = stmt.where(Submission.student_id == student_id)
    return [submission_out(db, s) for s in db.scalars(stmt).all()]


@app.post("/submissions", status_code=201)
def create_submission(payload: SubmissionIn, db: Session = Depends(get_db), user: User = Depends(current_user)):
    if not db.get(Assignment, payload.assignment_id):
        raise HTTPException(status_code=404, detail="Assignment not found")
    student_id = payload.student_id or user.id
    ensure_self_or(user, student_id, ROLE_DOSEN, ROLE_KAPRODI)
    s = Submission(
        assignment_id=payload.assignment_id,
        student_id=student_id,
        note=payload.note,
        submitted_at=payload.submitted_at or now_ms(),
        status=payload.status,
    )
    db.add(s)
    db.commit()
    db.refresh(s)
    write_activity(db, student_id, "assignment", "submitted", "Tugas dikumpulkan", metadata={"assignment_id": s.assignment_id})
    return submission_out(db, s)


@app.put("/submissions/{submission_id}")
def update_submission(submission_id: str, payload: SubmissionUpdateIn, db: Session = Depends(get_db), user: User = Depends(current_user)):
    s = db.get(Submission, submission_id)
    if not s:
        raise HTTPException(status_code=404, detail="Submission not found")
    data = payload.model_dump(exclude_unset=True)
    is_staff = user.role in STAFF_ROLES or user.role == ROLE_SUPER_ADMIN
    if not is_staff:
        if s.student_id != user.id:
            raise HTTPException(status_code=404, detail="Submission not found")
        if "grade" in data or "feedback" in data or data.get("status") == "graded":
            raise HTTPException(status_code=403, detail="Only lecturers can grade submissions")
        if s.status == "graded":
            raise HTTPException(status_code=400, detail="Submission has already been graded")
    for k, v in data.items():
        setattr(s, k, v)
    if is_staff and data.get("grade") is not None:
        s.status = "graded"
        s.graded_at = now_ms()
        s.graded_by = user.id
    db.commit()
    db.refresh(s)
    return submission_out(db, s)


@app.delete("/submissions/{submission_id}")
def delete_submission(submission_id: str, db: Session = Depends(get_db), user: User = Depends(current_user)):
    s = db.get(Submission, submission_id)
    if not s:
        raise HTTPException(status_code=404, detail="Submission not found")
    ensure_self_or(user, s.student_id, ROLE_DOSEN, ROLE_KAPRODI)
    db.delete(s)
    db.commit()
    return {"status": "deleted"}


@app.get("/materials")
def list_materials(subject_id: Optional[str] = None, db: Session = Depends(get_db), _: User = Depends(current_user)):
    stmt = select(Material).order_by(Material.created_at.desc())
    if subject_id:
        stmt = stmt.where(Material.subject_id == subject_id)
    return [{**serialize(m), "subject": subject_summary(db.get(Subject, m.subject_id))} for m in db.scalars(stmt).all()]


@app.get("/materials/{material_id}")
def get_material(material_id: str, db: Session = Depends(get_db), _: User = Depends(current_user)):
    m = db.get(Material, material_id)
    if not m:
        raise HTTPException(status_code=404, detail="Material not found")
    return {**serialize(m), "subject": subject_summary(db.get(Subject, m.subject_id))}


@app.post("/materials", status_code=201)
def create_material(payload: MaterialIn, db: Session = Depends(get_db), user: User = Depends(require_lecturer)):
    subject = db.get(Subject, payload.subject_id)
    if not subject:
        raise HTTPException(status_code=404, detail="Subject not found")
    m = Material(**payload.model_dump())
    db.add(m)
    db.commit()
    db.refresh(m)
    write_activity(db, user.id, "material", "uploaded", f"Materi {m.title} ditambahkan", subject.nama)
    return {**serialize(m), "subject": subject_summary(subject)}


@app.put("/materials/{material_id}")
def update_material(material_id: str, payload: MaterialUpdateIn, db: Session = Depends(get_db), _: User = Depends(require_lecturer)):
    m = db.get(Material, material_id)
    if not m:
        raise HTTPException(status_code=404, detail="Material not found")
    for k, v in payload.model_dump(exclude_unset=True).items():
        setattr(m, k, v)
    db.commit()
    db.refresh(m)
    return serialize(m)


@app.delete("/materials/{material_id}")
def delete_material(material_id: str, db: Session = Depends(get_db), _: User = Depends(require_lecturer)):
    m = db.get(Material, material_id)
    if not m:
        raise HTTPException(status_code=404, detail="Material not found")
    db.delete(m)
    db.commit()
    return {"status": "deleted"}


@app.post("/attendance")
def record_attendance(payload: AttendanceIn, db: Session = Depends(get_db), user: User = Depends(require_lecturer)):
    if not db.get(Subject, payload.subject_id):
        raise HTTPException(status_code=404, detail="Subject not found")
    if not db.get(User, payload.student_id):
        raise HTTPException(status_code=404, detail="User not found")
    row = db.scalar(
        select(Attendance).where(
            Attendance.subject_id == payload.subject_id,
            Attendance.student_id == payload.student_id,
            Attendance.meeting == payload.meeting,
        )
    )
    if not row:
        row = Attendance(subject_id=payload.subject_id, student_id=payload.student_id, meeting=payload.meeting)
        db.add(row)
    row.status = payload.status
    row.recorded_by = user.id
    row.recorded_at = datetime.utcnow()
    db.commit()
    db.refresh(row)
    return serialize(row)


@app.get("/attendance")
def list_attendance(
    subject_id: Optional[str] = None,
    student_id: Optional[str] = None,
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    if user.role == ROLE_MAHASISWA:
        student_id = user.id
    stmt = select(Attendance).order_by(Attendance.meeting)
    if subject_id:
        stmt = stmt.where(Attendance.subject_id == subject_id)
    if student_id:
        stmt = stmt.where(Attendance.student_id == student_id)
    records = db.scalars(stmt).all()
    counts = {s: sum(1 for r in records if r.status == s) for s in sorted(ATTENDANCE_STATUSES)}
    total = len(records)
    rate = (counts["present"] + counts["late"]) / total * 100 if total else 0.0
    if status:
        records = [r for r in records if r.status == status]
    return {"records": [serialize(r) for r in records], "summary": {"total": total, **counts, "rate": round(rate, 1)}}


# Activities and audit


@app.get("/activities")
def list_activities(
    limit: int = Query(10, ge=1, le=200),
    category: Optional[str] = None,
    db: Session = Depends(get_db),
    user: User = Depends(current_user),
):
    stmt = select(ActivityLog).where(ActivityLog.user_id == user.id)
    if category:
        stmt = stmt.where(ActivityLog.category == category)
    stmt = stmt.order_by(ActivityLog.created_at.desc()).limit(limit)
    return [activity_out(a) for a in db.scalars(stmt).all()]


@app.post("/activities", status_code=201)
def create_activity(payload: ActivityIn, db: Session = Depends(get_db), user: User = Depends(current_user)):
    if not payload.title or not payload.category or not payload.action:
        raise HTTPException(status_code=400, detail="Missing required fields: title, category, action")
    if payload.category not in ACTIVITY_DEFAULTS:
        raise HTTPException(status_code=400, detail="Invalid category")
    if payload.action not in ACTIVITY_ACTIONS:
        raise HTTPException(status_code=400, detail="Invalid action")
    entry = write_activity(db, user.id, payload.category, payload.action, payload.title, payload.description, payload.metadata)
    if payload.icon or payload.color:
        entry.icon = payload.icon or entry.icon
        entry.color = payload.color or entry.color
        db.commit()
    db.refresh(entry)
    return activity_out(entry)


@app.delete("/activities")
def cleanup_activities(db: Session = Depends(get_db), user: User = Depends(current_user)):
    cutoff = datetime.utcnow() - timedelta(days=config.ACTIVITY_RETENTION_DAYS)
    result = db.execute(delete(ActivityLog).where(ActivityLog.user_id == user.id, ActivityLog.created_at < cutoff))
    db.commit()
    return {"status": "cleaned", "count": result.rowcount or 0}


@app.get("/audit")
def audit_feed(limit: int = Query(200, ge=1, le=1000), db: Session = Depends(get_db), _: User = Depends(require_super_admin)):
    return [activity_out(a) for a in db.scalars(select(ActivityLog).order_by(ActivityLog.created_at.desc()).limit(limit)).all()]


# Notification badges


@app.get("/notifications/badges")
def list_badges(db: Session = Depends(get_db), user: User = Depends(current_user)):
    return [serialize(b) for b in db.scalars(select(NotificationBadge).where(NotificationBadge.user_id == user.id)).all()]


@app.get("/notifications/badges/unread")
def list_unread_badges(db: Session = Depends(get_db), user: User = Depends(current_user)):
    return [serialize(b) for b in unread_badges(db, user.id)]


@app.delete("/notifications/badges")
def delete_all_badges(db: Session = Depends(get_db), user: User = Depends(current_user)):
    removed = clear_all_badges(db, user.id)
    db.commit()
    return {"deleted": removed}


@app.get("/notifications/badges/{badge_type}")
def get_badge_state(badge_type: str, db: Session = Depends(get_db), user: User = Depends(current_user)):
    validate_badge_type(badge_type)
    return {
        "type": badge_type,
        "count": badge_count(db, badge_type, user.id),
        "has_unread": has_unread(db, badge_type, user.id),
        "should_show": should_show_notification(db, badge_type, user.id),
    }


@app.put("/notifications/badges/{badge_type}")
def set_badge(badge_type: str, payload: BadgeCountIn, db: Session = Depends(get_db), user: User = Depends(current_user)):
    validate_badge_type(badge_type)
    badge = update_badge(db, badge_type, user.id, payload.count)
    db.commit()
    return serialize(badge)


@app.post("/notifications/badges/{badge_type}/increment")
def bump_badge(badge_type: str, db: Session = Depends(get_db), user: User = Depends(current_user)):
    validate_badge_type(badge_type)
    badge = increment_badge(db, badge_type, user.id)
    db.commit()
    return serialize(badge)


@app.post("/notifications/badges/{badge_type}/clear")
def reset_badge(badge_type: str, db: Session = Depends(get_db), user: User = Depends(current_user)):
    validate_badge_type(badge_type)
    badge = clear_badge(db, badge_type, user.id)
    db.commit()
    return serialize(badge)


@app.post("/notifications/badges/{badge_type}/read")
def read_badge(badge_type: str, db: Session = Depends(get_db), user: User = Depends(current_user)):
    validate_badge_type(badge_type)
    badge = mark_badge_read(db, badge_type, user.id)
    db.commit()
    return serialize(badge) if badge else {"type": badge_type, "count": 0, "is_read": True}


@app.post("/notifications/badges/{badge_type}/shown")
def badge_shown(badge_type: str, payload: BadgeCountIn, db: Session = Depends(get_db), user: User = Depends(current_user)):
    validate_badge_type(badge_type)
    badge = mark_notification_shown(db, badge_type, user.id, payload.count)
    if not badge:
        raise HTTPException(status_code=404, detail="Badge not found")
    db.commit()
    return serialize(badge)
