from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

ENV_PATH = Path(__file__).resolve().parents[1] / ".env"
load_dotenv(dotenv_path=ENV_PATH)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


DATABASE_URL = os.getenv("JADWALIN_DATABASE_URL", "sqlite:///./jadwalin.db").strip() or "sqlite:///./jadwalin.db"
SESSION_SECRET = os.getenv("JADWALIN_SESSION_SECRET", "change-me").strip() or "change-me"
SESSION_MAX_AGE = _env_int("JADWALIN_SESSION_MAX_AGE", 7 * 24 * 60 * 60)
TIMEZONE = os.getenv("JADWALIN_TIMEZONE", "Asia/Jakarta").strip() or "Asia/Jakarta"
CORS_ORIGINS = [o.strip().rstrip("/") for o in os.getenv("JADWALIN_CORS_ORIGINS", "*").split(",") if o.strip()] or ["*"]
LOG_LEVEL = os.getenv("JADWALIN_LOG_LEVEL", "INFO").strip().upper() or "INFO"

KRS_MAX_SKS = _env_int("JADWALIN_KRS_MAX_SKS", 24)
KRS_MIN_SKS = _env_int("JADWALIN_KRS_MIN_SKS", 12)
DEFAULT_OFFERING_CAPACITY = _env_int("JADWALIN_DEFAULT_OFFERING_CAPACITY", 40)
ACTIVITY_RETENTION_DAYS = _env_int("JADWALIN_ACTIVITY_RETENTION_DAYS", 90)

SMTP_HOST = os.getenv("JADWALIN_SMTP_HOST", "").strip()
SMTP_PORT = _env_int("JADWALIN_SMTP_PORT", 587)
SMTP_USER = os.getenv("JADWALIN_SMTP_USER", "").strip()
SMTP_PASSWORD = os.getenv("JADWALIN_SMTP_PASSWORD", "").strip()
MAIL_FROM = os.getenv("JADWALIN_MAIL_FROM", "").strip() or SMTP_USER

STUDENT_EMAIL_DOMAIN = os.getenv("JADWALIN_STUDENT_EMAIL_DOMAIN", "mhs.unesa.ac.id").strip() or "mhs.unesa.ac.id"
DEFAULT_PRODI = os.getenv("JADWALIN_DEFAULT_PRODI", "S1 Pendidikan Teknologi Informasi").strip() or "S1 Pendidikan Teknologi Informasi"
FACULTY_CODE = "05"
PRODI_CODE = "0974"

SUPER_ADMIN_EMAIL = os.getenv("JADWALIN_SUPER_ADMIN_EMAIL", "admin@jadwalin.local").strip().lower()
SUPER_ADMIN_PASSWORD = os.getenv("JADWALIN_SUPER_ADMIN_PASSWORD", "change-me-too").strip()

FAKULTAS_TEKNIK = "Teknik"
JURUSAN_TEKNIK_INFORMATIKA = "Teknik Informatika"

PRODI_LIST = (
    {"kode": "PTI", "nama": "S1 Pendidikan Teknologi Informasi", "nama_pendek": "PTI"},
    {"kode": "TI", "nama": "S1 Teknik Informatika", "nama_pendek": "TI"},
    {"kode": "SI", "nama": "S1 Sistem Informasi", "nama_pendek": "SI"},
)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def prodi_by_name(nama: str) -> Optional[dict]:
    for p in PRODI_LIST:
        if p["nama"] == nama:
            return {**p, "jurusan": JURUSAN_TEKNIK_INFORMATIKA, "fakultas": FAKULTAS_TEKNIK}
    return None


def prodi_by_kode(kode: str) -> Optional[dict]:
    up = (kode or "").strip().upper()
    for p in PRODI_LIST:
        if p["kode"] == up:
            return {**p, "jurusan": JURUSAN_TEKNIK_INFORMATIKA, "fakultas": FAKULTAS_TEKNIK}
    return None


def is_valid_prodi(nama: str) -> bool:
    return prodi_by_name(nama) is not None


def configure_logging(level: Optional[str] = None) -> None:
    root = logging.getLogger("jadwalin")
    root.setLevel(level or LOG_LEVEL)
    if any(getattr(h, "_jadwalin", False) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._jadwalin = True  # type: ignore[attr-defined]
    root.addHandler(handler)
