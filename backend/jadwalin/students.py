from __future__ import annotations

import random
import re
import string
from datetime import datetime
from typing import Optional

from jadwalin.config import FACULTY_CODE, PRODI_CODE, STUDENT_EMAIL_DOMAIN

STUDENTS_PER_CLASS = 40


def nim_prefix(angkatan: int) -> str:
    return f"{str(angkatan)[-2:]}{FACULTY_CODE}{PRODI_CODE}"


def next_nim(angkatan: int, last_nim: Optional[str]) -> tuple[str, str]:
    """Return (nim, sequence) for the next student in a cohort."""
    seq = 1
    if last_nim:
        try:
            seq = int(last_nim[-3:]) + 1
        except ValueError:
            seq = 1
    seq_str = f"{seq:03d}"
    return f"{nim_prefix(angkatan)}{seq_str}", seq_str


def student_email(name: str, angkatan: int, seq: str, domain: str = STUDENT_EMAIL_DOMAIN) -> str:
    first_two = "".join(name.strip().split()[:2]).lower()
    clean = re.sub(r"[^a-z0-9]", "", first_two)
    return f"{clean}.{str(angkatan)[-2:]}{seq}@{domain}"


def random_password(length: int = 8) -> str:
    rng = random.SystemRandom()
    return "".join(rng.choice(string.ascii_letters) for _ in range(length))


def angkatan_from_email(email: str, domain: str = STUDENT_EMAIL_DOMAIN) -> Optional[int]:
    m = re.search(r"\.(\d{2})(\d{3})@" + re.escape(domain) + r"$", email or "")
    if not m:
        return None
    return 2000 + int(m.group(1))


def angkatan_from_nim(nim: str) -> Optional[int]:
    if not nim or len(nim) < 2 or not nim[:2].isdigit():
        return None
    year = 2000 + int(nim[:2])
    if year < 2000 or year > 2050:
        return None
    return year


def kelas_from_nim(nim: str) -> str:
    if not nim or len(nim) < 11:
        return "A"
    digits = nim[8:11]
    if not digits.isdigit():
        return "A"
    index = max(int(digits) - 1, 0) // STUDENTS_PER_CLASS
    return chr(ord("A") + index)


def student_info(email: str, nim: Optional[str] = None) -> dict:
    angkatan = datetime.now().year
    kelas = "A"
    if nim:
        angkatan = angkatan_from_nim(nim) or angkatan
        kelas = kelas_from_nim(nim)
    elif email:
        angkatan = angkatan_from_email(email) or angkatan
    return {"angkatan": angkatan, "kelas": kelas}
