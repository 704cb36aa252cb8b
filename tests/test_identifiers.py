from datetime import datetime

import pytest

from jadwalin import config
from jadwalin.students import (
    angkatan_from_email,
    angkatan_from_nim,
    kelas_from_nim,
    next_nim,
    nim_prefix,
    student_email,
    student_info,
)
from jadwalin.timetable import current_term, local_zone


def test_nim_sequence():
    assert nim_prefix(2025) == "25050974"
    assert next_nim(2025, None) == ("25050974001", "001")
    assert next_nim(2025, "25050974041") == ("25050974042", "042")
    assert next_nim(2024, "2405097abc") == ("24050974001", "001")


def test_student_email_uses_first_two_words():
    assert student_email("Siti Nur Aisyah", 2025, "007") == "sitinur.25007@mhs.unesa.ac.id"
    assert student_email("O'Neil", 2024, "001", domain="kampus.id") == "oneil.24001@kampus.id"


def test_angkatan_helpers():
    assert angkatan_from_nim("25050974001") == 2025
    assert angkatan_from_nim("x5050974001") is None
    assert angkatan_from_nim("") is None
    assert angkatan_from_email("andi.25001@mhs.unesa.ac.id") == 2025
    assert angkatan_from_email("andi@gmail.com") is None


@pytest.mark.parametrize("nim,kelas", [("25050974001", "A"), ("25050974040", "A"), ("25050974041", "B"), ("25050974081", "C"), ("2505", "A")])
def test_kelas_from_nim(nim, kelas):
    assert kelas_from_nim(nim) == kelas


def test_student_info_prefers_nim():
    assert student_info("andi.24001@mhs.unesa.ac.id", "25050974045") == {"angkatan": 2025, "kelas": "B"}
    assert student_info("andi.24001@mhs.unesa.ac.id") == {"angkatan": 2024, "kelas": "A"}
    assert student_info("")["angkatan"] == datetime.now().year


@pytest.mark.parametrize(
    "when,term",
    [
        ((2025, 9, 1), "2025/2026-Ganjil"),
        ((2025, 12, 31), "2025/2026-Ganjil"),
        ((2026, 1, 10), "2025/2026-Ganjil"),
        ((2026, 2, 28), "2025/2026-Ganjil"),
        ((2026, 3, 1), "2025/2026-Genap"),
        ((2026, 8, 31), "2025/2026-Genap"),
    ],
)
def test_current_term(when, term):
    assert current_term(datetime(*when, 12, 0, tzinfo=local_zone())) == term


def test_prodi_catalog_lookups():
    assert config.prodi_by_kode("ti")["nama"] == "S1 Teknik Informatika"
    assert config.prodi_by_kode("XX") is None
    assert config.is_valid_prodi("S1 Sistem Informasi")
    assert not config.is_valid_prodi("S1 Teknik Sipil")
