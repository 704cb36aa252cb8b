from __future__ import annotations

from typing import Iterable, Optional

# (letter, weight, min score, max score)
GRADE_SCALE: tuple[tuple[str, float, int, int], ...] = (
    ("A", 4.0, 85, 100),
    ("A-", 3.7, 80, 84),
    ("B+", 3.3, 75, 79),
    ("B", 3.0, 70, 74),
    ("B-", 2.7, 65, 69),
    ("C+", 2.3, 60, 64),
    ("C", 2.0, 55, 59),
    ("C-", 1.7, 50, 54),
    ("D+", 1.3, 45, 49),
    ("D", 1.0, 40, 44),
    ("D-", 0.7, 35, 39),
    ("E", 0.0, 0, 34),
)
GRADE_POINTS: dict[str, float] = {g[0]: g[1] for g in GRADE_SCALE}


def grade_info(letter: str) -> Optional[dict]:
    for value, bobot, lo, hi in GRADE_SCALE:
        if value == letter:
            return {"value": value, "bobot": bobot, "min_score": lo, "max_score": hi}
    return None


def grade_from_score(score: float) -> dict:
    """Letter band for a numeric score.

    Bands are inclusive integer ranges, so a score sitting between two bands
    (84.5) or outside 0..100 falls through to E.
    """
    for value, bobot, lo, hi in GRADE_SCALE:
        if lo <= score <= hi:
            return {"value": value, "bobot": bobot, "min_score": lo, "max_score": hi}
    value, bobot, lo, hi = GRADE_SCALE[-1]
    return {"value": value, "bobot": bobot, "min_score": lo, "max_score": hi}


def resolve_grade(nilai_angka: Optional[float], nilai_huruf: Optional[str]) -> tuple[Optional[float], Optional[str]]:
    if nilai_angka is not None and not (0 <= nilai_angka <= 100):
        raise ValueError("nilai_angka must be between 0 and 100")
    if nilai_huruf is not None:
        if nilai_huruf not in GRADE_POINTS:
            raise ValueError(f"Unknown grade letter: {nilai_huruf}")
        return nilai_angka, nilai_huruf
    if nilai_angka is not None:
        return nilai_angka, grade_from_score(nilai_angka)["value"]
    return None, None


def weighted_gpa(rows: Iterable[tuple[Optional[str], int]]) -> dict:
    """GPA over (letter, sks) pairs; ungraded rows are skipped."""
    total_points = 0.0
    total_sks = 0
    graded = 0
    for letter, sks in rows:
        if not letter:
            continue
        total_points += GRADE_POINTS.get(letter, 0.0) * sks
        total_sks += sks
        graded += 1
    gpa = total_points / total_sks if total_sks > 0 else 0.0
    return {"gpa": round(gpa, 2), "total_sks": total_sks, "graded_count": graded}
