import argparse
import csv
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
BACKEND = ROOT / "backend"
os.chdir(BACKEND)
if str(BACKEND) not in sys.path:
    sys.path.insert(0, str(BACKEND))

from jadwalin.grading import grade_info, weighted_gpa  # noqa: E402
from jadwalin.main import SessionLocal, User, grade_rows, select  # noqa: E402

FIELDS = ["term", "kode", "nama", "sks", "nilai_angka", "nilai_huruf", "bobot"]


def main() -> None:
    ap = argparse.ArgumentParser(description="Export a student's KHS rows to CSV")
    ap.add_argument("nim", type=str)
    ap.add_argument("--term", type=str, default="")
    ap.add_argument("--out", type=Path, default=None)
    args = ap.parse_args()

    with SessionLocal() as db:
        student = db.scalar(select(User).where(User.nim == args.nim))
        if not student:
            raise SystemExit(f"No student with NIM {args.nim}")
        rows = sorted(grade_rows(db, student.id, args.term or None), key=lambda gs: (gs[0].term, gs[1].kode))

    out_path = args.out or ROOT / f"khs_{args.nim}{'_' + args.term.replace('/', '-') if args.term else ''}.csv"
    with out_path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=FIELDS)
        writer.writeheader()
        for g, s in rows:
            info = grade_info(g.nilai_huruf) if g.nilai_huruf else None
            writer.writerow(
                {
                    "term": g.term,
                    "kode": s.kode,
                    "nama": s.nama,
                    "sks": s.sks,
                    "nilai_angka": "" if g.nilai_angka is None else g.nilai_angka,
                    "nilai_huruf": g.nilai_huruf or "",
                    "bobot": info["bobot"] if info else "",
                }
            )

    summary = weighted_gpa((g.nilai_huruf, s.sks) for g, s in rows)
    print({"out": str(out_path), "rows": len(rows), **summary})


if __name__ == "__main__":
    main()
