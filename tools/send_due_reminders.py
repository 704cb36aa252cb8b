import argparse
import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
BACKEND = ROOT / "backend"
os.chdir(BACKEND)
if str(BACKEND) not in sys.path:
    sys.path.insert(0, str(BACKEND))

from jadwalin.config import configure_logging  # noqa: E402
from jadwalin.mailer import MailDeliveryError, MailNotConfigured  # noqa: E402
from jadwalin.main import SessionLocal, due_reminders, send_reminder_email  # noqa: E402
from jadwalin.timetable import now_ms  # noqa: E402

logger = logging.getLogger("jadwalin.tools.send_due_reminders")


def main() -> None:
    ap = argparse.ArgumentParser(description="E-mail reminders that fall due within the next N minutes")
    ap.add_argument("--window-minutes", type=int, default=60)
    ap.add_argument("--dry-run", action="store_true")
    args = ap.parse_args()

    configure_logging()
    sent = 0
    failed = 0
    with SessionLocal() as db:
        due = due_reminders(db, now_ms(), args.window_minutes * 60 * 1000)
        for reminder in due:
            if args.dry_run:
                print(f"would send {reminder.id} {reminder.title!r} due {reminder.due_utc}")
                continue
            try:
                send_reminder_email(db, reminder)
                sent += 1
            except MailNotConfigured as exc:
                raise SystemExit(str(exc)) from exc
            except MailDeliveryError:
                db.rollback()
                failed += 1
                logger.warning("Reminder %s not sent", reminder.id)

    print({"due": len(due), "sent": sent, "failed": failed, "dry_run": args.dry_run})


if __name__ == "__main__":
    main()
