from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Optional

from jadwalin import config
from jadwalin.timetable import format_due, reminder_ics

logger = logging.getLogger(__name__)


class MailDeliveryError(RuntimeError):
    pass


class MailNotConfigured(MailDeliveryError):
    pass


def smtp_configured() -> bool:
    return bool(config.SMTP_HOST and config.MAIL_FROM)


def build_reminder_message(
    to: str,
    user_name: str,
    reminder_id: str,
    title: str,
    due_ms: int,
    subject_label: Optional[str] = None,
) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = f"Pengingat: {title}"
    msg["From"] = config.MAIL_FROM or "noreply@jadwalin.local"
    msg["To"] = to
    due_text = format_due(due_ms)
    lines = [f"Halo {user_name},", "", f"Pengingat: {title}", f"Waktu: {due_text}"]
    if subject_label:
        lines.append(f"Mata kuliah: {subject_label}")
    lines += ["", "File kalender (.ics) terlampir."]
    msg.set_content("\n".join(lines))
    html = (
        f"<p>Halo {user_name},</p>"
        f"<p><strong>{title}</strong><br>Waktu: {due_text}"
        + (f"<br>Mata kuliah: {subject_label}" if subject_label else "")
        + "</p><p>File kalender (.ics) terlampir.</p>"
    )
    msg.add_alternative(html, subtype="html")
    ics = reminder_ics(reminder_id, title, due_ms, description=subject_label)
    msg.add_attachment(
        ics.encode("utf-8"),
        maintype="text",
        subtype="calendar",
        filename="reminder.ics",
        params={"method": "REQUEST"},
    )
    return msg


def send_message(msg: EmailMessage) -> None:
    if not smtp_configured():
        raise MailNotConfigured("SMTP is not configured")
    try:
        with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=20) as smtp:
            smtp.starttls()
            if config.SMTP_USER:
                smtp.login(config.SMTP_USER, config.SMTP_PASSWORD)
            smtp.send_message(msg)
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Mail delivery to %s failed: %s", msg["To"], exc)
        raise MailDeliveryError(str(exc)) from exc
    logger.info("Mail sent to %s: %s", msg["To"], msg["Subject"])
