from __future__ import annotations

import re
import time
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from jadwalin.config import TIMEZONE

ICS_WEEKS = 16
DAY_NAMES = ("Minggu", "Senin", "Selasa", "Rabu", "Kamis", "Jumat", "Sabtu")


def local_zone() -> ZoneInfo:
    return ZoneInfo(TIMEZONE)


def now_ms() -> int:
    return int(time.time() * 1000)


def js_weekday(dt: datetime) -> int:
    # 0 = Sunday, matching the clients' day_of_week.
    return (dt.weekday() + 1) % 7


def is_overlap(start1: int, end1: int, start2: int, end2: int) -> bool:
    return start1 < end2 and start2 < end1


def ms_of_day(dt: datetime) -> int:
    return ((dt.hour * 60 + dt.minute) * 60 + dt.second) * 1000


def hhmm_to_ms(value: str) -> int:
    hours, minutes = value.split(":")
    return (int(hours) * 60 + int(minutes)) * 60 * 1000


def current_term(now: Optional[datetime] = None) -> str:
    """Academic term label; September through February is the odd term."""
    now = now or datetime.now(local_zone())
    if now.month >= 9:
        return f"{now.year}/{now.year + 1}-Ganjil"
    if now.month <= 2:
        return f"{now.year - 1}/{now.year}-Ganjil"
    return f"{now.year - 1}/{now.year}-Genap"


def next_upcoming(events: Iterable, now: Optional[datetime] = None):
    """First event after `now` scanning today and the following six days.

    Each event needs `day_of_week` and `start_utc` attributes.
    """
    now = now or datetime.now(local_zone())
    today = js_weekday(now)
    current = ms_of_day(now)
    events = list(events)
    for offset in range(7):
        day = (today + offset) % 7
        for ev in sorted((e for e in events if e.day_of_week == day), key=lambda e: e.start_utc):
            if offset == 0 and ev.start_utc <= current:
                continue
            return ev
    return None


def _ics_stamp(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _ics_text(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace(",", "\\,").replace(";", "\\;")


def schedule_ics(events: Iterable[dict], now: Optional[datetime] = None, weeks: int = ICS_WEEKS) -> str:
    """Weekly events expanded over one semester as an iCalendar document.

    Each event dict carries id, day_of_week, start_utc, end_utc, title and
    optional location, notes and join_url.
    """
    zone = local_zone()
    now = (now or datetime.now(zone)).astimezone(zone)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//jadwalin//Schedule//EN",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
    ]
    stamp = _ics_stamp(now)
    for ev in events:
        title = ev["title"]
        days_until = (ev["day_of_week"] - js_weekday(now) + 7) % 7
        for week in range(weeks):
            day = midnight + timedelta(days=days_until + week * 7)
            start = day + timedelta(milliseconds=ev["start_utc"])
            end = day + timedelta(milliseconds=ev["end_utc"])
            lines += [
                "BEGIN:VEVENT",
                f"UID:{ev['id']}-{week}@jadwalin",
                f"DTSTAMP:{stamp}",
                f"DTSTART:{_ics_stamp(start)}",
                f"DTEND:{_ics_stamp(end)}",
                f"SUMMARY:{_ics_text(title)}",
            ]
            if ev.get("location"):
                lines.append(f"LOCATION:{_ics_text(ev['location'])}")
            if ev.get("notes"):
                lines.append(f"DESCRIPTION:{_ics_text(ev['notes'])}")
            if ev.get("join_url"):
                lines.append(f"URL:{ev['join_url']}")
            for minutes in (10, 5, 1):
                lines += [
                    "BEGIN:VALARM",
                    f"TRIGGER:-PT{minutes}M",
                    "ACTION:DISPLAY",
                    f"DESCRIPTION:{_ics_text(title)} dimulai dalam {minutes} menit",
                    "END:VALARM",
                ]
            lines.append("END:VEVENT")
    lines.append("END:VCALENDAR")
    return "\r\n".join(lines)


def _ics_zone(params: list[str]) -> ZoneInfo:
    for param in params:
        name, _, value = param.partition("=")
        if name.upper() == "TZID" and value:
            try:
                return ZoneInfo(value.strip('"'))
            except (ValueError, ZoneInfoNotFoundError):
                break
    return local_zone()


def _parse_ics_datetime(value: str, zone: Optional[ZoneInfo] = None) -> Optional[datetime]:
    m = re.match(r"^(\d{4})(\d{2})(\d{2})T(\d{2})(\d{2})(\d{2})(Z?)$", value.strip())
    if not m:
        return None
    parts = [int(x) for x in m.groups()[:6]]
    if m.group(7):
        return datetime(*parts, tzinfo=timezone.utc).astimezone(local_zone())
    return datetime(*parts, tzinfo=zone or local_zone()).astimezone(local_zone())


def _ics_unescape(value: str) -> str:
    return re.sub(r"\\([\\;,nN])", lambda m: "\n" if m.group(1) in "nN" else m.group(1), value)


def parse_schedule_ics(content: str) -> list[dict]:
    """Weekly slots from the VEVENTs of an iCalendar document.

    Folded lines are joined first. Times with a TZID are converted to the
    local zone. Only events with a start and an end later on the same day
    are returned.
    """
    content = re.sub(r"\r?\n[ \t]", "", content)
    events: list[dict] = []
    current: Optional[dict] = None
    in_alarm = False
    for line in re.split(r"\r?\n", content):
        key, _, value = line.partition(":")
        key, *params = key.split(";")
        if key == "BEGIN" and value == "VEVENT":
            current = {}
        elif key == "END" and value == "VEVENT" and current is not None:
            events.append(current)
            current = None
        elif key in ("BEGIN", "END") and value == "VALARM":
            in_alarm = key == "BEGIN"
        elif current is None or in_alarm:
            continue
        elif key == "SUMMARY":
            value = _ics_unescape(value)
            m = re.match(r"^([A-Z]{2,}\d{3,})\s*-\s*(.+)$", value)
            current["notes"] = f"{m.group(1)} - {m.group(2)}" if m else value
        elif key in ("DTSTART", "DTEND"):
            dt = _parse_ics_datetime(value, _ics_zone(params))
            if dt is not None:
                current[key] = dt
        elif key == "LOCATION":
            current["location"] = _ics_unescape(value)
        elif key == "URL":
            current["join_url"] = value
        elif key == "DESCRIPTION":
            value = _ics_unescape(value)
            current["notes"] = f"{current['notes']}\n{value}" if current.get("notes") else value

    slots = []
    for event in events:
        start, end = event.pop("DTSTART", None), event.pop("DTEND", None)
        # Weekly slots cannot cross midnight.
        if start is None or end is None or end <= start or end.date() != start.date():
            continue
        slots.append({**event, "day_of_week": js_weekday(start), "start_utc": ms_of_day(start), "end_utc": ms_of_day(end)})
    return slots


def reminder_ics(reminder_id: str, title: str, due_ms: int, description: Optional[str] = None) -> str:
    start = datetime.fromtimestamp(due_ms / 1000, tz=timezone.utc)
    end = start + timedelta(hours=1)
    return "\r\n".join(
        [
            "BEGIN:VCALENDAR",
            "VERSION:2.0",
            "PRODID:-//jadwalin//Reminder//EN",
            "CALSCALE:GREGORIAN",
            "METHOD:REQUEST",
            "BEGIN:VEVENT",
            f"UID:{reminder_id}@jadwalin",
            f"DTSTAMP:{_ics_stamp(datetime.now(timezone.utc))}",
            f"DTSTART:{_ics_stamp(start)}",
            f"DTEND:{_ics_stamp(end)}",
            f"SUMMARY:{_ics_text(title)}",
            f"DESCRIPTION:{_ics_text(description or 'Pengingat dari Jadwalin')}",
            "STATUS:CONFIRMED",
            "SEQUENCE:0",
            "BEGIN:VALARM",
            "TRIGGER:-PT30M",
            "DESCRIPTION:Reminder",
            "ACTION:DISPLAY",
            "END:VALARM",
            "END:VEVENT",
            "END:VCALENDAR",
        ]
    )


def format_due(due_ms: int) -> str:
    dt = datetime.fromtimestamp(due_ms / 1000, tz=local_zone())
    return f"{DAY_NAMES[js_weekday(dt)]}, {dt.strftime('%d/%m/%Y %H:%M')}"
