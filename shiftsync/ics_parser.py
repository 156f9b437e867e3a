from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any

from icalendar import Calendar as ICalendar

from shiftsync.errors import ParseError


logger = logging.getLogger(__name__)

ENTRY_COMPONENTS = ("VEVENT", "VTODO")


def _hash_text(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()  # nosec B324


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data or "")


def parse_calendar(raw_data: str | bytes) -> ICalendar:
    raw_ical = _decode_raw_ical(raw_data)
    if not raw_ical.strip():
        raise ParseError("Failed to parse calendar data. The document is empty.")
    try:
        calendar_obj = ICalendar.from_ical(raw_ical)
    except Exception as exc:
        raise ParseError("Failed to parse calendar data. Invalid ICS format.") from exc
    if isinstance(calendar_obj, list):
        calendar_obj = calendar_obj[0] if calendar_obj else None
    if calendar_obj is None or getattr(calendar_obj, "name", "") != "VCALENDAR":
        raise ParseError("Failed to parse calendar data. Missing VCALENDAR.")
    return calendar_obj


def top_level_components(calendar_obj: ICalendar, name: str) -> list[Any]:
    return [component for component in calendar_obj.subcomponents if component.name == name]


def is_valid_ics_content(raw_data: str | bytes) -> bool:
    try:
        calendar_obj = parse_calendar(raw_data)
    except ParseError:
        return False
    return any(top_level_components(calendar_obj, name) for name in ENTRY_COMPONENTS)


def component_text(component: Any, prop: str) -> str | None:
    value = component.get(prop)
    if value is None:
        return None
    if isinstance(value, list):
        value = value[0] if value else None
    text = str(value).strip() if value is not None else ""
    return text or None


def decoded_value(component: Any, prop: str) -> Any:
    if component.get(prop) is None:
        return None
    try:
        return component.decoded(prop)
    except Exception:
        logger.debug("Unreadable %s value on %s %s", prop, component.name, component.get("UID"))
        return None


def is_date_value(value: Any) -> bool:
    return isinstance(value, date) and not isinstance(value, datetime)


def is_floating(value: Any) -> bool:
    return is_date_value(value) or (isinstance(value, datetime) and value.tzinfo is None)


def to_instant(value: date | datetime, tz: tzinfo) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=tz)
        return value
    return datetime.combine(value, time.min, tzinfo=tz)


def component_uid(component: Any) -> str:
    uid = component_text(component, "UID")
    if uid:
        return uid
    start = component.get("DTSTART") or component.get("DUE")
    start_text = start.to_ical().decode("utf-8") if hasattr(start, "to_ical") else str(start or "")
    summary = component_text(component, "SUMMARY") or ""
    return "generated-" + _hash_text(f"{summary}|{start_text}")[:16]


def event_duration(component: Any, start_value: date | datetime) -> timedelta | None:
    end_value = decoded_value(component, "DTEND")
    if end_value is not None:
        if is_date_value(start_value) and isinstance(end_value, datetime):
            end_value = end_value.date()
        elif isinstance(start_value, datetime) and is_date_value(end_value):
            end_value = datetime.combine(end_value, time.min, tzinfo=start_value.tzinfo)
        try:
            return end_value - start_value
        except TypeError:
            logger.debug("Mismatched DTSTART/DTEND kinds on %s", component.get("UID"))
            return None
    duration = decoded_value(component, "DURATION")
    if isinstance(duration, timedelta):
        return duration
    if component.get("DTEND") is not None or component.get("DURATION") is not None:
        return None
    if is_date_value(start_value):
        return timedelta(days=1)
    return timedelta(0)


def recurrence_marker(value: date | datetime) -> str:
    if is_date_value(value):
        return value.strftime("%Y%m%d")
    if value.tzinfo is None:
        return value.strftime("%Y%m%dT%H%M%S")
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def date_list(component: Any, prop: str) -> list[date | datetime]:
    raw = component.get(prop)
    if raw is None:
        return []
    groups = raw if isinstance(raw, list) else [raw]
    values: list[date | datetime] = []
    for group in groups:
        for item in getattr(group, "dts", []):
            value = getattr(item, "dt", None)
            if isinstance(value, tuple):
                value = value[0]
            if isinstance(value, (date, datetime)):
                values.append(value)
    return values


@dataclass
class TodoItem:
    uid: str
    day: date
    start_time: str
    end_time: str
    title: str
    notes: str | None
    all_day: bool
    instant: datetime


def extract_todo(component: Any, tz: tzinfo) -> TodoItem | None:
    due = decoded_value(component, "DUE")
    start = decoded_value(component, "DTSTART")
    task_value = due if due is not None else start
    if not isinstance(task_value, (date, datetime)):
        return None

    all_day = is_date_value(task_value)
    instant = to_instant(task_value, tz).astimezone(tz)
    start_time = "00:00"
    end_time = "23:59"
    if not all_day and due is not None:
        end_time = instant.strftime("%H:%M")
    elif not all_day:
        start_time = instant.strftime("%H:%M")

    return TodoItem(
        uid=component_uid(component),
        day=instant.date(),
        start_time=start_time,
        end_time=end_time,
        title=component_text(component, "SUMMARY") or "Untitled Task",
        notes=component_text(component, "DESCRIPTION"),
        all_day=all_day,
        instant=instant,
    )
