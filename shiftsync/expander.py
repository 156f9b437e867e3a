from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Iterable, Iterator

from dateutil.rrule import rruleset, rrulestr

from shiftsync.ics_parser import date_list, decoded_value, event_duration, is_date_value, recurrence_marker, to_instant


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Occurrence:
    start: datetime
    end: datetime
    all_day: bool
    recurrence_id: date | datetime | None = None

    @property
    def is_recurrence_instance(self) -> bool:
        return self.recurrence_id is not None

    @property
    def marker(self) -> str | None:
        if self.recurrence_id is None:
            return None
        return recurrence_marker(self.recurrence_id)


class _WallClock:
    """Maps DTSTART-relative values onto naive wall-clock datetimes for rule iteration.

    dateutil refuses to mix aware and naive values inside one rule set, so every
    date the rule touches (UNTIL, EXDATE, RDATE, overridden RECURRENCE-IDs) is
    brought into the zone of DTSTART first and then stripped.
    """

    def __init__(self, start_value: date | datetime, default_tz: tzinfo) -> None:
        self.all_day = is_date_value(start_value)
        if self.all_day:
            self.start = datetime.combine(start_value, time.min)
            self.zone = default_tz
            self.floating = True
        elif start_value.tzinfo is None:
            self.start = start_value
            self.zone = default_tz
            self.floating = True
        else:
            self.start = start_value.replace(tzinfo=None)
            self.zone = start_value.tzinfo
            self.floating = False

    def naive(self, value: date | datetime, *, end_of_day: bool = False) -> datetime:
        if is_date_value(value):
            clock = time(23, 59, 59) if end_of_day else self.start.time()
            return datetime.combine(value, clock)
        if value.tzinfo is None:
            return value
        return value.astimezone(self.zone).replace(tzinfo=None)

    def attach(self, wall: datetime) -> datetime:
        return wall.replace(tzinfo=self.zone)

    def recurrence_id(self, wall: datetime) -> date | datetime:
        if self.all_day:
            return wall.date()
        if self.floating:
            return wall
        return self.attach(wall)


def _rule_texts(component: Any) -> list[tuple[str, Any]]:
    raw = component.get("RRULE")
    if raw is None:
        return []
    rules = raw if isinstance(raw, list) else [raw]
    output: list[tuple[str, Any]] = []
    for rule in rules:
        text = rule.to_ical().decode("utf-8") if hasattr(rule, "to_ical") else str(rule)
        until_values = rule.get("UNTIL") if hasattr(rule, "get") else None
        until = until_values[0] if until_values else None
        parts = [part for part in text.split(";") if part and not part.upper().startswith("UNTIL=")]
        output.append((";".join(parts), until))
    return output


def _build_rule_set(
    component: Any,
    clock: _WallClock,
    overridden: Iterable[date | datetime],
) -> rruleset:
    rule_set = rruleset()
    for rule_text, until in _rule_texts(component):
        rule = rrulestr(rule_text, dtstart=clock.start, forceset=False)
        if isinstance(rule, rruleset):
            raise ValueError("Unexpected rule set in RRULE value")
        if until is not None:
            rule = rule.replace(until=clock.naive(until, end_of_day=True))
        rule_set.rrule(rule)
    for value in date_list(component, "RDATE"):
        rule_set.rdate(clock.naive(value))
    for value in date_list(component, "EXDATE"):
        rule_set.exdate(clock.naive(value))
    for value in overridden:
        rule_set.exdate(clock.naive(value))
    return rule_set


def _in_window(start: datetime, end: datetime, window_start: datetime, window_end: datetime) -> bool:
    if start >= window_end:
        return False
    return end > window_start or start >= window_start


def _single(
    start_value: date | datetime,
    duration: timedelta,
    window_start: datetime,
    window_end: datetime,
    tz: tzinfo,
    recurrence_id: date | datetime | None = None,
) -> list[Occurrence]:
    start = to_instant(start_value, tz)
    end = start + duration
    if not _in_window(start, end, window_start, window_end):
        return []
    return [Occurrence(start=start, end=end, all_day=is_date_value(start_value), recurrence_id=recurrence_id)]


def _iter_rule(
    rule_set: rruleset,
    clock: _WallClock,
    duration: timedelta,
    window_start: datetime,
    window_end: datetime,
) -> Iterator[Occurrence]:
    for wall in rule_set:
        start = clock.attach(wall)
        if start >= window_end:
            break
        if start < window_start:
            continue
        yield Occurrence(
            start=start,
            end=start + duration,
            all_day=clock.all_day,
            recurrence_id=clock.recurrence_id(wall),
        )


def expand_occurrences(
    component: Any,
    window_start: datetime,
    window_end: datetime,
    tz: tzinfo = timezone.utc,
    overridden: Iterable[date | datetime] = (),
) -> list[Occurrence]:
    start_value = decoded_value(component, "DTSTART")
    if not isinstance(start_value, (date, datetime)):
        return []
    duration = event_duration(component, start_value)
    if duration is None:
        return []

    recurrence_id = decoded_value(component, "RECURRENCE-ID")
    if isinstance(recurrence_id, (date, datetime)):
        return _single(start_value, duration, window_start, window_end, tz, recurrence_id)

    if component.get("RRULE") is None:
        return _single(start_value, duration, window_start, window_end, tz)

    clock = _WallClock(start_value, tz)
    try:
        rule_set = _build_rule_set(component, clock, overridden)
        return list(_iter_rule(rule_set, clock, duration, window_start, window_end))
    except (ValueError, TypeError) as exc:
        logger.warning(
            "Unusable RRULE on %s (%s); treating it as a single event",
            component.get("UID"),
            exc,
        )
        return _single(start_value, duration, window_start, window_end, tz)
