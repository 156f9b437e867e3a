from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo


START_OF_DAY = "00:00"
END_OF_DAY = "23:59"


@dataclass(frozen=True)
class DaySlice:
    day: date
    start_time: str
    end_time: str
    day_index: int


def _clock(value: datetime) -> str:
    return value.strftime("%H:%M")


def split_occurrence(
    start: datetime,
    end: datetime,
    all_day: bool,
    tz: tzinfo = timezone.utc,
) -> list[DaySlice]:
    local_start = start.astimezone(tz) if start.tzinfo is not None else start
    local_end = end.astimezone(tz) if end.tzinfo is not None else end
    if all_day:
        # DTEND of an all-day event is exclusive.
        local_end = local_end - timedelta(days=1)

    start_day = local_start.date()
    end_day = local_end.date()
    days_diff = max(0, (end_day - start_day).days)

    if days_diff == 0:
        if all_day:
            return [DaySlice(start_day, START_OF_DAY, END_OF_DAY, 0)]
        end_clock = _clock(local_end) if end_day == start_day else END_OF_DAY
        return [DaySlice(start_day, _clock(local_start), end_clock, 0)]

    slices: list[DaySlice] = []
    for index in range(days_diff + 1):
        current = start_day + timedelta(days=index)
        start_time = START_OF_DAY
        end_time = END_OF_DAY
        if not all_day:
            if index == 0:
                start_time = _clock(local_start)
            elif index == days_diff:
                end_time = _clock(local_end)
        slices.append(DaySlice(current, start_time, end_time, index))
    return slices
