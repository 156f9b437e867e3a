from __future__ import annotations


def base_event_id(uid: str, marker: str | None = None) -> str:
    if marker:
        return f"{uid}_{marker}"
    return uid


def build_event_id(uid: str, marker: str | None, day_index: int, day_count: int) -> str:
    """Return the reconciliation key for one day of one occurrence.

    Repeating instances are qualified by their recurrence marker, and occurrences
    that span several days get a ``_day{index}`` suffix per produced day.
    """
    event_id = base_event_id(uid, marker)
    if day_count > 1:
        return f"{event_id}_day{day_index}"
    return event_id
