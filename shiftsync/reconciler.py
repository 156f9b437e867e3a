from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from shiftsync.models import MirroredEntry


@dataclass
class ReconcilePlan:
    to_create: list[MirroredEntry] = field(default_factory=list)
    to_update: list[tuple[str, MirroredEntry]] = field(default_factory=list)
    to_delete: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.to_create or self.to_update or self.to_delete)


def plan_reconciliation(
    *,
    candidates: Iterable[MirroredEntry],
    existing: Iterable[MirroredEntry],
) -> ReconcilePlan:
    existing_by_event_id: dict[str, MirroredEntry] = {}
    plan = ReconcilePlan()
    for row in existing:
        key = row.external_event_id or ""
        if not key or key in existing_by_event_id:
            # Rows without a key, or a second row for one key, cannot be matched.
            plan.to_delete.append(row.entry_id)
            continue
        existing_by_event_id[key] = row

    produced: set[str] = set()
    for candidate in candidates:
        key = candidate.external_event_id or ""
        if not key or key in produced:
            continue
        produced.add(key)
        current = existing_by_event_id.get(key)
        if current is None:
            plan.to_create.append(candidate)
        else:
            plan.to_update.append((current.entry_id, candidate))

    for key, row in existing_by_event_id.items():
        if key not in produced:
            plan.to_delete.append(row.entry_id)
    return plan
