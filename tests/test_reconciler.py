import unittest
from datetime import date

from shiftsync.models import MirroredEntry
from shiftsync.reconciler import plan_reconciliation


def _entry(event_id: str | None, entry_id: str = "", title: str = "Shift") -> MirroredEntry:
    return MirroredEntry(
        calendar_id="cal-1",
        date=date(2026, 1, 5),
        start_time="09:00",
        end_time="17:00",
        title=title,
        external_feed_id="feed-1",
        external_event_id=event_id,
        entry_id=entry_id,
    )


class ReconcilerTests(unittest.TestCase):
    def test_create_update_delete(self) -> None:
        existing = [_entry("a", "row-a"), _entry("b", "row-b")]
        candidates = [_entry("b", title="Late"), _entry("c")]

        plan = plan_reconciliation(candidates=candidates, existing=existing)

        self.assertEqual([entry.external_event_id for entry in plan.to_create], ["c"])
        self.assertEqual([(entry_id, entry.title) for entry_id, entry in plan.to_update], [("row-b", "Late")])
        self.assertEqual(plan.to_delete, ["row-a"])

    def test_unchanged_entries_are_still_updated(self) -> None:
        plan = plan_reconciliation(candidates=[_entry("a")], existing=[_entry("a", "row-a")])
        self.assertEqual(len(plan.to_update), 1)
        self.assertFalse(plan.is_empty)

    def test_empty_candidates_delete_everything(self) -> None:
        plan = plan_reconciliation(candidates=[], existing=[_entry("a", "row-a"), _entry("b", "row-b")])
        self.assertEqual(sorted(plan.to_delete), ["row-a", "row-b"])
        self.assertEqual(plan.to_create, [])

    def test_duplicate_and_keyless_rows_are_removed(self) -> None:
        existing = [_entry("a", "row-a1"), _entry("a", "row-a2"), _entry(None, "row-x")]
        plan = plan_reconciliation(candidates=[_entry("a")], existing=existing)

        self.assertEqual(plan.to_update[0][0], "row-a1")
        self.assertEqual(sorted(plan.to_delete), ["row-a2", "row-x"])

    def test_duplicate_candidates_are_planned_once(self) -> None:
        plan = plan_reconciliation(candidates=[_entry("a"), _entry("a", title="Again")], existing=[])
        self.assertEqual(len(plan.to_create), 1)
        self.assertEqual(plan.to_create[0].title, "Shift")

    def test_nothing_to_do(self) -> None:
        self.assertTrue(plan_reconciliation(candidates=[], existing=[]).is_empty)


if __name__ == "__main__":
    unittest.main()
