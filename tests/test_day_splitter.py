import unittest
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from shiftsync.day_splitter import DaySlice, split_occurrence


UTC = timezone.utc


class DaySplitterTests(unittest.TestCase):
    def test_single_day_timed_event(self) -> None:
        slices = split_occurrence(
            datetime(2026, 3, 2, 9, 0, tzinfo=UTC),
            datetime(2026, 3, 2, 17, 30, tzinfo=UTC),
            False,
        )
        self.assertEqual(slices, [DaySlice(date(2026, 3, 2), "09:00", "17:30", 0)])

    def test_overnight_shift_splits_in_two(self) -> None:
        slices = split_occurrence(
            datetime(2026, 3, 2, 22, 0, tzinfo=UTC),
            datetime(2026, 3, 3, 6, 0, tzinfo=UTC),
            False,
        )
        self.assertEqual(
            slices,
            [
                DaySlice(date(2026, 3, 2), "22:00", "23:59", 0),
                DaySlice(date(2026, 3, 3), "00:00", "06:00", 1),
            ],
        )

    def test_multi_day_all_day_event_uses_exclusive_end(self) -> None:
        slices = split_occurrence(
            datetime(2026, 3, 2, tzinfo=UTC),
            datetime(2026, 3, 5, tzinfo=UTC),
            True,
        )
        self.assertEqual([piece.day for piece in slices], [date(2026, 3, 2), date(2026, 3, 3), date(2026, 3, 4)])
        self.assertTrue(all((piece.start_time, piece.end_time) == ("00:00", "23:59") for piece in slices))
        self.assertEqual([piece.day_index for piece in slices], [0, 1, 2])

    def test_single_all_day_event(self) -> None:
        slices = split_occurrence(
            datetime(2026, 3, 2, tzinfo=UTC),
            datetime(2026, 3, 3, tzinfo=UTC),
            True,
        )
        self.assertEqual(slices, [DaySlice(date(2026, 3, 2), "00:00", "23:59", 0)])

    def test_days_follow_configured_zone(self) -> None:
        berlin = ZoneInfo("Europe/Berlin")
        slices = split_occurrence(
            datetime(2026, 3, 2, 23, 30, tzinfo=UTC),
            datetime(2026, 3, 3, 0, 30, tzinfo=UTC),
            False,
            berlin,
        )
        self.assertEqual(slices, [DaySlice(date(2026, 3, 3), "00:30", "01:30", 0)])

    def test_end_before_start_collapses_to_one_day(self) -> None:
        slices = split_occurrence(
            datetime(2026, 3, 2, 9, 0, tzinfo=UTC),
            datetime(2026, 3, 1, 9, 0, tzinfo=UTC),
            False,
        )
        self.assertEqual(slices, [DaySlice(date(2026, 3, 2), "09:00", "23:59", 0)])


if __name__ == "__main__":
    unittest.main()
