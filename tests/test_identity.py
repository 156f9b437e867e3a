import unittest

from shiftsync.identity import base_event_id, build_event_id


class IdentityTests(unittest.TestCase):
    def test_plain_event_uses_uid(self) -> None:
        self.assertEqual(build_event_id("abc@example.com", None, 0, 1), "abc@example.com")

    def test_recurrence_instance_appends_marker(self) -> None:
        self.assertEqual(base_event_id("abc", "20260105T090000Z"), "abc_20260105T090000Z")
        self.assertEqual(build_event_id("abc", "20260105", 0, 1), "abc_20260105")

    def test_multi_day_occurrence_gets_day_suffix(self) -> None:
        self.assertEqual(build_event_id("abc", None, 1, 2), "abc_day1")
        self.assertEqual(build_event_id("abc", "20260105", 2, 3), "abc_20260105_day2")


if __name__ == "__main__":
    unittest.main()
