import unittest
from datetime import date, datetime, timedelta, timezone

from cadence.models import ExceptionRange, LocalEvent, TimeBlock, TimetableConfig
from cadence.occurrence_resolver import OccurrenceResolver, exdates_from_fragment, slot_times


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def _weekly_event(rule: str = "FREQ=WEEKLY", ical_data: str = "") -> LocalEvent:
    return LocalEvent(
        id="ev-1",
        user_id="u1",
        calendar_id="primary",
        external_id="weekly",
        title="Review",
        start=_utc(2025, 1, 6, 10),
        end=_utc(2025, 1, 6, 11),
        recurrence_rule=rule,
        ical_data=ical_data,
    )


class SlotTimesTests(unittest.TestCase):
    def test_slots_skip_lunch(self) -> None:
        config = TimetableConfig()
        self.assertEqual(slot_times(config, 0), (540, 590))
        self.assertEqual(slot_times(config, 1), (600, 650))
        self.assertEqual(slot_times(config, 2), (660, 710))
        # 12:00 falls inside lunch, so the slot starts at 13:00.
        self.assertEqual(slot_times(config, 3), (780, 830))

    def test_negative_slot_rejected(self) -> None:
        with self.assertRaises(ValueError):
            slot_times(TimetableConfig(), -1)


class TimeBlockOccurrenceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.resolver = OccurrenceResolver()
        self.block = TimeBlock(id="b1", user_id="u1", day_of_week=0, slot_index=0, config=TimetableConfig())

    def test_same_day_slot_still_ahead(self) -> None:
        occurrence = self.resolver.next_occurrence(self.block, _utc(2025, 1, 6, 8))
        self.assertEqual(occurrence.start, _utc(2025, 1, 6, 9))
        self.assertEqual(occurrence.end, _utc(2025, 1, 6, 9, 50))
        self.assertEqual(occurrence.skipped, [])

    def test_start_equal_to_after_moves_a_week(self) -> None:
        occurrence = self.resolver.next_occurrence(self.block, _utc(2025, 1, 6, 9))
        self.assertEqual(occurrence.start, _utc(2025, 1, 13, 9))

    def test_consecutive_occurrences_are_seven_days_apart(self) -> None:
        first = self.resolver.next_occurrence(self.block, _utc(2025, 1, 6, 10))
        second = self.resolver.next_occurrence(self.block, first.start)
        self.assertEqual(first.start, _utc(2025, 1, 13, 9))
        self.assertEqual(second.start - first.start, timedelta(days=7))

    def test_exception_range_is_skipped(self) -> None:
        self.block.config = TimetableConfig(
            exception_ranges=[ExceptionRange(start=date(2025, 1, 13), end=date(2025, 1, 19))]
        )
        occurrence = self.resolver.next_occurrence(self.block, _utc(2025, 1, 6, 10))
        self.assertEqual(occurrence.start, _utc(2025, 1, 20, 9))
        self.assertEqual(occurrence.skipped, [_utc(2025, 1, 13, 9)])
        self.assertFalse(self.block.config.in_exception_range(occurrence.start.date()))

    def test_exception_longer_than_lookahead_yields_none(self) -> None:
        self.block.config = TimetableConfig(
            exception_ranges=[ExceptionRange(start=date(2025, 1, 1), end=date(2026, 12, 31))]
        )
        self.assertIsNone(self.resolver.next_occurrence(self.block, _utc(2025, 1, 6, 10)))

    def test_config_timezone_is_used(self) -> None:
        self.block.config = TimetableConfig(timezone="America/New_York")
        occurrence = self.resolver.next_occurrence(self.block, _utc(2025, 1, 6, 0))
        self.assertEqual(occurrence.start, _utc(2025, 1, 6, 14))

    def test_invalid_day_of_week(self) -> None:
        self.block.day_of_week = 7
        with self.assertRaises(ValueError):
            self.resolver.next_occurrence(self.block, _utc(2025, 1, 6))

    def test_defaults_after_to_clock(self) -> None:
        resolver = OccurrenceResolver(clock=lambda: _utc(2025, 1, 7))
        self.assertEqual(resolver.next_occurrence(self.block).start, _utc(2025, 1, 13, 9))


class EventOccurrenceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.resolver = OccurrenceResolver()

    def test_single_event(self) -> None:
        event = _weekly_event(rule="")
        occurrence = self.resolver.next_occurrence(event, _utc(2025, 1, 1))
        self.assertEqual(occurrence.start, _utc(2025, 1, 6, 10))
        self.assertIsNone(self.resolver.next_occurrence(event, _utc(2025, 1, 6, 10)))

    def test_weekly_rule(self) -> None:
        event = _weekly_event()
        first = self.resolver.next_occurrence(event, _utc(2025, 1, 6, 10))
        self.assertEqual(first.start, _utc(2025, 1, 13, 10))
        self.assertEqual(first.end, _utc(2025, 1, 13, 11))
        second = self.resolver.next_occurrence(event, first.start)
        self.assertEqual(second.start - first.start, timedelta(days=7))

    def test_exdate_is_excluded(self) -> None:
        fragment = "\r\n".join(
            [
                "BEGIN:VEVENT",
                "UID:weekly@google.com",
                "SUMMARY:Review",
                "DTSTART:20250106T100000Z",
                "DTEND:20250106T110000Z",
                "RRULE:FREQ=WEEKLY",
                "EXDATE:20250113T100000Z",
                "END:VEVENT",
            ]
        )
        event = _weekly_event(ical_data=fragment)
        occurrence = self.resolver.next_occurrence(event, _utc(2025, 1, 6, 10))
        self.assertEqual(occurrence.start, _utc(2025, 1, 20, 10))
        self.assertEqual(occurrence.skipped, [_utc(2025, 1, 13, 10)])

    def test_exhausted_count(self) -> None:
        event = _weekly_event(rule="FREQ=WEEKLY;COUNT=2")
        self.assertEqual(self.resolver.next_occurrence(event, _utc(2025, 1, 6, 10)).start, _utc(2025, 1, 13, 10))
        self.assertIsNone(self.resolver.next_occurrence(event, _utc(2025, 1, 13, 10)))

    def test_date_only_until(self) -> None:
        event = _weekly_event(rule="FREQ=DAILY;UNTIL=20250108")
        self.assertEqual(self.resolver.next_occurrence(event, _utc(2025, 1, 7, 10)).start, _utc(2025, 1, 8, 10))
        self.assertIsNone(self.resolver.next_occurrence(event, _utc(2025, 1, 8, 10)))

    def test_all_day_yearly(self) -> None:
        event = LocalEvent(
            id="ev-2",
            user_id="u1",
            calendar_id="primary",
            external_id="bday",
            title="Birthday",
            start=_utc(2025, 1, 10),
            end=_utc(2025, 1, 10),
            all_day=True,
            recurrence_rule="FREQ=YEARLY",
        )
        occurrence = self.resolver.next_occurrence(event, _utc(2025, 1, 10))
        self.assertEqual(occurrence.start, _utc(2026, 1, 10))
        self.assertTrue(occurrence.all_day)

    def test_invalid_rule_yields_none(self) -> None:
        self.assertIsNone(self.resolver.next_occurrence(_weekly_event(rule="FREQ=SOMETIMES"), _utc(2025, 1, 1)))

    def test_resolution_is_deterministic(self) -> None:
        event = _weekly_event()
        after = _utc(2025, 2, 1)
        self.assertEqual(self.resolver.next_occurrence(event, after), self.resolver.next_occurrence(event, after))

    def test_unsupported_definition(self) -> None:
        with self.assertRaises(TypeError):
            self.resolver.next_occurrence("not a definition", _utc(2025, 1, 1))  # type: ignore[arg-type]


class ExdateParsingTests(unittest.TestCase):
    def test_no_exdate(self) -> None:
        self.assertEqual(exdates_from_fragment("BEGIN:VEVENT\r\nUID:x\r\nEND:VEVENT"), [])

    def test_date_valued_exdate(self) -> None:
        fragment = "BEGIN:VEVENT\r\nUID:x\r\nDTSTART;VALUE=DATE:20250110\r\nEXDATE;VALUE=DATE:20260110\r\nEND:VEVENT"
        self.assertEqual(exdates_from_fragment(fragment), [date(2026, 1, 10)])


if __name__ == "__main__":
    unittest.main()
