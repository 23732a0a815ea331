from __future__ import annotations

import unittest
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from workclock.models import AttendanceEvent, AttendanceType
from workclock.services.timeline import (
    EventClass,
    classify_event,
    reconstruct,
    reconstruct_by_day,
)

HOUR_MS = 60 * 60 * 1000


def _ts(hour: int, minute: int = 0, *, day: int = 10) -> datetime:
    return datetime(2026, 3, day, hour, minute, tzinfo=timezone.utc)


def _event(event_type: AttendanceType, ts: datetime, event_id: int = 0) -> AttendanceEvent:
    return AttendanceEvent(id=event_id or None, user_id=1, type=event_type, timestamp=ts)


class ClassificationTests(unittest.TestCase):
    def test_every_event_type_has_a_class(self) -> None:
        starts = {item for item in AttendanceType if classify_event(item) is EventClass.START}
        stops = {item for item in AttendanceType if classify_event(item) is EventClass.STOP}

        self.assertEqual(
            starts,
            {
                AttendanceType.CLOCK_IN,
                AttendanceType.BREAK_END,
                AttendanceType.PERSONAL_END,
                AttendanceType.BUSINESS_TRIP_START,
            },
        )
        self.assertEqual(
            stops,
            {
                AttendanceType.CLOCK_OUT,
                AttendanceType.BREAK_START,
                AttendanceType.PERSONAL_START,
                AttendanceType.BUSINESS_TRIP_END,
            },
        )

    def test_unknown_type_is_neutral(self) -> None:
        self.assertIs(classify_event("LUNCH_ORDERED"), EventClass.NEUTRAL)
        self.assertIs(classify_event(None), EventClass.NEUTRAL)
        self.assertIs(classify_event("clock_in"), EventClass.START)


class ReconstructTests(unittest.TestCase):
    def test_example_day_with_lunch_break(self) -> None:
        events = [
            _event(AttendanceType.CLOCK_IN, _ts(8)),
            _event(AttendanceType.BREAK_START, _ts(12)),
            _event(AttendanceType.BREAK_END, _ts(12, 30)),
            _event(AttendanceType.CLOCK_OUT, _ts(17)),
        ]

        result = reconstruct(events, _ts(20))

        self.assertEqual(result.total_working_ms, int(8.5 * HOUR_MS))
        self.assertFalse(result.is_currently_working)
        self.assertIsNone(result.open_session_start)
        self.assertEqual(len(result.sessions), 2)
        self.assertEqual(len(result.pauses), 1)
        self.assertEqual(result.pauses[0].kind, "BREAK")
        self.assertEqual(result.total_pause_ms, 30 * 60 * 1000)
        self.assertEqual(result.first_clock_in, _ts(8))
        self.assertEqual(result.last_clock_out, _ts(17))

    def test_open_session_accrues_until_as_of(self) -> None:
        result = reconstruct([_event(AttendanceType.CLOCK_IN, _ts(9))], _ts(11, 30))

        self.assertEqual(result.total_working_ms, int(2.5 * HOUR_MS))
        self.assertTrue(result.is_currently_working)
        self.assertEqual(result.open_session_start, _ts(9))
        self.assertTrue(result.sessions[-1].is_open)

    def test_repeated_start_does_not_reset_session(self) -> None:
        events = [
            _event(AttendanceType.CLOCK_IN, _ts(8)),
            _event(AttendanceType.CLOCK_IN, _ts(10)),
            _event(AttendanceType.BREAK_END, _ts(11)),
            _event(AttendanceType.CLOCK_OUT, _ts(12)),
        ]

        result = reconstruct(events, _ts(18))

        self.assertEqual(result.total_working_ms, 4 * HOUR_MS)
        self.assertEqual(len(result.sessions), 1)

    def test_stop_while_not_working_is_ignored(self) -> None:
        events = [
            _event(AttendanceType.CLOCK_OUT, _ts(7)),
            _event(AttendanceType.CLOCK_IN, _ts(8)),
            _event(AttendanceType.CLOCK_OUT, _ts(12)),
            _event(AttendanceType.CLOCK_OUT, _ts(13)),
            _event(AttendanceType.BREAK_START, _ts(14)),
        ]

        result = reconstruct(events, _ts(18))

        self.assertEqual(result.total_working_ms, 4 * HOUR_MS)
        self.assertFalse(result.is_currently_working)
        self.assertEqual(result.pauses, ())

    def test_input_order_does_not_matter(self) -> None:
        ordered = [
            _event(AttendanceType.CLOCK_IN, _ts(8)),
            _event(AttendanceType.PERSONAL_START, _ts(10)),
            _event(AttendanceType.PERSONAL_END, _ts(10, 45)),
            _event(AttendanceType.CLOCK_OUT, _ts(16)),
        ]
        shuffled = [ordered[2], ordered[3], ordered[0], ordered[1]]

        first = reconstruct(ordered, _ts(18))
        second = reconstruct(shuffled, _ts(18))

        self.assertEqual(first.total_working_ms, second.total_working_ms)
        self.assertEqual(first.total_working_ms, int(7.25 * HOUR_MS))
        self.assertEqual(first.pauses[0].kind, "PERSONAL")

    def test_equal_timestamps_keep_input_order(self) -> None:
        events = [
            _event(AttendanceType.CLOCK_IN, _ts(8)),
            _event(AttendanceType.CLOCK_OUT, _ts(12)),
            _event(AttendanceType.CLOCK_IN, _ts(12)),
        ]

        result = reconstruct(events, _ts(14))

        self.assertTrue(result.is_currently_working)
        self.assertEqual(result.total_working_ms, 6 * HOUR_MS)

    def test_business_trip_counts_as_working_time(self) -> None:
        events = [
            _event(AttendanceType.BUSINESS_TRIP_START, _ts(6)),
            _event(AttendanceType.BUSINESS_TRIP_END, _ts(15)),
        ]

        result = reconstruct(events, _ts(20))

        self.assertEqual(result.total_working_ms, 9 * HOUR_MS)
        self.assertIsNone(result.first_clock_in)

    def test_clock_out_during_break_closes_the_pause(self) -> None:
        events = [
            _event(AttendanceType.CLOCK_IN, _ts(8)),
            _event(AttendanceType.BREAK_START, _ts(12)),
            _event(AttendanceType.CLOCK_OUT, _ts(12, 20)),
        ]

        result = reconstruct(events, _ts(20))

        self.assertEqual(result.total_working_ms, 4 * HOUR_MS)
        self.assertEqual(len(result.pauses), 1)
        self.assertFalse(result.pauses[0].is_open)
        self.assertEqual(result.pauses[0].end, _ts(12, 20))

    def test_open_break_runs_until_as_of(self) -> None:
        events = [
            _event(AttendanceType.CLOCK_IN, _ts(8)),
            _event(AttendanceType.BREAK_START, _ts(12)),
        ]

        result = reconstruct(events, _ts(12, 15))

        self.assertFalse(result.is_currently_working)
        self.assertTrue(result.pauses[0].is_open)
        self.assertEqual(result.total_pause_ms, 15 * 60 * 1000)

    def test_empty_and_neutral_only_lists(self) -> None:
        self.assertEqual(reconstruct([], _ts(12)).total_working_ms, 0)

        class _Odd:
            type = "SOMETHING_ELSE"
            timestamp = _ts(9)

        result = reconstruct([_Odd()], _ts(12))  # type: ignore[list-item]
        self.assertEqual(result.total_working_ms, 0)
        self.assertIsNone(result.last_event)

    def test_as_of_before_session_start_never_goes_negative(self) -> None:
        result = reconstruct([_event(AttendanceType.CLOCK_IN, _ts(9))], _ts(8))

        self.assertEqual(result.total_working_ms, 0)
        self.assertTrue(result.is_currently_working)

    def test_open_since_seeds_running_session(self) -> None:
        midnight = _ts(0)
        result = reconstruct([_event(AttendanceType.CLOCK_OUT, _ts(2))], _ts(10), open_since=midnight)

        self.assertEqual(result.total_working_ms, 2 * HOUR_MS)
        self.assertFalse(result.is_currently_working)

    def test_naive_timestamps_are_treated_as_utc(self) -> None:
        events = [
            _event(AttendanceType.CLOCK_IN, datetime(2026, 3, 10, 8, 0)),
            _event(AttendanceType.CLOCK_OUT, _ts(9)),
        ]

        self.assertEqual(reconstruct(events, _ts(12)).total_working_ms, HOUR_MS)


class ReconstructByDayTests(unittest.TestCase):
    def test_days_are_folded_separately(self) -> None:
        events = [
            _event(AttendanceType.CLOCK_IN, _ts(8, day=10)),
            _event(AttendanceType.CLOCK_OUT, _ts(17, day=10)),
            _event(AttendanceType.CLOCK_IN, _ts(9, day=11)),
            _event(AttendanceType.CLOCK_OUT, _ts(12, day=11)),
        ]

        by_day = reconstruct_by_day(events, _ts(23, day=11), ZoneInfo("UTC"))

        self.assertEqual(list(by_day), [date(2026, 3, 10), date(2026, 3, 11)])
        self.assertEqual(by_day[date(2026, 3, 10)].total_working_ms, 9 * HOUR_MS)
        self.assertEqual(by_day[date(2026, 3, 11)].total_working_ms, 3 * HOUR_MS)

    def test_session_over_midnight_is_split_between_days(self) -> None:
        events = [
            _event(AttendanceType.CLOCK_IN, _ts(22, day=10)),
            _event(AttendanceType.CLOCK_OUT, _ts(2, day=11)),
        ]

        by_day = reconstruct_by_day(events, _ts(12, day=11), ZoneInfo("UTC"))

        self.assertEqual(by_day[date(2026, 3, 10)].total_working_ms, 2 * HOUR_MS)
        self.assertEqual(by_day[date(2026, 3, 11)].total_working_ms, 2 * HOUR_MS)

    def test_local_timezone_decides_the_day(self) -> None:
        tz = ZoneInfo("Europe/Bratislava")
        # 23:30 UTC on the 10th is already the 11th in Bratislava.
        events = [
            _event(AttendanceType.CLOCK_IN, _ts(23, 30, day=10)),
            _event(AttendanceType.CLOCK_OUT, _ts(23, 30, day=10) + timedelta(hours=1)),
        ]

        by_day = reconstruct_by_day(events, _ts(12, day=11), tz)

        self.assertEqual(list(by_day), [date(2026, 3, 11)])
        self.assertEqual(by_day[date(2026, 3, 11)].total_working_ms, HOUR_MS)

    def test_open_session_is_carried_through_days_without_events(self) -> None:
        events = [
            _event(AttendanceType.CLOCK_IN, _ts(20, day=8)),
            _event(AttendanceType.CLOCK_OUT, _ts(10, day=10)),
        ]

        by_day = reconstruct_by_day(events, _ts(12, day=10), ZoneInfo("UTC"))

        self.assertEqual(list(by_day), [date(2026, 3, 8), date(2026, 3, 9), date(2026, 3, 10)])
        self.assertEqual(by_day[date(2026, 3, 8)].total_working_ms, 4 * HOUR_MS)
        self.assertEqual(by_day[date(2026, 3, 9)].total_working_ms, 24 * HOUR_MS)
        self.assertEqual(by_day[date(2026, 3, 10)].total_working_ms, 10 * HOUR_MS)

    def test_session_open_before_the_first_event_is_seeded(self) -> None:
        events = [_event(AttendanceType.CLOCK_OUT, _ts(6, day=10))]

        by_day = reconstruct_by_day(events, _ts(12, day=10), ZoneInfo("UTC"), open_since=_ts(0, day=10))

        self.assertEqual(by_day[date(2026, 3, 10)].total_working_ms, 6 * HOUR_MS)
        self.assertFalse(by_day[date(2026, 3, 10)].is_currently_working)

    def test_seeded_session_without_events_runs_until_as_of(self) -> None:
        by_day = reconstruct_by_day([], _ts(12, day=10), ZoneInfo("UTC"), open_since=_ts(0, day=9))

        self.assertEqual(by_day[date(2026, 3, 9)].total_working_ms, 24 * HOUR_MS)
        self.assertEqual(by_day[date(2026, 3, 10)].total_working_ms, 12 * HOUR_MS)
        self.assertTrue(by_day[date(2026, 3, 10)].is_currently_working)

    def test_no_events_and_no_seed_gives_no_days(self) -> None:
        self.assertEqual(reconstruct_by_day([], _ts(12), ZoneInfo("UTC")), {})


if __name__ == "__main__":
    unittest.main()
