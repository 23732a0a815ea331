from __future__ import annotations

import unittest
from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

from workclock.errors import ApiError, InvalidTransitionError
from workclock.models import AttendanceEvent, AttendanceType, User, UserRole
from workclock.services.attendance import (
    ensure_transition_allowed,
    get_user_attendance_status,
    reconstruct_user_day,
    record_event,
)
from workclock.services.event_store import get_user
from workclock.services.status import AttendanceStatus

HOUR_MS = 60 * 60 * 1000


def _user(user_id: int = 7, *, is_active: bool = True) -> User:
    return User(
        id=user_id,
        company_id=1,
        email="worker@example.com",
        first_name="Test",
        last_name="Worker",
        role=UserRole.EMPLOYEE,
        is_active=is_active,
    )


class _DummySession:
    def __init__(self, user: User | None):
        self._user = user

    def get(self, _model, _pk):  # type: ignore[no-untyped-def]
        return self._user


class TransitionRulesTests(unittest.TestCase):
    def test_allowed_transitions(self) -> None:
        allowed = [
            (AttendanceStatus.OFF, AttendanceType.CLOCK_IN),
            (AttendanceStatus.ON_BREAK, AttendanceType.CLOCK_IN),
            (AttendanceStatus.AT_WORK, AttendanceType.BREAK_START),
            (AttendanceStatus.ON_BREAK, AttendanceType.BREAK_END),
            (AttendanceStatus.AT_WORK, AttendanceType.PERSONAL_START),
            (AttendanceStatus.ON_PERSONAL, AttendanceType.PERSONAL_END),
            (AttendanceStatus.AT_WORK, AttendanceType.CLOCK_OUT),
            (AttendanceStatus.ON_BUSINESS_TRIP, AttendanceType.CLOCK_OUT),
            (AttendanceStatus.OFF, AttendanceType.BUSINESS_TRIP_START),
            (AttendanceStatus.ON_BUSINESS_TRIP, AttendanceType.BUSINESS_TRIP_END),
        ]
        for status, event_type in allowed:
            with self.subTest(status=status, event_type=event_type):
                ensure_transition_allowed(status, event_type)

    def test_rejected_transitions(self) -> None:
        rejected = [
            (AttendanceStatus.AT_WORK, AttendanceType.CLOCK_IN),
            (AttendanceStatus.OFF, AttendanceType.CLOCK_OUT),
            (AttendanceStatus.OFF, AttendanceType.BREAK_START),
            (AttendanceStatus.ON_BREAK, AttendanceType.PERSONAL_START),
            (AttendanceStatus.AT_WORK, AttendanceType.BREAK_END),
            (AttendanceStatus.ON_BREAK, AttendanceType.PERSONAL_END),
            (AttendanceStatus.ON_BUSINESS_TRIP, AttendanceType.BUSINESS_TRIP_START),
            (AttendanceStatus.AT_WORK, AttendanceType.BUSINESS_TRIP_END),
        ]
        for status, event_type in rejected:
            with self.subTest(status=status, event_type=event_type):
                with self.assertRaises(InvalidTransitionError) as ctx:
                    ensure_transition_allowed(status, event_type)
                self.assertEqual(ctx.exception.status_code, 409)
                self.assertEqual(ctx.exception.code, "INVALID_TRANSITION")


class UserLookupTests(unittest.TestCase):
    def test_inactive_user_is_forbidden(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            get_user(_DummySession(_user(is_active=False)), 7)  # type: ignore[arg-type]
        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(ctx.exception.code, "USER_INACTIVE")

    def test_missing_user_is_not_found(self) -> None:
        with self.assertRaises(ApiError) as ctx:
            get_user(_DummySession(None), 7)  # type: ignore[arg-type]
        self.assertEqual(ctx.exception.status_code, 404)


class RecordEventTests(unittest.TestCase):
    def test_records_event_when_transition_is_valid(self) -> None:
        stored = AttendanceEvent(
            id=55,
            user_id=7,
            type=AttendanceType.BREAK_START,
            timestamp=datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc),
        )
        previous = AttendanceEvent(
            id=54,
            user_id=7,
            type=AttendanceType.CLOCK_IN,
            timestamp=datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc),
        )
        with (
            patch("workclock.services.attendance.get_user", return_value=_user()),
            patch("workclock.services.attendance.get_latest_event", return_value=previous),
            patch("workclock.services.attendance.append_event", return_value=stored) as append_mock,
        ):
            event = record_event(object(), user_id=7, event_type=AttendanceType.BREAK_START)  # type: ignore[arg-type]

        self.assertIs(event, stored)
        self.assertEqual(append_mock.call_args.kwargs["event_type"], AttendanceType.BREAK_START)
        self.assertEqual(append_mock.call_args.kwargs["user_id"], 7)

    def test_rejected_transition_is_not_stored(self) -> None:
        with (
            patch("workclock.services.attendance.get_user", return_value=_user()),
            patch("workclock.services.attendance.get_latest_event", return_value=None),
            patch("workclock.services.attendance.append_event") as append_mock,
        ):
            with self.assertRaises(InvalidTransitionError):
                record_event(object(), user_id=7, event_type=AttendanceType.CLOCK_OUT)  # type: ignore[arg-type]

        append_mock.assert_not_called()

    def test_future_timestamp_is_rejected_before_any_lookup(self) -> None:
        now = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
        with (
            patch("workclock.services.attendance.get_user") as get_user_mock,
            patch("workclock.services.attendance.append_event") as append_mock,
        ):
            with self.assertRaises(ApiError) as ctx:
                record_event(
                    object(),  # type: ignore[arg-type]
                    user_id=7,
                    event_type=AttendanceType.CLOCK_IN,
                    timestamp=now + timedelta(hours=1),
                    now_utc=now,
                )

        self.assertEqual(ctx.exception.status_code, 422)
        self.assertEqual(ctx.exception.code, "TIMESTAMP_IN_FUTURE")
        get_user_mock.assert_not_called()
        append_mock.assert_not_called()

    def test_small_clock_skew_is_tolerated(self) -> None:
        now = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
        stored = AttendanceEvent(id=56, user_id=7, type=AttendanceType.CLOCK_IN, timestamp=now + timedelta(seconds=60))
        with (
            patch("workclock.services.attendance.get_user", return_value=_user()),
            patch("workclock.services.attendance.get_latest_event", return_value=None),
            patch("workclock.services.attendance.append_event", return_value=stored) as append_mock,
        ):
            event = record_event(
                object(),  # type: ignore[arg-type]
                user_id=7,
                event_type=AttendanceType.CLOCK_IN,
                timestamp=now + timedelta(seconds=60),
                now_utc=now,
            )

        self.assertIs(event, stored)
        append_mock.assert_called_once()


class UserDayTests(unittest.TestCase):
    def test_session_running_since_yesterday_is_seeded_at_midnight(self) -> None:
        # Europe/Bratislava is UTC+1 in March: local midnight of the 11th is 23:00 UTC on the 10th.
        yesterday_clock_in = AttendanceEvent(
            id=1,
            user_id=7,
            type=AttendanceType.CLOCK_IN,
            timestamp=datetime(2026, 3, 10, 20, 0, tzinfo=timezone.utc),
        )
        today_clock_out = AttendanceEvent(
            id=2,
            user_id=7,
            type=AttendanceType.CLOCK_OUT,
            timestamp=datetime(2026, 3, 11, 1, 0, tzinfo=timezone.utc),
        )

        def fake_latest(_db, _user_id, *, before_utc=None, until_utc=None):  # type: ignore[no-untyped-def]
            return yesterday_clock_in if before_utc is not None else today_clock_out

        with (
            patch("workclock.services.attendance.list_events_for_user", return_value=[today_clock_out]),
            patch("workclock.services.attendance.get_latest_event", side_effect=fake_latest),
        ):
            timeline, latest = reconstruct_user_day(
                object(),  # type: ignore[arg-type]
                user_id=7,
                now_utc=datetime(2026, 3, 11, 9, 0, tzinfo=timezone.utc),
                local_day=date(2026, 3, 11),
            )

        self.assertEqual(timeline.total_working_ms, 2 * HOUR_MS)
        self.assertFalse(timeline.is_currently_working)
        self.assertIs(latest, today_clock_out)

    def test_live_status_reports_open_session(self) -> None:
        clock_in = AttendanceEvent(
            id=1,
            user_id=7,
            type=AttendanceType.CLOCK_IN,
            timestamp=datetime(2026, 3, 10, 7, 0, tzinfo=timezone.utc),
        )

        def fake_latest(_db, _user_id, *, before_utc=None, until_utc=None):  # type: ignore[no-untyped-def]
            return None if before_utc is not None else clock_in

        with (
            patch("workclock.services.attendance.get_user", return_value=_user()),
            patch("workclock.services.attendance.list_events_for_user", return_value=[clock_in]),
            patch("workclock.services.attendance.get_latest_event", side_effect=fake_latest),
        ):
            status = get_user_attendance_status(
                object(),  # type: ignore[arg-type]
                user_id=7,
                now_utc=datetime(2026, 3, 10, 9, 30, tzinfo=timezone.utc),
            )

        self.assertIs(status["status"], AttendanceStatus.AT_WORK)
        self.assertTrue(status["is_currently_working"])
        self.assertEqual(status["working_ms_today"], int(2.5 * HOUR_MS))
        self.assertEqual(status["open_session_start"], clock_in.timestamp)

    def test_events_after_now_do_not_affect_status_or_working_time(self) -> None:
        clock_in = AttendanceEvent(
            id=1,
            user_id=7,
            type=AttendanceType.CLOCK_IN,
            timestamp=datetime(2026, 3, 10, 8, 0, tzinfo=timezone.utc),
        )
        later_clock_out = AttendanceEvent(
            id=2,
            user_id=7,
            type=AttendanceType.CLOCK_OUT,
            timestamp=datetime(2026, 3, 10, 20, 0, tzinfo=timezone.utc),
        )

        def fake_latest(_db, _user_id, *, before_utc=None, until_utc=None):  # type: ignore[no-untyped-def]
            if before_utc is not None:
                return None
            candidates = [clock_in, later_clock_out]
            if until_utc is not None:
                candidates = [event for event in candidates if event.timestamp <= until_utc]
            return candidates[-1] if candidates else None

        with (
            patch("workclock.services.attendance.get_user", return_value=_user()),
            patch("workclock.services.attendance.list_events_for_user", return_value=[clock_in, later_clock_out]),
            patch("workclock.services.attendance.get_latest_event", side_effect=fake_latest),
        ):
            status = get_user_attendance_status(
                object(),  # type: ignore[arg-type]
                user_id=7,
                now_utc=datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc),
            )

        self.assertIs(status["status"], AttendanceStatus.AT_WORK)
        self.assertTrue(status["is_currently_working"])
        self.assertEqual(status["working_ms_today"], 4 * HOUR_MS)
        self.assertEqual(status["open_session_start"], clock_in.timestamp)


if __name__ == "__main__":
    unittest.main()
