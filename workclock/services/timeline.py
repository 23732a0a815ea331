"""Work timeline reconstruction.

Every working-time figure in the service (live status, overtime sweeps, dashboard and
reports) goes through :func:`reconstruct`. Events are classified by
``EVENT_CLASSIFICATION`` only; nothing else in the code base switches on raw event
type strings to decide whether someone is working.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Protocol

from workclock.models import AttendanceType


class EventLike(Protocol):
    type: Any
    timestamp: datetime


class EventClass(str, enum.Enum):
    START = "START"
    STOP = "STOP"
    NEUTRAL = "NEUTRAL"


EVENT_CLASSIFICATION: dict[AttendanceType, EventClass] = {
    AttendanceType.CLOCK_IN: EventClass.START,
    AttendanceType.BREAK_END: EventClass.START,
    AttendanceType.PERSONAL_END: EventClass.START,
    AttendanceType.BUSINESS_TRIP_START: EventClass.START,
    AttendanceType.CLOCK_OUT: EventClass.STOP,
    AttendanceType.BREAK_START: EventClass.STOP,
    AttendanceType.PERSONAL_START: EventClass.STOP,
    AttendanceType.BUSINESS_TRIP_END: EventClass.STOP,
}

PAUSE_KIND_BY_TYPE: dict[AttendanceType, str] = {
    AttendanceType.BREAK_START: "BREAK",
    AttendanceType.PERSONAL_START: "PERSONAL",
}

_ONE_MS = timedelta(milliseconds=1)


def coerce_event_type(raw_type: Any) -> AttendanceType | None:
    if isinstance(raw_type, AttendanceType):
        return raw_type
    try:
        return AttendanceType(str(getattr(raw_type, "value", raw_type)).strip().upper())
    except ValueError:
        return None


def classify_event(raw_type: Any) -> EventClass:
    event_type = coerce_event_type(raw_type)
    if event_type is None:
        return EventClass.NEUTRAL
    return EVENT_CLASSIFICATION.get(event_type, EventClass.NEUTRAL)


def normalize_ts(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def elapsed_ms(later: datetime, earlier: datetime) -> int:
    return max(0, (normalize_ts(later) - normalize_ts(earlier)) // _ONE_MS)


def sort_events(events: Iterable[EventLike]) -> list[EventLike]:
    # sorted() is stable, so events sharing a timestamp keep their input order.
    return sorted(events, key=lambda event: normalize_ts(event.timestamp))


def last_classified_event(events: Iterable[EventLike]) -> EventLike | None:
    last: EventLike | None = None
    for event in sort_events(events):
        if classify_event(event.type) is not EventClass.NEUTRAL:
            last = event
    return last


@dataclass(frozen=True, slots=True)
class WorkSession:
    start: datetime
    end: datetime
    is_open: bool

    @property
    def duration_ms(self) -> int:
        return elapsed_ms(self.end, self.start)


@dataclass(frozen=True, slots=True)
class PauseInterval:
    kind: str
    start: datetime
    end: datetime
    is_open: bool

    @property
    def duration_ms(self) -> int:
        return elapsed_ms(self.end, self.start)


@dataclass(frozen=True, slots=True)
class TimelineResult:
    total_working_ms: int
    is_currently_working: bool
    open_session_start: datetime | None
    sessions: tuple[WorkSession, ...] = ()
    pauses: tuple[PauseInterval, ...] = ()
    first_clock_in: datetime | None = None
    last_clock_out: datetime | None = None
    last_event: Any = None

    @property
    def total_pause_ms(self) -> int:
        return sum(pause.duration_ms for pause in self.pauses)


EMPTY_TIMELINE = TimelineResult(total_working_ms=0, is_currently_working=False, open_session_start=None)


def reconstruct(
    events: Iterable[EventLike],
    as_of: datetime,
    *,
    open_since: datetime | None = None,
) -> TimelineResult:
    """Fold ``events`` into working sessions and total working time up to ``as_of``.

    Events are re-sorted by timestamp before the fold. A start-class event while already
    working and a stop-class event while not working are both ignored, so retried or
    duplicated client events never reset a session or subtract time twice. A session
    still open after the last event accrues up to ``as_of``.

    ``open_since`` seeds the fold with a session that was already running before the
    first event (used when a day boundary splits a session).
    """
    reference = normalize_ts(as_of)
    is_working = open_since is not None
    session_start: datetime | None = normalize_ts(open_since) if open_since is not None else None
    total_ms = 0
    sessions: list[WorkSession] = []
    pauses: list[PauseInterval] = []
    open_pause: tuple[str, datetime] | None = None
    first_clock_in: datetime | None = None
    last_clock_out: datetime | None = None
    last_event: EventLike | None = None

    for event in sort_events(events):
        event_type = coerce_event_type(event.type)
        event_class = classify_event(event_type)
        if event_class is EventClass.NEUTRAL:
            continue

        ts = normalize_ts(event.timestamp)
        last_event = event
        if event_type is AttendanceType.CLOCK_IN and first_clock_in is None:
            first_clock_in = ts
        if event_type is AttendanceType.CLOCK_OUT:
            last_clock_out = ts

        if event_class is EventClass.START:
            if open_pause is not None:
                pauses.append(PauseInterval(kind=open_pause[0], start=open_pause[1], end=ts, is_open=False))
                open_pause = None
            if not is_working:
                is_working = True
                session_start = ts
            continue

        # stop-class
        if is_working and session_start is not None:
            sessions.append(WorkSession(start=session_start, end=ts, is_open=False))
            total_ms += elapsed_ms(ts, session_start)
            is_working = False
            session_start = None
            pause_kind = PAUSE_KIND_BY_TYPE.get(event_type)
            if pause_kind is not None:
                open_pause = (pause_kind, ts)
        elif open_pause is not None and _ends_pause(event_type):
            pauses.append(PauseInterval(kind=open_pause[0], start=open_pause[1], end=ts, is_open=False))
            open_pause = None

    if is_working and session_start is not None:
        sessions.append(WorkSession(start=session_start, end=max(reference, session_start), is_open=True))
        total_ms += elapsed_ms(reference, session_start)
    if open_pause is not None:
        pauses.append(
            PauseInterval(kind=open_pause[0], start=open_pause[1], end=max(reference, open_pause[1]), is_open=True)
        )

    return TimelineResult(
        total_working_ms=total_ms,
        is_currently_working=is_working,
        open_session_start=session_start if is_working else None,
        sessions=tuple(sessions),
        pauses=tuple(pauses),
        first_clock_in=first_clock_in,
        last_clock_out=last_clock_out,
        last_event=last_event,
    )


def _ends_pause(event_type: AttendanceType | None) -> bool:
    """Leaving for the day ends a running break as well."""
    return event_type in (AttendanceType.CLOCK_OUT, AttendanceType.BUSINESS_TRIP_END)


def local_day_bounds_utc(day: date, tz: tzinfo) -> tuple[datetime, datetime]:
    local_start = datetime.combine(day, time.min, tzinfo=tz)
    local_end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return local_start.astimezone(timezone.utc), local_end.astimezone(timezone.utc)


def group_events_by_local_day(events: Iterable[EventLike], tz: tzinfo) -> dict[date, list[EventLike]]:
    grouped: dict[date, list[EventLike]] = {}
    for event in sort_events(events):
        local_day = normalize_ts(event.timestamp).astimezone(tz).date()
        grouped.setdefault(local_day, []).append(event)
    return grouped


def reconstruct_by_day(
    events: Sequence[EventLike],
    as_of: datetime,
    tz: tzinfo,
    *,
    open_since: datetime | None = None,
) -> dict[date, TimelineResult]:
    """Fold each local calendar day on its own.

    A session still running at midnight is cut at the day boundary and carried into the
    following day, including days without events of their own, until it is closed or
    ``as_of`` is reached. ``open_since`` seeds a session that was already running before
    the first event, typically the start of a reporting range.
    """
    reference = normalize_ts(as_of)
    grouped = group_events_by_local_day(events, tz)
    carry = normalize_ts(open_since) if open_since is not None else None
    if not grouped and carry is None:
        return {}

    first_days = list(grouped)
    if carry is not None:
        first_days.append(carry.astimezone(tz).date())
    local_day = min(first_days)
    last_event_day = max(grouped) if grouped else local_day
    reference_day = reference.astimezone(tz).date()

    results: dict[date, TimelineResult] = {}
    while local_day <= last_event_day or (carry is not None and local_day <= reference_day):
        day_start_utc, day_end_utc = local_day_bounds_utc(local_day, tz)
        day_events = grouped.get(local_day, [])
        seed = max(carry, day_start_utc) if carry is not None else None
        if day_events or seed is not None:
            result = reconstruct(day_events, min(reference, day_end_utc), open_since=seed)
            results[local_day] = result
            carry = day_end_utc if result.is_currently_working and reference > day_end_utc else None
        local_day += timedelta(days=1)

    return results
