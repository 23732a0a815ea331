from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any

from sqlalchemy.orm import Session

from workclock.errors import ApiError, InvalidTransitionError
from workclock.models import AttendanceEvent, AttendanceType
from workclock.settings import get_settings
from workclock.services.event_store import (
    append_event,
    attendance_timezone,
    get_latest_event,
    get_user,
    list_events_for_user,
)
from workclock.services.status import AttendanceStatus, current_status, is_working_status
from workclock.services.timeline import TimelineResult, local_day_bounds_utc, normalize_ts, reconstruct

logger = logging.getLogger("workclock.attendance")

_ANY_STATUS = frozenset(AttendanceStatus)

ALLOWED_FROM_STATUS: dict[AttendanceType, frozenset[AttendanceStatus]] = {
    AttendanceType.CLOCK_IN: _ANY_STATUS - {AttendanceStatus.AT_WORK},
    AttendanceType.CLOCK_OUT: _ANY_STATUS - {AttendanceStatus.OFF},
    AttendanceType.BREAK_START: frozenset({AttendanceStatus.AT_WORK}),
    AttendanceType.PERSONAL_START: frozenset({AttendanceStatus.AT_WORK}),
    AttendanceType.BREAK_END: frozenset({AttendanceStatus.ON_BREAK}),
    AttendanceType.PERSONAL_END: frozenset({AttendanceStatus.ON_PERSONAL}),
    AttendanceType.BUSINESS_TRIP_START: _ANY_STATUS - {AttendanceStatus.ON_BUSINESS_TRIP},
    AttendanceType.BUSINESS_TRIP_END: frozenset({AttendanceStatus.ON_BUSINESS_TRIP}),
}


def ensure_transition_allowed(status: AttendanceStatus, event_type: AttendanceType) -> None:
    if status not in ALLOWED_FROM_STATUS[event_type]:
        raise InvalidTransitionError(current_status=status.value, event_type=event_type.value)


def ensure_not_in_future(timestamp: datetime, *, now_utc: datetime) -> None:
    tolerance = timedelta(seconds=max(0, get_settings().event_future_tolerance_seconds))
    if normalize_ts(timestamp) > normalize_ts(now_utc) + tolerance:
        raise ApiError(
            status_code=422,
            code="TIMESTAMP_IN_FUTURE",
            message="Attendance events cannot be recorded ahead of the current time.",
        )


def record_event(
    db: Session,
    *,
    user_id: int,
    event_type: AttendanceType,
    timestamp: datetime | None = None,
    lat: float | None = None,
    lon: float | None = None,
    accuracy_m: float | None = None,
    notes: str | None = None,
    qr_verified: bool = False,
    now_utc: datetime | None = None,
) -> AttendanceEvent:
    if timestamp is not None:
        ensure_not_in_future(timestamp, now_utc=now_utc or datetime.now(timezone.utc))
    user = get_user(db, user_id)
    status = current_status(get_latest_event(db, user.id))
    ensure_transition_allowed(status, event_type)

    event = append_event(
        db,
        user_id=user.id,
        event_type=event_type,
        timestamp=timestamp,
        lat=lat,
        lon=lon,
        accuracy_m=accuracy_m,
        notes=notes,
        qr_verified=qr_verified,
    )
    logger.info(
        "attendance_event_recorded",
        extra={
            "user_id": user.id,
            "event_id": event.id,
            "event_type": event_type.value,
            "previous_status": status.value,
            "qr_verified": qr_verified,
        },
    )
    return event


def open_session_seed(db: Session, user_id: int, at_utc: datetime) -> datetime | None:
    """``at_utc`` when the user's last event before it left them working, else None."""
    previous_event = get_latest_event(db, user_id, before_utc=at_utc)
    return normalize_ts(at_utc) if is_working_status(current_status(previous_event)) else None


def reconstruct_user_day(
    db: Session,
    *,
    user_id: int,
    now_utc: datetime,
    local_day: date | None = None,
) -> tuple[TimelineResult, AttendanceEvent | None]:
    """Today's (or ``local_day``'s) timeline, seeded when a session is still running from an earlier day.

    Events stamped after ``now_utc`` are left out of both the fold and the returned latest
    event, so status and working time describe the same moment.
    """
    reference = normalize_ts(now_utc)
    tz = attendance_timezone()
    target_day = local_day or reference.astimezone(tz).date()
    day_start, day_end = local_day_bounds_utc(target_day, tz)
    day_events = [
        event
        for event in list_events_for_user(db, user_id, from_utc=day_start, to_utc=day_end)
        if normalize_ts(event.timestamp) <= reference
    ]
    open_since = open_session_seed(db, user_id, day_start)
    latest_event = get_latest_event(db, user_id, until_utc=reference)

    timeline = reconstruct(day_events, min(reference, day_end), open_since=open_since)
    return timeline, latest_event


def get_user_attendance_status(db: Session, *, user_id: int, now_utc: datetime | None = None) -> dict[str, Any]:
    reference = normalize_ts(now_utc or datetime.now(timezone.utc))
    user = get_user(db, user_id)
    timeline, latest_event = reconstruct_user_day(db, user_id=user.id, now_utc=reference)
    status = current_status(latest_event, timeline.total_working_ms)

    return {
        "user_id": user.id,
        "status": status,
        "is_currently_working": is_working_status(status),
        "working_ms_today": timeline.total_working_ms,
        "break_ms_today": timeline.total_pause_ms,
        "open_session_start": timeline.open_session_start,
        "last_event_type": latest_event.type if latest_event is not None else None,
        "last_event_time": latest_event.timestamp if latest_event is not None else None,
    }

