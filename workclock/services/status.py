from __future__ import annotations

import enum
from collections.abc import Iterable
from typing import Any

from workclock.models import AttendanceType
from workclock.services.timeline import EventLike, coerce_event_type, last_classified_event


class AttendanceStatus(str, enum.Enum):
    AT_WORK = "AT_WORK"
    ON_BREAK = "ON_BREAK"
    ON_PERSONAL = "ON_PERSONAL"
    ON_BUSINESS_TRIP = "ON_BUSINESS_TRIP"
    OFF = "OFF"


STATUS_BY_EVENT_TYPE: dict[AttendanceType, AttendanceStatus] = {
    AttendanceType.CLOCK_IN: AttendanceStatus.AT_WORK,
    AttendanceType.BREAK_END: AttendanceStatus.AT_WORK,
    AttendanceType.PERSONAL_END: AttendanceStatus.AT_WORK,
    AttendanceType.BUSINESS_TRIP_START: AttendanceStatus.ON_BUSINESS_TRIP,
    AttendanceType.BREAK_START: AttendanceStatus.ON_BREAK,
    AttendanceType.PERSONAL_START: AttendanceStatus.ON_PERSONAL,
    AttendanceType.CLOCK_OUT: AttendanceStatus.OFF,
    AttendanceType.BUSINESS_TRIP_END: AttendanceStatus.OFF,
}

WORKING_STATUSES = frozenset({AttendanceStatus.AT_WORK, AttendanceStatus.ON_BUSINESS_TRIP})


def current_status(last_event: Any | None, working_ms: int = 0) -> AttendanceStatus:
    """Status from the type of the most recent event.

    ``working_ms`` never changes the outcome; callers pass the reconstructed total along
    so live views can show both from one call site.
    """
    if last_event is None:
        return AttendanceStatus.OFF
    event_type = coerce_event_type(getattr(last_event, "type", last_event))
    if event_type is None:
        return AttendanceStatus.OFF
    return STATUS_BY_EVENT_TYPE[event_type]


def is_working_status(status: AttendanceStatus) -> bool:
    return status in WORKING_STATUSES


def status_from_events(events: Iterable[EventLike]) -> AttendanceStatus:
    return current_status(last_classified_event(events))
