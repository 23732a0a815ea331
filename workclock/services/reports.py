from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone, tzinfo
from typing import Any

from sqlalchemy.orm import Session

from workclock.models import AttendanceType, Company, User
from workclock.settings import get_settings
from workclock.services.attendance import open_session_seed, reconstruct_user_day
from workclock.services.event_store import (
    attendance_timezone,
    get_company,
    get_user,
    list_active_employees,
    list_events_for_user,
)
from workclock.services.overtime import DateRange, resolve_date_range, round_hours
from workclock.services.timeline import (
    EventLike,
    TimelineResult,
    coerce_event_type,
    local_day_bounds_utc,
    normalize_ts,
    reconstruct,
    reconstruct_by_day,
)

logger = logging.getLogger("workclock.reports")

_MS_PER_MINUTE = 60 * 1000
WORKING_DAY_MARKERS = frozenset({AttendanceType.CLOCK_IN, AttendanceType.BUSINESS_TRIP_START})


def _minutes(milliseconds: int) -> int:
    return int(round(milliseconds / _MS_PER_MINUTE))


def summarize_timeline(timeline: TimelineResult) -> dict[str, Any]:
    return {
        "clock_in_time": timeline.first_clock_in,
        "clock_out_time": timeline.last_clock_out,
        "is_currently_working": timeline.is_currently_working,
        "total_working_minutes": _minutes(timeline.total_working_ms),
        "total_break_minutes": _minutes(timeline.total_pause_ms),
        "breaks": [
            {
                "type": pause.kind,
                "start": pause.start,
                "end": None if pause.is_open else pause.end,
                "duration_minutes": _minutes(pause.duration_ms),
            }
            for pause in timeline.pauses
        ],
    }


def build_daily_summary(
    events: list[EventLike],
    as_of: datetime,
    *,
    open_since: datetime | None = None,
) -> dict[str, Any]:
    return summarize_timeline(reconstruct(events, as_of, open_since=open_since))


def get_user_daily_summary(
    db: Session,
    *,
    user_id: int,
    local_day: date | None = None,
    now_utc: datetime | None = None,
) -> dict[str, Any]:
    reference = normalize_ts(now_utc or datetime.now(timezone.utc))
    user = get_user(db, user_id)
    target_day = local_day or reference.astimezone(attendance_timezone()).date()
    timeline, _ = reconstruct_user_day(db, user_id=user.id, now_utc=reference, local_day=target_day)
    return {"user_id": user.id, "day": target_day, **summarize_timeline(timeline)}


def parse_standard_start(raw: Any, default: time = time(8, 0)) -> time:
    """Parse an ``HH:MM`` start time from untyped company settings, falling back to ``default``."""
    if raw is None or raw == "":
        return default
    if isinstance(raw, str):
        try:
            hours_text, minutes_text = raw.strip().split(":", 1)
            return time(int(hours_text), int(minutes_text))
        except ValueError:
            pass
    logger.warning("standard_start_time_invalid", extra={"value": raw})
    return default


def punctuality_score(
    events: list[EventLike],
    *,
    standard_start: time,
    tolerance_minutes: int,
    tz: tzinfo,
) -> float:
    """Percentage of clock-ins at or before ``standard_start`` plus the tolerance (100 with no clock-ins)."""
    clock_ins = [event for event in events if coerce_event_type(event.type) is AttendanceType.CLOCK_IN]
    if not clock_ins:
        return 100.0

    limit_minutes = standard_start.hour * 60 + standard_start.minute + max(0, tolerance_minutes)
    on_time = 0
    for event in clock_ins:
        local_ts = normalize_ts(event.timestamp).astimezone(tz)
        if local_ts.hour * 60 + local_ts.minute <= limit_minutes:
            on_time += 1
    return on_time / len(clock_ins) * 100


def count_working_days(events: list[EventLike], tz: tzinfo, by_day: dict[date, TimelineResult] | None = None) -> int:
    """Local days with a clock-in or trip start, plus days a carried-over session put working time on."""
    days = {
        normalize_ts(event.timestamp).astimezone(tz).date()
        for event in events
        if coerce_event_type(event.type) in WORKING_DAY_MARKERS
    }
    days.update(day for day, result in (by_day or {}).items() if result.total_working_ms > 0)
    return len(days)


def build_employee_report(
    employee: User,
    events: list[EventLike],
    *,
    as_of: datetime,
    tz: tzinfo,
    standard_start: time,
    tolerance_minutes: int,
    open_since: datetime | None = None,
) -> dict[str, Any]:
    by_day = reconstruct_by_day(events, as_of, tz, open_since=open_since)
    total_ms = sum(result.total_working_ms for result in by_day.values())
    working_days = count_working_days(events, tz, by_day)
    average_ms = total_ms // working_days if working_days else 0
    score = punctuality_score(events, standard_start=standard_start, tolerance_minutes=tolerance_minutes, tz=tz)
    return {
        "user_id": employee.id,
        "name": employee.full_name,
        "email": employee.email,
        "total_working_ms": total_ms,
        "total_hours": round_hours(total_ms),
        "working_days": working_days,
        "average_hours_per_day": round_hours(average_ms),
        "punctuality_score": round(score, 1),
    }


def _punctuality_settings(company: Company) -> tuple[time, int]:
    settings = get_settings()
    overrides = company.settings if isinstance(company.settings, dict) else {}
    working_hours = overrides.get("working_hours") if isinstance(overrides.get("working_hours"), dict) else {}
    standard_start = parse_standard_start(
        working_hours.get("start"),
        default=parse_standard_start(settings.standard_start_time),
    )
    try:
        tolerance = int(overrides.get("punctuality_tolerance_minutes", settings.punctuality_tolerance_minutes))
    except (TypeError, ValueError):
        tolerance = settings.punctuality_tolerance_minutes
    return standard_start, max(0, tolerance)


def get_attendance_report(
    db: Session,
    company_id: int,
    date_range: DateRange | None = None,
    *,
    now_utc: datetime | None = None,
) -> dict[str, Any]:
    reference = normalize_ts(now_utc or datetime.now(timezone.utc))
    company = get_company(db, company_id)
    resolved_range = resolve_date_range(date_range, reference_utc=reference)
    standard_start, tolerance = _punctuality_settings(company)
    tz = attendance_timezone()
    range_start, _ = local_day_bounds_utc(resolved_range.date_from, tz)
    _, range_end = local_day_bounds_utc(resolved_range.date_to, tz)

    reports: list[dict[str, Any]] = []
    failed_employees: list[int] = []
    for employee in list_active_employees(db, company.id):
        try:
            events = list_events_for_user(db, employee.id, from_utc=range_start, to_utc=range_end)
            reports.append(
                build_employee_report(
                    employee,
                    events,
                    as_of=min(reference, range_end),
                    tz=tz,
                    standard_start=standard_start,
                    tolerance_minutes=tolerance,
                    open_since=open_session_seed(db, employee.id, range_start),
                )
            )
        except Exception:
            logger.exception(
                "attendance_report_employee_failed",
                extra={"company_id": company.id, "user_id": employee.id},
            )
            failed_employees.append(employee.id)

    punctuality_values = [item["punctuality_score"] for item in reports]
    return {
        "company_id": company.id,
        "date_from": resolved_range.date_from,
        "date_to": resolved_range.date_to,
        "standard_start_time": standard_start.strftime("%H:%M"),
        "punctuality_tolerance_minutes": tolerance,
        "employees": reports,
        "summary": {
            "employees": len(reports),
            "total_hours": round_hours(sum(item["total_working_ms"] for item in reports)),
            "punctuality_average": (
                round(sum(punctuality_values) / len(punctuality_values), 1) if punctuality_values else 100.0
            ),
            "failed_employees": failed_employees,
        },
        "generated_at": reference,
    }
