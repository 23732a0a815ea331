from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy.orm import Session

from workclock.errors import ApiError
from workclock.models import Alert, AlertType, Company, User
from workclock.settings import Settings, get_settings
from workclock.services.attendance import open_session_seed, reconstruct_user_day
from workclock.services.event_store import (
    attendance_timezone,
    get_company,
    list_active_employees,
    list_company_alerts,
    list_events_for_user,
)
from workclock.services.status import current_status, is_working_status
from workclock.services.timeline import local_day_bounds_utc, normalize_ts, reconstruct_by_day

logger = logging.getLogger("workclock.overtime")

MS_PER_HOUR = 60 * 60 * 1000
_ONE_DECIMAL = Decimal("0.1")


class OvertimeLevel(str, enum.Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    LEGAL_LIMIT = "legal_limit"


@dataclass(frozen=True, slots=True)
class OvertimeThresholds:
    daily_threshold_hours: float = 8.0
    warning_hours: float = 9.0
    critical_hours: float = 12.0
    legal_limit_hours: float = 16.0

    @property
    def daily_threshold_ms(self) -> int:
        return hours_to_ms(self.daily_threshold_hours)


@dataclass(frozen=True, slots=True)
class OvertimeStatus:
    working_hours: float
    is_overtime: bool
    overtime_hours: float
    working_ms: int
    overtime_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "working_hours": self.working_hours,
            "is_overtime": self.is_overtime,
            "overtime_hours": self.overtime_hours,
        }


@dataclass(frozen=True, slots=True)
class DateRange:
    date_from: date
    date_to: date


def hours_to_ms(hours: float) -> int:
    return int((Decimal(str(hours)) * MS_PER_HOUR).to_integral_value(rounding=ROUND_HALF_UP))


def round_hours(milliseconds: int) -> float:
    """Milliseconds to hours, rounded half-up to one decimal. Display only."""
    hours = Decimal(max(0, int(milliseconds))) / Decimal(MS_PER_HOUR)
    return float(hours.quantize(_ONE_DECIMAL, rounding=ROUND_HALF_UP))


def compute_overtime_status(working_ms: int, threshold_hours: float = 8.0) -> OvertimeStatus:
    # Compare raw milliseconds; rounding first would flip results right at the threshold.
    threshold_ms = hours_to_ms(threshold_hours)
    safe_working_ms = max(0, int(working_ms))
    overtime_ms = max(0, safe_working_ms - threshold_ms)
    return OvertimeStatus(
        working_hours=round_hours(safe_working_ms),
        is_overtime=safe_working_ms > threshold_ms,
        overtime_hours=round_hours(overtime_ms),
        working_ms=safe_working_ms,
        overtime_ms=overtime_ms,
    )


def classify_overtime_level(working_ms: int, thresholds: OvertimeThresholds) -> OvertimeLevel:
    if working_ms >= hours_to_ms(thresholds.legal_limit_hours):
        return OvertimeLevel.LEGAL_LIMIT
    if working_ms >= hours_to_ms(thresholds.critical_hours):
        return OvertimeLevel.CRITICAL
    if working_ms >= hours_to_ms(thresholds.warning_hours):
        return OvertimeLevel.WARNING
    return OvertimeLevel.NORMAL


def _positive_float(value: Any) -> float | None:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def resolve_thresholds(company: Company | None, settings: Settings | None = None) -> OvertimeThresholds:
    resolved_settings = settings or get_settings()
    overrides = company.settings if company is not None and isinstance(company.settings, dict) else {}

    def pick(key: str, default: float) -> float:
        return _positive_float(overrides.get(key)) or default

    return OvertimeThresholds(
        daily_threshold_hours=pick("overtime_threshold_hours", resolved_settings.overtime_threshold_hours),
        warning_hours=pick("overtime_warning_hours", resolved_settings.overtime_warning_hours),
        critical_hours=pick(
            "max_daily_hours",
            pick("overtime_critical_hours", resolved_settings.overtime_critical_hours),
        ),
        legal_limit_hours=resolved_settings.legal_limit_hours,
    )


def _live_overtime_row(
    db: Session,
    *,
    employee: User,
    reference_utc: datetime,
    thresholds: OvertimeThresholds,
) -> dict[str, Any]:
    timeline, latest_event = reconstruct_user_day(db, user_id=employee.id, now_utc=reference_utc)
    status = current_status(latest_event, timeline.total_working_ms)
    overtime = compute_overtime_status(timeline.total_working_ms, thresholds.daily_threshold_hours)
    return {
        "user_id": employee.id,
        "name": employee.full_name,
        "email": employee.email,
        "working_ms": overtime.working_ms,
        "working_hours": overtime.working_hours,
        "is_overtime": overtime.is_overtime,
        "overtime_hours": overtime.overtime_hours,
        "overtime_ms": overtime.overtime_ms,
        "overtime_level": classify_overtime_level(overtime.working_ms, thresholds),
        "status": status,
        "is_currently_working": is_working_status(status),
        "last_event_time": latest_event.timestamp if latest_event is not None else None,
        "last_event_type": latest_event.type if latest_event is not None else None,
    }


def get_current_overtime_status(
    db: Session,
    company_id: int,
    *,
    now_utc: datetime | None = None,
) -> dict[str, Any]:
    reference = normalize_ts(now_utc or datetime.now(timezone.utc))
    company = get_company(db, company_id)
    thresholds = resolve_thresholds(company)

    rows: list[dict[str, Any]] = []
    failed_employees: list[int] = []
    for employee in list_active_employees(db, company.id):
        try:
            rows.append(
                _live_overtime_row(db, employee=employee, reference_utc=reference, thresholds=thresholds)
            )
        except Exception:
            logger.exception(
                "overtime_employee_computation_failed",
                extra={"company_id": company.id, "user_id": employee.id, "scope": "current"},
            )
            failed_employees.append(employee.id)

    levels = [row["overtime_level"] for row in rows]
    return {
        "company_id": company.id,
        "date": reference.astimezone(attendance_timezone()).date(),
        "threshold_hours": thresholds.daily_threshold_hours,
        "employees": rows,
        "summary": {
            "total": len(rows),
            "working": sum(1 for row in rows if row["is_currently_working"]),
            "overtime": sum(1 for row in rows if row["is_overtime"]),
            "warning": levels.count(OvertimeLevel.WARNING),
            "critical": levels.count(OvertimeLevel.CRITICAL),
            "legal_limit": levels.count(OvertimeLevel.LEGAL_LIMIT),
            "total_working_hours": round_hours(sum(row["working_ms"] for row in rows)),
            "total_overtime_hours": round_hours(sum(row["overtime_ms"] for row in rows)),
            "failed_employees": failed_employees,
        },
    }


def resolve_date_range(date_range: DateRange | None, *, reference_utc: datetime) -> DateRange:
    if date_range is None:
        today = reference_utc.astimezone(attendance_timezone()).date()
        return DateRange(
            date_from=today - timedelta(days=get_settings().overtime_stats_default_days),
            date_to=today,
        )
    if date_range.date_from > date_range.date_to:
        raise ApiError(
            status_code=422,
            code="INVALID_DATE_RANGE",
            message="date_from must not be after date_to.",
        )
    return date_range


def _employee_range_stats(
    db: Session,
    *,
    employee: User,
    date_range: DateRange,
    reference_utc: datetime,
    thresholds: OvertimeThresholds,
) -> dict[str, Any]:
    tz = attendance_timezone()
    range_start, _ = local_day_bounds_utc(date_range.date_from, tz)
    _, range_end = local_day_bounds_utc(date_range.date_to, tz)
    events = list_events_for_user(db, employee.id, from_utc=range_start, to_utc=range_end)
    open_since = open_session_seed(db, employee.id, range_start)
    by_day = reconstruct_by_day(events, min(reference_utc, range_end), tz, open_since=open_since)

    daily: list[dict[str, Any]] = []
    total_working_ms = 0
    total_overtime_ms = 0
    for local_day, timeline in by_day.items():
        day_status = compute_overtime_status(timeline.total_working_ms, thresholds.daily_threshold_hours)
        total_working_ms += day_status.working_ms
        total_overtime_ms += day_status.overtime_ms
        daily.append({"day": local_day, **day_status.to_dict()})

    return {
        "user_id": employee.id,
        "name": employee.full_name,
        "email": employee.email,
        "total_working_ms": total_working_ms,
        "total_working_hours": round_hours(total_working_ms),
        "overtime_ms": total_overtime_ms,
        "overtime_hours": round_hours(total_overtime_ms),
        "overtime_days": sum(1 for item in daily if item["is_overtime"]),
        "days_worked": sum(1 for item in daily if item["working_hours"] > 0),
        "daily": daily,
    }


OVERTIME_ALERT_TYPES: tuple[AlertType, ...] = (
    AlertType.OVERTIME_WARNING,
    AlertType.OVERTIME_CRITICAL,
    AlertType.OVERTIME_LEGAL_LIMIT,
)
_ALERT_COUNT_KEYS: dict[AlertType, str] = {
    AlertType.OVERTIME_WARNING: "warning_alerts",
    AlertType.OVERTIME_CRITICAL: "critical_alerts",
    AlertType.OVERTIME_LEGAL_LIMIT: "legal_limit_alerts",
}
RECENT_ALERTS_LIMIT = 10


def summarize_overtime_alerts(alerts: list[Alert], employees_by_id: dict[int, User]) -> dict[str, Any]:
    """Alert history for a range: counts per level, per-user stats and the newest alerts.

    ``alerts`` must be ordered newest first.
    """
    overtime_alerts = [alert for alert in alerts if alert.type in _ALERT_COUNT_KEYS]
    counts = {key: 0 for key in _ALERT_COUNT_KEYS.values()}
    user_stats: dict[int, dict[str, Any]] = {}
    for alert in overtime_alerts:
        count_key = _ALERT_COUNT_KEYS[alert.type]
        counts[count_key] += 1
        if alert.user_id is None:
            continue

        employee = employees_by_id.get(alert.user_id)
        entry = user_stats.setdefault(
            alert.user_id,
            {
                "user_id": alert.user_id,
                "name": employee.full_name if employee is not None else None,
                "total_alerts": 0,
                "warning_alerts": 0,
                "critical_alerts": 0,
                "legal_limit_alerts": 0,
                "last_alert": alert.created_at,
            },
        )
        entry["total_alerts"] += 1
        entry[count_key] += 1
        if alert.created_at is not None and (entry["last_alert"] is None or alert.created_at > entry["last_alert"]):
            entry["last_alert"] = alert.created_at

    return {
        "total_alerts": sum(counts.values()),
        **counts,
        "affected_employees": len(user_stats),
        "user_stats": list(user_stats.values()),
        "recent_alerts": [
            {
                "id": alert.id,
                "user_id": alert.user_id,
                "type": alert.type,
                "severity": alert.severity,
                "message": alert.message,
                "created_at": alert.created_at,
            }
            for alert in overtime_alerts[:RECENT_ALERTS_LIMIT]
        ],
    }


def get_overtime_stats(
    db: Session,
    company_id: int,
    date_range: DateRange | None = None,
    *,
    now_utc: datetime | None = None,
) -> dict[str, Any]:
    """Per-employee and company-wide working time and overtime for a local date range.

    Overtime is judged per day against the daily threshold. One employee failing to
    compute is logged and listed in ``failed_employees``; everyone else still counts.
    """
    reference = normalize_ts(now_utc or datetime.now(timezone.utc))
    company = get_company(db, company_id)
    thresholds = resolve_thresholds(company)
    resolved_range = resolve_date_range(date_range, reference_utc=reference)

    employees = list_active_employees(db, company.id)
    employee_stats: list[dict[str, Any]] = []
    failed_employees: list[int] = []
    for employee in employees:
        try:
            employee_stats.append(
                _employee_range_stats(
                    db,
                    employee=employee,
                    date_range=resolved_range,
                    reference_utc=reference,
                    thresholds=thresholds,
                )
            )
        except Exception:
            logger.exception(
                "overtime_employee_computation_failed",
                extra={"company_id": company.id, "user_id": employee.id, "scope": "range"},
            )
            failed_employees.append(employee.id)

    total_working_ms = sum(item["total_working_ms"] for item in employee_stats)
    total_overtime_ms = sum(item["overtime_ms"] for item in employee_stats)
    tz = attendance_timezone()
    range_start, _ = local_day_bounds_utc(resolved_range.date_from, tz)
    _, range_end = local_day_bounds_utc(resolved_range.date_to, tz)
    alerts = list_company_alerts(
        db,
        company.id,
        alert_types=OVERTIME_ALERT_TYPES,
        from_utc=range_start,
        to_utc=range_end,
    )
    return {
        "company_id": company.id,
        "date_from": resolved_range.date_from,
        "date_to": resolved_range.date_to,
        "threshold_hours": thresholds.daily_threshold_hours,
        "employees": employee_stats,
        "summary": {
            "employees": len(employee_stats),
            "employees_with_overtime": sum(1 for item in employee_stats if item["overtime_ms"] > 0),
            "total_working_hours": round_hours(total_working_ms),
            "total_overtime_hours": round_hours(total_overtime_ms),
            "failed_employees": failed_employees,
        },
        "alerts": summarize_overtime_alerts(alerts, {employee.id: employee for employee in employees}),
    }
