from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from workclock.models import Alert, AlertSeverity, AlertType, User, UserRole
from workclock.services.attendance import reconstruct_user_day
from workclock.services.event_store import (
    attendance_timezone,
    get_company,
    list_active_employees,
    list_company_managers,
)
from workclock.services.overtime import (
    DateRange,
    OvertimeLevel,
    OvertimeThresholds,
    classify_overtime_level,
    get_overtime_stats,
    resolve_thresholds,
    round_hours,
)
from workclock.services.timeline import normalize_ts

logger = logging.getLogger("workclock.overtime_alerts")

ALERT_BY_LEVEL: dict[OvertimeLevel, tuple[AlertType, AlertSeverity]] = {
    OvertimeLevel.WARNING: (AlertType.OVERTIME_WARNING, AlertSeverity.LOW),
    OvertimeLevel.CRITICAL: (AlertType.OVERTIME_CRITICAL, AlertSeverity.MEDIUM),
    OvertimeLevel.LEGAL_LIMIT: (AlertType.OVERTIME_LEGAL_LIMIT, AlertSeverity.HIGH),
}
MANAGER_ESCALATION_LEVELS = frozenset({OvertimeLevel.CRITICAL, OvertimeLevel.LEGAL_LIMIT})


@dataclass(slots=True)
class SweepResult:
    company_id: int
    checked: int = 0
    alerts_created: int = 0
    failed_employees: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "company_id": self.company_id,
            "checked": self.checked,
            "alerts_created": self.alerts_created,
            "failed_employees": list(self.failed_employees),
        }


def build_alert_idempotency_key(*, alert_type: str, user_id: int, local_day: date) -> str:
    return f"{alert_type}:{user_id}:{local_day.isoformat()}"


def _alert_exists(db: Session, *, idempotency_key: str) -> bool:
    existing = db.scalar(select(Alert.id).where(Alert.idempotency_key == idempotency_key))
    return existing is not None


def _create_alert_if_needed(
    db: Session,
    *,
    company_id: int,
    user_id: int | None,
    alert_type: AlertType,
    severity: AlertSeverity,
    message: str,
    details: dict[str, Any],
    idempotency_key: str,
) -> Alert | None:
    if _alert_exists(db, idempotency_key=idempotency_key):
        return None
    alert = Alert(
        company_id=company_id,
        user_id=user_id,
        type=alert_type,
        severity=severity,
        message=message,
        details=details,
        idempotency_key=idempotency_key,
    )
    db.add(alert)
    return alert


def _level_message(employee: User, level: OvertimeLevel, working_hours: float, thresholds: OvertimeThresholds) -> str:
    if level is OvertimeLevel.LEGAL_LIMIT:
        return (
            f"{employee.full_name} reached the legal daily limit of {thresholds.legal_limit_hours:g}h "
            f"({working_hours}h worked today)."
        )
    if level is OvertimeLevel.CRITICAL:
        return f"{employee.full_name} has worked {working_hours}h today, above {thresholds.critical_hours:g}h."
    return f"{employee.full_name} has worked {working_hours}h today, above {thresholds.warning_hours:g}h."


def _raise_employee_alerts(
    db: Session,
    *,
    company_id: int,
    employee: User,
    level: OvertimeLevel,
    working_ms: int,
    local_day: date,
    thresholds: OvertimeThresholds,
    managers: list[User],
) -> list[Alert]:
    alert_type, severity = ALERT_BY_LEVEL[level]
    working_hours = round_hours(working_ms)
    details = {
        "user_id": employee.id,
        "level": level.value,
        "working_hours": working_hours,
        "local_day": local_day.isoformat(),
    }
    message = _level_message(employee, level, working_hours, thresholds)

    created: list[Alert] = []
    alert = _create_alert_if_needed(
        db,
        company_id=company_id,
        user_id=employee.id,
        alert_type=alert_type,
        severity=severity,
        message=message,
        details=details,
        idempotency_key=build_alert_idempotency_key(
            alert_type=alert_type.value,
            user_id=employee.id,
            local_day=local_day,
        ),
    )
    if alert is not None:
        created.append(alert)

    if level in MANAGER_ESCALATION_LEVELS:
        for manager in managers:
            manager_alert = _create_alert_if_needed(
                db,
                company_id=company_id,
                user_id=manager.id,
                alert_type=AlertType.EMPLOYEE_OVERTIME,
                severity=severity,
                message=message,
                details={**details, "manager_id": manager.id},
                idempotency_key=(
                    f"{AlertType.EMPLOYEE_OVERTIME.value}:{level.value.upper()}:{manager.id}:"
                    f"{employee.id}:{local_day.isoformat()}"
                ),
            )
            if manager_alert is not None:
                created.append(manager_alert)
    return created


def check_overtime_warnings(
    db: Session,
    company_id: int,
    now_utc: datetime | None = None,
) -> SweepResult:
    """Raise overtime alerts for everyone currently working in one company.

    Each ``(user, level, local day)`` produces at most one alert no matter how often the
    sweep runs. A failure for one employee is rolled back and recorded in
    ``failed_employees``; the rest of the company is still checked.
    """
    reference = normalize_ts(now_utc or datetime.now(timezone.utc))
    company = get_company(db, company_id)
    thresholds = resolve_thresholds(company)
    local_day = reference.astimezone(attendance_timezone()).date()
    managers = list_company_managers(db, company.id)
    result = SweepResult(company_id=company.id)

    for employee in list_active_employees(db, company.id):
        try:
            timeline, _ = reconstruct_user_day(db, user_id=employee.id, now_utc=reference)
            if not timeline.is_currently_working:
                continue
            result.checked += 1
            level = classify_overtime_level(timeline.total_working_ms, thresholds)
            if level is OvertimeLevel.NORMAL:
                continue
            created = _raise_employee_alerts(
                db,
                company_id=company.id,
                employee=employee,
                level=level,
                working_ms=timeline.total_working_ms,
                local_day=local_day,
                thresholds=thresholds,
                managers=managers,
            )
            if created:
                db.commit()
                result.alerts_created += len(created)
                logger.info(
                    "overtime_alerts_created",
                    extra={
                        "company_id": company.id,
                        "user_id": employee.id,
                        "level": level.value,
                        "alerts": len(created),
                    },
                )
        except Exception:
            db.rollback()
            logger.exception(
                "overtime_check_employee_failed",
                extra={"company_id": company.id, "user_id": employee.id},
            )
            result.failed_employees.append(employee.id)

    return result


def send_weekly_overtime_summary(
    db: Session,
    company_id: int,
    now_utc: datetime | None = None,
) -> int:
    reference = normalize_ts(now_utc or datetime.now(timezone.utc))
    today = reference.astimezone(attendance_timezone()).date()
    stats = get_overtime_stats(
        db,
        company_id,
        DateRange(date_from=today - timedelta(days=7), date_to=today - timedelta(days=1)),
        now_utc=reference,
    )
    with_overtime = [item for item in stats["employees"] if item["overtime_ms"] > 0]
    if not with_overtime:
        return 0

    admins = [manager for manager in list_company_managers(db, company_id) if manager.role == UserRole.COMPANY_ADMIN]
    iso_year, iso_week, _ = today.isocalendar()
    details = {
        "date_from": stats["date_from"].isoformat(),
        "date_to": stats["date_to"].isoformat(),
        "total_overtime_hours": stats["summary"]["total_overtime_hours"],
        "employees": [
            {"user_id": item["user_id"], "name": item["name"], "overtime_hours": item["overtime_hours"]}
            for item in with_overtime
        ],
    }
    message = (
        f"{len(with_overtime)} employee(s) worked {stats['summary']['total_overtime_hours']}h "
        f"of overtime between {details['date_from']} and {details['date_to']}."
    )

    created = 0
    for admin in admins:
        alert = _create_alert_if_needed(
            db,
            company_id=company_id,
            user_id=admin.id,
            alert_type=AlertType.WEEKLY_OVERTIME_SUMMARY,
            severity=AlertSeverity.LOW,
            message=message,
            details=details,
            idempotency_key=f"{AlertType.WEEKLY_OVERTIME_SUMMARY.value}:{admin.id}:{iso_year}-W{iso_week:02d}",
        )
        if alert is not None:
            created += 1
    if created:
        db.commit()
    logger.info(
        "weekly_overtime_summary_built",
        extra={"company_id": company_id, "employees_with_overtime": len(with_overtime), "alerts": created},
    )
    return created
