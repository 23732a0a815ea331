from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.orm import Session

from workclock.services.attendance import reconstruct_user_day
from workclock.services.event_store import attendance_timezone, get_company, list_active_employees
from workclock.services.overtime import round_hours
from workclock.services.status import AttendanceStatus, current_status
from workclock.services.timeline import normalize_ts

logger = logging.getLogger("workclock.dashboard")


def get_dashboard_stats(db: Session, company_id: int, *, now_utc: datetime | None = None) -> dict[str, Any]:
    reference = normalize_ts(now_utc or datetime.now(timezone.utc))
    company = get_company(db, company_id)
    employees = list_active_employees(db, company.id)

    counts = {status: 0 for status in AttendanceStatus}
    total_working_ms = 0
    failed_employees: list[int] = []
    for employee in employees:
        try:
            timeline, latest_event = reconstruct_user_day(db, user_id=employee.id, now_utc=reference)
        except Exception:
            logger.exception(
                "dashboard_employee_failed",
                extra={"company_id": company.id, "user_id": employee.id},
            )
            failed_employees.append(employee.id)
            continue
        counts[current_status(latest_event)] += 1
        total_working_ms += timeline.total_working_ms

    return {
        "company_id": company.id,
        "date": reference.astimezone(attendance_timezone()).date(),
        "total_employees": len(employees),
        "employees_at_work": counts[AttendanceStatus.AT_WORK],
        "employees_on_break": counts[AttendanceStatus.ON_BREAK] + counts[AttendanceStatus.ON_PERSONAL],
        "employees_on_business_trip": counts[AttendanceStatus.ON_BUSINESS_TRIP],
        "employees_off": counts[AttendanceStatus.OFF],
        "total_hours_today": round_hours(total_working_ms),
        "failed_employees": failed_employees,
    }
