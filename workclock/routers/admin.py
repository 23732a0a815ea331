from datetime import date, datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from workclock.audit import log_audit
from workclock.db import get_db
from workclock.errors import get_request_id
from workclock.models import AuditActorType
from workclock.schemas import (
    AttendanceReportResponse,
    DashboardStatsResponse,
    OvertimeCurrentResponse,
    OvertimeStatsResponse,
    OvertimeSweepResponse,
    SchedulerJobActionResponse,
    SchedulerJobRead,
)
from workclock.settings import get_settings
from workclock.services.dashboard import get_dashboard_stats
from workclock.services.event_store import attendance_timezone
from workclock.services.overtime import DateRange, get_current_overtime_status, get_overtime_stats
from workclock.services.reports import get_attendance_report
from workclock.services.scheduler import JobScheduler

router = APIRouter(tags=["admin"])


def get_scheduler(request: Request) -> JobScheduler:
    scheduler: JobScheduler | None = getattr(request.app.state, "job_scheduler", None)
    if scheduler is None:
        raise RuntimeError("Job scheduler is not running.")
    return scheduler


def _date_range(date_from: date | None, date_to: date | None) -> DateRange | None:
    if date_from is None and date_to is None:
        return None
    resolved_to = date_to or datetime.now(timezone.utc).astimezone(attendance_timezone()).date()
    resolved_from = date_from or resolved_to - timedelta(days=get_settings().overtime_stats_default_days)
    return DateRange(date_from=resolved_from, date_to=resolved_to)


@router.get("/api/companies/{company_id}/overtime/current", response_model=OvertimeCurrentResponse)
def overtime_current(company_id: int, db: Session = Depends(get_db)) -> OvertimeCurrentResponse:
    return OvertimeCurrentResponse(**get_current_overtime_status(db, company_id))


@router.get("/api/companies/{company_id}/overtime/stats", response_model=OvertimeStatsResponse)
def overtime_stats(
    company_id: int,
    date_from: date | None = Query(default=None),
    date_to: date | None = Query(default=None),
    db: Session = Depends(get_db),
) -> OvertimeStatsResponse:
    return OvertimeStatsResponse(**get_overtime_stats(db, company_id, _date_range(date_from, date_to)))


@router.get("/api/companies/{company_id}/dashboard", response_model=DashboardStatsResponse)
def dashboard(company_id: int, db: Session = Depends(get_db)) -> DashboardStatsResponse:
    return DashboardStatsResponse(**get_dashboard_stats(db, company_id))


@router.get("/api/companies/{company_id}/reports/attendance", response_model=AttendanceReportResponse)
def attendance_report(
    company_id: int,
    date_from: date | None = Query(default=None),
    date_to: date | None = Query(default=None),
    db: Session = Depends(get_db),
) -> AttendanceReportResponse:
    return AttendanceReportResponse(**get_attendance_report(db, company_id, _date_range(date_from, date_to)))


@router.get("/api/scheduler/jobs", response_model=list[SchedulerJobRead])
def list_scheduler_jobs(scheduler: JobScheduler = Depends(get_scheduler)) -> list[SchedulerJobRead]:
    return [SchedulerJobRead(**item) for item in scheduler.get_jobs_status()]


def _job_action(
    *,
    request: Request,
    db: Session,
    scheduler: JobScheduler,
    name: str,
    action: str,
) -> SchedulerJobActionResponse:
    changed = scheduler.start_job(name) if action == "start" else scheduler.stop_job(name)
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=str(getattr(request.state, "actor_id", "admin")),
        action=f"SCHEDULER_JOB_{action.upper()}",
        success=True,
        entity_type="scheduler_job",
        entity_id=name,
        details={"changed": changed},
        request_id=get_request_id(request),
    )
    return SchedulerJobActionResponse(
        ok=True,
        changed=changed,
        job=SchedulerJobRead(**scheduler.get_job(name).to_dict()),
    )


@router.post("/api/scheduler/jobs/{name}/start", response_model=SchedulerJobActionResponse)
def start_scheduler_job(
    name: str,
    request: Request,
    db: Session = Depends(get_db),
    scheduler: JobScheduler = Depends(get_scheduler),
) -> SchedulerJobActionResponse:
    return _job_action(request=request, db=db, scheduler=scheduler, name=name, action="start")


@router.post("/api/scheduler/jobs/{name}/stop", response_model=SchedulerJobActionResponse)
def stop_scheduler_job(
    name: str,
    request: Request,
    db: Session = Depends(get_db),
    scheduler: JobScheduler = Depends(get_scheduler),
) -> SchedulerJobActionResponse:
    return _job_action(request=request, db=db, scheduler=scheduler, name=name, action="stop")


@router.post("/api/scheduler/overtime-sweep", response_model=OvertimeSweepResponse)
def run_overtime_sweep(
    request: Request,
    company_id: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    scheduler: JobScheduler = Depends(get_scheduler),
) -> OvertimeSweepResponse:
    result = scheduler.run_overtime_sweep_now(company_id)
    log_audit(
        db,
        actor_type=AuditActorType.ADMIN,
        actor_id=str(getattr(request.state, "actor_id", "admin")),
        action="OVERTIME_SWEEP_RUN",
        success=True,
        entity_type="company" if company_id is not None else None,
        entity_id=str(company_id) if company_id is not None else None,
        details={
            "alerts_created": result["alerts_created"],
            "skipped_companies": result["skipped_companies"],
            "failed_companies": result["failed_companies"],
        },
        request_id=get_request_id(request),
    )
    return OvertimeSweepResponse(**result)
