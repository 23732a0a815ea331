from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from workclock.models import AlertSeverity, AlertType, AttendanceType
from workclock.services.overtime import OvertimeLevel
from workclock.services.status import AttendanceStatus


class AttendanceEventCreate(BaseModel):
    user_id: int = Field(ge=1)
    type: AttendanceType
    timestamp: datetime | None = None
    lat: float | None = None
    lon: float | None = None
    accuracy_m: float | None = Field(default=None, ge=0)
    notes: str | None = Field(default=None, max_length=1000)
    qr_verified: bool = False


class BusinessTripRequest(BaseModel):
    user_id: int = Field(ge=1)
    timestamp: datetime | None = None
    lat: float | None = None
    lon: float | None = None
    notes: str | None = Field(default=None, max_length=1000)


class AttendanceEventRead(BaseModel):
    id: int
    user_id: int
    type: AttendanceType
    timestamp: datetime
    lat: float | None
    lon: float | None
    accuracy_m: float | None
    notes: str | None
    qr_verified: bool
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class AttendanceStatusResponse(BaseModel):
    user_id: int
    status: AttendanceStatus
    is_currently_working: bool
    working_ms_today: int
    break_ms_today: int
    open_session_start: datetime | None = None
    last_event_type: AttendanceType | None = None
    last_event_time: datetime | None = None


class BreakRead(BaseModel):
    type: str
    start: datetime
    end: datetime | None = None
    duration_minutes: int


class DailySummaryResponse(BaseModel):
    user_id: int
    day: date
    clock_in_time: datetime | None = None
    clock_out_time: datetime | None = None
    is_currently_working: bool
    total_working_minutes: int
    total_break_minutes: int
    breaks: list[BreakRead] = Field(default_factory=list)


class OvertimeEmployeeRead(BaseModel):
    user_id: int
    name: str
    email: str
    working_hours: float
    is_overtime: bool
    overtime_hours: float
    overtime_level: OvertimeLevel
    status: AttendanceStatus
    is_currently_working: bool
    last_event_time: datetime | None = None
    last_event_type: AttendanceType | None = None


class OvertimeCurrentSummary(BaseModel):
    total: int
    working: int
    overtime: int
    warning: int
    critical: int
    legal_limit: int
    total_working_hours: float
    total_overtime_hours: float
    failed_employees: list[int] = Field(default_factory=list)


class OvertimeCurrentResponse(BaseModel):
    company_id: int
    date: date
    threshold_hours: float
    employees: list[OvertimeEmployeeRead]
    summary: OvertimeCurrentSummary


class OvertimeDayRead(BaseModel):
    day: date
    working_hours: float
    is_overtime: bool
    overtime_hours: float


class OvertimeEmployeeStatsRead(BaseModel):
    user_id: int
    name: str
    email: str
    total_working_hours: float
    overtime_hours: float
    overtime_days: int
    days_worked: int
    daily: list[OvertimeDayRead] = Field(default_factory=list)


class OvertimeStatsSummary(BaseModel):
    employees: int
    employees_with_overtime: int
    total_working_hours: float
    total_overtime_hours: float
    failed_employees: list[int] = Field(default_factory=list)


class OvertimeAlertUserStatsRead(BaseModel):
    user_id: int
    name: str | None = None
    total_alerts: int
    warning_alerts: int
    critical_alerts: int
    legal_limit_alerts: int
    last_alert: datetime | None = None


class OvertimeAlertRead(BaseModel):
    id: int
    user_id: int | None = None
    type: AlertType
    severity: AlertSeverity
    message: str
    created_at: datetime | None = None


class OvertimeAlertStatsRead(BaseModel):
    total_alerts: int = 0
    warning_alerts: int = 0
    critical_alerts: int = 0
    legal_limit_alerts: int = 0
    affected_employees: int = 0
    user_stats: list[OvertimeAlertUserStatsRead] = Field(default_factory=list)
    recent_alerts: list[OvertimeAlertRead] = Field(default_factory=list)


class OvertimeStatsResponse(BaseModel):
    company_id: int
    date_from: date
    date_to: date
    threshold_hours: float
    employees: list[OvertimeEmployeeStatsRead]
    summary: OvertimeStatsSummary
    alerts: OvertimeAlertStatsRead = Field(default_factory=OvertimeAlertStatsRead)


class DashboardStatsResponse(BaseModel):
    company_id: int
    date: date
    total_employees: int
    employees_at_work: int
    employees_on_break: int
    employees_on_business_trip: int
    employees_off: int
    total_hours_today: float
    failed_employees: list[int] = Field(default_factory=list)


class EmployeeReportRead(BaseModel):
    user_id: int
    name: str
    email: str
    total_hours: float
    working_days: int
    average_hours_per_day: float
    punctuality_score: float


class AttendanceReportSummary(BaseModel):
    employees: int
    total_hours: float
    punctuality_average: float
    failed_employees: list[int] = Field(default_factory=list)


class AttendanceReportResponse(BaseModel):
    company_id: int
    date_from: date
    date_to: date
    standard_start_time: str
    punctuality_tolerance_minutes: int
    employees: list[EmployeeReportRead]
    summary: AttendanceReportSummary
    generated_at: datetime


class SchedulerJobRead(BaseModel):
    name: str
    enabled: bool
    running: bool
    interval_seconds: int
    last_run_utc: datetime | None = None
    last_duration_ms: float | None = None
    last_error: str | None = None
    run_count: int = 0
    skipped_count: int = 0
    next_run_utc: datetime | None = None
    active_window: dict[str, Any] | None = None


class SchedulerJobActionResponse(BaseModel):
    ok: bool
    changed: bool
    job: SchedulerJobRead


class SweepCompanyRead(BaseModel):
    company_id: int
    checked: int
    alerts_created: int
    failed_employees: list[int] = Field(default_factory=list)


class OvertimeSweepResponse(BaseModel):
    companies: list[SweepCompanyRead]
    skipped_companies: list[int] = Field(default_factory=list)
    failed_companies: list[int] = Field(default_factory=list)
    alerts_created: int
