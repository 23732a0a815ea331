from datetime import date

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from workclock.db import get_db
from workclock.models import AttendanceEvent, AttendanceType
from workclock.schemas import (
    AttendanceEventCreate,
    AttendanceEventRead,
    AttendanceStatusResponse,
    BusinessTripRequest,
    DailySummaryResponse,
)
from workclock.services.attendance import get_user_attendance_status, record_event
from workclock.services.reports import get_user_daily_summary

router = APIRouter(tags=["attendance"])


def _mark_request(request: Request, event: AttendanceEvent) -> None:
    request.state.actor = "employee"
    request.state.actor_id = str(event.user_id)
    request.state.user_id = event.user_id
    request.state.event_id = event.id
    request.state.event_type = event.type.value


@router.post("/api/attendance/events", response_model=AttendanceEventRead, status_code=status.HTTP_201_CREATED)
def create_event(
    payload: AttendanceEventCreate,
    request: Request,
    db: Session = Depends(get_db),
) -> AttendanceEventRead:
    event = record_event(
        db,
        user_id=payload.user_id,
        event_type=payload.type,
        timestamp=payload.timestamp,
        lat=payload.lat,
        lon=payload.lon,
        accuracy_m=payload.accuracy_m,
        notes=payload.notes,
        qr_verified=payload.qr_verified,
    )
    _mark_request(request, event)
    return AttendanceEventRead.model_validate(event)


@router.get("/api/attendance/status", response_model=AttendanceStatusResponse)
def attendance_status(
    user_id: int = Query(ge=1),
    db: Session = Depends(get_db),
) -> AttendanceStatusResponse:
    return AttendanceStatusResponse(**get_user_attendance_status(db, user_id=user_id))


@router.get("/api/attendance/daily-summary", response_model=DailySummaryResponse)
def daily_summary(
    user_id: int = Query(ge=1),
    day: date | None = Query(default=None),
    db: Session = Depends(get_db),
) -> DailySummaryResponse:
    return DailySummaryResponse(**get_user_daily_summary(db, user_id=user_id, local_day=day))


def _record_trip_event(
    db: Session,
    request: Request,
    payload: BusinessTripRequest,
    event_type: AttendanceType,
) -> AttendanceEventRead:
    event = record_event(
        db,
        user_id=payload.user_id,
        event_type=event_type,
        timestamp=payload.timestamp,
        lat=payload.lat,
        lon=payload.lon,
        notes=payload.notes,
    )
    _mark_request(request, event)
    return AttendanceEventRead.model_validate(event)


@router.post("/api/business-trips/start", response_model=AttendanceEventRead, status_code=status.HTTP_201_CREATED)
def start_business_trip(
    payload: BusinessTripRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> AttendanceEventRead:
    return _record_trip_event(db, request, payload, AttendanceType.BUSINESS_TRIP_START)


@router.post("/api/business-trips/end", response_model=AttendanceEventRead, status_code=status.HTTP_201_CREATED)
def end_business_trip(
    payload: BusinessTripRequest,
    request: Request,
    db: Session = Depends(get_db),
) -> AttendanceEventRead:
    return _record_trip_event(db, request, payload, AttendanceType.BUSINESS_TRIP_END)
