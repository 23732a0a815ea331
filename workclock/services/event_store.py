from __future__ import annotations

from datetime import datetime, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from workclock.errors import ApiError, NotFoundError
from workclock.models import Alert, AlertType, AttendanceEvent, AttendanceType, Company, User, UserRole
from workclock.settings import get_settings
from workclock.services.timeline import normalize_ts


@lru_cache
def attendance_timezone() -> ZoneInfo:
    raw_name = (get_settings().attendance_timezone or "").strip() or "Europe/Bratislava"
    try:
        return ZoneInfo(raw_name)
    except Exception:
        return ZoneInfo("UTC")


def get_company(db: Session, company_id: int) -> Company:
    company = db.get(Company, company_id)
    if company is None or not company.is_active:
        raise NotFoundError("COMPANY_NOT_FOUND", f"Company {company_id} not found.")
    return company


def get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError("USER_NOT_FOUND", f"User {user_id} not found.")
    if not user.is_active:
        raise ApiError(
            status_code=403,
            code="USER_INACTIVE",
            message="Inactive user cannot perform attendance actions.",
        )
    return user


def list_active_companies(db: Session) -> list[Company]:
    return list(
        db.scalars(select(Company).where(Company.is_active.is_(True)).order_by(Company.id.asc())).all()
    )


def list_active_employees(db: Session, company_id: int) -> list[User]:
    return list(
        db.scalars(
            select(User)
            .where(
                User.company_id == company_id,
                User.is_active.is_(True),
                User.role == UserRole.EMPLOYEE,
            )
            .order_by(User.id.asc())
        ).all()
    )


def list_company_managers(db: Session, company_id: int) -> list[User]:
    return list(
        db.scalars(
            select(User)
            .where(
                User.company_id == company_id,
                User.is_active.is_(True),
                User.role.in_((UserRole.MANAGER, UserRole.COMPANY_ADMIN)),
            )
            .order_by(User.id.asc())
        ).all()
    )


def list_events_for_user(
    db: Session,
    user_id: int,
    *,
    from_utc: datetime | None = None,
    to_utc: datetime | None = None,
) -> list[AttendanceEvent]:
    """Events for one user in ``[from_utc, to_utc)``.

    Rows come back ordered by timestamp then id, but callers must not rely on it: the
    timeline re-sorts everything it is given.
    """
    stmt = select(AttendanceEvent).where(AttendanceEvent.user_id == user_id)
    if from_utc is not None:
        stmt = stmt.where(AttendanceEvent.timestamp >= normalize_ts(from_utc))
    if to_utc is not None:
        stmt = stmt.where(AttendanceEvent.timestamp < normalize_ts(to_utc))
    stmt = stmt.order_by(AttendanceEvent.timestamp.asc(), AttendanceEvent.id.asc())
    return list(db.scalars(stmt).all())


def get_latest_event(
    db: Session,
    user_id: int,
    *,
    before_utc: datetime | None = None,
    until_utc: datetime | None = None,
) -> AttendanceEvent | None:
    """Latest event strictly before ``before_utc`` and at or before ``until_utc``."""
    stmt = select(AttendanceEvent).where(AttendanceEvent.user_id == user_id)
    if before_utc is not None:
        stmt = stmt.where(AttendanceEvent.timestamp < normalize_ts(before_utc))
    if until_utc is not None:
        stmt = stmt.where(AttendanceEvent.timestamp <= normalize_ts(until_utc))
    return db.scalar(
        stmt.order_by(AttendanceEvent.timestamp.desc(), AttendanceEvent.id.desc()).limit(1)
    )


def append_event(
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
) -> AttendanceEvent:
    event = AttendanceEvent(
        user_id=user_id,
        type=event_type,
        timestamp=normalize_ts(timestamp) if timestamp is not None else datetime.now(timezone.utc),
        lat=lat,
        lon=lon,
        accuracy_m=accuracy_m,
        notes=notes,
        qr_verified=qr_verified,
    )
    db.add(event)
    db.commit()
    db.refresh(event)
    return event


def list_company_alerts(
    db: Session,
    company_id: int,
    *,
    alert_types: tuple[AlertType, ...],
    from_utc: datetime,
    to_utc: datetime,
) -> list[Alert]:
    """Alerts of ``alert_types`` created in ``[from_utc, to_utc)``, newest first."""
    return list(
        db.scalars(
            select(Alert)
            .where(
                Alert.company_id == company_id,
                Alert.type.in_(alert_types),
                Alert.created_at >= normalize_ts(from_utc),
                Alert.created_at < normalize_ts(to_utc),
            )
            .order_by(Alert.created_at.desc(), Alert.id.desc())
        ).all()
    )
