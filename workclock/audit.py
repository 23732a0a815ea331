from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete
from sqlalchemy.orm import Session

from workclock.models import AuditActorType, AuditLog

logger = logging.getLogger("workclock.audit")


def log_audit(
    db: Session,
    *,
    actor_type: AuditActorType,
    actor_id: str,
    action: str,
    success: bool,
    entity_type: str | None = None,
    entity_id: str | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> None:
    db.add(
        AuditLog(
            ts_utc=datetime.now(timezone.utc),
            actor_type=actor_type,
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            success=success,
            details=details or {},
        )
    )
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "audit_log_write_failed",
            extra={
                "request_id": request_id,
                "action": action,
                "actor_type": actor_type.value,
                "actor_id": actor_id,
            },
        )
        return

    logger.info(
        "audit_event",
        extra={
            "request_id": request_id,
            "action": action,
            "actor_type": actor_type.value,
            "actor_id": actor_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "success": success,
            "details": details or {},
        },
    )


def purge_audit_logs(db: Session, *, older_than_days: int, now_utc: datetime | None = None) -> int:
    reference = now_utc or datetime.now(timezone.utc)
    cutoff = reference - timedelta(days=max(1, older_than_days))
    result = db.execute(delete(AuditLog).where(AuditLog.ts_utc < cutoff))
    db.commit()
    deleted = int(result.rowcount or 0)
    logger.info("audit_logs_purged", extra={"deleted": deleted, "cutoff_utc": cutoff.isoformat()})
    return deleted
