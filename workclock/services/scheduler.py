"""In-process interval scheduler for background attendance jobs.

A :class:`JobScheduler` lives on ``app.state`` for the lifetime of the process. Its
``run_forever`` loop ticks on the event loop; blocking database work always runs through
``asyncio.to_thread``. A job never overlaps itself: a tick that finds the previous run
still going is skipped and logged, not queued.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
from collections.abc import Callable, Iterable
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any

from sqlalchemy import text
from sqlalchemy.orm import Session

from workclock.audit import purge_audit_logs
from workclock.errors import ApiError
from workclock.settings import Settings, get_settings
from workclock.services.event_store import attendance_timezone, list_active_companies
from workclock.services.overtime_alerts import SweepResult, check_overtime_warnings, send_weekly_overtime_summary
from workclock.services.timeline import normalize_ts

logger = logging.getLogger("workclock.scheduler")

SessionFactory = Callable[[], Session]
JobFunc = Callable[[datetime], Any]

OVERTIME_CHECK_JOB = "overtime-check"
AUDIT_CLEANUP_JOB = "audit-cleanup"
HEALTH_CHECK_JOB = "health-check"
WEEKLY_SUMMARY_JOB = "weekly-summary"


@dataclass(frozen=True, slots=True)
class ActiveWindow:
    weekdays: frozenset[int]
    start_hour: int
    end_hour: int

    def contains(self, now_utc: datetime, tz: tzinfo) -> bool:
        local_now = normalize_ts(now_utc).astimezone(tz)
        return local_now.weekday() in self.weekdays and self.start_hour <= local_now.hour <= self.end_hour

    def to_dict(self) -> dict[str, Any]:
        return {
            "weekdays": sorted(self.weekdays),
            "start_hour": self.start_hour,
            "end_hour": self.end_hour,
        }


WORKDAYS = frozenset({0, 1, 2, 3, 4})


@dataclass(slots=True)
class JobDescriptor:
    name: str
    interval_seconds: int
    func: JobFunc
    enabled: bool = True
    running: bool = False
    last_run_utc: datetime | None = None
    last_duration_ms: float | None = None
    last_error: str | None = None
    run_count: int = 0
    skipped_count: int = 0
    active_window: ActiveWindow | None = None
    next_run_utc: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "enabled": self.enabled,
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "last_run_utc": self.last_run_utc,
            "last_duration_ms": self.last_duration_ms,
            "last_error": self.last_error,
            "run_count": self.run_count,
            "skipped_count": self.skipped_count,
            "next_run_utc": self.next_run_utc,
            "active_window": self.active_window.to_dict() if self.active_window is not None else None,
        }


class JobScheduler:
    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        tick_seconds: int = 15,
        tz: tzinfo | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._tick_seconds = max(1, int(tick_seconds))
        self._tz = tz or timezone.utc
        self._jobs: dict[str, JobDescriptor] = {}
        self._tasks: set[asyncio.Task[bool]] = set()
        self._company_locks: dict[int, threading.Lock] = {}
        self._company_locks_guard = threading.Lock()

    def register(
        self,
        name: str,
        interval_seconds: int,
        func: JobFunc,
        active_window: ActiveWindow | None = None,
        *,
        enabled: bool = True,
    ) -> JobDescriptor:
        if name in self._jobs:
            raise ValueError(f"Job {name!r} is already registered.")
        job = JobDescriptor(
            name=name,
            interval_seconds=max(1, int(interval_seconds)),
            func=func,
            enabled=enabled,
            active_window=active_window,
        )
        self._jobs[name] = job
        return job

    def get_job(self, name: str) -> JobDescriptor:
        job = self._jobs.get(name)
        if job is None:
            raise ApiError(status_code=404, code="JOB_NOT_FOUND", message=f"Scheduler job {name!r} not found.")
        return job

    def start_job(self, name: str) -> bool:
        job = self.get_job(name)
        if job.enabled:
            return False
        job.enabled = True
        job.next_run_utc = None
        logger.info("scheduler_job_started", extra={"job": name})
        return True

    def stop_job(self, name: str) -> bool:
        job = self.get_job(name)
        if not job.enabled:
            return False
        job.enabled = False
        logger.info("scheduler_job_stopped", extra={"job": name})
        return True

    def get_jobs_status(self) -> list[dict[str, Any]]:
        return [job.to_dict() for job in self._jobs.values()]

    def _is_due(self, job: JobDescriptor, now_utc: datetime) -> bool:
        if not job.enabled:
            return False
        if job.next_run_utc is not None and now_utc < job.next_run_utc:
            return False
        if job.active_window is not None and not job.active_window.contains(now_utc, self._tz):
            return False
        return True

    async def _run_job(self, job: JobDescriptor, now_utc: datetime) -> bool:
        if job.running:
            job.skipped_count += 1
            logger.info("scheduler_job_overlap_skipped", extra={"job": job.name})
            return False

        job.running = True
        started = time.perf_counter()
        try:
            if inspect.iscoroutinefunction(job.func):
                await job.func(now_utc)
            else:
                await asyncio.to_thread(job.func, now_utc)
        except Exception as exc:
            job.last_error = str(exc)[:500]
            logger.exception("scheduler_job_failed", extra={"job": job.name})
        else:
            job.last_error = None
        finally:
            job.running = False
            job.run_count += 1
            job.last_run_utc = now_utc
            job.last_duration_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "scheduler_job_completed",
            extra={
                "job": job.name,
                "duration_ms": job.last_duration_ms,
                "success": job.last_error is None,
            },
        )
        return True

    async def run_job_now(self, name: str, now_utc: datetime | None = None) -> bool:
        job = self.get_job(name)
        return await self._run_job(job, normalize_ts(now_utc or datetime.now(timezone.utc)))

    async def tick(self, now_utc: datetime | None = None) -> list[str]:
        """Launch every due job in the background and return the names launched."""
        reference = normalize_ts(now_utc or datetime.now(timezone.utc))
        launched: list[str] = []
        for job in self._jobs.values():
            if not self._is_due(job, reference):
                continue
            job.next_run_utc = reference + timedelta(seconds=job.interval_seconds)
            if job.running:
                job.skipped_count += 1
                logger.info("scheduler_job_overlap_skipped", extra={"job": job.name})
                continue
            task = asyncio.create_task(self._run_job(job, reference))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            launched.append(job.name)
        return launched

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("scheduler_tick_failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._tick_seconds)
            except asyncio.TimeoutError:
                continue

    async def shutdown(self) -> None:
        for job in self._jobs.values():
            job.enabled = False
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        for task in pending:
            with suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        logger.info("scheduler_shutdown", extra={"cancelled_tasks": len(pending)})

    def _company_lock(self, company_id: int) -> threading.Lock:
        with self._company_locks_guard:
            lock = self._company_locks.get(company_id)
            if lock is None:
                lock = threading.Lock()
                self._company_locks[company_id] = lock
            return lock

    def _active_company_ids(self) -> list[int]:
        with self._session_factory() as db:
            return [company.id for company in list_active_companies(db)]

    def sweep_company(self, company_id: int, now_utc: datetime) -> SweepResult | None:
        """Run the overtime alert sweep for one company, or return None if it is already running."""
        lock = self._company_lock(company_id)
        if not lock.acquire(blocking=False):
            logger.info("overtime_sweep_company_skipped", extra={"company_id": company_id})
            return None
        try:
            with self._session_factory() as db:
                return check_overtime_warnings(db, company_id, now_utc)
        finally:
            lock.release()

    def _sweep_companies(
        self,
        company_ids: Iterable[int],
        now_utc: datetime,
        *,
        raise_errors: bool,
    ) -> dict[str, Any]:
        results: list[dict[str, Any]] = []
        skipped: list[int] = []
        failed: list[int] = []
        for company_id in company_ids:
            try:
                result = self.sweep_company(company_id, now_utc)
            except Exception:
                if raise_errors:
                    raise
                logger.exception("overtime_sweep_company_failed", extra={"company_id": company_id})
                failed.append(company_id)
                continue
            if result is None:
                skipped.append(company_id)
            else:
                results.append(result.to_dict())
        return {
            "companies": results,
            "skipped_companies": skipped,
            "failed_companies": failed,
            "alerts_created": sum(item["alerts_created"] for item in results),
        }

    def run_overtime_sweep_now(
        self,
        company_id: int | None = None,
        now_utc: datetime | None = None,
    ) -> dict[str, Any]:
        reference = normalize_ts(now_utc or datetime.now(timezone.utc))
        if company_id is not None:
            return self._sweep_companies([company_id], reference, raise_errors=True)
        return self._sweep_companies(self._active_company_ids(), reference, raise_errors=False)

    async def overtime_check(self, now_utc: datetime) -> dict[str, Any]:
        company_ids = await asyncio.to_thread(self._active_company_ids)
        outcomes = await asyncio.gather(
            *(
                asyncio.to_thread(self._sweep_companies, [company_id], now_utc, raise_errors=False)
                for company_id in company_ids
            )
        )
        summary: dict[str, Any] = {
            "companies": [],
            "skipped_companies": [],
            "failed_companies": [],
            "alerts_created": 0,
        }
        for outcome in outcomes:
            summary["companies"].extend(outcome["companies"])
            summary["skipped_companies"].extend(outcome["skipped_companies"])
            summary["failed_companies"].extend(outcome["failed_companies"])
            summary["alerts_created"] += outcome["alerts_created"]
        logger.info(
            "overtime_check_completed",
            extra={
                "companies": len(company_ids),
                "alerts_created": summary["alerts_created"],
                "skipped_companies": summary["skipped_companies"],
                "failed_companies": summary["failed_companies"],
            },
        )
        return summary

    def audit_cleanup(self, now_utc: datetime, *, retention_days: int) -> int:
        with self._session_factory() as db:
            return purge_audit_logs(db, older_than_days=retention_days, now_utc=now_utc)

    def health_check(self, now_utc: datetime) -> bool:
        with self._session_factory() as db:
            db.execute(text("SELECT 1"))
        logger.info("scheduler_health_check_ok", extra={"checked_at": now_utc.isoformat()})
        return True

    def weekly_summary(self, now_utc: datetime) -> int:
        created = 0
        for company_id in self._active_company_ids():
            try:
                with self._session_factory() as db:
                    created += send_weekly_overtime_summary(db, company_id, now_utc)
            except Exception:
                logger.exception("weekly_summary_company_failed", extra={"company_id": company_id})
        return created


def build_default_scheduler(session_factory: SessionFactory, settings: Settings | None = None) -> JobScheduler:
    resolved = settings or get_settings()
    scheduler = JobScheduler(
        session_factory,
        tick_seconds=resolved.scheduler_tick_seconds,
        tz=attendance_timezone(),
    )
    scheduler.register(
        OVERTIME_CHECK_JOB,
        resolved.overtime_check_interval_seconds,
        scheduler.overtime_check,
        active_window=ActiveWindow(
            weekdays=WORKDAYS,
            start_hour=resolved.overtime_check_window_start_hour,
            end_hour=resolved.overtime_check_window_end_hour,
        ),
    )
    retention_days = resolved.audit_log_retention_days
    scheduler.register(
        AUDIT_CLEANUP_JOB,
        resolved.audit_cleanup_interval_seconds,
        lambda now_utc: scheduler.audit_cleanup(now_utc, retention_days=retention_days),
    )
    scheduler.register(HEALTH_CHECK_JOB, resolved.health_check_interval_seconds, scheduler.health_check)
    scheduler.register(WEEKLY_SUMMARY_JOB, resolved.weekly_summary_interval_seconds, scheduler.weekly_summary)
    return scheduler
