import asyncio
from contextlib import suppress
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from workclock.db import SessionLocal, engine
from workclock.errors import ApiError, error_response
from workclock.logging_utils import setup_json_logging
from workclock.routers import admin, attendance
from workclock.settings import get_cors_origins, get_settings
from workclock.services.scheduler import JobScheduler, build_default_scheduler
from workclock.services.schema_guard import SchemaGuardResult, verify_runtime_schema

settings = get_settings()
setup_json_logging(settings.log_level)
logger = logging.getLogger("workclock.request")
scheduler_logger = logging.getLogger("workclock.scheduler")


app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor = getattr(request.state, "actor", "system")
    request.state.actor_id = getattr(request.state, "actor_id", "system")

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": round((time.perf_counter() - start) * 1000, 2),
                "actor": getattr(request.state, "actor", "system"),
                "actor_id": getattr(request.state, "actor_id", "system"),
                "user_id": getattr(request.state, "user_id", None),
                "event_id": getattr(request.state, "event_id", None),
                "event_type": getattr(request.state, "event_type", None),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(request, status_code=exc.status_code, code=exc.code, message=exc.message)


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    code_map = {
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
    }
    return error_response(
        request,
        status_code=exc.status_code,
        code=code_map.get(exc.status_code, "HTTP_ERROR"),
        message=str(exc.detail) if exc.detail else "Request failed.",
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message=str(exc.errors()),
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


app.include_router(attendance.router)
app.include_router(admin.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        scheduler_logger.info("schema_guard_ok", extra=result.to_dict())
        return

    scheduler_logger.error("schema_guard_failed", extra=result.to_dict())
    if settings.schema_guard_strict:
        raise RuntimeError(f"Runtime schema guard failed: {'; '.join(result.issues)}")


@app.on_event("startup")
async def start_job_scheduler() -> None:
    if not settings.scheduler_enabled:
        return
    if getattr(app.state, "job_scheduler_task", None) is not None:
        return

    job_scheduler = build_default_scheduler(SessionLocal, settings)
    stop_event = asyncio.Event()
    app.state.job_scheduler = job_scheduler
    app.state.job_scheduler_stop_event = stop_event
    app.state.job_scheduler_task = asyncio.create_task(job_scheduler.run_forever(stop_event))
    scheduler_logger.info(
        "scheduler_started",
        extra={
            "tick_seconds": settings.scheduler_tick_seconds,
            "jobs": [item["name"] for item in job_scheduler.get_jobs_status()],
        },
    )


@app.on_event("shutdown")
async def stop_job_scheduler() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "job_scheduler_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "job_scheduler_task", None)
    job_scheduler: JobScheduler | None = getattr(app.state, "job_scheduler", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    if job_scheduler is not None:
        await job_scheduler.shutdown()
    app.state.job_scheduler_stop_event = None
    app.state.job_scheduler_task = None
    app.state.job_scheduler = None


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    job_scheduler: JobScheduler | None = getattr(app.state, "job_scheduler", None)
    return {
        "status": "ok",
        "schema_guard": schema_guard_result.to_dict(),
        "scheduler": {
            "running": job_scheduler is not None,
            "jobs": job_scheduler.get_jobs_status() if job_scheduler is not None else [],
        },
    }
