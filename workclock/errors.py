from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class NotFoundError(ApiError):
    """Unknown company, user or job: a client error, never retried."""

    def __init__(self, code: str, message: str):
        super().__init__(status_code=404, code=code, message=message)


class InvalidTransitionError(ApiError):
    def __init__(self, *, current_status: str, event_type: str):
        super().__init__(
            status_code=409,
            code="INVALID_TRANSITION",
            message=f"{event_type} is not allowed while status is {current_status}.",
        )
        self.current_status = current_status
        self.event_type = event_type


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    return str(request_id) if request_id else "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "code": code,
                "message": message,
                "request_id": get_request_id(request),
            }
        },
    )
