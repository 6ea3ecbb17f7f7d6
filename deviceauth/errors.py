from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        headers: dict[str, str] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.headers = headers


class RateLimitExceeded(ApiError):
    def __init__(
        self,
        message: str = "Too many device authorization requests. Please try again later.",
        *,
        retry_after_seconds: int | None = None,
    ):
        headers = {"Retry-After": str(retry_after_seconds)} if retry_after_seconds else None
        super().__init__(status_code=429, code="RATE_LIMIT_EXCEEDED", message=message, headers=headers)
        self.retry_after_seconds = retry_after_seconds


class InvalidOrExpiredCode(ApiError):
    def __init__(self, message: str = "User code is invalid or expired."):
        super().__init__(status_code=400, code="INVALID_OR_EXPIRED_CODE", message=message)


class Unauthorized(ApiError):
    def __init__(self, message: str = "Token is invalid."):
        super().__init__(status_code=401, code="INVALID_TOKEN", message=message)


class NotFound(ApiError):
    def __init__(self, message: str = "Resource not found."):
        super().__init__(status_code=404, code="NOT_FOUND", message=message)


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload, headers=headers)
