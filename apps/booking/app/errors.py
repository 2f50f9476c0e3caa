from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

from barber_otp import DispatchError, InvalidPhoneFormat, OTPRateLimitError

from . import metrics
from .middleware_request_id import request_id_of

logger = logging.getLogger("booking.errors")


class AppError(Exception):
    def __init__(self, status_code: int, code: str, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details or {}


def error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: Optional[dict[str, Any]] = None,
    headers: Optional[dict[str, str]] = None,
) -> JSONResponse:
    error: dict[str, Any] = {"code": code, "message": message, "details": details or {}}
    req_id = request_id_of(request)
    if req_id:
        error["request_id"] = req_id
    return JSONResponse(status_code=status_code, content={"error": error}, headers=headers)


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return error_response(request, exc.status_code, exc.code, exc.message, exc.details)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    if isinstance(detail, dict):
        code = str(detail.get("code") or "http_error")
        message = str(detail.get("message") or code)
    else:
        code = "http_error"
        message = str(detail)
    return error_response(request, exc.status_code, code, message, headers=getattr(exc, "headers", None))


async def invalid_phone_handler(request: Request, exc: InvalidPhoneFormat) -> JSONResponse:
    metrics.OTP_EVENTS.labels(request.url.path, "invalid_phone").inc()
    return error_response(request, 400, "invalid_phone", str(exc))


async def rate_limit_handler(request: Request, exc: OTPRateLimitError) -> JSONResponse:
    metrics.OTP_EVENTS.labels(request.url.path, "throttled").inc()
    headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
    return error_response(
        request,
        429,
        "otp_rate_limited",
        str(exc),
        {"retry_after": exc.retry_after},
        headers=headers,
    )


async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    metrics.OTP_EVENTS.labels(request.url.path, "dispatch_failed").inc()
    logger.error("SMS dispatch failed on %s: %s", request.url.path, exc)
    return error_response(
        request,
        502,
        "sms_dispatch_failed",
        "Failed to send SMS",
        {"retryable": exc.retryable, "provider_code": exc.code},
    )


async def store_unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    metrics.OTP_EVENTS.labels(request.url.path, "store_unavailable").inc()
    logger.error("OTP store unavailable on %s: %s", request.url.path, exc)
    return error_response(
        request,
        503,
        "store_unavailable",
        "Verification service is temporarily unavailable",
        headers={"Retry-After": "1"},
    )
