"""Translate usage-gate errors into HTTP responses."""
from datetime import datetime
from typing import Optional

from fastapi import HTTPException, status
from fastapi.responses import JSONResponse

from apptrack.core.errors import (
    AIGenerationError,
    AllowanceExhausted,
    RateLimitExceeded,
    SessionConversionError,
    StoreUnavailable,
    UsageGateError,
    ValidationError,
)
from apptrack.services.rate_limiter import RateLimitResult

CONVERSION_STATUS = {
    "session_not_found": status.HTTP_404_NOT_FOUND,
    "already_converted": status.HTTP_409_CONFLICT,
    "decryption_failure": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def rate_limit_headers(result: RateLimitResult, now: Optional[datetime] = None) -> dict:
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
    }
    if result.reset_at is not None:
        headers["X-RateLimit-Reset"] = result.reset_at.isoformat() + "Z"
        if not result.allowed:
            headers["Retry-After"] = str(result.retry_after_seconds(now))
    return headers


def rate_limited_response(exc: RateLimitExceeded) -> JSONResponse:
    result = exc.result
    content = {
        "allowed": False,
        "remaining": result.remaining,
        "limit": result.limit,
        "resetAt": result.reset_at.isoformat() + "Z" if result.reset_at else None,
        "message": exc.message,
    }
    if exc.used_count is not None:
        content["usedCount"] = exc.used_count
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=content,
        headers=rate_limit_headers(result),
    )


def http_error(exc: UsageGateError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, SessionConversionError):
        return HTTPException(
            status_code=CONVERSION_STATUS.get(exc.code, status.HTTP_400_BAD_REQUEST),
            detail={"error": exc.code, "message": str(exc)},
        )
    if isinstance(exc, AllowanceExhausted):
        return HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "upgrade_required", "message": str(exc), **exc.allowance.to_dict()},
        )
    if isinstance(exc, AIGenerationError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    if isinstance(exc, StoreUnavailable):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database temporarily unavailable. Please try again in a moment.",
        )
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
