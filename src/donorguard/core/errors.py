"""Stable machine error codes and their HTTP translation.

Every failure surfaced by the security layer carries one of these codes;
the human-readable message is separate and may change freely.
"""

from __future__ import annotations

from enum import Enum

from fastapi import status
from fastapi.responses import JSONResponse


class ErrorCode(str, Enum):
    """Canonical error taxonomy shared by all components."""

    MISSING_TOKEN = "MISSING_TOKEN"
    INVALID_FORMAT = "INVALID_FORMAT"
    RATE_LIMITED = "RATE_LIMITED"
    TOKEN_REUSED = "TOKEN_REUSED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    INVALID_TOKEN = "INVALID_TOKEN"
    SERVICE_ERROR = "SERVICE_ERROR"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    OTP_EXPIRED = "OTP_EXPIRED"
    INVALID_OTP = "INVALID_OTP"
    TOO_MANY_FAILED_ATTEMPTS = "TOO_MANY_FAILED_ATTEMPTS"
    COOLDOWN_ACTIVE = "COOLDOWN_ACTIVE"
    ACCOUNT_EXISTS = "ACCOUNT_EXISTS"
    INVALID_EMAIL = "INVALID_EMAIL"
    DISPOSABLE_EMAIL = "DISPOSABLE_EMAIL"
    IP_BLOCKED = "IP_BLOCKED"
    HONEYPOT_TRIGGERED = "HONEYPOT_TRIGGERED"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    FREQUENCY_LIMITED = "FREQUENCY_LIMITED"
    OTP_ATTEMPTS_EXCEEDED = "OTP_ATTEMPTS_EXCEEDED"


_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.MISSING_TOKEN: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_FORMAT: status.HTTP_400_BAD_REQUEST,
    ErrorCode.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorCode.TOKEN_REUSED: status.HTTP_400_BAD_REQUEST,
    ErrorCode.TOKEN_EXPIRED: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_TOKEN: status.HTTP_400_BAD_REQUEST,
    ErrorCode.SERVICE_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCode.VALIDATION_FAILED: status.HTTP_400_BAD_REQUEST,
    ErrorCode.OTP_EXPIRED: status.HTTP_404_NOT_FOUND,
    ErrorCode.INVALID_OTP: status.HTTP_400_BAD_REQUEST,
    ErrorCode.TOO_MANY_FAILED_ATTEMPTS: status.HTTP_400_BAD_REQUEST,
    ErrorCode.COOLDOWN_ACTIVE: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorCode.ACCOUNT_EXISTS: status.HTTP_409_CONFLICT,
    ErrorCode.INVALID_EMAIL: status.HTTP_400_BAD_REQUEST,
    ErrorCode.DISPOSABLE_EMAIL: status.HTTP_400_BAD_REQUEST,
    ErrorCode.IP_BLOCKED: status.HTTP_403_FORBIDDEN,
    ErrorCode.HONEYPOT_TRIGGERED: status.HTTP_400_BAD_REQUEST,
    ErrorCode.SUSPICIOUS_ACTIVITY: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorCode.FREQUENCY_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    ErrorCode.OTP_ATTEMPTS_EXCEEDED: status.HTTP_429_TOO_MANY_REQUESTS,
}

DEFAULT_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.MISSING_TOKEN: "Security verification is required",
    ErrorCode.INVALID_FORMAT: "Invalid security verification format",
    ErrorCode.RATE_LIMITED: "Too many attempts. Please wait before trying again.",
    ErrorCode.TOKEN_REUSED: (
        "Security verification has expired. Please refresh the page and try again."
    ),
    ErrorCode.TOKEN_EXPIRED: (
        "Security verification has expired. Please refresh the page and try again."
    ),
    ErrorCode.INVALID_TOKEN: (
        "Invalid security verification. Please refresh the page and try again."
    ),
    ErrorCode.SERVICE_ERROR: (
        "Security verification service is temporarily unavailable. Please try again later."
    ),
    ErrorCode.VALIDATION_FAILED: "Security verification failed. Please try again.",
    ErrorCode.OTP_EXPIRED: "OTP not found or has expired. Please request a new one.",
    ErrorCode.INVALID_OTP: "Invalid OTP code",
    ErrorCode.TOO_MANY_FAILED_ATTEMPTS: (
        "Too many failed attempts. Please request a new OTP."
    ),
    ErrorCode.COOLDOWN_ACTIVE: "OTP already sent. Please wait before requesting another.",
    ErrorCode.ACCOUNT_EXISTS: "An account with this email already exists",
    ErrorCode.INVALID_EMAIL: "Invalid email address",
    ErrorCode.DISPOSABLE_EMAIL: "Disposable email addresses are not allowed",
    ErrorCode.IP_BLOCKED: (
        "Your IP address has been temporarily blocked due to suspicious activity."
    ),
    ErrorCode.HONEYPOT_TRIGGERED: "Invalid request",
    ErrorCode.SUSPICIOUS_ACTIVITY: "Suspicious activity detected. Access temporarily blocked.",
    ErrorCode.FREQUENCY_LIMITED: (
        "Please wait before requesting another code for this address."
    ),
    ErrorCode.OTP_ATTEMPTS_EXCEEDED: (
        "Too many failed OTP attempts. Verification is temporarily locked."
    ),
}


def status_for(code: ErrorCode) -> int:
    """Return the HTTP status a handler should use for ``code``."""
    return _STATUS_BY_CODE.get(code, status.HTTP_500_INTERNAL_SERVER_ERROR)


def error_response(
    code: ErrorCode,
    message: str | None = None,
    *,
    retry_after: int | None = None,
    extra: dict[str, object] | None = None,
) -> JSONResponse:
    """Build the JSON error envelope shared by every endpoint."""
    content: dict[str, object] = {
        "success": False,
        "code": code.value,
        "message": message or DEFAULT_MESSAGES[code],
    }
    headers: dict[str, str] = {}
    if retry_after is not None:
        retry_after = max(0, int(retry_after))
        content["retry_after"] = retry_after
        headers["Retry-After"] = str(retry_after)
    if extra:
        content.update(extra)
    return JSONResponse(status_code=status_for(code), content=content, headers=headers)
