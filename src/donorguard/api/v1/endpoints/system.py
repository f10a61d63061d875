# src/donorguard/api/v1/endpoints/system.py
"""System and transparency endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from donorguard.core.settings import settings
from donorguard.services.rate_limit import (
    AUTH_RULE,
    DAILY_EMAIL_RULE,
    OTP_REQUEST_RULE,
    OTP_RESEND_RULE,
    OTP_VERIFY_RULE,
    api_rule,
    captcha_rule,
)

router = APIRouter(prefix="/system", tags=["system", "transparency"])


@router.get("/config")
async def get_public_config() -> dict[str, Any]:
    """Return a sanitized snapshot of public runtime configuration.

    Excludes secrets and connection strings.
    """
    rules = [
        AUTH_RULE,
        OTP_REQUEST_RULE,
        OTP_RESEND_RULE,
        OTP_VERIFY_RULE,
        DAILY_EMAIL_RULE,
        captcha_rule(),
        api_rule(),
    ]
    return {
        "app": {
            "name": settings.app_name,
            "version": settings.app_version,
            "debug": settings.debug,
        },
        "otp": {
            "ttl_seconds": settings.otp_ttl_seconds,
            "cooldown_seconds": settings.otp_cooldown_seconds,
            "max_attempts": settings.otp_max_attempts,
            "length": settings.otp_length,
        },
        "captcha": {
            "timeout_seconds": settings.captcha_timeout_seconds,
            "failure_policy": settings.captcha_failure_policy.value,
            "replay_ttl_seconds": settings.replay_ttl_seconds,
        },
        "guards": {
            "subject_min_interval_seconds": settings.subject_min_interval_seconds,
            "failure_lockout_threshold": settings.otp_failure_lockout_threshold,
            "failure_lockout_seconds": settings.otp_failure_lockout_seconds,
            "max_requests_per_hour": settings.pattern_max_requests_per_hour,
            "max_distinct_subjects": settings.pattern_max_distinct_subjects,
            "max_user_agents": settings.pattern_max_user_agents,
        },
        "rate_limits": {
            "failure_policy": settings.rate_limit_failure_policy.value,
            "rules": {
                rule.scope: {"limit": rule.limit, "window_seconds": rule.window_seconds}
                for rule in rules
            },
        },
    }
