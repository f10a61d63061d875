"""Distributed fixed-window rate limiting on top of the shared counter store.

The first hit in a window creates ``ratelimit:<scope>:<identifier>`` with a
count of 1 and a TTL equal to the window; later hits increment it
atomically. Bursts straddling a window boundary are accepted, this is not
a sliding window.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Final

from donorguard.core.settings import FailurePolicy, settings
from donorguard.services.store import CounterStore, CounterStoreError

logger = logging.getLogger(__name__)

KEY_PREFIX: Final[str] = "ratelimit"


@dataclass(frozen=True)
class RateLimitRule:
    """A named limit applied per identifier."""

    scope: str
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a single ``check`` call."""

    allowed: bool
    remaining: int
    reset_seconds: int
    # True when the store was unreachable and the failure policy decided.
    degraded: bool = False


# Route-level limits.
AUTH_RULE = RateLimitRule("auth", 10, 15 * 60)
OTP_REQUEST_RULE = RateLimitRule("otp_request", 5, 15 * 60)
OTP_RESEND_RULE = RateLimitRule("otp_resend", 3, 3 * 60)
OTP_VERIFY_RULE = RateLimitRule("otp_verify", 10, 15 * 60)
DAILY_EMAIL_RULE = RateLimitRule("daily_email", 100, 24 * 60 * 60)


def captcha_rule() -> RateLimitRule:
    return RateLimitRule(
        "captcha_ip",
        settings.captcha_rate_limit,
        settings.captcha_rate_window_seconds,
    )


def api_rule() -> RateLimitRule:
    return RateLimitRule("api", settings.api_rate_limit, settings.api_rate_window_seconds)


def rate_limit_key(scope: str, identifier: str) -> str:
    return f"{KEY_PREFIX}:{scope}:{identifier}"


class RateLimiter:
    """Fixed-window counter shared by every serving process.

    Store failures are resolved by ``failure_policy``: ``OPEN`` lets the
    request through (availability first), ``CLOSED`` rejects it.
    """

    def __init__(
        self,
        store: CounterStore,
        *,
        failure_policy: FailurePolicy = FailurePolicy.OPEN,
    ) -> None:
        self._store = store
        self.failure_policy = failure_policy

    async def check(
        self,
        scope: str,
        identifier: str,
        limit: int,
        window_seconds: int,
    ) -> RateLimitDecision:
        """Count one hit for ``identifier`` and decide whether it is allowed."""
        key = rate_limit_key(scope, identifier)
        try:
            count = await self._store.increment(key, ttl_seconds=window_seconds)
            if count == 1:
                reset_seconds = window_seconds
            else:
                reset_seconds = await self._store.ttl(key)
                if reset_seconds < 0:
                    # A counter without expiry would block forever; restart the window.
                    await self._store.set(key, count, window_seconds)
                    reset_seconds = window_seconds
        except CounterStoreError as exc:
            return self._degraded(scope, identifier, limit, window_seconds, exc)

        if count > limit:
            logger.info(
                "Rate limit exceeded scope=%s identifier=%s count=%d limit=%d",
                scope,
                identifier,
                count,
                limit,
            )
            return RateLimitDecision(allowed=False, remaining=0, reset_seconds=reset_seconds)
        return RateLimitDecision(
            allowed=True,
            remaining=limit - count,
            reset_seconds=reset_seconds,
        )

    async def check_rule(self, rule: RateLimitRule, identifier: str) -> RateLimitDecision:
        return await self.check(rule.scope, identifier, rule.limit, rule.window_seconds)

    async def reset(self, scope: str, identifier: str) -> None:
        """Forget the current window for ``identifier``."""
        await self._store.delete(rate_limit_key(scope, identifier))

    def _degraded(
        self,
        scope: str,
        identifier: str,
        limit: int,
        window_seconds: int,
        exc: Exception,
    ) -> RateLimitDecision:
        if self.failure_policy is FailurePolicy.OPEN:
            logger.warning(
                "Rate limit store unavailable, failing open scope=%s identifier=%s: %s",
                scope,
                identifier,
                exc,
            )
            return RateLimitDecision(
                allowed=True, remaining=limit, reset_seconds=0, degraded=True
            )
        logger.warning(
            "Rate limit store unavailable, failing closed scope=%s identifier=%s: %s",
            scope,
            identifier,
            exc,
        )
        return RateLimitDecision(
            allowed=False, remaining=0, reset_seconds=window_seconds, degraded=True
        )
