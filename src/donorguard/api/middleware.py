# src/donorguard/api/middleware.py
"""Coarse per-IP rate limiting applied to every API request."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from donorguard.api.v1.dependencies import get_client_ip
from donorguard.core.errors import ErrorCode, error_response
from donorguard.core.settings import settings
from donorguard.services.rate_limit import RateLimiter, RateLimitRule, api_rule
from donorguard.services.store import get_counter_store

EXEMPT_PATHS = frozenset({"/", "/health", "/docs", "/redoc", "/openapi.json"})


class ApiRateLimitMiddleware(BaseHTTPMiddleware):
    """Fixed-window limit on all ``/api`` traffic keyed by client IP.

    The store is resolved per request so a replaced store takes effect
    without rebuilding the app.
    """

    def __init__(self, app, rule: RateLimitRule | None = None) -> None:  # type: ignore[no-untyped-def]
        super().__init__(app)
        self.rule = rule or api_rule()

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        if request.url.path in EXEMPT_PATHS or request.method == "OPTIONS":
            return await call_next(request)

        limiter = RateLimiter(get_counter_store(), failure_policy=settings.rate_limit_failure_policy)
        decision = await limiter.check_rule(self.rule, get_client_ip(request))
        if not decision.allowed:
            return error_response(
                ErrorCode.RATE_LIMITED,
                "Too many requests from this IP, please try again later.",
                retry_after=decision.reset_seconds or self.rule.window_seconds,
            )

        response = await call_next(request)
        if not decision.degraded:
            response.headers["X-RateLimit-Limit"] = str(self.rule.limit)
            response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        return response
