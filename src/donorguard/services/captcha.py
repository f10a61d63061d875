"""Bot-verification (CAPTCHA) token validation.

Validation order matters:

1. reject missing or malformed tokens without touching the store;
2. rate limit per client IP;
3. refuse tokens whose digest was already consumed;
4. ask the provider, bounded by a timeout;
5. mark the digest consumed only after the provider accepted it.

A transport failure talking to the provider denies the request unless the
verifier was explicitly configured with ``FailurePolicy.OPEN``. This is the
opposite of the rate limiter's default, on purpose: the rate limiter guards
availability, this guards identity.

Between steps 3 and 5 two concurrent submissions of the same token can both
pass the replay check before either marks it used.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from donorguard.core.errors import ErrorCode
from donorguard.core.settings import FailurePolicy, settings
from donorguard.services.abuse import AbuseCategory, AbuseSignalLog
from donorguard.services.rate_limit import RateLimiter, RateLimitRule, captcha_rule
from donorguard.services.replay import ReplayGuard
from donorguard.services.store import CounterStoreError

logger = logging.getLogger(__name__)

# Checked in order; the first provider code present wins.
PROVIDER_ERROR_MAP: tuple[tuple[str, ErrorCode], ...] = (
    ("timeout-or-duplicate", ErrorCode.TOKEN_EXPIRED),
    ("invalid-input-response", ErrorCode.INVALID_TOKEN),
    ("invalid-input-secret", ErrorCode.SERVICE_ERROR),
    ("missing-input-secret", ErrorCode.SERVICE_ERROR),
)


def map_provider_errors(error_codes: tuple[str, ...] | list[str]) -> ErrorCode:
    """Translate provider error codes into the canonical taxonomy."""
    for provider_code, error_code in PROVIDER_ERROR_MAP:
        if provider_code in error_codes:
            return error_code
    return ErrorCode.VALIDATION_FAILED


@dataclass(frozen=True)
class ProviderVerdict:
    """What the external verifier said, or that it could not be reached."""

    success: bool
    error_codes: tuple[str, ...] = ()
    transport_error: bool = False
    hostname: str | None = None
    action: str | None = None


class TurnstileClient:
    """Minimal async client for a Turnstile-compatible ``siteverify`` endpoint."""

    def __init__(
        self,
        *,
        secret: str,
        verify_url: str,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.secret = secret
        self.verify_url = verify_url
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(self.timeout_seconds),
                    transport=self._transport,
                )
        return self._client

    async def siteverify(self, token: str, remote_ip: str | None = None) -> ProviderVerdict:
        """POST the token to the provider; never raises."""
        form: dict[str, str] = {"secret": self.secret, "response": token}
        if remote_ip:
            form["remoteip"] = remote_ip

        client = await self._ensure_client()
        try:
            response = await client.post(self.verify_url, data=form)
        except httpx.HTTPError as exc:
            logger.error("Bot verification network error: %s", exc)
            return ProviderVerdict(success=False, error_codes=("network-error",), transport_error=True)

        if response.status_code >= httpx.codes.INTERNAL_SERVER_ERROR:
            logger.error("Bot verification provider responded with %s", response.status_code)
            return ProviderVerdict(
                success=False,
                error_codes=(f"http-{response.status_code}",),
                transport_error=True,
            )

        try:
            payload: dict[str, Any] = response.json()
        except ValueError:
            logger.error("Bot verification provider returned a non-JSON body")
            return ProviderVerdict(
                success=False, error_codes=("invalid-response",), transport_error=True
            )

        codes = payload.get("error-codes") or []
        if not isinstance(codes, list):
            codes = [str(codes)]
        return ProviderVerdict(
            success=payload.get("success") is True,
            error_codes=tuple(str(code) for code in codes),
            hostname=payload.get("hostname"),
            action=payload.get("action"),
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


@dataclass(frozen=True)
class CaptchaResult:
    """Outcome of ``CaptchaVerifier.validate``."""

    success: bool
    error_code: ErrorCode | None = None
    retry_after: int | None = None
    provider_codes: tuple[str, ...] = field(default_factory=tuple)
    # True when a dependency failed and the failure policy decided.
    degraded: bool = False


class CaptchaVerifier:
    """Composes rate limiting, replay protection and the provider call."""

    def __init__(
        self,
        provider: TurnstileClient,
        rate_limiter: RateLimiter,
        replay_guard: ReplayGuard,
        *,
        abuse_log: AbuseSignalLog | None = None,
        failure_policy: FailurePolicy = FailurePolicy.CLOSED,
        rate_rule: RateLimitRule | None = None,
        min_token_length: int | None = None,
        max_token_length: int | None = None,
    ) -> None:
        self._provider = provider
        self._rate_limiter = rate_limiter
        self._replay_guard = replay_guard
        self._abuse_log = abuse_log
        self.failure_policy = failure_policy
        self.rate_rule = rate_rule or captcha_rule()
        self.min_token_length = min_token_length or settings.captcha_min_token_length
        self.max_token_length = max_token_length or settings.captcha_max_token_length

    async def _signal(self, category: AbuseCategory, detail: str, ip: str) -> None:
        if self._abuse_log is not None:
            await self._abuse_log.record(category, detail, ip)

    def _check_format(self, token: object) -> ErrorCode | None:
        if token is None or token == "":
            return ErrorCode.MISSING_TOKEN
        if not isinstance(token, str):
            return ErrorCode.INVALID_FORMAT
        if not self.min_token_length <= len(token) <= self.max_token_length:
            return ErrorCode.INVALID_FORMAT
        # Provider tokens are printable ASCII; anything else cannot be digested.
        if not (token.isascii() and token.isprintable()):
            return ErrorCode.INVALID_FORMAT
        return None

    def _on_dependency_failure(self, what: str, exc: object) -> CaptchaResult:
        if self.failure_policy is FailurePolicy.OPEN:
            logger.warning("Bot verification %s failed, failing open: %s", what, exc)
            return CaptchaResult(success=True, degraded=True)
        logger.error("Bot verification %s failed, failing closed: %s", what, exc)
        return CaptchaResult(success=False, error_code=ErrorCode.SERVICE_ERROR, degraded=True)

    async def validate(self, token: object, client_ip: str) -> CaptchaResult:
        """Validate a client-supplied token for ``client_ip``."""
        started = time.monotonic()
        format_error = self._check_format(token)
        if format_error is not None or not isinstance(token, str):
            return CaptchaResult(success=False, error_code=format_error or ErrorCode.INVALID_FORMAT)

        rule = self.rate_rule
        decision = await self._rate_limiter.check_rule(rule, client_ip)
        if not decision.allowed:
            await self._signal(
                AbuseCategory.RATE_LIMITED,
                f"{rule.scope} limit {rule.limit}/{rule.window_seconds}s exceeded",
                client_ip,
            )
            return CaptchaResult(
                success=False,
                error_code=ErrorCode.RATE_LIMITED,
                retry_after=decision.reset_seconds or rule.window_seconds,
            )

        token_hash = self._replay_guard.hash(token)
        degraded = False
        try:
            if await self._replay_guard.was_used(token_hash):
                logger.info("Token reuse attempt from %s digest=%s", client_ip, token_hash[:12])
                await self._signal(
                    AbuseCategory.CAPTCHA_TOKEN_REUSED, f"digest={token_hash[:12]}", client_ip
                )
                return CaptchaResult(success=False, error_code=ErrorCode.TOKEN_REUSED)
        except CounterStoreError as exc:
            result = self._on_dependency_failure("replay check", exc)
            if not result.success:
                return result
            degraded = True

        verdict = await self._provider.siteverify(token, client_ip)
        elapsed_ms = int((time.monotonic() - started) * 1000)

        if verdict.transport_error:
            if self.failure_policy is FailurePolicy.OPEN:
                logger.warning("Bot verification provider unreachable, failing open")
                return CaptchaResult(
                    success=True, provider_codes=verdict.error_codes, degraded=True
                )
            logger.error("Bot verification provider unreachable, failing closed")
            return CaptchaResult(
                success=False,
                error_code=ErrorCode.VALIDATION_FAILED,
                provider_codes=verdict.error_codes,
                degraded=True,
            )

        if not verdict.success:
            error_code = map_provider_errors(verdict.error_codes)
            logger.info(
                "Bot verification rejected in %dms codes=%s",
                elapsed_ms,
                ",".join(verdict.error_codes) or "none",
            )
            await self._signal(
                AbuseCategory.CAPTCHA_FAILED,
                f"provider codes: {','.join(verdict.error_codes) or 'none'}",
                client_ip,
            )
            return CaptchaResult(
                success=False, error_code=error_code, provider_codes=verdict.error_codes
            )

        try:
            await self._replay_guard.mark_used(token_hash)
        except CounterStoreError as exc:
            result = self._on_dependency_failure("replay mark", exc)
            if not result.success:
                return result
            degraded = True

        logger.info("Bot verification succeeded for %s in %dms", client_ip, elapsed_ms)
        return CaptchaResult(success=True, degraded=degraded)


_PROVIDER: TurnstileClient | None = None


def get_turnstile_client() -> TurnstileClient:
    """Return the process-wide provider client."""
    global _PROVIDER
    if _PROVIDER is None:
        _PROVIDER = TurnstileClient(
            secret=settings.captcha_secret_key,
            verify_url=settings.captcha_verify_url,
            timeout_seconds=settings.captcha_timeout_seconds,
        )
    return _PROVIDER


async def close_turnstile_client() -> None:
    global _PROVIDER
    if _PROVIDER is not None:
        await _PROVIDER.close()
        _PROVIDER = None
