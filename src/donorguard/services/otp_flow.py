"""Request-level OTP flows composing the security components.

``request_code`` runs: input checks -> honeypot -> email policy -> IP block
-> rate limits -> failure lockout -> pattern detection -> per-subject
interval -> bot verification -> account uniqueness -> issuance.
``verify_code`` runs: input checks -> IP block -> rate limits -> failure
lockout -> verification. Every refusal is recorded in the abuse log.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from donorguard.core.errors import ErrorCode
from donorguard.core.security import create_verification_token
from donorguard.core.settings import FailurePolicy, settings
from donorguard.services.abuse import AbuseCategory, AbuseSignalLog
from donorguard.services.blocklist import IpBlocklist
from donorguard.services.captcha import CaptchaVerifier
from donorguard.services.email_policy import check_email_domain
from donorguard.services.guards import (
    FailedAttemptGuard,
    SubjectFrequencyGuard,
    SuspiciousPatternDetector,
    honeypot_triggered,
)
from donorguard.services.notifier import Notifier
from donorguard.services.otp import OtpService, OtpStatus
from donorguard.services.rate_limit import (
    AUTH_RULE,
    DAILY_EMAIL_RULE,
    OTP_REQUEST_RULE,
    OTP_RESEND_RULE,
    OTP_VERIFY_RULE,
    RateLimiter,
    RateLimitRule,
)
from donorguard.services.store import CounterStoreError
from donorguard.services.users import UserStore
from donorguard.utils.identifiers import mask_subject, normalize_email, normalize_phone_e164

logger = logging.getLogger(__name__)


class OtpPurpose(str, Enum):
    REGISTRATION = "registration"
    LOGIN = "login"
    PASSWORD_RESET = "password_reset"


# Purposes for which the subject must not already have an account.
UNIQUE_PURPOSES = frozenset({OtpPurpose.REGISTRATION})


@dataclass(frozen=True)
class Subject:
    key: str
    channel: str  # "email" or "phone"


@dataclass(frozen=True)
class FlowOutcome:
    ok: bool
    error_code: ErrorCode | None = None
    message: str | None = None
    retry_after: int | None = None
    data: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class PendingDelivery:
    """A persisted code waiting to be handed to the notifier."""

    subject_key: str
    code: str
    purpose: str
    client_ip: str


def _fail(
    code: ErrorCode,
    message: str | None = None,
    *,
    retry_after: int | None = None,
    **data: object,
) -> FlowOutcome:
    return FlowOutcome(ok=False, error_code=code, message=message, retry_after=retry_after, data=data)


def resolve_subject(email: str | None, phone: str | None) -> Subject | ErrorCode:
    """Pick the identifier an OTP is bound to; phone wins when both are given."""
    if phone:
        normalized = normalize_phone_e164(phone)
        return Subject(normalized, "phone") if normalized else ErrorCode.INVALID_FORMAT
    if email:
        normalized = normalize_email(email)
        return Subject(normalized, "email") if normalized else ErrorCode.INVALID_EMAIL
    return ErrorCode.INVALID_FORMAT


class OtpFlow:
    """Orchestrates the OTP endpoints; one instance per request."""

    def __init__(
        self,
        *,
        otp_service: OtpService,
        rate_limiter: RateLimiter,
        captcha_verifier: CaptchaVerifier,
        blocklist: IpBlocklist,
        abuse_log: AbuseSignalLog,
        user_store: UserStore,
        notifier: Notifier,
        frequency_guard: SubjectFrequencyGuard,
        failure_guard: FailedAttemptGuard,
        pattern_detector: SuspiciousPatternDetector,
    ) -> None:
        self._otp = otp_service
        self._rate_limiter = rate_limiter
        self._captcha = captcha_verifier
        self._blocklist = blocklist
        self._abuse_log = abuse_log
        self._user_store = user_store
        self._notifier = notifier
        self._frequency = frequency_guard
        self._failures = failure_guard
        self._patterns = pattern_detector

    def _store_unavailable(self, what: str, exc: Exception) -> FlowOutcome | None:
        # Guards backed by the counter store follow the rate-limit policy.
        if self._rate_limiter.failure_policy is FailurePolicy.OPEN:
            logger.warning("%s unavailable, continuing: %s", what, exc)
            return None
        logger.error("%s unavailable, refusing: %s", what, exc)
        return _fail(ErrorCode.SERVICE_ERROR)

    async def _check_blocked(self, client_ip: str) -> FlowOutcome | None:
        try:
            status = await self._blocklist.status(client_ip)
        except CounterStoreError as exc:
            return self._store_unavailable("IP block lookup", exc)
        if not status.blocked:
            return None
        await self._abuse_log.record(
            AbuseCategory.IP_BLOCKED, f"blocked request, reason={status.reason}", client_ip
        )
        return _fail(ErrorCode.IP_BLOCKED, retry_after=status.remaining_seconds, reason=status.reason)

    async def _check_rate(self, rule: RateLimitRule, identifier: str, client_ip: str) -> FlowOutcome | None:
        decision = await self._rate_limiter.check_rule(rule, identifier)
        if decision.allowed:
            return None
        await self._abuse_log.record(
            AbuseCategory.RATE_LIMITED,
            f"{rule.scope} limit {rule.limit}/{rule.window_seconds}s exceeded",
            client_ip,
        )
        return _fail(ErrorCode.RATE_LIMITED, retry_after=decision.reset_seconds or rule.window_seconds)

    async def _check_lockout(self, subject: Subject, client_ip: str) -> FlowOutcome | None:
        try:
            locked_for = await self._failures.locked_for(subject.key)
        except CounterStoreError as exc:
            return self._store_unavailable("OTP failure lockout", exc)
        if locked_for is None:
            return None
        await self._abuse_log.record(
            AbuseCategory.OTP_ATTEMPTS_EXCEEDED, mask_subject(subject.key), client_ip
        )
        return _fail(ErrorCode.OTP_ATTEMPTS_EXCEEDED, retry_after=locked_for)

    async def _check_pattern(self, subject: Subject, client_ip: str, user_agent: str) -> FlowOutcome | None:
        try:
            verdict = await self._patterns.observe(client_ip, subject.key, user_agent)
        except CounterStoreError as exc:
            return self._store_unavailable("Pattern detection", exc)
        if verdict is None:
            return None
        await self._abuse_log.record(
            AbuseCategory.SUSPICIOUS_PATTERN,
            f"{verdict.reason}, blocked for {verdict.block_seconds}s",
            client_ip,
        )
        return _fail(
            ErrorCode.SUSPICIOUS_ACTIVITY, retry_after=verdict.block_seconds, reason=verdict.reason
        )

    async def _check_frequency(self, subject: Subject, client_ip: str) -> FlowOutcome | None:
        try:
            wait = await self._frequency.check(subject.key)
        except CounterStoreError as exc:
            return self._store_unavailable("Subject frequency check", exc)
        if wait is None:
            return None
        await self._abuse_log.record(
            AbuseCategory.FREQUENCY_LIMITED, mask_subject(subject.key), client_ip
        )
        return _fail(
            ErrorCode.FREQUENCY_LIMITED,
            f"Please wait {wait} seconds before requesting another code for this address.",
            retry_after=wait,
        )

    def _account_exists(self, subject: Subject) -> bool:
        if subject.channel == "phone":
            return self._user_store.exists_by_phone(subject.key)
        return self._user_store.exists_by_email(subject.key)

    async def _note_failure(self, subject_key: str) -> None:
        try:
            await self._failures.record_failure(subject_key)
        except CounterStoreError as exc:
            logger.warning("Could not count failed verification for %s: %s", mask_subject(subject_key), exc)

    async def request_code(
        self,
        *,
        email: str | None,
        phone: str | None,
        purpose: OtpPurpose,
        captcha_token: str | None,
        client_ip: str,
        user_agent: str = "",
        honeypot: Mapping[str, str | None] | None = None,
        resend: bool = False,
    ) -> tuple[FlowOutcome, PendingDelivery | None]:
        subject = resolve_subject(email, phone)
        if isinstance(subject, ErrorCode):
            await self._abuse_log.record(
                AbuseCategory.MISSING_IDENTIFIER, "OTP request without a usable identifier", client_ip
            )
            return _fail(subject), None

        if honeypot and honeypot_triggered(honeypot):
            await self._abuse_log.record(
                AbuseCategory.HONEYPOT_TRIGGERED, mask_subject(subject.key), client_ip
            )
            return _fail(ErrorCode.HONEYPOT_TRIGGERED), None

        if subject.channel == "email":
            policy_error = check_email_domain(subject.key)
            if policy_error is not None:
                category = (
                    AbuseCategory.DISPOSABLE_EMAIL
                    if policy_error is ErrorCode.DISPOSABLE_EMAIL
                    else AbuseCategory.INVALID_EMAIL
                )
                await self._abuse_log.record(category, mask_subject(subject.key), client_ip)
                return _fail(policy_error), None

        blocked = await self._check_blocked(client_ip)
        if blocked is not None:
            return blocked, None

        subject_rule = OTP_RESEND_RULE if resend else OTP_REQUEST_RULE
        for rule, identifier in (
            (subject_rule, f"{client_ip}:{subject.key}"),
            (DAILY_EMAIL_RULE, client_ip),
        ):
            limited = await self._check_rate(rule, identifier, client_ip)
            if limited is not None:
                return limited, None

        locked = await self._check_lockout(subject, client_ip)
        if locked is not None:
            return locked, None
        suspicious = await self._check_pattern(subject, client_ip, user_agent)
        if suspicious is not None:
            return suspicious, None
        too_soon = await self._check_frequency(subject, client_ip)
        if too_soon is not None:
            return too_soon, None

        captcha = await self._captcha.validate(captcha_token, client_ip)
        if not captcha.success:
            return _fail(captcha.error_code or ErrorCode.VALIDATION_FAILED, retry_after=captcha.retry_after), None

        if purpose in UNIQUE_PURPOSES:
            try:
                exists = self._account_exists(subject)
            except SQLAlchemyError as exc:
                logger.error("Account lookup failed for %s: %s", mask_subject(subject.key), exc)
                await self._abuse_log.record(
                    AbuseCategory.STORE_UNAVAILABLE, "account lookup failed", client_ip
                )
                return _fail(ErrorCode.SERVICE_ERROR), None
            if exists:
                await self._abuse_log.record(
                    AbuseCategory.EXISTING_USER_OTP_REQUEST,
                    f"{purpose.value} OTP requested for existing account {mask_subject(subject.key)}",
                    client_ip,
                )
                return _fail(ErrorCode.ACCOUNT_EXISTS), None

        result = await self._otp.generate(subject.key, purpose.value, request_ip=client_ip)
        if result.status is OtpStatus.COOLDOWN:
            await self._abuse_log.record(
                AbuseCategory.OTP_COOLDOWN, mask_subject(subject.key), client_ip
            )
            return _fail(
                ErrorCode.COOLDOWN_ACTIVE,
                f"OTP already sent. Please wait {result.retry_after} seconds before requesting another.",
                retry_after=result.retry_after,
            ), None
        if result.status is not OtpStatus.ISSUED or result.code is None:
            await self._abuse_log.record(
                AbuseCategory.STORE_UNAVAILABLE, "OTP issuance failed", client_ip
            )
            return _fail(ErrorCode.SERVICE_ERROR), None

        outcome = FlowOutcome(
            ok=True,
            message=f"OTP {'resent' if resend else 'sent'} to {subject.channel} successfully",
            data={"channel": subject.channel, "expires_in": result.expires_in},
        )
        return outcome, PendingDelivery(subject.key, result.code, purpose.value, client_ip)

    async def deliver(self, pending: PendingDelivery) -> None:
        """Hand a persisted code to the notifier. Never raises.

        The stored record is left in place when delivery fails; the subject
        can request a new code once the cooldown passes.
        """
        try:
            await self._notifier.send(pending.subject_key, pending.code, pending.purpose)
        except Exception as exc:
            logger.error(
                "OTP delivery failed for %s: %s", mask_subject(pending.subject_key), exc
            )
            await self._abuse_log.record(
                AbuseCategory.OTP_SEND_ERROR, f"delivery failed: {exc}", pending.client_ip
            )

    async def verify_code(
        self,
        *,
        email: str | None,
        phone: str | None,
        purpose: OtpPurpose,
        code: str,
        client_ip: str,
    ) -> FlowOutcome:
        subject = resolve_subject(email, phone)
        if isinstance(subject, ErrorCode):
            await self._abuse_log.record(
                AbuseCategory.MISSING_IDENTIFIER, "OTP verification without a usable identifier", client_ip
            )
            return _fail(subject)

        supplied = (code or "").strip()
        if not re.fullmatch(rf"[0-9]{{{settings.otp_length}}}", supplied):
            await self._abuse_log.record(
                AbuseCategory.INVALID_OTP_FORMAT, mask_subject(subject.key), client_ip
            )
            return _fail(
                ErrorCode.INVALID_FORMAT, f"OTP must be a {settings.otp_length}-digit number"
            )

        blocked = await self._check_blocked(client_ip)
        if blocked is not None:
            return blocked

        for rule, identifier in ((AUTH_RULE, client_ip), (OTP_VERIFY_RULE, subject.key)):
            limited = await self._check_rate(rule, identifier, client_ip)
            if limited is not None:
                return limited

        locked = await self._check_lockout(subject, client_ip)
        if locked is not None:
            return locked

        result = await self._otp.verify(
            subject.key, supplied, expected_purpose=purpose.value, client_ip=client_ip
        )
        if result.status is OtpStatus.SUCCESS:
            try:
                await self._failures.clear(subject.key)
            except CounterStoreError as exc:
                logger.warning("Could not clear failed verifications for %s: %s", mask_subject(subject.key), exc)
            return FlowOutcome(
                ok=True,
                message="OTP verified successfully",
                data={
                    "subject": subject.key,
                    "purpose": purpose.value,
                    "verification_token": create_verification_token(subject.key, purpose.value),
                },
            )
        if result.status is OtpStatus.MISMATCH:
            await self._note_failure(subject.key)
            await self._abuse_log.record(
                AbuseCategory.INVALID_OTP,
                f"{mask_subject(subject.key)} attempts_remaining={result.attempts_remaining}",
                client_ip,
            )
            return _fail(
                ErrorCode.INVALID_OTP,
                f"Invalid OTP code. {result.attempts_remaining} attempt(s) remaining",
                attempts_remaining=result.attempts_remaining,
            )
        if result.status is OtpStatus.LOCKED:
            await self._note_failure(subject.key)
            await self._abuse_log.record(AbuseCategory.OTP_LOCKED, mask_subject(subject.key), client_ip)
            return _fail(ErrorCode.TOO_MANY_FAILED_ATTEMPTS)
        if result.status is OtpStatus.NOT_FOUND:
            await self._abuse_log.record(
                AbuseCategory.EXPIRED_OTP_ATTEMPT, mask_subject(subject.key), client_ip
            )
            return _fail(ErrorCode.OTP_EXPIRED)
        await self._abuse_log.record(
            AbuseCategory.STORE_UNAVAILABLE, "OTP verification failed", client_ip
        )
        return _fail(ErrorCode.SERVICE_ERROR)
