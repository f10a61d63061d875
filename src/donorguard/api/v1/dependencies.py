"""Shared API dependencies wiring the security components per request."""

import time
from collections.abc import Callable
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from donorguard.core.security import ADMIN_TOKEN_TYPE, decode_token
from donorguard.core.settings import settings
from donorguard.db.session import get_db
from donorguard.services.abuse import AbuseSignalLog, get_abuse_log
from donorguard.services.blocklist import IpBlocklist
from donorguard.services.captcha import CaptchaVerifier, TurnstileClient, get_turnstile_client
from donorguard.services.guards import FailedAttemptGuard, SubjectFrequencyGuard, SuspiciousPatternDetector
from donorguard.services.notifier import Notifier, get_notifier
from donorguard.services.otp import OtpService
from donorguard.services.otp_flow import OtpFlow
from donorguard.services.rate_limit import RateLimiter
from donorguard.services.replay import ReplayGuard
from donorguard.services.store import CounterStore, get_counter_store
from donorguard.services.users import SqlUserStore

# HTTP Bearer scheme for operator JWT authentication
bearer_scheme = HTTPBearer()

SessionDep = Annotated[Session, Depends(get_db)]


def get_client_ip(request: Request) -> str:
    """Return the caller's IP, honouring X-Forwarded-For only when configured."""
    if settings.trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def get_user_agent(request: Request) -> str:
    return request.headers.get("user-agent", "")


def get_store_dep() -> CounterStore:
    return get_counter_store()


def get_abuse_log_dep() -> AbuseSignalLog:
    return get_abuse_log()


def get_provider_dep() -> TurnstileClient:
    return get_turnstile_client()


def get_notifier_dep() -> Notifier:
    return get_notifier()


ClientIpDep = Annotated[str, Depends(get_client_ip)]
UserAgentDep = Annotated[str, Depends(get_user_agent)]
StoreDep = Annotated[CounterStore, Depends(get_store_dep)]
AbuseLogDep = Annotated[AbuseSignalLog, Depends(get_abuse_log_dep)]


def get_rate_limiter_dep(store: StoreDep) -> RateLimiter:
    return RateLimiter(store, failure_policy=settings.rate_limit_failure_policy)


RateLimiterDep = Annotated[RateLimiter, Depends(get_rate_limiter_dep)]


def get_clock_dep() -> Callable[[], float]:
    return time.time


ClockDep = Annotated[Callable[[], float], Depends(get_clock_dep)]


def get_captcha_verifier_dep(
    store: StoreDep,
    rate_limiter: RateLimiterDep,
    abuse_log: AbuseLogDep,
    clock: ClockDep,
    provider: Annotated[TurnstileClient, Depends(get_provider_dep)],
) -> CaptchaVerifier:
    return CaptchaVerifier(
        provider,
        rate_limiter,
        ReplayGuard(store, clock=clock),
        abuse_log=abuse_log,
        failure_policy=settings.captcha_failure_policy,
    )


def get_otp_service_dep(store: StoreDep, abuse_log: AbuseLogDep, clock: ClockDep) -> OtpService:
    return OtpService(store, clock=clock, abuse_log=abuse_log)


def get_blocklist_dep(store: StoreDep) -> IpBlocklist:
    return IpBlocklist(store)


CaptchaVerifierDep = Annotated[CaptchaVerifier, Depends(get_captcha_verifier_dep)]
OtpServiceDep = Annotated[OtpService, Depends(get_otp_service_dep)]
BlocklistDep = Annotated[IpBlocklist, Depends(get_blocklist_dep)]


def get_otp_flow_dep(
    db: SessionDep,
    store: StoreDep,
    clock: ClockDep,
    otp_service: OtpServiceDep,
    rate_limiter: RateLimiterDep,
    captcha_verifier: CaptchaVerifierDep,
    blocklist: BlocklistDep,
    abuse_log: AbuseLogDep,
    notifier: Annotated[Notifier, Depends(get_notifier_dep)],
) -> OtpFlow:
    return OtpFlow(
        otp_service=otp_service,
        rate_limiter=rate_limiter,
        captcha_verifier=captcha_verifier,
        blocklist=blocklist,
        abuse_log=abuse_log,
        user_store=SqlUserStore(db),
        notifier=notifier,
        frequency_guard=SubjectFrequencyGuard(store, clock=clock),
        failure_guard=FailedAttemptGuard(store),
        pattern_detector=SuspiciousPatternDetector(store, blocklist, clock=clock),
    )


OtpFlowDep = Annotated[OtpFlow, Depends(get_otp_flow_dep)]


def require_admin(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> str:
    """Return the operator name from a valid admin bearer token.

    Raises:
        HTTPException: If the token is invalid or lacks the admin scope
    """
    try:
        payload = decode_token(credentials.credentials)
    except ValueError as err:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from err
    if payload.get("typ") != ADMIN_TOKEN_TYPE or payload.get("scope") != settings.admin_scope:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin scope required",
        )
    subject = payload.get("sub")
    if not subject:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    return str(subject)


# Type alias for authenticated operator dependency
AdminDep = Annotated[str, Depends(require_admin)]
