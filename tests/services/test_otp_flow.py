"""Tests for the request-level OTP flows."""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import SQLAlchemyError

from donorguard.core.errors import ErrorCode
from donorguard.core.security import VERIFICATION_TOKEN_TYPE, decode_token
from donorguard.services.blocklist import IpBlocklist
from donorguard.services.captcha import CaptchaVerifier
from donorguard.services.guards import FailedAttemptGuard, SubjectFrequencyGuard, SuspiciousPatternDetector
from donorguard.services.otp import OtpService
from donorguard.services.otp_flow import OtpFlow, OtpPurpose, Subject, resolve_subject
from donorguard.services.rate_limit import RateLimiter
from donorguard.services.replay import ReplayGuard

CLIENT_IP = "192.0.2.10"
EMAIL = "Donor@Example.org"


class FakeUserStore:
    def __init__(self, emails=(), phones=()) -> None:
        self.emails = set(emails)
        self.phones = set(phones)

    def exists_by_email(self, email: str) -> bool:
        return email in self.emails

    def exists_by_phone(self, phone: str) -> bool:
        return phone in self.phones


@pytest.fixture()
def recorded_abuse() -> AsyncMock:
    return AsyncMock()


@pytest.fixture()
def build_flow(store, clock, provider, notifier, recorded_abuse):
    def _build(user_store=None, failure_threshold=None) -> OtpFlow:
        rate_limiter = RateLimiter(store)
        blocklist = IpBlocklist(store)
        return OtpFlow(
            otp_service=OtpService(store, clock=clock, abuse_log=recorded_abuse),
            rate_limiter=rate_limiter,
            captcha_verifier=CaptchaVerifier(
                provider.client(), rate_limiter, ReplayGuard(store, clock=clock), abuse_log=recorded_abuse
            ),
            blocklist=blocklist,
            abuse_log=recorded_abuse,
            user_store=user_store or FakeUserStore(),
            notifier=notifier,
            frequency_guard=SubjectFrequencyGuard(store, clock=clock),
            failure_guard=FailedAttemptGuard(store, threshold=failure_threshold),
            pattern_detector=SuspiciousPatternDetector(store, blocklist, clock=clock),
        )

    return _build


def _categories(recorded_abuse: AsyncMock) -> list[str]:
    return [str(getattr(c.args[0], "value", c.args[0])) for c in recorded_abuse.record.await_args_list]


@pytest.mark.parametrize(
    ("email", "phone", "expected"),
    [
        (EMAIL, None, Subject("donor@example.org", "email")),
        (EMAIL, "+44 7700 900123", Subject("+447700900123", "phone")),
        (None, "0044 7700 900123", Subject("+447700900123", "phone")),
        ("not-an-email", None, ErrorCode.INVALID_EMAIL),
        (None, "07700900123", ErrorCode.INVALID_FORMAT),
        (None, None, ErrorCode.INVALID_FORMAT),
        (None, "+\u0669\u0667\u0667\u0669\u0668\u0660\u0660\u0660\u0660\u0660\u0660\u0660\u0661", ErrorCode.INVALID_FORMAT),
    ],
)
def test_resolve_subject(email, phone, expected) -> None:
    assert resolve_subject(email, phone) == expected


@pytest.mark.asyncio
async def test_request_and_verify_round(build_flow, notifier, make_token) -> None:
    flow = build_flow()
    outcome, pending = await flow.request_code(
        email=EMAIL,
        phone=None,
        purpose=OtpPurpose.REGISTRATION,
        captcha_token=make_token(),
        client_ip=CLIENT_IP,
    )
    assert outcome.ok
    assert outcome.data == {"channel": "email", "expires_in": 600}
    assert pending is not None

    await flow.deliver(pending)
    code = notifier.last_code()

    verified = await flow.verify_code(
        email=EMAIL, phone=None, purpose=OtpPurpose.REGISTRATION, code=code, client_ip=CLIENT_IP
    )
    assert verified.ok
    claims = decode_token(str(verified.data["verification_token"]))
    assert claims["sub"] == "donor@example.org"
    assert claims["purpose"] == "registration"
    assert claims["typ"] == VERIFICATION_TOKEN_TYPE


@pytest.mark.asyncio
async def test_disposable_email_rejected_before_captcha(build_flow, provider, recorded_abuse) -> None:
    outcome, pending = await build_flow().request_code(
        email="someone@mailinator.com",
        phone=None,
        purpose=OtpPurpose.REGISTRATION,
        captcha_token=None,
        client_ip=CLIENT_IP,
    )
    assert outcome.error_code is ErrorCode.DISPOSABLE_EMAIL
    assert pending is None
    assert provider.calls == []
    assert _categories(recorded_abuse) == ["DISPOSABLE_EMAIL"]


@pytest.mark.asyncio
async def test_missing_captcha_token(build_flow) -> None:
    outcome, _ = await build_flow().request_code(
        email=EMAIL, phone=None, purpose=OtpPurpose.LOGIN, captcha_token=None, client_ip=CLIENT_IP
    )
    assert outcome.error_code is ErrorCode.MISSING_TOKEN


@pytest.mark.asyncio
async def test_existing_account_cannot_register_again(build_flow, recorded_abuse, make_token) -> None:
    flow = build_flow(FakeUserStore(emails={"donor@example.org"}))
    outcome, pending = await flow.request_code(
        email=EMAIL,
        phone=None,
        purpose=OtpPurpose.REGISTRATION,
        captcha_token=make_token(),
        client_ip=CLIENT_IP,
    )
    assert outcome.error_code is ErrorCode.ACCOUNT_EXISTS
    assert pending is None
    assert "EXISTING_USER_OTP_REQUEST" in _categories(recorded_abuse)


@pytest.mark.asyncio
async def test_existing_account_can_log_in(build_flow, make_token) -> None:
    flow = build_flow(FakeUserStore(emails={"donor@example.org"}))
    outcome, _ = await flow.request_code(
        email=EMAIL, phone=None, purpose=OtpPurpose.LOGIN, captcha_token=make_token(), client_ip=CLIENT_IP
    )
    assert outcome.ok


@pytest.mark.asyncio
async def test_second_request_hits_cooldown(build_flow, clock, make_token) -> None:
    flow = build_flow()
    await flow.request_code(
        email=EMAIL, phone=None, purpose=OtpPurpose.LOGIN, captcha_token=make_token(), client_ip=CLIENT_IP
    )
    clock.advance(31)
    outcome, pending = await flow.request_code(
        email=EMAIL, phone=None, purpose=OtpPurpose.LOGIN, captcha_token=make_token(), client_ip=CLIENT_IP
    )
    assert outcome.error_code is ErrorCode.COOLDOWN_ACTIVE
    assert outcome.retry_after == 89
    assert pending is None


@pytest.mark.asyncio
async def test_blocked_ip_is_refused(build_flow, store, provider) -> None:
    await IpBlocklist(store).block(CLIENT_IP, "scripted signups", 600)
    outcome, _ = await build_flow().request_code(
        email=EMAIL, phone=None, purpose=OtpPurpose.LOGIN, captcha_token="x" * 20, client_ip=CLIENT_IP
    )
    assert outcome.error_code is ErrorCode.IP_BLOCKED
    assert outcome.retry_after == 600
    assert provider.calls == []


@pytest.mark.asyncio
async def test_wrong_codes_then_lock(build_flow, make_token) -> None:
    flow = build_flow()
    await flow.request_code(
        email=EMAIL, phone=None, purpose=OtpPurpose.LOGIN, captcha_token=make_token(), client_ip=CLIENT_IP
    )

    results = [
        await flow.verify_code(
            email=EMAIL, phone=None, purpose=OtpPurpose.LOGIN, code="000000", client_ip=CLIENT_IP
        )
        for _ in range(4)
    ]
    assert [r.error_code for r in results] == [
        ErrorCode.INVALID_OTP,
        ErrorCode.INVALID_OTP,
        ErrorCode.TOO_MANY_FAILED_ATTEMPTS,
        ErrorCode.OTP_EXPIRED,
    ]
    assert results[0].data["attempts_remaining"] == 2


@pytest.mark.asyncio
async def test_malformed_code_is_rejected_without_counting(build_flow, store) -> None:
    outcome = await build_flow().verify_code(
        email=EMAIL, phone=None, purpose=OtpPurpose.LOGIN, code="12ab", client_ip=CLIENT_IP
    )
    assert outcome.error_code is ErrorCode.INVALID_FORMAT
    assert await store.get("ratelimit:auth:" + CLIENT_IP) is None
    assert await store.get("ratelimit:otp_verify:donor@example.org") is None


@pytest.mark.asyncio
async def test_delivery_failure_is_swallowed_and_recorded(build_flow, notifier, recorded_abuse, make_token) -> None:
    flow = build_flow()
    _, pending = await flow.request_code(
        email=EMAIL, phone=None, purpose=OtpPurpose.LOGIN, captcha_token=make_token(), client_ip=CLIENT_IP
    )
    notifier.fail = True

    await flow.deliver(pending)
    assert _categories(recorded_abuse)[-1] == "OTP_SEND_ERROR"


@pytest.mark.asyncio
async def test_non_ascii_digits_in_code_are_rejected(build_flow, store) -> None:
    outcome = await build_flow().verify_code(
        email=EMAIL,
        phone=None,
        purpose=OtpPurpose.LOGIN,
        code="٤٨٢٩١٣",
        client_ip=CLIENT_IP,
    )
    assert outcome.error_code is ErrorCode.INVALID_FORMAT
    assert await store.get("ratelimit:auth:" + CLIENT_IP) is None


@pytest.mark.asyncio
async def test_filled_honeypot_field_is_refused(build_flow, provider, recorded_abuse, make_token) -> None:
    outcome, pending = await build_flow().request_code(
        email=EMAIL,
        phone=None,
        purpose=OtpPurpose.REGISTRATION,
        captcha_token=make_token(),
        client_ip=CLIENT_IP,
        honeypot={"username": None, "company": "Acme Bots Ltd"},
    )
    assert outcome.error_code is ErrorCode.HONEYPOT_TRIGGERED
    assert pending is None
    assert provider.calls == []
    assert _categories(recorded_abuse) == ["HONEYPOT_TRIGGERED"]


@pytest.mark.asyncio
async def test_blank_honeypot_fields_pass(build_flow, make_token) -> None:
    outcome, _ = await build_flow().request_code(
        email=EMAIL,
        phone=None,
        purpose=OtpPurpose.REGISTRATION,
        captcha_token=make_token(),
        client_ip=CLIENT_IP,
        honeypot={"username": "  ", "firstname": "", "lastname": None, "company": None},
    )
    assert outcome.ok


@pytest.mark.asyncio
async def test_rapid_requests_for_one_subject_are_spaced(build_flow, clock, provider, make_token) -> None:
    flow = build_flow()
    await flow.request_code(
        email=EMAIL, phone=None, purpose=OtpPurpose.LOGIN, captcha_token=make_token(), client_ip=CLIENT_IP
    )
    clock.advance(10)
    outcome, pending = await flow.request_code(
        email=EMAIL, phone=None, purpose=OtpPurpose.LOGIN, captcha_token=make_token(), client_ip=CLIENT_IP
    )
    assert outcome.error_code is ErrorCode.FREQUENCY_LIMITED
    assert outcome.retry_after == 20
    assert pending is None
    # The token was never sent upstream.
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_failed_attempts_lock_subject_across_reissues(build_flow, clock, recorded_abuse, make_token) -> None:
    flow = build_flow(failure_threshold=4)

    async def _request():
        return await flow.request_code(
            email=EMAIL, phone=None, purpose=OtpPurpose.LOGIN, captcha_token=make_token(), client_ip=CLIENT_IP
        )

    async def _verify(code: str):
        return await flow.verify_code(
            email=EMAIL, phone=None, purpose=OtpPurpose.LOGIN, code=code, client_ip=CLIENT_IP
        )

    await _request()
    for _ in range(3):
        await _verify("000000")

    clock.advance(121)
    outcome, pending = await _request()
    assert outcome.ok
    assert (await _verify("000000")).error_code is ErrorCode.INVALID_OTP

    # Even the right code is refused while the subject is locked out.
    locked = await _verify(pending.code)
    assert locked.error_code is ErrorCode.OTP_ATTEMPTS_EXCEEDED
    assert locked.retry_after == 900 - 121

    clock.advance(121)
    refused, _ = await _request()
    assert refused.error_code is ErrorCode.OTP_ATTEMPTS_EXCEEDED
    assert "OTP_ATTEMPTS_EXCEEDED" in _categories(recorded_abuse)


@pytest.mark.asyncio
async def test_successful_verification_clears_failures(build_flow, store, make_token) -> None:
    flow = build_flow()
    _, pending = await flow.request_code(
        email=EMAIL, phone=None, purpose=OtpPurpose.LOGIN, captcha_token=make_token(), client_ip=CLIENT_IP
    )
    await flow.verify_code(email=EMAIL, phone=None, purpose=OtpPurpose.LOGIN, code="000000", client_ip=CLIENT_IP)
    assert await store.get("otp_failures:donor@example.org") == "1"

    verified = await flow.verify_code(
        email=EMAIL, phone=None, purpose=OtpPurpose.LOGIN, code=pending.code, client_ip=CLIENT_IP
    )
    assert verified.ok
    assert await store.get("otp_failures:donor@example.org") is None


@pytest.mark.asyncio
async def test_many_subjects_from_one_ip_block_it(build_flow, store, recorded_abuse) -> None:
    flow = build_flow()
    for n in range(12):
        outcome, _ = await flow.request_code(
            email=f"donor{n}@example.org",
            phone=None,
            purpose=OtpPurpose.LOGIN,
            captcha_token=None,
            client_ip=CLIENT_IP,
        )
        assert outcome.error_code is ErrorCode.MISSING_TOKEN

    outcome, _ = await flow.request_code(
        email="donor12@example.org", phone=None, purpose=OtpPurpose.LOGIN, captcha_token=None, client_ip=CLIENT_IP
    )
    assert outcome.error_code is ErrorCode.SUSPICIOUS_ACTIVITY
    assert outcome.data["reason"] == "subject_enumeration"
    assert outcome.retry_after == 1200
    assert "SUSPICIOUS_PATTERN" in _categories(recorded_abuse)

    status = await IpBlocklist(store).status(CLIENT_IP)
    assert status.blocked is True
    assert status.reason == "subject_enumeration"

    outcome, _ = await flow.request_code(
        email=EMAIL, phone=None, purpose=OtpPurpose.LOGIN, captcha_token=None, client_ip=CLIENT_IP
    )
    assert outcome.error_code is ErrorCode.IP_BLOCKED


@pytest.mark.asyncio
async def test_resend_uses_stricter_limit(build_flow, store, clock, make_token) -> None:
    flow = build_flow()
    codes = []
    for _ in range(4):
        outcome, _ = await flow.request_code(
            email=EMAIL,
            phone=None,
            purpose=OtpPurpose.LOGIN,
            captcha_token=make_token(),
            client_ip=CLIENT_IP,
            resend=True,
        )
        codes.append(outcome.error_code)
        clock.advance(31)

    assert codes == [
        None,
        ErrorCode.COOLDOWN_ACTIVE,
        ErrorCode.COOLDOWN_ACTIVE,
        ErrorCode.RATE_LIMITED,
    ]
    assert await store.get(f"ratelimit:otp_resend:{CLIENT_IP}:donor@example.org") == "4"
    assert await store.get(f"ratelimit:otp_request:{CLIENT_IP}:donor@example.org") is None


@pytest.mark.asyncio
async def test_verify_counts_against_auth_limit(build_flow, store, make_token) -> None:
    flow = build_flow()
    await flow.request_code(
        email=EMAIL, phone=None, purpose=OtpPurpose.LOGIN, captcha_token=make_token(), client_ip=CLIENT_IP
    )
    await store.set("ratelimit:auth:" + CLIENT_IP, 10, 900)

    outcome = await flow.verify_code(
        email=EMAIL, phone=None, purpose=OtpPurpose.LOGIN, code="000000", client_ip=CLIENT_IP
    )
    assert outcome.error_code is ErrorCode.RATE_LIMITED
    assert outcome.retry_after == 900


class BrokenUserStore(FakeUserStore):
    def exists_by_email(self, email: str) -> bool:
        raise SQLAlchemyError("connection refused")


@pytest.mark.asyncio
async def test_account_lookup_failure_is_a_service_error(build_flow, recorded_abuse, make_token) -> None:
    flow = build_flow(BrokenUserStore())
    outcome, pending = await flow.request_code(
        email=EMAIL,
        phone=None,
        purpose=OtpPurpose.REGISTRATION,
        captcha_token=make_token(),
        client_ip=CLIENT_IP,
    )
    assert outcome.error_code is ErrorCode.SERVICE_ERROR
    assert pending is None
    assert _categories(recorded_abuse)[-1] == "STORE_UNAVAILABLE"


@pytest.mark.asyncio
async def test_corrupt_record_is_reported(build_flow, store, recorded_abuse) -> None:
    await store.set("otp:donor@example.org", "{not json", 600)
    outcome = await build_flow().verify_code(
        email=EMAIL, phone=None, purpose=OtpPurpose.LOGIN, code="123456", client_ip=CLIENT_IP
    )
    assert outcome.error_code is ErrorCode.OTP_EXPIRED
    assert _categories(recorded_abuse)[:1] == ["OTP_RECORD_CORRUPT"]
    assert recorded_abuse.record.await_args_list[0].args[2] == CLIENT_IP
