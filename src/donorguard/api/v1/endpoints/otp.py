# src/donorguard/api/v1/endpoints/otp.py
"""One-time password endpoints."""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks
from fastapi.responses import JSONResponse

from donorguard.api.v1.dependencies import ClientIpDep, OtpFlowDep, UserAgentDep
from donorguard.core.errors import ErrorCode, error_response
from donorguard.schemas.otp import (
    OtpSendRequest,
    OtpSendResponse,
    OtpVerifyRequest,
    OtpVerifyResponse,
)
from donorguard.services.otp_flow import FlowOutcome, OtpFlow

router = APIRouter(prefix="/otp", tags=["otp"])


def _failure(outcome: FlowOutcome) -> JSONResponse:
    return error_response(
        outcome.error_code or ErrorCode.SERVICE_ERROR,
        outcome.message,
        retry_after=outcome.retry_after,
        extra=outcome.data or None,
    )


async def _issue(
    payload: OtpSendRequest,
    background_tasks: BackgroundTasks,
    flow: OtpFlow,
    client_ip: str,
    user_agent: str,
    *,
    resend: bool,
) -> OtpSendResponse | JSONResponse:
    outcome, pending = await flow.request_code(
        email=payload.email,
        phone=payload.phone,
        purpose=payload.purpose,
        captcha_token=payload.captcha_token,
        client_ip=client_ip,
        user_agent=user_agent,
        honeypot=payload.honeypot_values(),
        resend=resend,
    )
    if not outcome.ok or pending is None:
        return _failure(outcome)

    background_tasks.add_task(flow.deliver, pending)
    return OtpSendResponse(
        message=outcome.message or "OTP sent",
        channel=str(outcome.data["channel"]),
        expires_in=int(outcome.data["expires_in"]),  # type: ignore[call-overload]
    )


@router.post("/send", response_model=OtpSendResponse)
async def send_otp(
    payload: OtpSendRequest,
    background_tasks: BackgroundTasks,
    flow: OtpFlowDep,
    client_ip: ClientIpDep,
    user_agent: UserAgentDep,
) -> OtpSendResponse | JSONResponse:
    """Issue a code after bot verification and abuse checks.

    Delivery runs after the response is sent; a delivery failure does not
    invalidate the stored code.
    """
    return await _issue(payload, background_tasks, flow, client_ip, user_agent, resend=False)


@router.post("/resend", response_model=OtpSendResponse)
async def resend_otp(
    payload: OtpSendRequest,
    background_tasks: BackgroundTasks,
    flow: OtpFlowDep,
    client_ip: ClientIpDep,
    user_agent: UserAgentDep,
) -> OtpSendResponse | JSONResponse:
    """Same checks as ``/send`` under the stricter resend limit."""
    return await _issue(payload, background_tasks, flow, client_ip, user_agent, resend=True)


@router.post("/verify", response_model=OtpVerifyResponse)
async def verify_otp(
    payload: OtpVerifyRequest,
    flow: OtpFlowDep,
    client_ip: ClientIpDep,
) -> OtpVerifyResponse | JSONResponse:
    """Verify a code and return a short-lived verification ticket."""
    outcome = await flow.verify_code(
        email=payload.email,
        phone=payload.phone,
        purpose=payload.purpose,
        code=payload.code,
        client_ip=client_ip,
    )
    if not outcome.ok:
        return _failure(outcome)
    return OtpVerifyResponse(
        message=outcome.message or "OTP verified successfully",
        subject=str(outcome.data["subject"]),
        purpose=payload.purpose,
        verification_token=str(outcome.data["verification_token"]),
    )
