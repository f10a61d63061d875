# src/donorguard/api/v1/endpoints/captcha.py
"""Standalone bot-verification endpoint."""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from donorguard.api.v1.dependencies import CaptchaVerifierDep, ClientIpDep
from donorguard.core.errors import ErrorCode, error_response
from donorguard.schemas.captcha import CaptchaVerifyRequest, CaptchaVerifyResponse

router = APIRouter(prefix="/captcha", tags=["captcha"])


@router.post("/verify", response_model=CaptchaVerifyResponse)
async def verify_captcha(
    payload: CaptchaVerifyRequest,
    verifier: CaptchaVerifierDep,
    client_ip: ClientIpDep,
) -> CaptchaVerifyResponse | JSONResponse:
    """Validate and consume a bot-verification token."""
    result = await verifier.validate(payload.token, client_ip)
    if not result.success:
        extra = {"provider_errors": list(result.provider_codes)} if result.provider_codes else None
        return error_response(
            result.error_code or ErrorCode.VALIDATION_FAILED,
            retry_after=result.retry_after,
            extra=extra,
        )
    return CaptchaVerifyResponse(degraded=result.degraded)
