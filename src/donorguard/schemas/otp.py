"""Schemas for OTP issuance and verification."""
from __future__ import annotations

from pydantic import BaseModel, Field

from donorguard.services.guards import HONEYPOT_FIELDS
from donorguard.services.otp_flow import OtpPurpose


class OtpSendRequest(BaseModel):
    """Request a one-time code for an email address or phone number.

    ``username``, ``firstname``, ``lastname`` and ``company`` are hidden
    form fields; a human never fills them in.
    """

    email: str | None = Field(default=None, max_length=320)
    phone: str | None = Field(default=None, max_length=32)
    purpose: OtpPurpose = OtpPurpose.REGISTRATION
    captcha_token: str | None = Field(default=None, alias="turnstileToken")
    username: str | None = Field(default=None, max_length=256)
    firstname: str | None = Field(default=None, max_length=256)
    lastname: str | None = Field(default=None, max_length=256)
    company: str | None = Field(default=None, max_length=256)

    model_config = {"populate_by_name": True}

    def honeypot_values(self) -> dict[str, str | None]:
        return {name: getattr(self, name) for name in HONEYPOT_FIELDS}


class OtpSendResponse(BaseModel):
    success: bool = True
    message: str
    channel: str
    expires_in: int


class OtpVerifyRequest(BaseModel):
    email: str | None = Field(default=None, max_length=320)
    phone: str | None = Field(default=None, max_length=32)
    purpose: OtpPurpose = OtpPurpose.REGISTRATION
    code: str = Field(..., alias="otp", max_length=32)

    model_config = {"populate_by_name": True}


class OtpVerifyResponse(BaseModel):
    success: bool = True
    message: str
    subject: str
    purpose: OtpPurpose
    verification_token: str
