"""Schemas for standalone bot-verification checks."""
from __future__ import annotations

from pydantic import BaseModel, Field


class CaptchaVerifyRequest(BaseModel):
    token: str | None = Field(default=None, alias="turnstileToken")

    model_config = {"populate_by_name": True}


class CaptchaVerifyResponse(BaseModel):
    success: bool = True
    degraded: bool = False
