"""Schemas for the operator abuse monitoring endpoints."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class AbuseEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ip: str
    category: str
    detail: str
    created_at: datetime


class AbuseStatsOut(BaseModel):
    total: int
    by_category: dict[str, int]
    recent: list[AbuseEventOut]


class BlockIpRequest(BaseModel):
    ip: str = Field(..., min_length=1, max_length=64)
    reason: str = Field(default="Manually blocked by admin", max_length=200)
    duration_seconds: int | None = Field(default=None, gt=0, le=30 * 24 * 60 * 60)


class BlockStatusOut(BaseModel):
    ip: str
    blocked: bool
    reason: str | None = None
    remaining_seconds: int = 0
