# src/donorguard/api/v1/endpoints/admin.py
"""Operator endpoints for abuse monitoring and manual intervention."""

from __future__ import annotations

from datetime import timedelta
from typing import Annotated, Any

from fastapi import APIRouter, HTTPException, Query, status

from donorguard.api.v1.dependencies import AdminDep, BlocklistDep, OtpServiceDep, SessionDep, StoreDep
from donorguard.core.settings import settings
from donorguard.db.time import utcnow
from donorguard.schemas.abuse import (
    AbuseEventOut,
    AbuseStatsOut,
    BlockIpRequest,
    BlockStatusOut,
)
from donorguard.services.abuse import counts_by_category, recent_events
from donorguard.services.guards import FailedAttemptGuard, SubjectFrequencyGuard
from donorguard.services.store import CounterStoreError
from donorguard.utils.identifiers import normalize_email, normalize_phone_e164

router = APIRouter(prefix="/admin/abuse", tags=["admin"])


def _store_unavailable(err: CounterStoreError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=f"Counter store unavailable: {err}",
    )


@router.get("/stats", response_model=AbuseStatsOut)
async def abuse_stats(
    _: AdminDep,
    db: SessionDep,
    hours: Annotated[int, Query(gt=0, le=24 * 30)] = 24,
    limit: Annotated[int, Query(gt=0, le=500)] = 50,
) -> AbuseStatsOut:
    """Summarise abuse events recorded in the last ``hours``."""
    since = utcnow() - timedelta(hours=hours)
    by_category = counts_by_category(db, since=since)
    events = recent_events(db, limit=limit, since=since)
    return AbuseStatsOut(
        total=sum(by_category.values()),
        by_category=by_category,
        recent=[AbuseEventOut.model_validate(event) for event in events],
    )


@router.get("/events", response_model=list[AbuseEventOut])
async def list_abuse_events(
    _: AdminDep,
    db: SessionDep,
    category: str | None = None,
    ip: str | None = None,
    limit: Annotated[int, Query(gt=0, le=1000)] = 100,
) -> list[AbuseEventOut]:
    """Return the newest abuse events, optionally filtered."""
    events = recent_events(db, limit=limit, category=category, ip=ip)
    return [AbuseEventOut.model_validate(event) for event in events]


@router.post("/blocked-ips", response_model=BlockStatusOut, status_code=status.HTTP_201_CREATED)
async def block_ip(
    payload: BlockIpRequest,
    operator: AdminDep,
    blocklist: BlocklistDep,
) -> BlockStatusOut:
    """Block an IP for a fixed duration."""
    duration = payload.duration_seconds or settings.abuse_default_block_seconds
    try:
        await blocklist.block(payload.ip, f"{payload.reason} (by {operator})", duration)
    except CounterStoreError as err:
        raise _store_unavailable(err) from err
    return BlockStatusOut(
        ip=payload.ip,
        blocked=True,
        reason=f"{payload.reason} (by {operator})",
        remaining_seconds=duration,
    )


@router.get("/blocked-ips/{ip}", response_model=BlockStatusOut)
async def block_status(ip: str, _: AdminDep, blocklist: BlocklistDep) -> BlockStatusOut:
    try:
        current = await blocklist.status(ip)
    except CounterStoreError as err:
        raise _store_unavailable(err) from err
    return BlockStatusOut(
        ip=ip,
        blocked=current.blocked,
        reason=current.reason,
        remaining_seconds=current.remaining_seconds,
    )


@router.delete("/blocked-ips/{ip}")
async def unblock_ip(ip: str, _: AdminDep, blocklist: BlocklistDep) -> dict[str, Any]:
    try:
        removed = await blocklist.unblock(ip)
    except CounterStoreError as err:
        raise _store_unavailable(err) from err
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="IP is not blocked")
    return {"success": True, "ip": ip}


@router.delete("/otp/{subject}")
async def purge_pending_otp(
    subject: str, _: AdminDep, otp_service: OtpServiceDep, store: StoreDep
) -> dict[str, Any]:
    """Discard a subject's pending code, failure lockout and request interval."""
    subject_key = normalize_phone_e164(subject) if subject.startswith("+") else normalize_email(subject)
    if not subject_key:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid subject")
    try:
        await otp_service.purge(subject_key)
        await FailedAttemptGuard(store).clear(subject_key)
        await SubjectFrequencyGuard(store).reset(subject_key)
    except CounterStoreError as err:
        raise _store_unavailable(err) from err
    return {"success": True, "subject": subject_key}
