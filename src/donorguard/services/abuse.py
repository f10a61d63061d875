"""Append-only abuse signal log consumed by operators.

Recording is best effort: a failure to persist an event is logged here and
never reaches the request that triggered it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from donorguard.db.session import SessionLocal
from donorguard.db.time import utcnow
from donorguard.models import AbuseEvent

logger = logging.getLogger(__name__)

MAX_DETAIL_LENGTH = 1000


class AbuseCategory(str, Enum):
    """Categories operators filter on."""

    MISSING_IDENTIFIER = "MISSING_IDENTIFIER"
    INVALID_EMAIL = "INVALID_EMAIL"
    DISPOSABLE_EMAIL = "DISPOSABLE_EMAIL"
    EXISTING_USER_OTP_REQUEST = "EXISTING_USER_OTP_REQUEST"
    OTP_COOLDOWN = "OTP_COOLDOWN"
    INVALID_OTP_FORMAT = "INVALID_OTP_FORMAT"
    INVALID_OTP = "INVALID_OTP"
    EXPIRED_OTP_ATTEMPT = "EXPIRED_OTP_ATTEMPT"
    OTP_LOCKED = "OTP_LOCKED"
    OTP_RECORD_CORRUPT = "OTP_RECORD_CORRUPT"
    OTP_SEND_ERROR = "OTP_SEND_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    CAPTCHA_TOKEN_REUSED = "CAPTCHA_TOKEN_REUSED"
    CAPTCHA_FAILED = "CAPTCHA_FAILED"
    IP_BLOCKED = "IP_BLOCKED"
    HONEYPOT_TRIGGERED = "HONEYPOT_TRIGGERED"
    SUSPICIOUS_PATTERN = "SUSPICIOUS_PATTERN"
    FREQUENCY_LIMITED = "FREQUENCY_LIMITED"
    OTP_ATTEMPTS_EXCEEDED = "OTP_ATTEMPTS_EXCEEDED"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"


class AbuseSignalLog:
    """Persists ``AbuseEvent`` rows and mirrors them to the warning log."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    async def record(self, category: AbuseCategory | str, detail: str, ip: str | None) -> None:
        """Append one event. Never raises."""
        try:
            category_value = category.value if isinstance(category, AbuseCategory) else str(category)
            ip_value = ip or "unknown"
            detail_value = (detail or "")[:MAX_DETAIL_LENGTH]
            logger.warning(
                "[ABUSE] category=%s ip=%s detail=%s", category_value, ip_value, detail_value
            )
            await asyncio.to_thread(self._persist, category_value, detail_value, ip_value)
        except Exception:
            logger.exception("Failed to record abuse event category=%s", category)

    def _persist(self, category: str, detail: str, ip: str) -> None:
        with self._session_factory() as session:
            session.add(AbuseEvent(ip=ip, category=category, detail=detail))
            session.commit()


def recent_events(
    db: Session,
    *,
    limit: int = 100,
    category: str | None = None,
    ip: str | None = None,
    since: datetime | None = None,
) -> list[AbuseEvent]:
    """Return the newest events first, optionally filtered."""
    stmt = select(AbuseEvent).order_by(AbuseEvent.created_at.desc(), AbuseEvent.id.desc())
    if category:
        stmt = stmt.where(AbuseEvent.category == category)
    if ip:
        stmt = stmt.where(AbuseEvent.ip == ip)
    if since is not None:
        stmt = stmt.where(AbuseEvent.created_at >= since)
    return list(db.scalars(stmt.limit(limit)))


def counts_by_category(db: Session, *, since: datetime | None = None) -> dict[str, int]:
    """Return event counts grouped by category."""
    stmt = select(AbuseEvent.category, func.count(AbuseEvent.id)).group_by(AbuseEvent.category)
    if since is not None:
        stmt = stmt.where(AbuseEvent.created_at >= since)
    return {category: int(count) for category, count in db.execute(stmt)}


def purge_events_older_than(db: Session, days: int) -> int:
    """Delete events past the retention period; return how many were removed."""
    cutoff = utcnow() - timedelta(days=days)
    result = db.execute(delete(AbuseEvent).where(AbuseEvent.created_at < cutoff))
    db.commit()
    return int(result.rowcount or 0)


_ABUSE_LOG: AbuseSignalLog | None = None


def get_abuse_log() -> AbuseSignalLog:
    """Return the process-wide abuse signal log."""
    global _ABUSE_LOG
    if _ABUSE_LOG is None:
        _ABUSE_LOG = AbuseSignalLog()
    return _ABUSE_LOG
