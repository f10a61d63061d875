"""Automatic abuse guards applied to the OTP routes.

These complement the fixed-window rate limits:

* honeypot fields that real users never fill in;
* a minimum interval between codes sent to the same subject;
* a per-subject failed-verification lockout that outlives individual
  OTP records;
* per-IP pattern detection that blocks an IP outright through
  ``IpBlocklist`` when it looks scripted.

Store errors propagate as ``CounterStoreError``; the OTP flow resolves them
with the rate-limit failure policy.
"""

from __future__ import annotations

import json
import logging
import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Final

from donorguard.core.settings import settings
from donorguard.services.blocklist import IpBlocklist
from donorguard.services.store import CounterStore
from donorguard.utils.identifiers import mask_subject

logger = logging.getLogger(__name__)

HONEYPOT_FIELDS: Final[tuple[str, ...]] = ("username", "firstname", "lastname", "company")

FREQUENCY_PREFIX: Final[str] = "subject_freq"
FAILURE_PREFIX: Final[str] = "otp_failures"
PATTERN_PREFIX: Final[str] = "pattern"

HOUR_SECONDS: Final[int] = 60 * 60


def honeypot_triggered(fields: Mapping[str, str | None]) -> bool:
    """Return True when any hidden form field carries a value."""
    for name in HONEYPOT_FIELDS:
        value = fields.get(name)
        if value and value.strip():
            return True
    return False


class SubjectFrequencyGuard:
    """Minimum interval between codes requested for one subject."""

    def __init__(
        self,
        store: CounterStore,
        *,
        min_interval_seconds: int | None = None,
        ttl_seconds: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self.min_interval_seconds = min_interval_seconds or settings.subject_min_interval_seconds
        self.ttl_seconds = ttl_seconds or settings.subject_frequency_ttl_seconds
        self._clock = clock

    @staticmethod
    def _key(subject_key: str) -> str:
        return f"{FREQUENCY_PREFIX}:{subject_key}"

    async def check(self, subject_key: str) -> int | None:
        """Stamp this request; return seconds to wait if the last one was too recent."""
        key = self._key(subject_key)
        now = self._clock()
        last = await self._store.get(key)
        if last is not None:
            try:
                elapsed = now - float(last)
            except ValueError:
                elapsed = self.min_interval_seconds
            if 0 <= elapsed < self.min_interval_seconds:
                return max(1, math.ceil(self.min_interval_seconds - elapsed))
        await self._store.set(key, repr(now), self.ttl_seconds)
        return None

    async def reset(self, subject_key: str) -> None:
        await self._store.delete(self._key(subject_key))


class FailedAttemptGuard:
    """Counts failed verifications per subject across reissued codes."""

    def __init__(
        self,
        store: CounterStore,
        *,
        threshold: int | None = None,
        lockout_seconds: int | None = None,
    ) -> None:
        self._store = store
        self.threshold = threshold or settings.otp_failure_lockout_threshold
        self.lockout_seconds = lockout_seconds or settings.otp_failure_lockout_seconds

    @staticmethod
    def _key(subject_key: str) -> str:
        return f"{FAILURE_PREFIX}:{subject_key}"

    async def locked_for(self, subject_key: str) -> int | None:
        """Return the remaining lockout in seconds, or None when not locked."""
        key = self._key(subject_key)
        raw = await self._store.get(key)
        try:
            failures = int(raw or 0)
        except ValueError:
            failures = 0
        if failures < self.threshold:
            return None
        ttl = await self._store.ttl(key)
        return ttl if ttl > 0 else self.lockout_seconds

    async def record_failure(self, subject_key: str) -> int:
        failures = await self._store.increment(self._key(subject_key), ttl_seconds=self.lockout_seconds)
        if failures == self.threshold:
            logger.warning(
                "Verification locked for %s after %d failures", mask_subject(subject_key), failures
            )
        return failures

    async def clear(self, subject_key: str) -> None:
        await self._store.delete(self._key(subject_key))


@dataclass
class PatternHistory:
    """Recent OTP requests from one IP, stored as JSON."""

    subjects: list[str] = field(default_factory=list)
    timestamps: list[float] = field(default_factory=list)
    user_agents: list[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, raw: str | None) -> PatternHistory:
        if not raw:
            return cls()
        try:
            data = json.loads(raw)
            return cls(
                subjects=[str(s) for s in data.get("subjects", [])],
                timestamps=[float(t) for t in data.get("timestamps", [])],
                user_agents=[str(u) for u in data.get("user_agents", [])],
            )
        except (TypeError, ValueError, AttributeError):
            return cls()

    def to_payload(self) -> str:
        return json.dumps(
            {"subjects": self.subjects, "timestamps": self.timestamps, "user_agents": self.user_agents}
        )


@dataclass(frozen=True)
class PatternVerdict:
    """Why an IP was blocked and for how long."""

    reason: str
    block_seconds: int


class SuspiciousPatternDetector:
    """Blocks IPs whose recent OTP requests look automated.

    Three patterns trigger a block: too many requests in the last hour,
    too many distinct subjects among the last ``history_size`` requests,
    and too many distinct User-Agent strings. History is a
    read-modify-write of one JSON value; concurrent requests from the same
    IP may lose an entry.
    """

    def __init__(
        self,
        store: CounterStore,
        blocklist: IpBlocklist,
        *,
        clock: Callable[[], float] = time.time,
        history_size: int | None = None,
        max_requests_per_hour: int | None = None,
        max_distinct_subjects: int | None = None,
        max_user_agents: int | None = None,
    ) -> None:
        self._store = store
        self._blocklist = blocklist
        self._clock = clock
        self.history_size = history_size or settings.pattern_history_size
        self.max_requests_per_hour = max_requests_per_hour or settings.pattern_max_requests_per_hour
        self.max_distinct_subjects = max_distinct_subjects or settings.pattern_max_distinct_subjects
        self.max_user_agents = max_user_agents or settings.pattern_max_user_agents

    @staticmethod
    def _key(ip: str) -> str:
        return f"{PATTERN_PREFIX}:{ip}"

    def _evaluate(self, history: PatternHistory) -> PatternVerdict | None:
        if len(history.timestamps) > self.max_requests_per_hour:
            return PatternVerdict("suspicious_activity", settings.pattern_block_seconds)
        if len(set(history.subjects)) > self.max_distinct_subjects:
            return PatternVerdict("subject_enumeration", settings.pattern_enumeration_block_seconds)
        if len(history.user_agents) > self.max_user_agents:
            return PatternVerdict("multiple_user_agents", settings.pattern_block_seconds)
        return None

    async def observe(self, ip: str, subject_key: str, user_agent: str) -> PatternVerdict | None:
        """Record one request and block ``ip`` if its history crosses a threshold."""
        key = self._key(ip)
        now = self._clock()
        history = PatternHistory.from_payload(await self._store.get(key))

        history.subjects = (history.subjects + [subject_key])[-self.history_size:]
        history.timestamps = [t for t in history.timestamps if now - t < HOUR_SECONDS] + [now]
        if user_agent not in history.user_agents:
            history.user_agents.append(user_agent)

        verdict = self._evaluate(history)
        if verdict is not None:
            await self._blocklist.block(ip, verdict.reason, verdict.block_seconds)
            await self._store.delete(key)
            logger.warning(
                "Blocked %s for %ss: %s", ip, verdict.block_seconds, verdict.reason
            )
            return verdict

        await self._store.set(key, history.to_payload(), settings.pattern_history_ttl_seconds)
        return None
