"""One-time password lifecycle.

A record moves through a small state machine::

    ISSUED --mismatch, attempts < max--> ISSUED
    ISSUED --mismatch, attempts == max--> LOCKED    (record deleted)
    ISSUED --match--------------------> CONSUMED  (record deleted)
    ISSUED --ttl----------------------> EXPIRED   (store expiry)

The record payload and its attempt counter are stored under separate keys
so attempts are counted with the store's atomic increment instead of a
read-modify-write of the JSON payload.
"""

from __future__ import annotations

import json
import logging
import math
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Final, Literal

from pydantic import BaseModel, Field, ValidationError

from donorguard.core.errors import ErrorCode
from donorguard.core.settings import settings
from donorguard.services.abuse import AbuseCategory, AbuseSignalLog
from donorguard.services.store import CounterStore, CounterStoreError
from donorguard.utils.identifiers import mask_subject

logger = logging.getLogger(__name__)

OTP_RECORD_VERSION: Final[int] = 1
RECORD_PREFIX: Final[str] = "otp"
ATTEMPTS_PREFIX: Final[str] = "otp_attempts"
CLAIM_PREFIX: Final[str] = "otp_claim"


class OtpRecord(BaseModel):
    """Stored state of one issued code.

    ``attempts`` is not part of the persisted payload; it is read from the
    companion counter key when the record is loaded.
    """

    v: Literal[1] = OTP_RECORD_VERSION
    code: str
    subject_key: str
    purpose: str
    issued_at: float
    nonce: str = Field(default_factory=lambda: secrets.token_hex(8))
    max_attempts: int = 3
    request_ip: str | None = None
    attempts: int = Field(default=0, exclude=True)

    def to_payload(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_payload(cls, raw: str) -> OtpRecord:
        """Parse a stored payload, upgrading older schema versions first.

        Raises ``ValueError`` when the payload cannot be understood.
        """
        try:
            data = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as exc:
            raise ValueError("OTP payload is not valid JSON") from exc
        if not isinstance(data, dict):
            raise ValueError("OTP payload is not an object")
        data = upgrade_payload(data)
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ValueError(f"OTP payload failed validation: {exc}") from exc


def _upgrade_v0(data: dict[str, Any]) -> dict[str, Any]:
    # Legacy v0 payloads:
    # {"otp", "timestamp" (ms), "ip", "identifier", ...}
    return {
        "v": 1,
        "code": str(data["otp"]),
        "subject_key": str(data.get("identifier", "")),
        "purpose": str(data.get("purpose", "registration")),
        "issued_at": float(data["timestamp"]) / 1000.0,
        "request_ip": data.get("ip"),
    }


_UPGRADES: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {0: _upgrade_v0}


def upgrade_payload(data: dict[str, Any]) -> dict[str, Any]:
    """Apply registered upgrades until the payload reaches the current version.

    Payloads without a ``v`` field are version 0.
    """
    version = data.get("v", 0)
    while version != OTP_RECORD_VERSION:
        upgrade = _UPGRADES.get(version)
        if upgrade is None:
            raise ValueError(f"Unsupported OTP payload version: {version!r}")
        try:
            data = upgrade(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Cannot upgrade OTP payload from version {version}") from exc
        version = data.get("v", 0)
    return data


class OtpStatus(str, Enum):
    ISSUED = "issued"
    COOLDOWN = "cooldown"
    SUCCESS = "success"
    MISMATCH = "mismatch"
    LOCKED = "locked"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"


_ERROR_BY_STATUS: dict[OtpStatus, ErrorCode] = {
    OtpStatus.COOLDOWN: ErrorCode.COOLDOWN_ACTIVE,
    OtpStatus.MISMATCH: ErrorCode.INVALID_OTP,
    OtpStatus.LOCKED: ErrorCode.TOO_MANY_FAILED_ATTEMPTS,
    OtpStatus.NOT_FOUND: ErrorCode.OTP_EXPIRED,
    OtpStatus.UNAVAILABLE: ErrorCode.SERVICE_ERROR,
}


@dataclass(frozen=True)
class GenerateResult:
    status: OtpStatus
    code: str | None = None
    expires_in: int | None = None
    retry_after: int | None = None

    @property
    def error_code(self) -> ErrorCode | None:
        return _ERROR_BY_STATUS.get(self.status)


@dataclass(frozen=True)
class VerifyResult:
    status: OtpStatus
    attempts_remaining: int | None = None
    record: OtpRecord | None = None

    @property
    def success(self) -> bool:
        return self.status is OtpStatus.SUCCESS

    @property
    def error_code(self) -> ErrorCode | None:
        return _ERROR_BY_STATUS.get(self.status)


def generate_otp_code(length: int = 6) -> str:
    """Return a uniformly random code in [10**(length-1), 10**length - 1]."""
    lower = 10 ** (length - 1)
    return str(lower + secrets.randbelow(9 * lower))


class OtpService:
    """Issues and verifies codes against the shared store.

    Any store failure yields ``UNAVAILABLE``; nothing is ever verified
    while the store cannot be consulted.
    """

    def __init__(
        self,
        store: CounterStore,
        *,
        ttl_seconds: int | None = None,
        cooldown_seconds: int | None = None,
        max_attempts: int | None = None,
        code_length: int | None = None,
        clock: Callable[[], float] = time.time,
        code_factory: Callable[[], str] | None = None,
        abuse_log: AbuseSignalLog | None = None,
    ) -> None:
        self._store = store
        self.ttl_seconds = ttl_seconds or settings.otp_ttl_seconds
        self.cooldown_seconds = (
            settings.otp_cooldown_seconds if cooldown_seconds is None else cooldown_seconds
        )
        self.max_attempts = max_attempts or settings.otp_max_attempts
        length = code_length or settings.otp_length
        self._clock = clock
        self._code_factory = code_factory or (lambda: generate_otp_code(length))
        self._abuse_log = abuse_log

    @staticmethod
    def _record_key(subject_key: str) -> str:
        return f"{RECORD_PREFIX}:{subject_key}"

    @staticmethod
    def _attempts_key(subject_key: str) -> str:
        return f"{ATTEMPTS_PREFIX}:{subject_key}"

    async def _load(self, subject_key: str, client_ip: str | None = None) -> OtpRecord | None:
        raw = await self._store.get(self._record_key(subject_key))
        if raw is None:
            return None
        try:
            record = OtpRecord.from_payload(raw)
        except ValueError as exc:
            logger.error(
                "Discarding unreadable OTP record for %s: %s", mask_subject(subject_key), exc
            )
            await self.purge(subject_key)
            if self._abuse_log is not None:
                await self._abuse_log.record(
                    AbuseCategory.OTP_RECORD_CORRUPT, mask_subject(subject_key), client_ip
                )
            return None
        attempts_raw = await self._store.get(self._attempts_key(subject_key))
        try:
            record.attempts = int(attempts_raw or 0)
        except ValueError:
            record.attempts = 0
        return record

    async def generate(
        self,
        subject_key: str,
        purpose: str,
        *,
        request_ip: str | None = None,
    ) -> GenerateResult:
        """Issue a fresh code unless one was issued within the cooldown."""
        try:
            existing = await self._load(subject_key, request_ip)
            now = self._clock()
            if existing is not None:
                elapsed = now - existing.issued_at
                if 0 <= elapsed < self.cooldown_seconds:
                    retry_after = max(1, math.ceil(self.cooldown_seconds - elapsed))
                    logger.info(
                        "OTP cooldown active for %s (%ss left)",
                        mask_subject(subject_key),
                        retry_after,
                    )
                    return GenerateResult(status=OtpStatus.COOLDOWN, retry_after=retry_after)

            record = OtpRecord(
                code=self._code_factory(),
                subject_key=subject_key,
                purpose=purpose,
                issued_at=now,
                max_attempts=self.max_attempts,
                request_ip=request_ip,
            )
            # Counter first, so a live record always has a live counter.
            await self._store.set(self._attempts_key(subject_key), 0, self.ttl_seconds)
            await self._store.set(
                self._record_key(subject_key), record.to_payload(), self.ttl_seconds
            )
        except CounterStoreError as exc:
            logger.error("OTP generation unavailable for %s: %s", mask_subject(subject_key), exc)
            return GenerateResult(status=OtpStatus.UNAVAILABLE)

        logger.info("Issued %s OTP for %s", purpose, mask_subject(subject_key))
        return GenerateResult(
            status=OtpStatus.ISSUED,
            code=record.code,
            expires_in=self.ttl_seconds,
        )

    async def verify(
        self,
        subject_key: str,
        supplied_code: str,
        *,
        expected_purpose: str | None = None,
        client_ip: str | None = None,
    ) -> VerifyResult:
        """Check ``supplied_code`` against the live record for ``subject_key``."""
        supplied = (supplied_code or "").strip()
        try:
            record = await self._load(subject_key, client_ip)
            if record is None:
                return VerifyResult(status=OtpStatus.NOT_FOUND)
            if expected_purpose is not None and record.purpose != expected_purpose:
                return VerifyResult(status=OtpStatus.NOT_FOUND)

            if secrets.compare_digest(supplied.encode(), record.code.strip().encode()):
                return await self._consume(record)

            remaining_ttl = await self._store.ttl(self._record_key(subject_key))
            counter_ttl = remaining_ttl if remaining_ttl > 0 else self.ttl_seconds
            attempts = await self._store.increment(
                self._attempts_key(subject_key), ttl_seconds=counter_ttl
            )
            if attempts >= record.max_attempts:
                await self.purge(subject_key)
                logger.warning(
                    "OTP locked for %s after %d failed attempts",
                    mask_subject(subject_key),
                    attempts,
                )
                return VerifyResult(status=OtpStatus.LOCKED, attempts_remaining=0)
            return VerifyResult(
                status=OtpStatus.MISMATCH,
                attempts_remaining=record.max_attempts - attempts,
            )
        except CounterStoreError as exc:
            logger.error("OTP verification unavailable for %s: %s", mask_subject(subject_key), exc)
            return VerifyResult(status=OtpStatus.UNAVAILABLE)

    async def _consume(self, record: OtpRecord) -> VerifyResult:
        # Only the first caller to claim this issuance succeeds.
        claim_key = f"{CLAIM_PREFIX}:{record.subject_key}:{record.nonce}"
        claims = await self._store.increment(claim_key, ttl_seconds=self.ttl_seconds)
        if claims > 1:
            return VerifyResult(status=OtpStatus.NOT_FOUND)
        await self.purge(record.subject_key)
        logger.info("OTP verified for %s", mask_subject(record.subject_key))
        return VerifyResult(status=OtpStatus.SUCCESS, record=record)

    async def purge(self, subject_key: str) -> None:
        """Delete any pending record and its attempt counter."""
        await self._store.delete(self._record_key(subject_key))
        await self._store.delete(self._attempts_key(subject_key))
