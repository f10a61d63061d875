"""Delivery of OTP codes to the subject (email or SMS gateway)."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

import httpx

from donorguard.core.settings import settings
from donorguard.utils.identifiers import mask_code, mask_subject

logger = logging.getLogger(__name__)


class NotificationError(RuntimeError):
    """Raised when a code could not be handed to the delivery backend."""


class Notifier(Protocol):
    async def send(self, subject_key: str, code: str, purpose: str) -> None:  # pragma: no cover - interface
        ...


def build_message(code: str) -> str:
    try:
        return settings.otp_message_template.format(code=code)
    except (KeyError, IndexError, ValueError):
        return f"Your verification code is {code}"


@dataclass
class LogNotifier:
    """Development backend; writes a masked line to the log."""

    async def send(self, subject_key: str, code: str, purpose: str) -> None:
        logger.info(
            "OTP log backend send purpose=%s to=%s code=%s",
            purpose,
            mask_subject(subject_key),
            mask_code(code),
        )


@dataclass
class WebhookNotifier:
    """POSTs the rendered message to a delivery service (email/SMS gateway)."""

    url: str
    auth_token: str | None = None
    timeout_seconds: float = 5.0
    max_attempts: int = 3
    initial_delay: float = 0.5
    transport: httpx.AsyncBaseTransport | None = None

    async def send(self, subject_key: str, code: str, purpose: str) -> None:
        if not (self.url or "").strip():
            raise NotificationError("Webhook URL must be configured for the webhook notifier")
        payload = {"to": subject_key, "purpose": purpose, "message": build_message(code)}
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"

        async def _call() -> None:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds), transport=self.transport
            ) as client:
                response = await client.post(self.url, json=payload, headers=headers)
                response.raise_for_status()

        await _send_with_retry(
            _call,
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay,
        )
        logger.debug("OTP dispatched via webhook to=%s", mask_subject(subject_key))


async def _send_with_retry(
    call: Callable[[], Awaitable[None]],
    *,
    max_attempts: int,
    initial_delay: float,
) -> None:
    delay = initial_delay
    for attempt in range(1, max_attempts + 1):
        try:
            await call()
            return
        except httpx.HTTPError as exc:
            if attempt == max_attempts:
                raise NotificationError(f"delivery failed after {attempt} attempts: {exc}") from exc
            logger.warning("Webhook delivery attempt %s failed: %s", attempt, exc)
            await asyncio.sleep(delay)
            delay *= 2


def get_notifier() -> Notifier:
    """Return the backend selected by ``NOTIFIER_BACKEND``."""
    backend = settings.notifier_backend.lower()
    if backend == "webhook":
        return WebhookNotifier(
            url=settings.notifier_webhook_url or "",
            auth_token=settings.notifier_webhook_token,
            timeout_seconds=settings.notifier_timeout_seconds,
        )
    return LogNotifier()
