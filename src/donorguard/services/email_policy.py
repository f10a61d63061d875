"""Email address screening applied before an OTP is sent."""

from __future__ import annotations

from typing import Final

from donorguard.core.errors import ErrorCode

DISPOSABLE_DOMAINS: Final[frozenset[str]] = frozenset(
    {
        "10minutemail.com",
        "guerrillamail.com",
        "mailinator.com",
        "tempmail.org",
        "temp-mail.org",
        "yopmail.com",
        "maildrop.cc",
        "throwaway.email",
        "getnada.com",
        "tempmail.email",
    }
)

MIN_DOMAIN_LENGTH: Final[int] = 4


def check_email_domain(email: str) -> ErrorCode | None:
    """Return an error code if the address should not receive a code."""
    _, _, domain = (email or "").rpartition("@")
    domain = domain.lower()
    if not domain:
        return ErrorCode.INVALID_EMAIL
    if (
        len(domain) < MIN_DOMAIN_LENGTH
        or ".." in domain
        or domain.startswith(".")
        or domain.endswith(".")
        or "." not in domain
    ):
        return ErrorCode.INVALID_EMAIL
    if domain in DISPOSABLE_DOMAINS:
        return ErrorCode.DISPOSABLE_EMAIL
    return None
