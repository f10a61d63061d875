"""JWT helpers for operator access and OTP verification tickets."""
from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt

from donorguard.core.settings import settings

VERIFICATION_TOKEN_TYPE = "otp_verified"
ADMIN_TOKEN_TYPE = "admin"


def _encode(claims: dict[str, Any], expires_in: timedelta) -> str:
    to_encode = dict(claims)
    now = datetime.now(UTC)
    to_encode["iat"] = now
    to_encode["exp"] = now + expires_in
    encoded_jwt: str = jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)
    return encoded_jwt


def decode_token(token: str) -> dict[str, Any]:
    """Decode and validate a token signed with the service key.

    Raises:
        ValueError: If the signature, expiry or structure is invalid.
    """
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as err:
        raise ValueError("Could not validate credentials") from err


def create_verification_token(subject_key: str, purpose: str) -> str:
    """Return a short-lived ticket proving ``subject_key`` passed OTP verification.

    Downstream handlers (registration, password reset) accept this ticket
    instead of re-checking the code.
    """
    return _encode(
        {"sub": subject_key, "purpose": purpose, "typ": VERIFICATION_TOKEN_TYPE},
        timedelta(seconds=settings.verification_token_ttl_seconds),
    )


def create_admin_token(operator: str) -> str:
    """Return a bearer token granting access to the abuse monitoring endpoints."""
    return _encode(
        {"sub": operator, "scope": settings.admin_scope, "typ": ADMIN_TOKEN_TYPE},
        timedelta(minutes=settings.admin_token_ttl_minutes),
    )
