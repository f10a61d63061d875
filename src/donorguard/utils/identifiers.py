# src/donorguard/utils/identifiers.py
"""Normalisation and masking for the identifiers an OTP is bound to."""

from __future__ import annotations

import re

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+$")
_ASCII_DIGITS_RE = re.compile(r"[0-9]+")


def normalize_email(email: str) -> str:
    """Lower-case and trim an email address; return "" if it is not one."""
    candidate = (email or "").strip().lower()
    if not _EMAIL_RE.match(candidate):
        return ""
    return candidate


def normalize_phone_e164(phone: str) -> str:
    """Normalize a phone number to a basic E.164 form.

    Only international forms (``+`` or ``00`` prefix) are accepted; anything
    else yields "".
    """
    if not phone:
        return ""
    # Only ASCII digits form a subject key.
    if any(ch.isdigit() and not ch.isascii() for ch in phone):
        return ""
    raw = re.sub(r"[^0-9+]", "", phone)
    if raw.startswith("00"):
        raw = "+" + raw[2:]
    if not raw.startswith("+") or not _ASCII_DIGITS_RE.fullmatch(raw[1:]):
        return ""
    if not 8 <= len(raw) <= 16:
        return ""
    return raw


def mask_phone(phone: str, visible_digits: int = 2) -> str:
    if not phone:
        return ""
    if len(phone) <= visible_digits:
        return phone
    return "*" * (len(phone) - visible_digits) + phone[-visible_digits:]


def mask_email(email: str) -> str:
    if not email or "@" not in email:
        return mask_phone(email)
    local, _, domain = email.partition("@")
    return f"{local[:1]}***@{domain}"


def mask_subject(subject_key: str) -> str:
    """Mask an email or phone subject key for logging."""
    if "@" in subject_key:
        return mask_email(subject_key)
    return mask_phone(subject_key)


def mask_code(code: str) -> str:
    """Hide all but the last two digits of an OTP code."""
    if not code:
        return ""
    digits = re.sub(r"[^0-9]", "", code)
    if len(digits) <= 2:
        return "*" * len(digits)
    return "*" * (len(digits) - 2) + digits[-2:]
