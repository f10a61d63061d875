# src/donorguard/utils/hash.py
"""Hashing helpers built on BLAKE3."""

from __future__ import annotations

from blake3 import blake3


def blake3_digest(data: bytes) -> bytes:
    """Return the byte digest of the supplied data."""
    return blake3(data).digest()


def blake3_hexdigest(data: bytes) -> str:
    """Return the hexadecimal digest of the supplied data."""
    return blake3(data).hexdigest()


def token_digest(token: str) -> str:
    """Return a deterministic one-way digest for an opaque client token.

    Tokens are never stored or logged verbatim; only this digest is.
    """
    return blake3_hexdigest(token.encode("utf-8"))
