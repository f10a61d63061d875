"""Temporary IP blocks set by operators or by pattern detection."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final

from donorguard.services.store import CounterStore

BLOCK_PREFIX: Final[str] = "blocked"


@dataclass(frozen=True)
class BlockStatus:
    blocked: bool
    reason: str | None = None
    remaining_seconds: int = 0


class IpBlocklist:
    """IP blocks stored with a TTL in the shared store.

    Store errors propagate; callers choose between failing open and closed.
    """

    def __init__(self, store: CounterStore) -> None:
        self._store = store

    @staticmethod
    def _key(ip: str) -> str:
        return f"{BLOCK_PREFIX}:{ip}"

    async def block(self, ip: str, reason: str, duration_seconds: int) -> None:
        await self._store.set(self._key(ip), reason or "blocked", duration_seconds)

    async def unblock(self, ip: str) -> bool:
        """Lift a block; return False if none was active."""
        key = self._key(ip)
        if not await self._store.exists(key):
            return False
        await self._store.delete(key)
        return True

    async def status(self, ip: str) -> BlockStatus:
        key = self._key(ip)
        reason = await self._store.get(key)
        if reason is None:
            return BlockStatus(blocked=False)
        ttl = await self._store.ttl(key)
        return BlockStatus(blocked=True, reason=reason, remaining_seconds=max(ttl, 0))
