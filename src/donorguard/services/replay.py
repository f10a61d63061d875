"""Replay protection for single-use bot-verification tokens."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Final

from donorguard.core.settings import settings
from donorguard.services.store import CounterStore, get_counter_store
from donorguard.utils.hash import token_digest

USED_TOKEN_PREFIX: Final[str] = "captcha_used"


class ReplayGuard:
    """Remembers consumed token digests for longer than the tokens live.

    Callers must check ``was_used`` before verifying a token upstream and
    call ``mark_used`` only after the upstream accepted it, so a token the
    provider rejected can still be retried. Store errors propagate as
    ``CounterStoreError``; deciding what that means is the caller's job.
    """

    def __init__(
        self,
        store: CounterStore,
        *,
        ttl_seconds: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self.ttl_seconds = ttl_seconds or settings.replay_ttl_seconds
        self._clock = clock

    @staticmethod
    def hash(token: str) -> str:
        """Return the digest under which ``token`` is tracked."""
        return token_digest(token)

    @staticmethod
    def _key(token_hash: str) -> str:
        return f"{USED_TOKEN_PREFIX}:{token_hash}"

    async def was_used(self, token_hash: str) -> bool:
        """Return True if the token digest has already been consumed."""
        return await self._store.exists(self._key(token_hash))

    async def mark_used(self, token_hash: str) -> None:
        """Record the token digest as consumed."""
        await self._store.set(
            self._key(token_hash),
            int(self._clock()),
            self.ttl_seconds,
        )

    async def used_at(self, token_hash: str) -> int | None:
        """Return the unix time the digest was consumed, if it was."""
        raw = await self._store.get(self._key(token_hash))
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            return None


def get_replay_guard() -> ReplayGuard:
    """Return a replay guard wired to the process-wide store."""
    return ReplayGuard(get_counter_store())
