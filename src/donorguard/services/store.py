"""Shared counter store adapters.

Every piece of security state (OTP records, rate-limit windows, consumed
CAPTCHA tokens, IP blocks) lives in a TTL-capable key-value store shared by
all serving processes. Components receive a ``CounterStore`` through their
constructors; nothing holds authoritative copies in process memory.

TTL conventions follow Redis: ``ttl`` returns ``-2`` for a missing key and
``-1`` for a key without expiry.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from threading import Lock
from typing import Protocol

import redis
import redis.asyncio as aioredis

from donorguard.core.settings import settings

logger = logging.getLogger(__name__)

TTL_MISSING = -2
TTL_PERSISTENT = -1

# INCR and EXPIRE must happen in one round-trip or a crash between them
# leaves a counter that never expires.
_INCREMENT_WITH_EXPIRY = """
local value = redis.call('INCR', KEYS[1])
if value == 1 and tonumber(ARGV[1]) > 0 then
    redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return value
"""


class CounterStoreError(RuntimeError):
    """Raised when the shared store cannot be reached or misbehaves."""


class CounterStore(Protocol):
    """Contract every shared store adapter satisfies."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str | int, ttl_seconds: int) -> None: ...

    async def increment(self, key: str, ttl_seconds: int | None = None) -> int: ...

    async def delete(self, key: str) -> None: ...

    async def exists(self, key: str) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def close(self) -> None: ...


class RedisCounterStore:
    """Counter store backed by Redis via ``redis.asyncio``."""

    def __init__(self, client: aioredis.Redis) -> None:
        self._redis = client
        self._increment_script = client.register_script(_INCREMENT_WITH_EXPIRY)

    @classmethod
    def from_url(cls, url: str, *, socket_timeout: float | None = None) -> RedisCounterStore:
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    async def get(self, key: str) -> str | None:
        try:
            return await self._redis.get(key)
        except (redis.RedisError, OSError) as exc:
            raise CounterStoreError(f"get failed for {key}: {exc}") from exc

    async def set(self, key: str, value: str | int, ttl_seconds: int) -> None:
        try:
            await self._redis.set(key, value, ex=max(1, int(ttl_seconds)))
        except (redis.RedisError, OSError) as exc:
            raise CounterStoreError(f"set failed for {key}: {exc}") from exc

    async def increment(self, key: str, ttl_seconds: int | None = None) -> int:
        try:
            if ttl_seconds is None:
                return int(await self._redis.incr(key))
            return int(await self._increment_script(keys=[key], args=[int(ttl_seconds)]))
        except (redis.RedisError, OSError) as exc:
            raise CounterStoreError(f"increment failed for {key}: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(key)
        except (redis.RedisError, OSError) as exc:
            raise CounterStoreError(f"delete failed for {key}: {exc}") from exc

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._redis.exists(key))
        except (redis.RedisError, OSError) as exc:
            raise CounterStoreError(f"exists failed for {key}: {exc}") from exc

    async def ttl(self, key: str) -> int:
        try:
            return int(await self._redis.ttl(key))
        except (redis.RedisError, OSError) as exc:
            raise CounterStoreError(f"ttl failed for {key}: {exc}") from exc

    async def close(self) -> None:
        await self._redis.aclose()


class InMemoryCounterStore:
    """Process-local store with the same semantics as the Redis adapter.

    Suitable for tests and single-process development only. Expiry is
    evaluated lazily against ``clock`` on every access.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._values: dict[str, str] = {}
        self._expiry: dict[str, float] = {}
        self._lock = Lock()

    def _purge_if_expired(self, key: str) -> None:
        expires_at = self._expiry.get(key)
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            self._expiry.pop(key, None)

    async def get(self, key: str) -> str | None:
        with self._lock:
            self._purge_if_expired(key)
            return self._values.get(key)

    async def set(self, key: str, value: str | int, ttl_seconds: int) -> None:
        with self._lock:
            self._values[key] = str(value)
            self._expiry[key] = self._clock() + max(1, int(ttl_seconds))

    async def increment(self, key: str, ttl_seconds: int | None = None) -> int:
        with self._lock:
            self._purge_if_expired(key)
            current = self._values.get(key)
            if current is None:
                value = 1
                if ttl_seconds is not None and ttl_seconds > 0:
                    self._expiry[key] = self._clock() + int(ttl_seconds)
            else:
                try:
                    value = int(current) + 1
                except ValueError as exc:
                    raise CounterStoreError(f"value at {key} is not an integer") from exc
            self._values[key] = str(value)
            return value

    async def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)
            self._expiry.pop(key, None)

    async def exists(self, key: str) -> bool:
        with self._lock:
            self._purge_if_expired(key)
            return key in self._values

    async def ttl(self, key: str) -> int:
        with self._lock:
            self._purge_if_expired(key)
            if key not in self._values:
                return TTL_MISSING
            expires_at = self._expiry.get(key)
            if expires_at is None:
                return TTL_PERSISTENT
            return max(0, int(round(expires_at - self._clock())))

    async def close(self) -> None:
        return None


_STORE: CounterStore | None = None


def build_counter_store() -> CounterStore:
    """Create the adapter selected by ``COUNTER_STORE_BACKEND``."""
    backend = settings.counter_store_backend.lower()
    if backend == "memory":
        logger.warning("Using in-memory counter store; state is not shared across processes")
        return InMemoryCounterStore()
    if backend != "redis":
        raise ValueError(f"Unsupported counter store backend: {settings.counter_store_backend}")
    return RedisCounterStore.from_url(
        settings.redis_url,
        socket_timeout=settings.redis_socket_timeout_seconds,
    )


def get_counter_store() -> CounterStore:
    """Return the process-wide counter store adapter."""
    global _STORE
    if _STORE is None:
        _STORE = build_counter_store()
    return _STORE


def set_counter_store(store: CounterStore | None) -> None:
    """Replace the process-wide adapter (used by tests and shutdown)."""
    global _STORE
    _STORE = store


async def close_counter_store() -> None:
    """Close and forget the process-wide adapter."""
    global _STORE
    if _STORE is not None:
        await _STORE.close()
        _STORE = None
