"""Tests for the shared counter store adapters."""

from unittest.mock import AsyncMock, MagicMock

import pytest
import redis

from donorguard.services.store import (
    TTL_MISSING,
    TTL_PERSISTENT,
    CounterStoreError,
    InMemoryCounterStore,
    RedisCounterStore,
)


@pytest.mark.asyncio
async def test_set_get_and_expire(store, clock) -> None:
    await store.set("k", "v", 10)
    assert await store.get("k") == "v"
    assert await store.ttl("k") == 10

    clock.advance(10)
    assert await store.get("k") is None
    assert await store.exists("k") is False
    assert await store.ttl("k") == TTL_MISSING


@pytest.mark.asyncio
async def test_increment_sets_expiry_only_on_creation(store, clock) -> None:
    assert await store.increment("hits", ttl_seconds=60) == 1
    clock.advance(30)
    assert await store.increment("hits", ttl_seconds=60) == 2
    # The window is anchored at the first hit.
    assert await store.ttl("hits") == 30

    clock.advance(30)
    assert await store.increment("hits", ttl_seconds=60) == 1


@pytest.mark.asyncio
async def test_increment_without_ttl_is_persistent(store) -> None:
    await store.increment("forever")
    assert await store.ttl("forever") == TTL_PERSISTENT


@pytest.mark.asyncio
async def test_increment_non_integer_raises(store) -> None:
    await store.set("text", "abc", 10)
    with pytest.raises(CounterStoreError):
        await store.increment("text")


@pytest.mark.asyncio
async def test_delete_is_idempotent() -> None:
    memory_store = InMemoryCounterStore()
    await memory_store.set("k", 1, 5)
    await memory_store.delete("k")
    await memory_store.delete("k")
    assert await memory_store.get("k") is None


def _redis_store(**methods) -> RedisCounterStore:
    client = MagicMock()
    for name, mock in methods.items():
        setattr(client, name, mock)
    return RedisCounterStore(client)


@pytest.mark.asyncio
async def test_redis_errors_become_counter_store_errors() -> None:
    redis_store = _redis_store(get=AsyncMock(side_effect=redis.ConnectionError("refused")))
    with pytest.raises(CounterStoreError):
        await redis_store.get("k")


@pytest.mark.asyncio
async def test_redis_increment_uses_atomic_script() -> None:
    script = AsyncMock(return_value=1)
    client = MagicMock()
    client.register_script.return_value = script
    redis_store = RedisCounterStore(client)

    assert await redis_store.increment("ratelimit:x:y", ttl_seconds=900) == 1
    script.assert_awaited_once_with(keys=["ratelimit:x:y"], args=[900])


@pytest.mark.asyncio
async def test_redis_set_clamps_ttl() -> None:
    set_mock = AsyncMock()
    redis_store = _redis_store(set=set_mock)
    await redis_store.set("k", "v", 0)
    set_mock.assert_awaited_once_with("k", "v", ex=1)
