"""Integration tests — StateStore and RedisClient against a real Redis server."""

from __future__ import annotations

import asyncio

import pytest

from delve.tools.state_store import StateStore

pytestmark = pytest.mark.integration


async def test_connects_to_real_server(redis_client):
    await redis_client.set("delvetest_ping", "pong", ttl=5)
    assert not redis_client.is_in_memory
    assert await redis_client.get("delvetest_ping") == "pong"
    await redis_client.delete("delvetest_ping")


async def test_save_load_roundtrip(redis_client, key_prefix):
    store = StateStore(redis=redis_client, ttl=60)
    record = {"id": "r1", "status": "searching", "queries": ["a", "b"], "score": 0.75}

    await store.save(f"{key_prefix}r1", record)

    assert await store.load(f"{key_prefix}r1") == record
    assert await store.list_keys(key_prefix) == [f"{key_prefix}r1"]


async def test_corrupted_record_is_deleted(redis_client, key_prefix):
    store = StateStore(redis=redis_client, ttl=60)
    await redis_client.set(f"{key_prefix}bad", "{not json", ttl=60)

    assert await store.load(f"{key_prefix}bad") is None
    assert not await redis_client.exists(f"{key_prefix}bad")


async def test_compare_and_set_rejects_stale_expectation(redis_client, key_prefix):
    key = f"{key_prefix}cas"
    assert await redis_client.compare_and_set(key, None, "v1", ttl=60)
    assert not await redis_client.compare_and_set(key, None, "v2", ttl=60)
    assert await redis_client.compare_and_set(key, "v1", "v2", ttl=60)
    assert await redis_client.get(key) == "v2"


async def test_concurrent_updates_lose_nothing(redis_client, key_prefix):
    store = StateStore(redis=redis_client, ttl=60)
    key = f"{key_prefix}counter"

    def append(tag):
        def mutate(current):
            seen = list((current or {}).get("seen", []))
            return {"seen": seen + [tag]}
        return mutate

    await asyncio.gather(*(store.update(key, append(f"w{i}"), max_attempts=50) for i in range(5)))

    stored = await store.load(key)
    assert sorted(stored["seen"]) == [f"w{i}" for i in range(5)]

