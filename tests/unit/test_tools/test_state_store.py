"""Tests for StateStore — serialization guard, corruption handling, CAS update."""

from __future__ import annotations

import pytest

from delve.errors import ConcurrentUpdateError, SerializationError
from delve.tools.state_store import StateStore, ensure_serializable


class TestEnsureSerializable:
    def test_plain_json_tree_passes(self):
        ensure_serializable({"a": [1, 2.5, "x", None, True, {"b": []}]})

    def test_cycle_is_rejected(self):
        record: dict = {"a": 1}
        record["self"] = record
        with pytest.raises(SerializationError, match="circular"):
            ensure_serializable(record)

    def test_shared_reference_is_not_a_cycle(self):
        shared = {"x": 1}
        ensure_serializable({"a": shared, "b": shared})

    @pytest.mark.parametrize("bad", [float("nan"), float("inf"), object(), {1, 2}])
    def test_non_data_values_are_rejected(self, bad):
        with pytest.raises(SerializationError):
            ensure_serializable({"field": bad})

    def test_non_string_key_is_rejected(self):
        with pytest.raises(SerializationError, match="non-string key"):
            ensure_serializable({"a": {1: "x"}})

    def test_error_carries_path(self):
        with pytest.raises(SerializationError) as info:
            ensure_serializable({"a": [1, {"b": float("nan")}]})
        assert info.value.path == "root.a[1].b"


async def test_save_then_load(state_store):
    await state_store.save("research:x", {"id": "x", "items": [1, 2]})
    assert await state_store.load("research:x") == {"id": "x", "items": [1, 2]}


async def test_unserializable_record_writes_nothing(state_store):
    record: dict = {"id": "x"}
    record["loop"] = record
    with pytest.raises(SerializationError):
        await state_store.save("research:x", record)
    assert not await state_store.exists("research:x")


async def test_missing_key_loads_none(state_store):
    assert await state_store.load("research:nope") is None


@pytest.mark.parametrize("raw", ["{not json", "[1, 2]", '"just a string"'])
async def test_corrupted_record_is_deleted(state_store, redis, raw):
    await redis.set("research:bad", raw)
    assert await state_store.load("research:bad") is None
    assert not await redis.exists("research:bad")


async def test_list_keys_by_prefix(state_store):
    await state_store.save("research:a", {"n": 1})
    await state_store.save("research:b", {"n": 2})
    await state_store.save("multi_research:c", {"n": 3})
    assert sorted(await state_store.list_keys("research:")) == ["research:a", "research:b"]


async def test_save_uses_configured_ttl(redis):
    store = StateStore(redis=redis, ttl=123)
    seen = {}
    original = redis.set

    async def spy(key, value, ttl=None):
        seen[key] = ttl
        await original(key, value, ttl=ttl)

    redis.set = spy
    await store.save("research:x", {"a": 1})
    assert seen["research:x"] == 123


class TestUpdate:
    async def test_mutator_sees_current_record(self, state_store):
        await state_store.save("agg", {"count": 1})
        result = await state_store.update("agg", lambda r: {"count": r["count"] + 1})
        assert result == {"count": 2}
        assert await state_store.load("agg") == {"count": 2}

    async def test_mutator_returning_none_is_a_noop(self, state_store):
        await state_store.save("agg", {"count": 1})
        assert await state_store.update("agg", lambda r: None) == {"count": 1}

    async def test_lost_race_is_retried(self, state_store, redis):
        await state_store.save("agg", {"count": 1})
        calls = []
        original = redis.compare_and_set

        async def flaky(key, expected, value, ttl=None):
            calls.append(expected)
            if len(calls) == 1:
                # Another writer lands between our read and our write.
                await redis.set(key, '{"count":10}')
                return False
            return await original(key, expected, value, ttl=ttl)

        redis.compare_and_set = flaky
        result = await state_store.update("agg", lambda r: {"count": r["count"] + 1})
        assert result == {"count": 11}
        assert len(calls) == 2

    async def test_exhausted_retries_raise(self, state_store, redis):
        await state_store.save("agg", {"count": 1})

        async def always_lose(key, expected, value, ttl=None):
            return False

        redis.compare_and_set = always_lose
        with pytest.raises(ConcurrentUpdateError) as info:
            await state_store.update("agg", lambda r: {"count": 2}, max_attempts=3)
        assert info.value.attempts == 3
