"""Tests for SearchCache — normalization, similarity matching, stats."""

from __future__ import annotations

import pytest

from delve.models.research import SearchResult
from delve.tools.search_cache import (
    CONTENT_LIMIT,
    INDEX_KEY,
    SearchCache,
    cache_key,
    compress_results,
    jaccard_similarity,
    normalize_query,
)


def make_results(n: int = 3, content: str = "body") -> list[SearchResult]:
    return [
        SearchResult(title=f"T{i}", url=f"https://example.com/{i}", snippet="s", content=content)
        for i in range(n)
    ]


@pytest.fixture
def cache(state_store):
    return SearchCache(store=state_store, ttl=600, similarity_threshold=0.8, max_results=50)


# ─────────────────────────────────────────────────────────────────────────────
# Normalization
# ─────────────────────────────────────────────────────────────────────────────

class TestNormalizeQuery:
    def test_stop_words_punctuation_and_order(self):
        assert normalize_query("What is the impact of AI on jobs?") == "impact jobs"
        assert normalize_query("jobs IMPACT") == "impact jobs"

    def test_stop_words_removed_before_punctuation(self):
        # "what's" loses "what" first, leaving a one-letter remnant
        assert normalize_query("What's new in AI-safety?") == "ai-safety new"

    def test_short_tokens_dropped(self):
        assert normalize_query("go to NY by car") == "car"

    @pytest.mark.parametrize("query", [
        "What is the impact of AI on jobs?",
        "  State-of-the-art   battery chemistry!! ",
        "the and or",
        "fo'r-all gains",
        "",
    ])
    def test_idempotent(self, query):
        once = normalize_query(query)
        assert normalize_query(once) == once

    def test_only_stop_words_normalizes_to_empty(self):
        assert normalize_query("what is the") == ""


class TestJaccard:
    def test_identical_after_normalization(self):
        assert jaccard_similarity("AI jobs impact", "the impact of AI on jobs") == 1.0

    def test_symmetric_and_bounded(self):
        a, b = "electric vehicle batteries", "electric vehicle battery recycling"
        assert jaccard_similarity(a, b) == jaccard_similarity(b, a)
        assert jaccard_similarity(a, b) == pytest.approx(2 / 5)

    def test_disjoint(self):
        assert jaccard_similarity("quantum computing", "medieval poetry") == 0.0

    def test_both_empty(self):
        assert jaccard_similarity("the", "a") == 1.0


def test_compress_truncates_long_content_only():
    long_text = "x" * (CONTENT_LIMIT + 50)
    short, long_ = compress_results(make_results(1, "short") + make_results(1, long_text))
    assert short.content == "short"
    assert long_.content == "x" * CONTENT_LIMIT + "..."


# ─────────────────────────────────────────────────────────────────────────────
# Store / lookup
# ─────────────────────────────────────────────────────────────────────────────

async def test_miss_on_empty_cache(cache):
    assert await cache.lookup("solid state batteries") is None


async def test_exact_hit_after_store(cache):
    await cache.store("solid state batteries", make_results(3))
    hits = await cache.lookup("Solid state batteries?")
    assert hits is not None
    assert [r.url for r in hits] == [f"https://example.com/{i}" for i in range(3)]


async def test_similar_query_hits(cache):
    await cache.store("solid state battery research", make_results(2))
    hits = await cache.lookup("solid state battery research 2024")
    assert hits is not None and len(hits) == 2


async def test_dissimilar_query_misses(cache):
    await cache.store("solid state battery research", make_results(2))
    assert await cache.lookup("lithium mining environmental impact") is None


async def test_empty_results_are_not_cached(cache, redis):
    await cache.store("solid state batteries", [])
    assert await cache.lookup("solid state batteries") is None
    assert await redis.smembers(INDEX_KEY) == set()


async def test_unnormalizable_query_is_not_cached(cache, redis):
    await cache.store("what is the", make_results(1))
    assert await redis.smembers(INDEX_KEY) == set()
    assert await cache.lookup("what is the") is None


async def test_results_capped_at_max(state_store):
    cache = SearchCache(store=state_store, ttl=600, max_results=2)
    await cache.store("solid state batteries", make_results(5))
    assert len(await cache.lookup("solid state batteries")) == 2


async def test_hit_increments_count(cache, state_store):
    await cache.store("solid state batteries", make_results(1))
    await cache.lookup("solid state batteries")
    await cache.lookup("solid state batteries")
    record = await state_store.load(cache_key(normalize_query("solid state batteries")))
    assert record["hitCount"] == 3


async def test_stale_index_member_is_dropped(cache, state_store, redis):
    await cache.store("solid state battery research", make_results(1))
    normalized = normalize_query("solid state battery research")
    await state_store.delete(cache_key(normalized))
    assert await cache.lookup("solid state battery research 2024") is None
    assert normalized not in await redis.smembers(INDEX_KEY)


async def test_best_similar_match_wins(cache):
    await cache.store("solid state battery research trends", make_results(1, "weaker"))
    await cache.store("solid state battery research", make_results(1, "stronger"))
    # 4/5 against the second, 4/6 (< threshold) against the first.
    hits = await cache.lookup("solid state battery research 2024")
    assert hits[0].content == "stronger"


@pytest.fixture
def clock(monkeypatch):
    now = {"t": 1_700_000_000.0}
    monkeypatch.setattr("delve.tools.redis_client.time.time", lambda: now["t"])
    return now


async def test_exact_hit_refreshes_entry_and_index_ttl(cache, redis, clock):
    await cache.store("solid state batteries", make_results(1))
    clock["t"] += 500
    assert await cache.lookup("solid state batteries") is not None

    # Past the original 600 s expiry, within the refreshed one.
    clock["t"] += 400
    assert await cache.lookup("solid state batteries") is not None
    assert await redis.smembers(INDEX_KEY) == {normalize_query("solid state batteries")}


async def test_similar_hit_refreshes_the_matched_entry(cache, state_store, redis, clock):
    await cache.store("solid state battery research", make_results(1))
    matched = normalize_query("solid state battery research")
    clock["t"] += 500
    assert await cache.lookup("solid state battery research 2024") is not None

    clock["t"] += 400
    record = await state_store.load(cache_key(matched))
    assert record is not None
    assert record["hitCount"] == 2
    assert await state_store.load(cache_key(normalize_query("solid state battery research 2024"))) is None
    assert await redis.smembers(INDEX_KEY) == {matched}


async def test_entry_expires_without_hits(cache, redis, clock):
    await cache.store("solid state batteries", make_results(1))
    clock["t"] += 601
    assert await cache.lookup("solid state batteries") is None
    assert await redis.smembers(INDEX_KEY) == set()


# ─────────────────────────────────────────────────────────────────────────────
# Stats / clear
# ─────────────────────────────────────────────────────────────────────────────

async def test_stats(cache):
    await cache.store("solid state batteries", make_results(1))
    await cache.store("sodium ion batteries", make_results(1))
    await cache.lookup("solid state batteries")
    await cache.lookup("solid state batteries")

    stats = await cache.stats()
    assert stats["total_cached_queries"] == 2
    # hit counts 3 and 1: (4 - 2) / 4
    assert stats["cache_hit_rate"] == pytest.approx(0.5)
    assert stats["top_queries"][0] == {"query": "solid state batteries", "hit_count": 3}


async def test_stats_empty(cache):
    assert await cache.stats() == {"total_cached_queries": 0, "cache_hit_rate": 0.0, "top_queries": []}


async def test_clear(cache, redis):
    await cache.store("solid state batteries", make_results(1))
    await cache.store("sodium ion batteries", make_results(1))
    assert await cache.clear() == 2
    assert await cache.lookup("solid state batteries") is None
    assert not await redis.exists(INDEX_KEY)
