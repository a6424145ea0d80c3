"""Search-result cache keyed by normalized query.

Queries are reduced to a canonical token form (lower-case, stop words and
punctuation removed, short tokens dropped, tokens sorted) so that
"What is the impact of AI on jobs?" and "AI jobs impact" share an entry.
A miss on the exact key falls back to the most Jaccard-similar cached
query at or above the similarity threshold.

Layout in Redis:
    search_cache:entry:{normalized}   JSON CacheEntry, TTL 7 days
    search_cache:index                set of every cached normalized query, same TTL
"""

from __future__ import annotations

import re

import structlog
from pydantic import ValidationError

from delve.models.research import CacheEntry, SearchResult
from delve.tools.state_store import StateStore

logger = structlog.get_logger().bind(component="search_cache")

CACHE_PREFIX = "search_cache:entry:"
INDEX_KEY = "search_cache:index"

CONTENT_LIMIT = 1000
SNIPPET_LIMIT = 300

STOP_WORDS = frozenset(
    """
    the a an and or but in on at to for of with by from as is was are were
    be been have has had do does did will would could should may might can
    about what when where why how
    """.split()
)

_STOP_WORD_RE = re.compile(r"\b(?:" + "|".join(sorted(STOP_WORDS)) + r")\b")
_PUNCT_RE = re.compile(r"[^\w\s\-]")
_SPACE_RE = re.compile(r"\s+")


def normalize_query(query: str) -> str:
    """Canonical, order-insensitive form of a search query.

    Idempotent: ``normalize_query(normalize_query(q)) == normalize_query(q)``.
    """
    text = query.lower().strip()
    text = _STOP_WORD_RE.sub(" ", text)
    text = _SPACE_RE.sub(" ", text).strip()
    text = _PUNCT_RE.sub("", text)
    # Stripping punctuation can expose a stop word ("fo'r-all"), so tokens are re-checked.
    tokens = [t for t in text.split(" ") if len(t) > 2 and not _STOP_WORD_RE.search(t)]
    return " ".join(sorted(tokens))


def jaccard_similarity(a: str, b: str) -> float:
    """|A∩B| / |A∪B| over the normalized token sets of two queries."""
    norm_a = normalize_query(a)
    norm_b = normalize_query(b)
    if norm_a == norm_b:
        return 1.0
    tokens_a = set(norm_a.split())
    tokens_b = set(norm_b.split())
    union = tokens_a | tokens_b
    if not union:
        return 0.0
    return len(tokens_a & tokens_b) / len(union)


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


def compress_results(results: list[SearchResult]) -> list[SearchResult]:
    return [
        r.model_copy(update={
            "content": _truncate(r.content, CONTENT_LIMIT) if r.content else None,
            "snippet": _truncate(r.snippet, SNIPPET_LIMIT),
        })
        for r in results
    ]


def cache_key(normalized: str) -> str:
    return f"{CACHE_PREFIX}{normalized}"


class SearchCache:
    """Similarity-matched cache of search result sets."""

    def __init__(
        self,
        store: StateStore | None = None,
        ttl: int | None = None,
        similarity_threshold: float | None = None,
        max_results: int | None = None,
    ) -> None:
        from delve.config import settings
        self.ttl = ttl or settings.search_cache_ttl_seconds
        self._store = store or StateStore(ttl=self.ttl)
        self.similarity_threshold = (
            similarity_threshold if similarity_threshold is not None
            else settings.search_cache_similarity
        )
        self.max_results = max_results or settings.search_cache_max_results

    async def _load_entry(self, normalized: str) -> CacheEntry | None:
        key = cache_key(normalized)
        record = await self._store.load(key)
        if record is None:
            return None
        try:
            return CacheEntry.model_validate(record)
        except ValidationError as exc:
            logger.warning("cache_entry_invalid_deleted", key=key, error=str(exc))
            await self._store.delete(key)
            return None

    async def find_similar(self, normalized: str) -> str | None:
        """Best cached normalized query with similarity ≥ threshold, or None.

        Index members are scanned in sorted order; on equal scores the
        first one scanned wins.
        """
        members = sorted(await self._store.redis.smembers(INDEX_KEY))
        best: str | None = None
        best_score = 0.0
        for candidate in members:
            if candidate == normalized:
                continue
            score = jaccard_similarity(normalized, candidate)
            if score >= self.similarity_threshold and score > best_score:
                best, best_score = candidate, score
        if best is not None:
            logger.debug("cache_similar_match", query=normalized, match=best, score=round(best_score, 3))
        return best

    async def lookup(self, query: str) -> list[SearchResult] | None:
        """Cached results for ``query`` (exact or similar), or None on a miss."""
        normalized = normalize_query(query)
        if not normalized:
            return None

        matched = normalized
        entry = await self._load_entry(normalized)
        if entry is None:
            similar = await self.find_similar(normalized)
            if similar is not None:
                entry = await self._load_entry(similar)
                if entry is None:
                    # Entry expired before the index did.
                    await self._store.redis.srem(INDEX_KEY, similar)
                else:
                    matched = similar

        if entry is None:
            logger.debug("cache_miss", query=query)
            return None

        entry = entry.model_copy(update={"hit_count": entry.hit_count + 1})
        await self._store.save(cache_key(matched), entry.to_record(), ttl=self.ttl)
        await self._store.redis.expire(INDEX_KEY, self.ttl)
        logger.info(
            "cache_hit",
            query=query,
            matched=matched,
            exact=matched == normalized,
            results=len(entry.results),
            hit_count=entry.hit_count,
        )
        return entry.results

    async def store(self, query: str, results: list[SearchResult]) -> None:
        """Cache ``results`` under the normalized form of ``query``.

        Empty result sets are never cached.
        """
        if not results:
            logger.debug("cache_skip_empty", query=query)
            return
        normalized = normalize_query(query)
        if not normalized:
            logger.debug("cache_skip_unnormalizable", query=query)
            return

        entry = CacheEntry(
            query=query,
            normalized_query=normalized,
            results=compress_results(results[: self.max_results]),
            hit_count=1,
            ttl=self.ttl,
            compressed=True,
        )
        await self._store.save(cache_key(normalized), entry.to_record(), ttl=self.ttl)
        await self._store.redis.sadd(INDEX_KEY, normalized)
        await self._store.redis.expire(INDEX_KEY, self.ttl)
        logger.info("cache_stored", query=query, normalized=normalized, results=len(entry.results))

    async def stats(self) -> dict:
        """Totals, hit rate and the ten most reused queries."""
        per_query: list[dict] = []
        for normalized in await self._store.redis.smembers(INDEX_KEY):
            entry = await self._load_entry(normalized)
            if entry is not None:
                per_query.append({"query": entry.query, "hit_count": entry.hit_count})

        total_queries = len(per_query)
        total_hits = sum(q["hit_count"] for q in per_query)
        hit_rate = (total_hits - total_queries) / total_hits if total_hits else 0.0
        top = sorted(per_query, key=lambda q: q["hit_count"], reverse=True)[:10]
        return {
            "total_cached_queries": total_queries,
            "cache_hit_rate": hit_rate,
            "top_queries": top,
        }

    async def clear(self) -> int:
        """Delete every cached entry and the index. Returns the entry count."""
        members = await self._store.redis.smembers(INDEX_KEY)
        for normalized in members:
            await self._store.delete(cache_key(normalized))
        await self._store.delete(INDEX_KEY)
        logger.info("cache_cleared", entries=len(members))
        return len(members)

    async def close(self) -> None:
        await self._store.close()
