"""Web search adapter: cache first, live provider second.

``WebSearchAdapter.search`` is the SearchProvider the state machine sees.
On a cache miss it calls the live provider and writes the fresh hits back
with a neutral relevance score; scoring against the caller's query happens
in the state machine.
"""

from __future__ import annotations

from typing import Protocol

import structlog

from delve.models.research import SearchHit
from delve.research.relevance import NEUTRAL_SCORE, hit_to_result, result_to_hit
from delve.tools.search_cache import SearchCache

logger = structlog.get_logger().bind(component="research.search")


class SearchProvider(Protocol):
    async def search(self, query: str, max_results: int = 5) -> list[SearchHit]: ...


class WebSearchAdapter:
    """SearchProvider that consults a SearchCache before the live provider."""

    def __init__(self, provider: SearchProvider, cache: SearchCache | None = None) -> None:
        self._provider = provider
        self._cache = cache

    async def search(self, query: str, max_results: int = 5) -> list[SearchHit]:
        if self._cache is not None:
            cached = await self._cache.lookup(query)
            if cached:
                logger.debug("search_from_cache", query=query, results=len(cached))
                return [result_to_hit(r) for r in cached[:max_results]]

        hits = await self._provider.search(query, max_results)
        logger.debug("search_live", query=query, results=len(hits))

        if hits and self._cache is not None:
            await self._cache.store(
                query, [hit_to_result(h, query, score=NEUTRAL_SCORE) for h in hits],
            )
        return hits

    async def close(self) -> None:
        close = getattr(self._provider, "close", None)
        if close is not None:
            await close()
        if self._cache is not None:
            await self._cache.close()
