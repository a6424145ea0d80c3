"""Relevance scoring and URL deduplication for search results."""

from __future__ import annotations

import re
from typing import Iterable

from delve.models.research import SearchHit, SearchResult

SNIPPET_CHARS = 200
MIN_SCORE = 0.1
NEUTRAL_SCORE = 0.5


def query_terms(query: str) -> list[str]:
    return [t for t in query.lower().split() if len(t) > 2]


def score_relevance(query: str, title: str, content: str) -> float:
    """Term-overlap relevance in [0.1, 1].

    Per query term (length > 2): up to 1.0 for occurrences anywhere
    (0.3 each), +0.5 if it appears in the title, +0.2 if in the content.
    The sum is averaged over terms and capped at 1.  A query with no
    scorable terms gets 0.5.
    """
    terms = query_terms(query)
    if not terms:
        return NEUTRAL_SCORE

    title_l = title.lower()
    content_l = content.lower()
    haystack = f"{title_l} {content_l}"

    total = 0.0
    for term in terms:
        matches = len(re.findall(re.escape(term), haystack))
        if matches:
            total += min(matches * 0.3, 1.0)
        if term in title_l:
            total += 0.5
        if term in content_l:
            total += 0.2

    return max(min(total / len(terms), 1.0), MIN_SCORE)


def dedupe_by_url(results: Iterable[SearchResult], seen: set[str] | None = None) -> list[SearchResult]:
    """Keep the first result for each URL. ``seen`` pre-seeds already-known URLs."""
    known = set(seen) if seen else set()
    unique: list[SearchResult] = []
    for result in results:
        if result.url in known:
            continue
        known.add(result.url)
        unique.append(result)
    return unique


def hit_to_result(hit: SearchHit, query: str, score: float | None = None) -> SearchResult:
    """Scored SearchResult for a raw hit. ``score=None`` computes relevance to ``query``."""
    return SearchResult(
        title=hit.title,
        url=hit.url,
        snippet=hit.content[:SNIPPET_CHARS],
        content=hit.content,
        relevance_score=score_relevance(query, hit.title, hit.content) if score is None else score,
        favicon_url=hit.favicon_url,
    )


def result_to_hit(result: SearchResult) -> SearchHit:
    return SearchHit(
        title=result.title,
        url=result.url,
        content=result.content or "",
        favicon_url=result.favicon_url,
    )


def rank(results: Iterable[SearchResult]) -> list[SearchResult]:
    """Sort by relevance, highest first (stable for equal scores)."""
    return sorted(results, key=lambda r: r.relevance_score, reverse=True)
