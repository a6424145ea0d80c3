"""Async client for the Exa web search API.

    Search + contents:  POST {exa_api_url}/search
                        {"query", "numResults", "contents": {"text": true, "livecrawl": "always"}}

Auth is the ``x-api-key`` header.  This is the live SearchProvider behind
``WebSearchAdapter``; it never touches the cache itself.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from delve.config import settings
from delve.errors import CapabilityError
from delve.models.research import SearchHit

logger = structlog.get_logger().bind(component="exa_search")

MAX_NUM_RESULTS = 10


class ExaSearchClient:
    """Single httpx client, single base URL, API key on every request."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.exa_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.exa_api_key
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _auth_headers(self) -> dict[str, str]:
        if self.api_key:
            return {"x-api-key": self.api_key}
        return {}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._auth_headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def search(self, query: str, max_results: int = 5) -> list[SearchHit]:
        """Live search with page text. Raises CapabilityError on any failure."""
        num_results = max(1, min(max_results, MAX_NUM_RESULTS))
        client = await self._get_client()
        payload: dict[str, Any] = {
            "query": query,
            "numResults": num_results,
            "contents": {"text": True, "livecrawl": "always"},
        }
        try:
            response = await client.post("/search", json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            logger.error("exa_search_failed", query=query, error=str(e))
            raise CapabilityError("search", str(e), provider="exa") from e
        except ValueError as e:
            logger.error("exa_search_bad_json", query=query, error=str(e))
            raise CapabilityError("search", f"invalid JSON response: {e}", provider="exa") from e

        hits = [
            SearchHit(
                title=item.get("title") or "Untitled",
                url=item["url"],
                content=item.get("text") or "",
                favicon_url=item.get("favicon"),
            )
            for item in body.get("results", [])
            if isinstance(item, dict) and item.get("url")
        ]
        logger.debug("exa_search_ok", query=query, requested=num_results, returned=len(hits))
        return hits
