"""Async client for OpenAI-compatible chat-completions endpoints.

Every provider in ``delve.tools.providers`` exposes one of these, so a
single client class serves the planner, reflector, writer, comparator and
consolidator for any backend.  HTTP errors propagate as ``httpx`` exceptions;
the capability layer turns them into CapabilityError.
"""

from __future__ import annotations

import re
from typing import Any

import httpx
import structlog

from delve.config import DelveSettings, settings as default_settings
from delve.tools.providers import get_provider

logger = structlog.get_logger().bind(component="chat_client")

_THINK_RE = re.compile(r"<think>.*?</think>", flags=re.DOTALL)


def strip_think(text: str) -> str:
    """Remove any <think>...</think> blocks left in by reasoning models."""
    if "</think>" in text and "<think>" not in text:
        # Some servers drop the opening tag.
        text = text.partition("</think>")[2]
    return _THINK_RE.sub("", text).strip()


class ChatClient:
    """Bearer-authenticated chat client for one provider and model."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        provider: str = "openai",
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.provider = provider
        self.timeout = timeout if timeout is not None else default_settings.llm_timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def for_provider(
        cls,
        name: str,
        settings: DelveSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "ChatClient":
        cfg = settings or default_settings
        spec = get_provider(name)
        return cls(
            base_url=spec.base_url,
            api_key=spec.api_key(cfg),
            model=spec.model(cfg),
            provider=name,
            timeout=cfg.llm_timeout_seconds,
            transport=transport,
        )

    def _auth_headers(self) -> dict[str, str]:
        if self.api_key:
            return {"Authorization": f"Bearer {self.api_key}"}
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
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def chat(
        self,
        messages: list[dict[str, str]],
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> dict[str, Any]:
        """Send a chat completion request and return the full response dict."""
        client = await self._get_client()
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        response = await client.post("/chat/completions", json=payload)
        response.raise_for_status()
        result = response.json()

        logger.debug(
            "chat_completion",
            provider=self.provider,
            model=self.model,
            messages_count=len(messages),
            usage=result.get("usage"),
        )
        return result

    async def chat_simple(
        self,
        prompt: str,
        system: str = "",
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> str:
        """Convenience: send a simple prompt, get back just the text."""
        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        result = await self.chat(messages=messages, temperature=temperature, max_tokens=max_tokens)
        try:
            content = result["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ValueError(f"Malformed chat completion response: {str(result)[:200]}") from e
        return strip_think(content)
