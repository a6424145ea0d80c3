"""Capability contracts and their LLM-backed implementation.

The state machine and orchestrator depend only on the Protocols below;
``LLMCapabilities`` fulfils all five over one provider's ChatClient.  Any
transport failure, unparsable reply or schema violation surfaces as
CapabilityError carrying the capability and provider names.
"""

from __future__ import annotations

import json
import re
from typing import Any, Protocol, Sequence

import httpx
import structlog
from pydantic import ValidationError

from delve.errors import CapabilityError
from delve.models.research import (
    DepthProfile,
    GapAnalysis,
    KnowledgeGap,
    ProviderComparison,
    ResearchPlan,
    SearchResult,
)
from delve.research import prompts
from delve.tools.chat_client import ChatClient

logger = structlog.get_logger().bind(component="research.capabilities")

MAX_FOLLOWUP_QUERIES = 4


# ── Contracts ─────────────────────────────────────────────────────────────────


class Planner(Protocol):
    async def plan(self, query: str, profile: DepthProfile) -> ResearchPlan: ...


class Reflector(Protocol):
    async def analyze(
        self, query: str, results: Sequence[SearchResult], iteration: int, max_iterations: int,
    ) -> GapAnalysis: ...

    async def generate_queries(self, gaps: Sequence[KnowledgeGap]) -> list[str]: ...


class Writer(Protocol):
    async def write(self, query: str, results: Sequence[SearchResult], gaps: Sequence[KnowledgeGap]) -> str: ...


class Comparator(Protocol):
    async def compare(self, query: str, reports: dict[str, str]) -> ProviderComparison: ...


class Consolidator(Protocol):
    async def consolidate(self, query: str, reports: dict[str, str], comparison: ProviderComparison) -> str: ...


# ── JSON extraction ───────────────────────────────────────────────────────────


def extract_json(raw: str, capability: str, provider: str | None = None, array: bool = False) -> Any:
    """Pull the first JSON object (or array) out of a model reply.

    Handles models that wrap JSON in markdown fences or surround it with prose.
    """
    pattern = r"\[.*\]" if array else r"\{.*\}"
    match = re.search(pattern, raw, flags=re.DOTALL)
    if not match:
        raise CapabilityError(capability, f"no JSON in response: {raw[:120]!r}", provider)
    try:
        return json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise CapabilityError(capability, f"invalid JSON: {exc}", provider) from exc


# ── LLM implementation ────────────────────────────────────────────────────────


class LLMCapabilities:
    """Planner, Reflector, Writer, Comparator and Consolidator over one ChatClient."""

    def __init__(self, chat: ChatClient) -> None:
        self._chat = chat

    @property
    def provider(self) -> str:
        return self._chat.provider

    async def _ask(self, capability: str, prompt: str, system: str, temperature: float = 0.4) -> str:
        try:
            return await self._chat.chat_simple(prompt=prompt, system=system, temperature=temperature)
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("capability_call_failed", capability=capability, provider=self.provider, error=str(exc))
            raise CapabilityError(capability, str(exc) or type(exc).__name__, self.provider) from exc

    async def plan(self, query: str, profile: DepthProfile) -> ResearchPlan:
        raw = await self._ask("planner", prompts.build_plan_prompt(query, profile), prompts.PLANNER_SYSTEM)
        data = extract_json(raw, "planner", self.provider)
        if not isinstance(data, dict):
            raise CapabilityError("planner", "expected a JSON object", self.provider)
        data.update({"originalQuery": query, "researchDepth": profile.depth.value})
        try:
            plan = ResearchPlan.model_validate(data)
        except ValidationError as exc:
            raise CapabilityError("planner", f"invalid plan: {exc}", self.provider) from exc
        logger.debug("plan_generated", provider=self.provider, queries=len(plan.search_queries))
        return plan

    async def analyze(
        self, query: str, results: Sequence[SearchResult], iteration: int, max_iterations: int,
    ) -> GapAnalysis:
        raw = await self._ask(
            "reflector",
            prompts.build_reflect_prompt(query, results, iteration, max_iterations),
            prompts.REFLECTOR_SYSTEM,
            temperature=0.3,
        )
        data = extract_json(raw, "reflector", self.provider)
        try:
            return GapAnalysis.model_validate(data)
        except ValidationError as exc:
            raise CapabilityError("reflector", f"invalid gap analysis: {exc}", self.provider) from exc

    async def generate_queries(self, gaps: Sequence[KnowledgeGap]) -> list[str]:
        raw = await self._ask("reflector", prompts.build_followup_prompt(gaps), prompts.FOLLOWUP_SYSTEM)
        data = extract_json(raw, "reflector", self.provider, array=True)
        queries = [str(q).strip()[:200] for q in data if isinstance(q, str) and q.strip()]
        return queries[:MAX_FOLLOWUP_QUERIES]

    async def write(self, query: str, results: Sequence[SearchResult], gaps: Sequence[KnowledgeGap]) -> str:
        report = await self._ask(
            "writer", prompts.build_write_prompt(query, results, gaps), prompts.WRITER_SYSTEM, temperature=0.7,
        )
        if not report.strip():
            raise CapabilityError("writer", "empty report", self.provider)
        return report

    async def compare(self, query: str, reports: dict[str, str]) -> ProviderComparison:
        raw = await self._ask("comparator", prompts.build_compare_prompt(query, reports), prompts.COMPARATOR_SYSTEM)
        data = extract_json(raw, "comparator", self.provider)
        try:
            return ProviderComparison.model_validate(data)
        except ValidationError as exc:
            raise CapabilityError("comparator", f"invalid comparison: {exc}", self.provider) from exc

    async def consolidate(self, query: str, reports: dict[str, str], comparison: ProviderComparison) -> str:
        report = await self._ask(
            "consolidator",
            prompts.build_consolidate_prompt(query, reports, comparison),
            prompts.CONSOLIDATOR_SYSTEM,
            temperature=0.7,
        )
        if not report.strip():
            raise CapabilityError("consolidator", "empty report", self.provider)
        return report

    async def close(self) -> None:
        await self._chat.close()


def llm_capabilities_for(provider: str) -> LLMCapabilities:
    """Default factory: LLM capabilities for a registered provider."""
    return LLMCapabilities(ChatClient.for_provider(provider))
