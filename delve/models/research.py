"""Research data model — Pydantic models for runs, plans, results and the cache.

Every record persisted to Redis is one of these models dumped with camelCase
aliases (``originalQuery``, ``searchResults`` …) so stored JSON keeps the same
shape across processes:

    RunState               one provider's run            research:{id}
    MultiProviderRunState  fan-out aggregate             multi_research:{id}
    CacheEntry             cached result set per query   search_cache:entry:{normalized}
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from delve.errors import ConfigurationError
from delve.utils.clock import now_utc


class ResearchDepth(str, Enum):
    QUICK = "quick"
    SURFACE = "surface"
    DEEP = "deep"
    COMPREHENSIVE = "comprehensive"


class RunStatus(str, Enum):
    """Per-provider run status — see ``delve.research.workflow`` for transitions."""

    PLANNING = "planning"
    SEARCHING = "searching"
    REFLECTING = "reflecting"
    WRITING = "writing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


class AggregateStatus(str, Enum):
    """Coarser status vocabulary of a multi-provider run."""

    PLANNING = "planning"
    SEARCHING = "searching"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


class GapPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ── Depth profiles ────────────────────────────────────────────────────────────


class DepthProfile(BaseModel):
    """How much work a depth setting buys."""

    model_config = ConfigDict(frozen=True)

    depth: ResearchDepth
    instruction: str
    max_iterations: int
    skip_reflection: bool
    initial_max_results: int
    followup_max_results: int


DEPTH_PROFILES: dict[ResearchDepth, DepthProfile] = {
    ResearchDepth.QUICK: DepthProfile(
        depth=ResearchDepth.QUICK,
        instruction="Create 1-2 focused search queries for rapid results",
        max_iterations=1,
        skip_reflection=True,
        initial_max_results=5,
        followup_max_results=3,
    ),
    ResearchDepth.SURFACE: DepthProfile(
        depth=ResearchDepth.SURFACE,
        instruction="Create 3-5 focused search queries for a quick overview",
        max_iterations=2,
        skip_reflection=False,
        initial_max_results=5,
        followup_max_results=5,
    ),
    ResearchDepth.DEEP: DepthProfile(
        depth=ResearchDepth.DEEP,
        instruction="Create 5-8 comprehensive search queries covering multiple angles",
        max_iterations=3,
        skip_reflection=False,
        initial_max_results=10,
        followup_max_results=5,
    ),
    ResearchDepth.COMPREHENSIVE: DepthProfile(
        depth=ResearchDepth.COMPREHENSIVE,
        instruction="Create 8-12 detailed search queries for exhaustive research",
        max_iterations=4,
        skip_reflection=False,
        initial_max_results=15,
        followup_max_results=5,
    ),
}


def parse_depth(depth: ResearchDepth | str) -> ResearchDepth:
    """Coerce a user-supplied depth string, raising ConfigurationError if unknown."""
    try:
        return ResearchDepth(depth)
    except ValueError as exc:
        valid = ", ".join(d.value for d in ResearchDepth)
        raise ConfigurationError(f"Unknown research depth {depth!r} (expected one of: {valid})") from exc


def depth_profile(depth: ResearchDepth | str) -> DepthProfile:
    return DEPTH_PROFILES[parse_depth(depth)]


# ── Records ───────────────────────────────────────────────────────────────────


class Record(BaseModel):
    """Base for persisted models: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_record(self) -> dict[str, Any]:
        """Plain JSON-compatible dict suitable for ``StateStore.save``."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ResearchPlan(Record):
    """Produced once per run by the planner; immutable thereafter."""

    model_config = ConfigDict(frozen=True)

    original_query: str
    search_queries: list[str]
    expected_outcome: str = ""
    research_depth: ResearchDepth = ResearchDepth.DEEP
    estimated_duration_minutes: float = Field(
        default=0.0,
        ge=0,
        validation_alias=AliasChoices(
            "estimatedDurationMinutes", "estimatedDuration", "estimated_duration_minutes",
        ),
    )

    @field_validator("search_queries")
    @classmethod
    def _non_empty_queries(cls, queries: list[str]) -> list[str]:
        cleaned = [q.strip() for q in queries if isinstance(q, str) and q.strip()]
        if not cleaned:
            raise ValueError("research plan must contain at least one search query")
        return cleaned


class SearchHit(Record):
    """Raw result as returned by a search provider, before scoring."""

    title: str = "Untitled"
    url: str
    content: str = ""
    favicon_url: str | None = None


class SearchResult(Record):
    """A scored search result. ``url`` is the identity key within a run."""

    title: str
    url: str
    snippet: str = ""
    content: str | None = None
    relevance_score: float = Field(default=0.5, ge=0.0, le=1.0)
    timestamp: datetime = Field(default_factory=now_utc)
    favicon_url: str | None = None


class KnowledgeGap(Record):
    topic: str
    description: str = ""
    priority: GapPriority = GapPriority.MEDIUM
    suggested_queries: list[str] = Field(default_factory=list)


class GapAnalysis(Record):
    """Reflector verdict on the current result set."""

    has_gaps: bool
    gaps: list[KnowledgeGap] = Field(default_factory=list)
    should_continue: bool
    reasoning: str = ""


class ProviderComparison(Record):
    similarities: list[str] = Field(default_factory=list)
    differences: list[str] = Field(default_factory=list)
    complementary_insights: list[str] = Field(default_factory=list)
    overall_confidence: float = Field(default=0.5, ge=0.0, le=1.0)

    @classmethod
    def degraded(cls) -> "ProviderComparison":
        """Neutral comparison used when the comparator capability fails."""
        return cls(similarities=[], differences=[], complementary_insights=[], overall_confidence=0.5)


class RunState(Record):
    """State of one provider's research run.

    Stored as JSON at ``research:{id}``.  Written only by the owning
    ``RunStateMachine``; the multi-provider orchestrator keeps read-only
    snapshots of it inside its aggregate record.
    """

    id: str = Field(default_factory=lambda: f"research_{uuid.uuid4().hex[:16]}")
    status: RunStatus = RunStatus.PLANNING
    original_query: str
    depth: ResearchDepth = ResearchDepth.DEEP
    provider: str | None = None
    parent_id: str | None = None
    plan: ResearchPlan | None = None
    search_results: list[SearchResult] = Field(default_factory=list)
    knowledge_gaps: list[KnowledgeGap] = Field(default_factory=list)
    pending_queries: list[str] = Field(default_factory=list)
    iterations: int = Field(default=0, ge=0)
    max_iterations: int = Field(default=3, ge=1)
    final_report: str | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)

    @model_validator(mode="after")
    def _validate_invariants(self) -> "RunState":
        self.check_invariants()
        return self

    def check_invariants(self) -> None:
        """Raise ValueError if the record breaks a run invariant.

        ``model_copy(update=...)`` skips validation, so the state machine
        calls this explicitly after every transition.
        """
        if self.iterations > self.max_iterations:
            raise ValueError(
                f"iterations ({self.iterations}) exceeds max_iterations ({self.max_iterations})"
            )
        if self.final_report is not None and self.status != RunStatus.COMPLETED:
            raise ValueError(f"final report present while status is {self.status.value}")
        if self.plan is not None and self.status == RunStatus.PLANNING:
            raise ValueError("plan present while still planning")
        if self.plan is None and self.status in (
            RunStatus.SEARCHING, RunStatus.REFLECTING, RunStatus.WRITING, RunStatus.COMPLETED,
        ):
            raise ValueError(f"status {self.status.value} requires a plan")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def summary(self) -> "RunSummary":
        return RunSummary(
            id=self.id,
            status=self.status,
            original_query=self.original_query,
            provider=self.provider,
            iterations=self.iterations,
            sources_count=len(self.search_results),
            gaps_count=len(self.knowledge_gaps),
            has_report=self.final_report is not None,
            final_report=self.final_report,
            error=self.error,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class RunSummary(Record):
    """Status view of a single run returned by ``ResearchService.get_run_status``."""

    id: str
    status: RunStatus
    original_query: str
    provider: str | None = None
    iterations: int = 0
    sources_count: int = 0
    gaps_count: int = 0
    has_report: bool = False
    final_report: str | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime


class MultiProviderRunState(Record):
    """Aggregate record of a fan-out run, stored at ``multi_research:{id}``.

    ``provider_results[p].id`` is the explicit id of provider *p*'s child run;
    reconciliation reads children only through that link.
    """

    id: str = Field(default_factory=lambda: f"multi_research_{uuid.uuid4().hex[:16]}")
    status: AggregateStatus = AggregateStatus.PLANNING
    original_query: str
    depth: ResearchDepth = ResearchDepth.DEEP
    providers: list[str]
    provider_results: dict[str, RunState] = Field(default_factory=dict)
    comparison: ProviderComparison | None = None
    consolidated_report: str | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=now_utc)
    updated_at: datetime = Field(default_factory=now_utc)

    @model_validator(mode="after")
    def _every_provider_has_slot(self) -> "MultiProviderRunState":
        missing = [p for p in self.providers if p not in self.provider_results]
        if missing:
            raise ValueError(f"providers without a result slot: {missing}")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in (AggregateStatus.COMPLETED, AggregateStatus.FAILED)


class CacheEntry(Record):
    """Compressed result set for one normalized query."""

    query: str
    normalized_query: str
    results: list[SearchResult]
    cache_timestamp: datetime = Field(default_factory=now_utc)
    hit_count: int = Field(default=1, ge=0)
    ttl: int
    compressed: bool = True


class ResearchListing(Record):
    """One row of ``ResearchService.list_runs``."""

    id: str
    title: str
    kind: Literal["single", "multi-provider"]
    status: str
    providers: list[str] = Field(default_factory=list)
    created_at: datetime
