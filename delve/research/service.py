"""Public research operations.

    start_run / run                        single-provider run
    get_run_status                         RunSummary of a single run
    start_multi_provider_run / run_multi_provider
    get_multi_provider_status              reconciled MultiProviderRunState
    get_multi_provider_progress            per-provider progress view
    list_runs / reconcile / reconcile_all

``start_*`` persist the initial record before returning the id, then drive
the run in a background asyncio task owned by the service.  Every operation
is safe to repeat with the same id.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Callable, Sequence

from delve.errors import ConfigurationError
from delve.models.research import (
    AggregateStatus,
    MultiProviderRunState,
    ResearchDepth,
    ResearchListing,
    RunState,
    RunSummary,
    depth_profile,
)
from delve.research.capabilities import llm_capabilities_for
from delve.research.orchestrator import (
    CapabilityFactory,
    MultiProviderOrchestrator,
    current_step,
    progress_message,
)
from delve.research.search import SearchProvider, WebSearchAdapter
from delve.research.store import ResearchStore
from delve.research.workflow import RunStateMachine
from delve.tools.providers import available_providers, get_provider
from delve.utils import get_logger

logger = get_logger("research.service")


def new_run_id() -> str:
    return f"research_{uuid.uuid4().hex[:16]}"


def new_multi_run_id() -> str:
    return f"multi_research_{uuid.uuid4().hex[:16]}"


class ResearchService:
    """Entry point used by the CLI and the background tasks."""

    def __init__(
        self,
        store: ResearchStore | None = None,
        search: SearchProvider | None = None,
        capabilities_for: CapabilityFactory | None = None,
        available: Callable[[], list[str]] | None = None,
        run_timeout: float | None = None,
        multi_run_timeout: float | None = None,
    ) -> None:
        from delve.config import settings
        self._settings = settings
        self._store = store or ResearchStore()
        if search is None:
            from delve.tools.exa_search import ExaSearchClient
            from delve.tools.search_cache import SearchCache
            search = WebSearchAdapter(ExaSearchClient(), SearchCache())
        self._search = search
        self._capabilities_for = capabilities_for or llm_capabilities_for
        self._available = available or available_providers
        self._run_timeout = run_timeout
        self._multi_run_timeout = multi_run_timeout
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def store(self) -> ResearchStore:
        return self._store

    # ── Provider selection ────────────────────────────────────────────────────

    def resolve_provider(self, provider: str | None) -> str:
        name = provider or self._settings.default_provider
        get_provider(name)
        if name not in self._available():
            raise ConfigurationError(f"Provider {name!r} is not configured (missing API key)")
        return name

    def resolve_providers(self, requested: Sequence[str] | None) -> list[str]:
        available = self._available()
        if requested:
            wanted = list(dict.fromkeys(requested))
            for name in wanted:
                get_provider(name)
            chosen = [p for p in wanted if p in available]
        else:
            chosen = list(available)
        if not chosen:
            raise ConfigurationError("No AI providers are available. Please check your API keys.")
        return chosen

    def _orchestrator(self) -> MultiProviderOrchestrator:
        return MultiProviderOrchestrator(
            self._store,
            self._search,
            self._capabilities_for,
            run_timeout=self._run_timeout,
            multi_run_timeout=self._multi_run_timeout,
        )

    # ── Single-provider runs ──────────────────────────────────────────────────

    async def run(
        self,
        query: str,
        depth: ResearchDepth | str = ResearchDepth.DEEP,
        provider: str | None = None,
        run_id: str | None = None,
    ) -> RunState:
        """Run (or resume) a single-provider run inline and return its final state."""
        name = self.resolve_provider(provider)
        capabilities = self._capabilities_for(name)
        machine = RunStateMachine(
            self._store, self._search, capabilities, capabilities, capabilities,
            run_timeout=self._run_timeout,
        )
        try:
            return await machine.start(run_id or new_run_id(), query, depth, provider=name)
        finally:
            close = getattr(capabilities, "close", None)
            if close is not None:
                await close()

    async def prepare_run(
        self,
        query: str,
        depth: ResearchDepth | str = ResearchDepth.DEEP,
        provider: str | None = None,
    ) -> RunState:
        """Persist the initial ``planning`` record of a new run without starting it."""
        name = self.resolve_provider(provider)
        profile = depth_profile(depth)
        return await self._store.save_run(RunState(
            id=new_run_id(),
            original_query=query,
            depth=profile.depth,
            provider=name,
            max_iterations=profile.max_iterations,
        ))

    async def start_run(
        self,
        query: str,
        depth: ResearchDepth | str = ResearchDepth.DEEP,
        provider: str | None = None,
    ) -> str:
        """Persist a new run, start it in the background and return its id."""
        state = await self.prepare_run(query, depth, provider)
        run_id, name, profile = state.id, state.provider, depth_profile(state.depth)
        self._spawn(run_id, self.run(query, profile.depth, name, run_id=run_id))
        logger.info("run_started", run_id=run_id, provider=name, depth=profile.depth.value)
        return run_id

    async def get_run_status(self, run_id: str) -> RunSummary | None:
        state = await self._store.load_run(run_id)
        return state.summary() if state else None

    # ── Multi-provider runs ───────────────────────────────────────────────────

    async def run_multi_provider(
        self,
        query: str,
        depth: ResearchDepth | str = ResearchDepth.DEEP,
        providers: Sequence[str] | None = None,
        run_id: str | None = None,
    ) -> MultiProviderRunState:
        chosen = self.resolve_providers(providers)
        return await self._orchestrator().run(run_id or new_multi_run_id(), query, depth, chosen)

    async def prepare_multi_provider_run(
        self,
        query: str,
        depth: ResearchDepth | str = ResearchDepth.DEEP,
        providers: Sequence[str] | None = None,
    ) -> MultiProviderRunState:
        chosen = self.resolve_providers(providers)
        profile = depth_profile(depth)
        return await self._orchestrator().initialize(new_multi_run_id(), query, profile.depth, chosen)

    async def start_multi_provider_run(
        self,
        query: str,
        depth: ResearchDepth | str = ResearchDepth.DEEP,
        providers: Sequence[str] | None = None,
    ) -> str:
        state = await self.prepare_multi_provider_run(query, depth, providers)
        run_id = state.id
        self._spawn(run_id, self._orchestrator().run(run_id, query, state.depth, state.providers))
        logger.info("multi_run_started", run_id=run_id, providers=state.providers, depth=state.depth.value)
        return run_id

    async def get_multi_provider_status(self, run_id: str) -> MultiProviderRunState | None:
        """Aggregate with child snapshots refreshed from their own records."""
        return await self._orchestrator().reconcile(run_id)

    async def get_multi_provider_progress(self, run_id: str) -> dict[str, Any] | None:
        state = await self.get_multi_provider_status(run_id)
        if state is None:
            return None
        providers = [
            {
                "provider": p,
                "status": state.provider_results[p].status.value,
                "progress": progress_message(p, state.provider_results[p].status),
                "has_report": state.provider_results[p].final_report is not None,
            }
            for p in state.providers
        ]
        completed = sum(1 for p in providers if p["status"] == "completed")
        steps: list[str] = []
        if state.status != AggregateStatus.PLANNING:
            steps.append("Research initialized")
        if completed:
            steps.append(f"{completed}/{len(providers)} providers completed")
        if state.consolidated_report:
            steps.append("Final report synthesized")
        return {
            "id": state.id,
            "query": state.original_query,
            "status": state.status.value,
            "providers": providers,
            "current_step": current_step(state),
            "completed_steps": steps,
        }

    # ── Listing & maintenance ─────────────────────────────────────────────────

    async def list_runs(self, limit: int | None = None) -> list[ResearchListing]:
        """Single and multi-provider runs, newest first. Child runs are folded into their aggregate."""
        listings: list[ResearchListing] = []
        for run_id in await self._store.list_run_ids():
            state = await self._store.load_run(run_id)
            if state is None or state.parent_id:
                continue
            listings.append(ResearchListing(
                id=state.id,
                title=state.original_query,
                kind="single",
                status=state.status.value,
                providers=[state.provider] if state.provider else [],
                created_at=state.created_at,
            ))
        for run_id in await self._store.list_aggregate_ids():
            agg = await self._store.load_aggregate(run_id)
            if agg is None:
                continue
            listings.append(ResearchListing(
                id=agg.id,
                title=agg.original_query,
                kind="multi-provider",
                status=agg.status.value,
                providers=agg.providers,
                created_at=agg.created_at,
            ))
        listings.sort(key=lambda r: r.created_at, reverse=True)
        return listings[:limit] if limit else listings

    async def reconcile(self, run_id: str) -> MultiProviderRunState | None:
        return await self._orchestrator().reconcile(run_id)

    async def reconcile_all(self) -> int:
        """Reconcile every aggregate record; returns how many were visited."""
        orchestrator = self._orchestrator()
        ids = await self._store.list_aggregate_ids()
        for run_id in ids:
            await orchestrator.reconcile(run_id)
        logger.info("reconcile_all_complete", aggregates=len(ids))
        return len(ids)

    # ── Background tasks ──────────────────────────────────────────────────────

    def _spawn(self, run_id: str, coro) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"delve:{run_id}")
        self._tasks[run_id] = task

        def _done(t: asyncio.Task) -> None:
            self._tasks.pop(run_id, None)
            if t.cancelled():
                logger.warning("background_run_cancelled", run_id=run_id)
            elif t.exception() is not None:
                logger.error("background_run_failed", run_id=run_id, error=str(t.exception()))

        task.add_done_callback(_done)
        return task

    async def wait(self, run_id: str) -> None:
        """Block until the background task for ``run_id`` (if any) has settled."""
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def close(self) -> None:
        pending = list(self._tasks.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        close = getattr(self._search, "close", None)
        if close is not None:
            await close()
        await self._store.close()
