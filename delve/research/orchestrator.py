"""Multi-provider fan-out / fan-in orchestrator.

One RunStateMachine per provider runs concurrently; the orchestrator joins
all of them, then compares and consolidates the successful reports.

The aggregate record (``multi_research:{id}``) holds a read-only snapshot
of each child run.  Snapshots are refreshed by ``reconcile``, which reads
children strictly through the explicit ids stored in the aggregate and
writes through compare-and-set, so it can be called at any time and from
any process.

Aggregate status: planning → searching → analyzing → completed | failed
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Protocol, Sequence

import structlog

from delve.errors import (
    AggregateFailureError,
    ConcurrentUpdateError,
    InvalidTransitionError,
    RunNotFoundError,
    RunTimeoutError,
)
from delve.models.research import (
    AggregateStatus,
    MultiProviderRunState,
    ProviderComparison,
    ResearchDepth,
    RunState,
    RunStatus,
    depth_profile,
)
from delve.research.capabilities import Comparator, Consolidator, Planner, Reflector, Writer
from delve.research.prompts import fallback_consolidated_report, provider_name
from delve.research.search import SearchProvider
from delve.research.store import ResearchStore
from delve.research.workflow import RunStateMachine, transition
from delve.tools.providers import COMPARISON_PREFERENCE, CONSOLIDATION_PREFERENCE, pick_preferred

logger = structlog.get_logger().bind(component="research.orchestrator")


class ProviderCapabilities(Planner, Reflector, Writer, Comparator, Consolidator, Protocol):
    """Everything one provider can do."""


CapabilityFactory = Callable[[str], ProviderCapabilities]

_AGGREGATE_TRANSITIONS: dict[AggregateStatus, frozenset[AggregateStatus]] = {
    AggregateStatus.PLANNING: frozenset({AggregateStatus.SEARCHING, AggregateStatus.FAILED}),
    AggregateStatus.SEARCHING: frozenset({AggregateStatus.ANALYZING, AggregateStatus.FAILED}),
    AggregateStatus.ANALYZING: frozenset({AggregateStatus.COMPLETED, AggregateStatus.FAILED}),
    AggregateStatus.COMPLETED: frozenset(),
    AggregateStatus.FAILED: frozenset(),
}


def child_run_id(aggregate_id: str, provider: str) -> str:
    return f"{aggregate_id}:{provider}"


def advance(aggregate: MultiProviderRunState, target: AggregateStatus, **updates: Any) -> MultiProviderRunState:
    if target not in _AGGREGATE_TRANSITIONS[aggregate.status]:
        raise InvalidTransitionError(aggregate.status.value, target.value)
    return aggregate.model_copy(update={**updates, "status": target})


async def _close(obj: Any) -> None:
    close = getattr(obj, "close", None)
    if close is not None:
        await close()


# ── Progress view ─────────────────────────────────────────────────────────────

_PROGRESS = {
    RunStatus.PLANNING: "{name} is analyzing the research query...",
    RunStatus.SEARCHING: "{name} is gathering relevant sources...",
    RunStatus.REFLECTING: "{name} is analyzing findings and identifying gaps...",
    RunStatus.WRITING: "{name} is generating comprehensive analysis...",
    RunStatus.COMPLETED: "{name} analysis complete",
    RunStatus.FAILED: "{name} encountered an error",
}


def progress_message(provider: str, status: RunStatus) -> str:
    return _PROGRESS[status].format(name=provider_name(provider))


def current_step(aggregate: MultiProviderRunState) -> str:
    """One-line description of where a multi-provider run is."""
    if aggregate.status == AggregateStatus.PLANNING:
        return "Initializing research process"
    if aggregate.status == AggregateStatus.FAILED:
        return "Research failed"
    if aggregate.status == AggregateStatus.COMPLETED:
        return "Research complete"
    done = sum(1 for s in aggregate.provider_results.values() if s.is_terminal)
    total = len(aggregate.providers)
    if aggregate.status == AggregateStatus.ANALYZING or done == total:
        return "Synthesizing final report"
    if done:
        return f"Processing responses ({done}/{total} complete)"
    return "AI providers analyzing in parallel"


# ── Reconciliation ────────────────────────────────────────────────────────────


def merge_snapshots(
    aggregate: MultiProviderRunState,
    children: dict[str, RunState],
) -> MultiProviderRunState | None:
    """Aggregate with refreshed child snapshots, or None if nothing changed.

    A snapshot is replaced only by the child record it links to, and never by
    an older one.
    """
    merged = dict(aggregate.provider_results)
    changed = False
    for provider in aggregate.providers:
        slot = merged.get(provider)
        child = children.get(provider)
        if child is None or slot is None or child.id != slot.id:
            continue
        if slot.is_terminal and not child.is_terminal:
            continue
        if child.updated_at < slot.updated_at:
            continue
        if child.to_record() != slot.to_record():
            merged[provider] = child
            changed = True

    status = aggregate.status
    if status == AggregateStatus.PLANNING and any(
        s.status != RunStatus.PLANNING for s in merged.values()
    ):
        status = AggregateStatus.SEARCHING
        changed = True

    if not changed:
        return None
    return aggregate.model_copy(update={"provider_results": merged, "status": status})


class MultiProviderOrchestrator:
    """Runs one research workflow per provider and merges the results."""

    def __init__(
        self,
        store: ResearchStore,
        search: SearchProvider,
        capabilities_for: CapabilityFactory,
        run_timeout: float | None = None,
        multi_run_timeout: float | None = None,
    ) -> None:
        from delve.config import settings
        self._store = store
        self._search = search
        self._capabilities_for = capabilities_for
        self._run_timeout = run_timeout
        self._timeout = multi_run_timeout if multi_run_timeout is not None else settings.multi_run_timeout_seconds

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def initialize(
        self,
        run_id: str,
        query: str,
        depth: ResearchDepth | str,
        providers: Sequence[str],
    ) -> MultiProviderRunState:
        """Persist the aggregate with one ``planning`` placeholder per provider.

        An existing non-failed aggregate is returned unchanged.
        """
        existing = await self._store.load_aggregate(run_id)
        if existing is not None and existing.status != AggregateStatus.FAILED:
            logger.info("aggregate_exists", run_id=run_id, status=existing.status.value)
            return existing

        profile = depth_profile(depth)
        placeholders = {
            p: RunState(
                id=child_run_id(run_id, p),
                original_query=query,
                depth=profile.depth,
                provider=p,
                parent_id=run_id,
                max_iterations=profile.max_iterations,
            )
            for p in providers
        }
        aggregate = MultiProviderRunState(
            id=run_id,
            original_query=query,
            depth=profile.depth,
            providers=list(providers),
            provider_results=placeholders,
        )
        logger.info("aggregate_initialized", run_id=run_id, providers=list(providers), depth=profile.depth.value)
        return await self._store.save_aggregate(aggregate)

    async def run(
        self,
        run_id: str,
        query: str,
        depth: ResearchDepth | str,
        providers: Sequence[str],
    ) -> MultiProviderRunState:
        """initialize → run_all → compare → consolidate, within the wall-clock budget."""
        aggregate = await self.initialize(run_id, query, depth, providers)
        if aggregate.status == AggregateStatus.COMPLETED:
            return aggregate
        try:
            if self._timeout:
                return await asyncio.wait_for(self._run(aggregate), timeout=self._timeout)
            return await self._run(aggregate)
        except asyncio.TimeoutError as exc:
            if not self._timeout:
                await self._mark_failed(run_id, exc)
                raise
            error = RunTimeoutError(run_id, self._timeout)
            logger.error("aggregate_timed_out", run_id=run_id, timeout=self._timeout)
            await self._fail_unfinished_children(run_id, error)
            await self._mark_failed(run_id, error)
            raise error from None
        except Exception as exc:
            await self._mark_failed(run_id, exc)
            raise

    async def _run(self, aggregate: MultiProviderRunState) -> MultiProviderRunState:
        if aggregate.status in (AggregateStatus.PLANNING, AggregateStatus.SEARCHING):
            states = await self.run_all(aggregate)
        else:
            refreshed = await self.reconcile(aggregate.id)
            states = dict((refreshed or aggregate).provider_results)

        reports = {
            p: s.final_report
            for p, s in states.items()
            if s.status == RunStatus.COMPLETED and s.final_report
        }
        comparison = await self.compare(aggregate.original_query, reports)
        report = await self.consolidate(aggregate.original_query, reports, comparison)

        final = await self._store.update_aggregate(
            aggregate.id,
            lambda agg: advance(agg, AggregateStatus.COMPLETED, comparison=comparison, consolidated_report=report),
        )
        if final is None:
            raise RunNotFoundError(aggregate.id)
        logger.info(
            "aggregate_completed",
            run_id=aggregate.id,
            providers_used=sorted(reports),
            report_chars=len(report),
        )
        return final

    async def run_all(self, aggregate: MultiProviderRunState) -> dict[str, RunState]:
        """Run every provider concurrently and wait for all to settle.

        Returns the terminal state of each provider.  Moves the aggregate to
        ``analyzing`` if at least one provider completed; otherwise raises
        AggregateFailureError.
        """
        run_id = aggregate.id
        await self._store.update_aggregate(
            run_id,
            lambda agg: advance(agg, AggregateStatus.SEARCHING) if agg.status == AggregateStatus.PLANNING else None,
        )

        async def run_provider(provider: str) -> RunState:
            slot = aggregate.provider_results[provider]
            capabilities = self._capabilities_for(provider)
            machine = RunStateMachine(
                self._store, self._search, capabilities, capabilities, capabilities,
                run_timeout=self._run_timeout,
            )
            try:
                return await machine.start(
                    slot.id, aggregate.original_query, aggregate.depth, provider=provider, parent_id=run_id,
                )
            finally:
                await _close(capabilities)
                try:
                    await self.reconcile(run_id)
                except ConcurrentUpdateError as exc:
                    logger.warning("reconcile_deferred", run_id=run_id, provider=provider, error=str(exc))

        outcomes = await asyncio.gather(
            *(run_provider(p) for p in aggregate.providers), return_exceptions=True,
        )

        states: dict[str, RunState] = {}
        failures: dict[str, str] = {}
        for provider, outcome in zip(aggregate.providers, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                failures[provider] = str(outcome) or type(outcome).__name__
                logger.warning("provider_run_failed", run_id=run_id, provider=provider, error=failures[provider])
            else:
                states[provider] = outcome

        def settle(agg: MultiProviderRunState) -> MultiProviderRunState:
            results = dict(agg.provider_results)
            for provider, state in states.items():
                results[provider] = state
            for provider, error in failures.items():
                slot = results[provider]
                if not slot.is_terminal:
                    results[provider] = slot.model_copy(update={"status": RunStatus.FAILED, "error": error})
            succeeded = [s for s in results.values() if s.status == RunStatus.COMPLETED]
            if not succeeded:
                return advance(
                    agg, AggregateStatus.FAILED, provider_results=results,
                    error=str(AggregateFailureError(run_id, failures)),
                )
            return advance(agg, AggregateStatus.ANALYZING, provider_results=results)

        settled = await self._store.update_aggregate(run_id, settle)
        logger.info(
            "provider_runs_settled",
            run_id=run_id,
            completed=len([s for s in states.values() if s.status == RunStatus.COMPLETED]),
            failed=len(failures),
        )
        if settled is None or settled.status == AggregateStatus.FAILED:
            raise AggregateFailureError(run_id, failures)
        return dict(settled.provider_results)

    # ── Synthesis ─────────────────────────────────────────────────────────────

    async def compare(self, query: str, reports: dict[str, str]) -> ProviderComparison:
        """Cross-provider comparison; degrades to a neutral one on failure."""
        if not reports:
            return ProviderComparison.degraded()
        provider = pick_preferred(COMPARISON_PREFERENCE, list(reports))
        capabilities = self._capabilities_for(provider)
        try:
            return await capabilities.compare(query, reports)
        except Exception as exc:
            logger.warning("comparison_degraded", provider=provider, error=str(exc))
            return ProviderComparison.degraded()
        finally:
            await _close(capabilities)

    async def consolidate(self, query: str, reports: dict[str, str], comparison: ProviderComparison) -> str:
        """One report from all perspectives; falls back to concatenating them."""
        if not reports:
            return fallback_consolidated_report(reports)
        provider = pick_preferred(CONSOLIDATION_PREFERENCE, list(reports))
        capabilities = self._capabilities_for(provider)
        try:
            return await capabilities.consolidate(query, reports, comparison)
        except Exception as exc:
            logger.warning("consolidation_degraded", provider=provider, error=str(exc))
            return fallback_consolidated_report(reports)
        finally:
            await _close(capabilities)

    # ── Reconciliation & failure ──────────────────────────────────────────────

    async def reconcile(self, run_id: str) -> MultiProviderRunState | None:
        """Refresh child snapshots from their own records. Idempotent."""
        aggregate = await self._store.load_aggregate(run_id)
        if aggregate is None:
            return None
        children: dict[str, RunState] = {}
        for provider, slot in aggregate.provider_results.items():
            child = await self._store.load_run(slot.id)
            if child is not None:
                children[provider] = child
        return await self._store.update_aggregate(run_id, lambda agg: merge_snapshots(agg, children))

    async def _mark_failed(self, run_id: str, exc: BaseException) -> None:
        message = str(exc) or type(exc).__name__

        def fail(agg: MultiProviderRunState) -> MultiProviderRunState | None:
            if agg.is_terminal:
                return None
            return advance(agg, AggregateStatus.FAILED, error=message)

        await self._store.update_aggregate(run_id, fail)
        logger.error("aggregate_failed", run_id=run_id, error=message)

    async def _fail_unfinished_children(self, run_id: str, exc: BaseException) -> None:
        """Persist ``failed`` for every child still mid-run, then refresh the snapshots.

        Cancelling the fan-out stops the child machines without letting them
        record a terminal status.
        """
        aggregate = await self._store.load_aggregate(run_id)
        if aggregate is None:
            return
        message = str(exc) or type(exc).__name__
        for provider, slot in aggregate.provider_results.items():
            child = await self._store.load_run(slot.id) or slot
            if child.is_terminal:
                continue
            await self._store.save_run(transition(child, RunStatus.FAILED, error=message, pending_queries=[]))
            logger.error("child_run_failed", run_id=slot.id, provider=provider, error=message)
        try:
            await self.reconcile(run_id)
        except ConcurrentUpdateError as err:
            logger.warning("reconcile_deferred", run_id=run_id, error=str(err))
