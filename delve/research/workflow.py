"""Per-run research state machine.

    planning ─► searching ─► reflecting ─┬─► searching ─► …
                    │                    └─► writing ─► completed
                    └──────(quick / cap)─────► writing
    any state ─► failed ─► planning   (explicit restart)

Every step persists its outcome together with the status transition before
the next step starts, so a crashed run can be re-driven from the stored
record alone: ``next_step(state)`` depends only on ``state.status``.
"""

from __future__ import annotations

import asyncio
import math
from enum import Enum
from typing import Sequence

import structlog

from delve.errors import CapabilityError, InvalidTransitionError, RunTimeoutError
from delve.models.research import (
    ResearchDepth,
    RunState,
    RunStatus,
    SearchResult,
    depth_profile,
)
from delve.research.capabilities import Planner, Reflector, Writer
from delve.research.relevance import dedupe_by_url, hit_to_result, rank
from delve.research.search import SearchProvider
from delve.research.store import ResearchStore

logger = structlog.get_logger().bind(component="research.workflow")

MAX_RESULTS_PER_QUERY = 10


class Step(str, Enum):
    PLAN = "plan"
    SEARCH = "search"
    REFLECT = "reflect"
    WRITE = "write"
    DONE = "done"
    RESTART = "restart"


_STEP_FOR_STATUS: dict[RunStatus, Step] = {
    RunStatus.PLANNING: Step.PLAN,
    RunStatus.SEARCHING: Step.SEARCH,
    RunStatus.REFLECTING: Step.REFLECT,
    RunStatus.WRITING: Step.WRITE,
    RunStatus.COMPLETED: Step.DONE,
    RunStatus.FAILED: Step.RESTART,
}

TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PLANNING: frozenset({RunStatus.SEARCHING, RunStatus.FAILED}),
    RunStatus.SEARCHING: frozenset({RunStatus.REFLECTING, RunStatus.WRITING, RunStatus.FAILED}),
    RunStatus.REFLECTING: frozenset({RunStatus.SEARCHING, RunStatus.WRITING, RunStatus.FAILED}),
    RunStatus.WRITING: frozenset({RunStatus.COMPLETED, RunStatus.FAILED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset({RunStatus.PLANNING}),
}


def next_step(state: RunState) -> Step:
    """What to do next with a persisted run. Pure; keyed only on status."""
    return _STEP_FOR_STATUS[state.status]


def per_query_budget(total: int, query_count: int) -> int:
    """Results to request per query when ``total`` is split over ``query_count`` queries."""
    if query_count <= 0:
        return 0
    return max(1, min(math.ceil(total / query_count), MAX_RESULTS_PER_QUERY))


def transition(state: RunState, target: RunStatus, **updates) -> RunState:
    """Return a copy of ``state`` moved to ``target``. Raises InvalidTransitionError."""
    if target not in TRANSITIONS[state.status]:
        raise InvalidTransitionError(state.status.value, target.value)
    moved = state.model_copy(update={**updates, "status": target})
    moved.check_invariants()
    return moved


class RunStateMachine:
    """Drives one provider's run from its persisted state to a terminal one.

    Owns exactly one ``research:{run_id}`` record; nothing else writes it.
    """

    def __init__(
        self,
        store: ResearchStore,
        search: SearchProvider,
        planner: Planner,
        reflector: Reflector,
        writer: Writer,
        run_timeout: float | None = None,
    ) -> None:
        from delve.config import settings
        self._store = store
        self._search = search
        self._planner = planner
        self._reflector = reflector
        self._writer = writer
        self._timeout = run_timeout if run_timeout is not None else settings.run_timeout_seconds

    # ── Entry point ───────────────────────────────────────────────────────────

    async def start(
        self,
        run_id: str,
        query: str,
        depth: ResearchDepth | str = ResearchDepth.DEEP,
        provider: str | None = None,
        parent_id: str | None = None,
    ) -> RunState:
        """Run (or resume) ``run_id`` to completion and return the final state.

        A completed run is returned as-is without calling any capability.
        A failed run is reinitialized and started over.  Raises the step's
        error, or RunTimeoutError, after persisting status ``failed``.
        """
        log = logger.bind(run_id=run_id, provider=provider)
        try:
            if self._timeout:
                return await asyncio.wait_for(
                    self._drive(run_id, query, depth, provider, parent_id), timeout=self._timeout,
                )
            return await self._drive(run_id, query, depth, provider, parent_id)
        except asyncio.TimeoutError:
            if not self._timeout:
                raise
            error = RunTimeoutError(run_id, self._timeout)
            log.error("run_timed_out", timeout=self._timeout)
            current = await self._store.load_run(run_id)
            if current is not None:
                await self._mark_failed(current, error)
            raise error from None

    async def _drive(
        self,
        run_id: str,
        query: str,
        depth: ResearchDepth | str,
        provider: str | None,
        parent_id: str | None,
    ) -> RunState:
        log = logger.bind(run_id=run_id, provider=provider)
        state = await self._store.load_run(run_id)

        if state is not None and next_step(state) is Step.DONE:
            log.info("run_already_completed", iterations=state.iterations)
            return state

        if state is None:
            profile = depth_profile(depth)
            state = RunState(
                id=run_id,
                original_query=query,
                depth=profile.depth,
                provider=provider,
                parent_id=parent_id,
                max_iterations=profile.max_iterations,
            )
            state = await self._store.save_run(state)
            log.info("run_initialized", depth=profile.depth.value, max_iterations=profile.max_iterations)
        elif next_step(state) is Step.RESTART:
            state = await self.restart(state, query, depth)
        else:
            log.info("run_resumed", status=state.status.value, iterations=state.iterations)

        while (step := next_step(state)) is not Step.DONE:
            try:
                state = await self._advance(state, step)
            except Exception as exc:
                log.error("run_step_failed", step=step.value, error=str(exc))
                await self._mark_failed(state, exc)
                raise
            log.info("run_step_complete", step=step.value, status=state.status.value)
        return state

    async def _advance(self, state: RunState, step: Step) -> RunState:
        if step is Step.PLAN:
            return await self.plan(state)
        if step is Step.SEARCH:
            return await self.search(state)
        if step is Step.REFLECT:
            return await self.reflect(state)
        if step is Step.WRITE:
            return await self.write(state)
        raise InvalidTransitionError(state.status.value, step.value)

    # ── Steps ─────────────────────────────────────────────────────────────────

    async def restart(self, state: RunState, query: str, depth: ResearchDepth | str) -> RunState:
        """failed → planning with a clean slate (same id, provider and parent)."""
        profile = depth_profile(depth)
        if state.status != RunStatus.FAILED:
            raise InvalidTransitionError(state.status.value, RunStatus.PLANNING.value)
        fresh = RunState(
            id=state.id,
            original_query=query,
            depth=profile.depth,
            provider=state.provider,
            parent_id=state.parent_id,
            max_iterations=profile.max_iterations,
        )
        logger.info("run_restarted", run_id=state.id, previous_error=state.error)
        return await self._store.save_run(fresh)

    async def plan(self, state: RunState) -> RunState:
        profile = depth_profile(state.depth)
        plan = await self._planner.plan(state.original_query, profile)
        if not plan.search_queries:
            raise CapabilityError("planner", "plan has no search queries", state.provider)
        moved = transition(
            state, RunStatus.SEARCHING, plan=plan, pending_queries=list(plan.search_queries),
        )
        logger.info("run_planned", run_id=state.id, queries=len(plan.search_queries))
        return await self._store.save_run(moved)

    async def search(self, state: RunState) -> RunState:
        """Search the pending queries, then advance to reflecting or writing."""
        profile = depth_profile(state.depth)
        budget = profile.initial_max_results if state.iterations == 0 else profile.followup_max_results
        fresh = await self.run_queries(state, state.pending_queries, budget)

        known = {r.url for r in state.search_results}
        new_results = rank(dedupe_by_url(fresh, seen=known))

        if profile.skip_reflection or state.iterations >= state.max_iterations:
            target = RunStatus.WRITING
        else:
            target = RunStatus.REFLECTING
        moved = transition(
            state,
            target,
            search_results=[*state.search_results, *new_results],
            pending_queries=[],
        )
        logger.info(
            "run_searched",
            run_id=state.id,
            queries=len(state.pending_queries),
            new_results=len(new_results),
            total_results=len(moved.search_results),
        )
        return await self._store.save_run(moved)

    async def run_queries(self, state: RunState, queries: Sequence[str], budget: int) -> list[SearchResult]:
        """Issue ``queries`` concurrently and score every hit against its own query.

        A failing query is skipped; the round fails only if every query fails.
        """
        if not queries:
            return []
        per_query = per_query_budget(budget, len(queries))
        outcomes = await asyncio.gather(
            *(self._search.search(q, per_query) for q in queries), return_exceptions=True,
        )

        results: list[SearchResult] = []
        failures: list[str] = []
        for query, outcome in zip(queries, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.warning("search_query_failed", run_id=state.id, query=query, error=str(outcome))
                failures.append(f"{query}: {outcome}")
                continue
            results.extend(hit_to_result(hit, query) for hit in outcome)

        if len(failures) == len(queries):
            raise CapabilityError("search", f"all {len(queries)} queries failed ({failures[0]})", state.provider)
        return results

    async def reflect(self, state: RunState) -> RunState:
        analysis = await self._reflector.analyze(
            state.original_query, state.search_results, state.iterations, state.max_iterations,
        )
        queries: list[str] = []
        if analysis.has_gaps and analysis.should_continue:
            queries = await self._reflector.generate_queries(analysis.gaps)

        iterations = state.iterations + 1
        keep_going = analysis.should_continue and (bool(queries) or iterations < state.max_iterations)
        moved = transition(
            state,
            RunStatus.SEARCHING if keep_going else RunStatus.WRITING,
            knowledge_gaps=[*state.knowledge_gaps, *analysis.gaps],
            iterations=iterations,
            pending_queries=queries if keep_going else [],
        )
        logger.info(
            "run_reflected",
            run_id=state.id,
            iteration=iterations,
            has_gaps=analysis.has_gaps,
            should_continue=analysis.should_continue,
            followup_queries=len(queries),
        )
        return await self._store.save_run(moved)

    async def write(self, state: RunState) -> RunState:
        report = await self._writer.write(state.original_query, state.search_results, state.knowledge_gaps)
        moved = transition(state, RunStatus.COMPLETED, final_report=report)
        logger.info("run_written", run_id=state.id, report_chars=len(report))
        return await self._store.save_run(moved)

    # ── Failure ───────────────────────────────────────────────────────────────

    async def _mark_failed(self, state: RunState, exc: BaseException) -> None:
        if state.is_terminal:
            return
        failed = transition(state, RunStatus.FAILED, error=str(exc) or type(exc).__name__, pending_queries=[])
        await self._store.save_run(failed)
        logger.error("run_failed", run_id=state.id, provider=state.provider, error=failed.error)
