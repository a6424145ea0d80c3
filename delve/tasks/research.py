"""research_run / multi_provider_research_run — Shadows tasks for background research.

Each execution drives one run (or one multi-provider aggregate) to a terminal
state through ``ResearchService``.  The run id doubles as the Shadows key, so
a task that Shadows re-delivers after a worker crash resumes the run from its
persisted status instead of starting over.

Serialization safety:
    All Delve imports are deferred inside the function bodies so cloudpickle
    serializes only the code object.

Usage::

    from delve.tasks.research import enqueue_research_run
    run_id = await enqueue_research_run("state of solid-state batteries", depth="deep")

or by hand::

    from shadows import Shadow
    async with Shadow(name="delve", url=redis_url) as shadow:
        shadow.register(research_run)
        await shadow.add(research_run, key=run_id)(
            run_id=run_id, query=query, depth=depth, provider=provider
        )
"""

from __future__ import annotations

from logging import Logger, LoggerAdapter
from typing import Sequence

from shadows.dependencies import TaskLogger


async def research_run(
    run_id: str,
    query: str,
    depth: str = "deep",
    provider: str | None = None,
    log: LoggerAdapter[Logger] = TaskLogger(),
) -> None:
    """Drive a single-provider run to completion.

    Args:
        run_id:   Stable Shadows key and ``research:{run_id}`` record id.
        query:    The research question.
        depth:    One of ``quick``, ``surface``, ``deep``, ``comprehensive``.
        provider: Provider name; the configured default when omitted.
        log:      Injected by Shadows — context-aware task logger.
    """
    from delve.errors import DelveError
    from delve.research.service import ResearchService

    service = ResearchService()
    log.info("research_run: start — run=%s provider=%s depth=%s", run_id, provider, depth)
    try:
        state = await service.run(query, depth, provider, run_id=run_id)
        log.info(
            "research_run: %s — run=%s iterations=%d sources=%d",
            state.status.value, run_id, state.iterations, len(state.search_results),
        )
    except DelveError as exc:
        # The failure is already persisted on the run record; retrying would restart it.
        log.error("research_run: failed — run=%s error=%s", run_id, exc)
    finally:
        await service.close()


async def multi_provider_research_run(
    run_id: str,
    query: str,
    depth: str = "deep",
    providers: list[str] | None = None,
    log: LoggerAdapter[Logger] = TaskLogger(),
) -> None:
    """Fan a query out to several providers, then compare and consolidate."""
    from delve.errors import DelveError
    from delve.research.service import ResearchService

    service = ResearchService()
    log.info("multi_provider_research_run: start — run=%s providers=%s depth=%s", run_id, providers, depth)
    try:
        state = await service.run_multi_provider(query, depth, providers, run_id=run_id)
        log.info("multi_provider_research_run: %s — run=%s", state.status.value, run_id)
    except DelveError as exc:
        log.error("multi_provider_research_run: failed — run=%s error=%s", run_id, exc)
    finally:
        await service.close()


# ── Enqueueing ────────────────────────────────────────────────────────────────

async def _add(task, run_id: str, **kwargs) -> None:
    from shadows import Shadow

    from delve.config import settings

    async with Shadow(name=settings.shadows_name, url=settings.redis_url) as shadow:
        shadow.register(task)
        await shadow.add(task, key=run_id)(run_id=run_id, **kwargs)


async def enqueue_research_run(query: str, depth: str = "deep", provider: str | None = None) -> str:
    """Persist the initial record, hand the run to the worker and return its id."""
    from delve.research.service import ResearchService

    service = ResearchService()
    try:
        state = await service.prepare_run(query, depth, provider)
    finally:
        await service.close()
    await _add(research_run, state.id, query=query, depth=state.depth.value, provider=state.provider)
    return state.id


async def enqueue_multi_provider_run(
    query: str,
    depth: str = "deep",
    providers: Sequence[str] | None = None,
) -> str:
    from delve.research.service import ResearchService

    service = ResearchService()
    try:
        state = await service.prepare_multi_provider_run(query, depth, providers)
    finally:
        await service.close()
    await _add(
        multi_provider_research_run, state.id,
        query=query, depth=state.depth.value, providers=list(state.providers),
    )
    return state.id
