"""Tests for MultiProviderOrchestrator — fan-out, partial failure, synthesis fallbacks, reconcile."""

from __future__ import annotations

import pytest

from delve.errors import AggregateFailureError, RunTimeoutError
from delve.models.research import (
    AggregateStatus,
    MultiProviderRunState,
    ResearchPlan,
    RunState,
    RunStatus,
)
from delve.research.orchestrator import (
    MultiProviderOrchestrator,
    child_run_id,
    current_step,
    merge_snapshots,
    progress_message,
)

from fakes import FakeCapabilities, FakeSearch

PROVIDERS = ["openai", "anthropic", "xai"]


def orchestrator(store, caps: dict[str, FakeCapabilities], search=None) -> MultiProviderOrchestrator:
    return MultiProviderOrchestrator(
        store, search or FakeSearch(), lambda p: caps[p], run_timeout=0, multi_run_timeout=0,
    )


def fakes(**overrides) -> dict[str, FakeCapabilities]:
    caps = {p: FakeCapabilities(provider=p) for p in PROVIDERS}
    for provider, fake in overrides.items():
        caps[provider] = fake
    return caps


# ─────────────────────────────────────────────────────────────────────────────
# Fan-out / fan-in
# ─────────────────────────────────────────────────────────────────────────────

async def test_all_providers_succeed(research_store):
    caps = fakes()
    state = await orchestrator(research_store, caps).run("multi_research_ok", "q", "quick", PROVIDERS)

    assert state.status is AggregateStatus.COMPLETED
    assert all(state.provider_results[p].status is RunStatus.COMPLETED for p in PROVIDERS)
    assert state.comparison.overall_confidence == 0.9
    # consolidation prefers anthropic, comparison prefers openai
    assert state.consolidated_report.startswith("# Consolidated by anthropic")
    assert caps["openai"].count("compare") == 1
    assert caps["anthropic"].count("consolidate") == 1


async def test_one_provider_failing_does_not_sink_the_run(research_store):
    caps = fakes(anthropic=FakeCapabilities(provider="anthropic", fail=["plan"]))
    state = await orchestrator(research_store, caps).run("multi_research_partial", "q", "quick", PROVIDERS)

    assert state.status is AggregateStatus.COMPLETED
    failed = state.provider_results["anthropic"]
    assert failed.status is RunStatus.FAILED
    assert "plan unavailable" in failed.error
    assert state.provider_results["openai"].status is RunStatus.COMPLETED
    assert state.provider_results["xai"].status is RunStatus.COMPLETED
    # anthropic is out, so consolidation falls back to the first succeeding provider
    assert state.consolidated_report.startswith("# Consolidated by openai")
    assert "anthropic" not in state.consolidated_report


async def test_child_runs_are_linked_explicitly(research_store):
    state = await orchestrator(research_store, fakes()).run("multi_research_links", "q", "quick", PROVIDERS)
    for provider in PROVIDERS:
        slot = state.provider_results[provider]
        assert slot.id == child_run_id("multi_research_links", provider)
        child = await research_store.load_run(slot.id)
        assert child.parent_id == "multi_research_links"
        assert child.provider == provider


async def test_every_provider_failing_fails_the_aggregate(research_store):
    caps = {p: FakeCapabilities(provider=p, fail=["write"]) for p in PROVIDERS}
    with pytest.raises(AggregateFailureError) as info:
        await orchestrator(research_store, caps).run("multi_research_dead", "q", "quick", PROVIDERS)

    assert set(info.value.failures) == set(PROVIDERS)
    stored = await research_store.load_aggregate("multi_research_dead")
    assert stored.status is AggregateStatus.FAILED
    assert "All provider research streams failed" in stored.error
    assert stored.consolidated_report is None


async def test_aggregate_timeout_fails_unfinished_children(research_store):
    caps = {p: FakeCapabilities(provider=p, delay=0.5) for p in PROVIDERS}
    orch = MultiProviderOrchestrator(
        research_store, FakeSearch(), lambda p: caps[p], run_timeout=0, multi_run_timeout=0.2,
    )
    with pytest.raises(RunTimeoutError):
        await orch.run("multi_research_to", "q", "quick", PROVIDERS)

    for provider in PROVIDERS:
        child = await research_store.load_run(child_run_id("multi_research_to", provider))
        assert child.status is RunStatus.FAILED
        assert "exceeded" in child.error
    aggregate = await research_store.load_aggregate("multi_research_to")
    assert aggregate.status is AggregateStatus.FAILED
    assert all(s.status is RunStatus.FAILED for s in aggregate.provider_results.values())


async def test_capabilities_are_closed(research_store):
    caps = fakes()
    await orchestrator(research_store, caps).run("multi_research_close", "q", "quick", PROVIDERS)
    assert all(c.closed for c in caps.values())


# ─────────────────────────────────────────────────────────────────────────────
# Synthesis fallbacks
# ─────────────────────────────────────────────────────────────────────────────

async def test_comparator_failure_degrades_to_neutral(research_store):
    caps = fakes(openai=FakeCapabilities(provider="openai", fail=["compare"]))
    state = await orchestrator(research_store, caps).run("multi_research_cmp", "q", "quick", PROVIDERS)

    assert state.status is AggregateStatus.COMPLETED
    assert state.comparison.overall_confidence == 0.5
    assert state.comparison.similarities == []


async def test_consolidator_failure_concatenates_reports(research_store):
    caps = fakes(anthropic=FakeCapabilities(provider="anthropic", fail=["consolidate"]))
    state = await orchestrator(research_store, caps).run("multi_research_cons", "q", "quick", PROVIDERS)

    report = state.consolidated_report
    assert report.startswith("# Multi-Provider Research Report")
    assert "Could not generate consolidated report" in report
    for name in ("OpenAI", "Anthropic", "xAI"):
        assert f"### {name}" in report


# ─────────────────────────────────────────────────────────────────────────────
# Idempotence & reconcile
# ─────────────────────────────────────────────────────────────────────────────

async def test_completed_aggregate_is_not_rerun(research_store):
    first = await orchestrator(research_store, fakes()).run("multi_research_once", "q", "quick", PROVIDERS)

    caps = fakes()
    again = await orchestrator(research_store, caps).run("multi_research_once", "q", "quick", PROVIDERS)
    assert again.consolidated_report == first.consolidated_report
    assert all(c.calls == [] for c in caps.values())


async def test_reconcile_is_idempotent(research_store):
    orch = orchestrator(research_store, fakes())
    await orch.run("multi_research_rec", "q", "quick", PROVIDERS)

    once = await orch.reconcile("multi_research_rec")
    twice = await orch.reconcile("multi_research_rec")
    assert once.to_record() == twice.to_record()


async def test_reconcile_unknown_aggregate(research_store):
    assert await orchestrator(research_store, fakes()).reconcile("multi_research_missing") is None


async def test_reconcile_reads_children_by_id_only(research_store):
    orch = orchestrator(research_store, fakes())
    aggregate = await orch.initialize("multi_research_sync", "shared question", "deep", ["openai", "xai"])
    assert aggregate.status is AggregateStatus.PLANNING

    # A child that has made progress, and an unrelated run with the same query.
    plan = ResearchPlan(original_query="shared question", search_queries=["x"])
    await research_store.save_run(RunState(
        id=child_run_id("multi_research_sync", "openai"),
        original_query="shared question",
        status=RunStatus.SEARCHING,
        plan=plan,
        provider="openai",
        parent_id="multi_research_sync",
    ))
    await research_store.save_run(RunState(
        id="research_unrelated",
        original_query="shared question",
        status=RunStatus.COMPLETED,
        plan=plan,
        final_report="not ours",
        provider="xai",
    ))

    synced = await orch.reconcile("multi_research_sync")
    assert synced.status is AggregateStatus.SEARCHING
    assert synced.provider_results["openai"].status is RunStatus.SEARCHING
    assert synced.provider_results["xai"].status is RunStatus.PLANNING
    assert synced.provider_results["xai"].final_report is None


async def test_initialize_keeps_existing_aggregate(research_store):
    orch = orchestrator(research_store, fakes())
    first = await orch.initialize("multi_research_init", "q", "deep", ["openai"])
    second = await orch.initialize("multi_research_init", "other", "quick", ["openai", "xai"])
    assert second.to_record() == first.to_record()


def _aggregate_with(slot: RunState) -> MultiProviderRunState:
    return MultiProviderRunState(
        id="multi_research_m", original_query="q", status=AggregateStatus.SEARCHING,
        providers=["openai"], provider_results={"openai": slot},
    )


def test_merge_never_regresses_terminal_snapshot():
    plan = ResearchPlan(original_query="q", search_queries=["x"])
    done = RunState(id="multi_research_m:openai", original_query="q", status=RunStatus.COMPLETED,
                    plan=plan, final_report="r")
    stale = RunState(id="multi_research_m:openai", original_query="q", status=RunStatus.WRITING, plan=plan)
    assert merge_snapshots(_aggregate_with(done), {"openai": stale}) is None


def test_merge_ignores_mismatched_child_id():
    slot = RunState(id="multi_research_m:openai", original_query="q")
    other = RunState(id="research_other", original_query="q", status=RunStatus.FAILED, error="x")
    assert merge_snapshots(_aggregate_with(slot), {"openai": other}) is None


# ─────────────────────────────────────────────────────────────────────────────
# Progress view
# ─────────────────────────────────────────────────────────────────────────────

def test_progress_messages():
    assert progress_message("xai", RunStatus.SEARCHING) == "xAI is gathering relevant sources..."
    assert progress_message("openai", RunStatus.COMPLETED) == "OpenAI analysis complete"


def test_current_step_counts_finished_providers():
    plan = ResearchPlan(original_query="q", search_queries=["x"])
    done = RunState(id="a:openai", original_query="q", status=RunStatus.COMPLETED, plan=plan, final_report="r")
    busy = RunState(id="a:xai", original_query="q", status=RunStatus.SEARCHING, plan=plan)
    aggregate = MultiProviderRunState(
        id="a", original_query="q", status=AggregateStatus.SEARCHING,
        providers=["openai", "xai"], provider_results={"openai": done, "xai": busy},
    )
    assert current_step(aggregate) == "Processing responses (1/2 complete)"
