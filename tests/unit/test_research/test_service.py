"""Tests for ResearchService — provider selection, background runs, listing."""

from __future__ import annotations

import pytest

from delve.errors import ConfigurationError
from delve.models.research import AggregateStatus, RunStatus
from delve.research.service import ResearchService

from fakes import FakeCapabilities, FakeSearch


@pytest.fixture
def caps():
    return {p: FakeCapabilities(provider=p) for p in ("openai", "anthropic", "google", "xai")}


@pytest.fixture
async def service(research_store, caps):
    svc = ResearchService(
        store=research_store,
        search=FakeSearch(),
        capabilities_for=lambda p: caps[p],
        available=lambda: ["openai", "anthropic", "xai"],
        run_timeout=0,
        multi_run_timeout=0,
    )
    yield svc
    await svc.close()


# ─────────────────────────────────────────────────────────────────────────────
# Provider selection
# ─────────────────────────────────────────────────────────────────────────────

def test_unconfigured_provider_is_rejected(service):
    with pytest.raises(ConfigurationError, match="not configured"):
        service.resolve_provider("google")


def test_unknown_provider_is_rejected(service):
    with pytest.raises(ConfigurationError, match="Unknown provider"):
        service.resolve_provider("mistral")


def test_requested_providers_are_filtered_to_available(service):
    assert service.resolve_providers(["xai", "google", "xai", "openai"]) == ["xai", "openai"]


def test_all_available_when_none_requested(service):
    assert service.resolve_providers(None) == ["openai", "anthropic", "xai"]


def test_no_usable_provider(service):
    with pytest.raises(ConfigurationError, match="No AI providers are available"):
        service.resolve_providers(["google"])


async def test_unknown_depth_is_rejected_before_anything_is_stored(service):
    with pytest.raises(ConfigurationError, match="Unknown research depth"):
        await service.start_run("q", "bottomless", "xai")
    assert await service.list_runs() == []


# ─────────────────────────────────────────────────────────────────────────────
# Single runs
# ─────────────────────────────────────────────────────────────────────────────

async def test_run_inline(service, caps):
    state = await service.run("solid state batteries", "quick", "xai")
    assert state.status is RunStatus.COMPLETED
    assert state.provider == "xai"
    assert caps["xai"].closed


async def test_start_run_persists_before_returning(service):
    run_id = await service.start_run("solid state batteries", "quick", "openai")
    assert run_id.startswith("research_")

    early = await service.get_run_status(run_id)
    assert early is not None
    assert early.status is RunStatus.PLANNING

    await service.wait(run_id)
    done = await service.get_run_status(run_id)
    assert done.status is RunStatus.COMPLETED
    assert done.has_report
    assert done.sources_count > 0


async def test_unknown_run_status_is_none(service):
    assert await service.get_run_status("research_nope") is None
    assert await service.get_multi_provider_status("multi_research_nope") is None
    assert await service.get_multi_provider_progress("multi_research_nope") is None


# ─────────────────────────────────────────────────────────────────────────────
# Multi-provider runs
# ─────────────────────────────────────────────────────────────────────────────

async def test_start_multi_provider_run_and_progress(service):
    run_id = await service.start_multi_provider_run("q", "quick", ["openai", "xai"])
    assert run_id.startswith("multi_research_")

    early = await service.get_multi_provider_progress(run_id)
    assert early["status"] == "planning"
    assert early["current_step"] == "Initializing research process"

    await service.wait(run_id)
    progress = await service.get_multi_provider_progress(run_id)
    assert progress["status"] == "completed"
    assert [p["provider"] for p in progress["providers"]] == ["openai", "xai"]
    assert all(p["has_report"] for p in progress["providers"])
    assert "2/2 providers completed" in progress["completed_steps"]
    assert "Final report synthesized" in progress["completed_steps"]


async def test_run_multi_provider_inline(service):
    state = await service.run_multi_provider("q", "quick")
    assert state.status is AggregateStatus.COMPLETED
    assert state.providers == ["openai", "anthropic", "xai"]


# ─────────────────────────────────────────────────────────────────────────────
# Listing & maintenance
# ─────────────────────────────────────────────────────────────────────────────

async def test_list_runs_hides_child_runs(service):
    single = await service.run("first question", "quick", "openai")
    multi = await service.run_multi_provider("second question", "quick", ["openai", "xai"])

    listings = await service.list_runs()
    assert [item.id for item in listings] == [multi.id, single.id]
    assert listings[0].kind == "multi-provider"
    assert listings[0].providers == ["openai", "xai"]
    assert listings[1].kind == "single"
    assert await service.list_runs(limit=1) == listings[:1]


async def test_reconcile_all_counts_aggregates(service):
    await service.run_multi_provider("a", "quick", ["openai"])
    await service.run_multi_provider("b", "quick", ["xai"])
    assert await service.reconcile_all() == 2
