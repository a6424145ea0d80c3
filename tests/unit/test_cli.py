"""Tests for the Typer CLI using in-memory stores and fake capabilities."""

from __future__ import annotations

import pytest
from typer.testing import CliRunner

from delve import __version__
from delve.main import app
from delve.research.service import ResearchService

from fakes import FakeCapabilities, FakeSearch

runner = CliRunner()


@pytest.fixture
def patched_service(monkeypatch, research_store):
    caps = {p: FakeCapabilities(provider=p) for p in ("openai", "xai")}

    def factory():
        return ResearchService(
            store=research_store,
            search=FakeSearch(),
            capabilities_for=lambda p: caps[p],
            available=lambda: ["openai", "xai"],
            run_timeout=0,
            multi_run_timeout=0,
        )

    monkeypatch.setattr("delve.research.service.ResearchService", factory)
    return caps


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_providers_table_lists_all_four():
    result = runner.invoke(app, ["providers"])
    assert result.exit_code == 0
    for name in ("OpenAI", "Anthropic", "Google", "xAI"):
        assert name in result.stdout


def test_run_prints_report_and_id(patched_service):
    result = runner.invoke(app, ["run", "solid state batteries", "--depth", "quick", "--provider", "xai"])
    assert result.exit_code == 0, result.stdout
    assert "Report from xai" in result.stdout
    assert "research_" in result.stdout


def test_bad_depth_exits_1(patched_service):
    result = runner.invoke(app, ["run", "q", "--depth", "bottomless", "--provider", "xai"])
    assert result.exit_code == 1
    assert "Unknown research depth" in result.stdout


def test_status_of_unknown_run_exits_1(patched_service):
    result = runner.invoke(app, ["status", "research_missing"])
    assert result.exit_code == 1
    assert "research_missing" in result.stdout


def test_multi_then_list(patched_service):
    result = runner.invoke(app, ["multi", "q", "--depth", "quick"])
    assert result.exit_code == 0, result.stdout
    assert "Consolidated by" in result.stdout

    listed = runner.invoke(app, ["list"])
    assert listed.exit_code == 0
    assert "Research Runs" in listed.stdout


def test_list_empty(patched_service):
    result = runner.invoke(app, ["list"])
    assert result.exit_code == 0
    assert "No runs yet" in result.stdout
