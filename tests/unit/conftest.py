"""Unit-test conftest — in-memory stores and default fakes.

All fixtures here are available to every test under tests/unit/ without import.
The fake classes themselves live in ``tests/fakes.py``.
"""

from __future__ import annotations

import pytest

from delve.research.store import ResearchStore
from delve.tools.redis_client import RedisClient
from delve.tools.state_store import StateStore
from fakes import FakeCapabilities, FakeSearch


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def redis():
    """A fresh in-memory RedisClient (never touches a server)."""
    return RedisClient(in_memory=True)


@pytest.fixture
def state_store(redis):
    return StateStore(redis=redis)


@pytest.fixture
def research_store(state_store):
    return ResearchStore(store=state_store)


@pytest.fixture
def fake_search():
    return FakeSearch()


@pytest.fixture
def fake_capabilities():
    """A FakeCapabilities with default behaviour (plan → search → write)."""
    return FakeCapabilities()
