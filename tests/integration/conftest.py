"""Integration-test conftest — skip guard and real-Redis fixtures.

Integration tests require:
    DELVE_TEST_INTEGRATION=1   (set in shell before running)
    Redis reachable at REDIS_URL (default redis://localhost:6379/0)

Run with:
    DELVE_TEST_INTEGRATION=1 pytest tests/integration/ -v
"""

from __future__ import annotations

import os
import uuid

import pytest


def pytest_collection_modifyitems(config, items):
    if os.getenv("DELVE_TEST_INTEGRATION"):
        return
    skip = pytest.mark.skip(reason="Set DELVE_TEST_INTEGRATION=1 to run integration tests")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def key_prefix() -> str:
    """Unique key namespace for one test."""
    return f"delvetest_{uuid.uuid4().hex[:8]}:"


@pytest.fixture
async def redis_client(key_prefix):
    """RedisClient against the real server; keys under ``key_prefix`` are removed afterwards."""
    from delve.tools.redis_client import RedisClient

    client = RedisClient()
    yield client
    for key in await client.keys_matching(f"{key_prefix}*"):
        await client.delete(key)
    await client.close()
