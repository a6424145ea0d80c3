"""Typed persistence of run records.

    research:{run_id}          RunState
    multi_research:{run_id}    MultiProviderRunState

Records that no longer validate against the model are treated like
corrupted JSON: deleted and reported as absent.
"""

from __future__ import annotations

from typing import Callable

import structlog
from pydantic import ValidationError

from delve.models.research import MultiProviderRunState, RunState
from delve.tools.state_store import StateStore
from delve.utils.clock import now_utc

logger = structlog.get_logger().bind(component="research.store")

RUN_PREFIX = "research:"
MULTI_PREFIX = "multi_research:"


def run_key(run_id: str) -> str:
    return f"{RUN_PREFIX}{run_id}"


def multi_key(run_id: str) -> str:
    return f"{MULTI_PREFIX}{run_id}"


def is_multi_run_id(run_id: str) -> bool:
    return run_id.startswith("multi_research_") and ":" not in run_id


class ResearchStore:
    """RunState / MultiProviderRunState persistence over a StateStore."""

    def __init__(self, store: StateStore | None = None) -> None:
        self._store = store or StateStore()

    @property
    def state_store(self) -> StateStore:
        return self._store

    # ── Single runs ───────────────────────────────────────────────────────────

    async def load_run(self, run_id: str) -> RunState | None:
        key = run_key(run_id)
        record = await self._store.load(key)
        if record is None:
            return None
        try:
            return RunState.model_validate(record)
        except ValidationError as exc:
            logger.warning("run_record_invalid_deleted", key=key, error=str(exc))
            await self._store.delete(key)
            return None

    async def save_run(self, state: RunState) -> RunState:
        """Persist ``state`` with a fresh ``updated_at``; returns the stored copy."""
        stamped = state.model_copy(update={"updated_at": now_utc()})
        await self._store.save(run_key(stamped.id), stamped.to_record())
        return stamped

    async def list_run_ids(self) -> list[str]:
        keys = await self._store.list_keys(RUN_PREFIX)
        return [k[len(RUN_PREFIX):] for k in keys]

    # ── Multi-provider aggregates ─────────────────────────────────────────────

    async def load_aggregate(self, run_id: str) -> MultiProviderRunState | None:
        key = multi_key(run_id)
        record = await self._store.load(key)
        if record is None:
            return None
        try:
            return MultiProviderRunState.model_validate(record)
        except ValidationError as exc:
            logger.warning("aggregate_record_invalid_deleted", key=key, error=str(exc))
            await self._store.delete(key)
            return None

    async def save_aggregate(self, state: MultiProviderRunState) -> MultiProviderRunState:
        stamped = state.model_copy(update={"updated_at": now_utc()})
        await self._store.save(multi_key(stamped.id), stamped.to_record())
        return stamped

    async def update_aggregate(
        self,
        run_id: str,
        change: Callable[[MultiProviderRunState], MultiProviderRunState | None],
    ) -> MultiProviderRunState | None:
        """Compare-and-set update of an aggregate record.

        ``change`` gets the current aggregate and returns the replacement, or
        None to leave it alone.  It may run several times under contention.
        Returns the stored aggregate, or None when no valid record exists.
        """
        outcome: dict[str, MultiProviderRunState | None] = {"state": None}

        def mutate(record):
            if record is None:
                outcome["state"] = None
                return None
            try:
                current = MultiProviderRunState.model_validate(record)
            except ValidationError as exc:
                logger.warning("aggregate_record_invalid_skipped", run_id=run_id, error=str(exc))
                outcome["state"] = None
                return None
            updated = change(current)
            if updated is None:
                outcome["state"] = current
                return None
            updated = updated.model_copy(update={"updated_at": now_utc()})
            outcome["state"] = updated
            return updated.to_record()

        await self._store.update(multi_key(run_id), mutate)
        return outcome["state"]

    async def list_aggregate_ids(self) -> list[str]:
        keys = await self._store.list_keys(MULTI_PREFIX)
        return [k[len(MULTI_PREFIX):] for k in keys]

    async def close(self) -> None:
        await self._store.close()
