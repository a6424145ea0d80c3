"""Generic JSON record store on top of RedisClient.

One record per key, whole-record overwrites, fixed TTL refreshed on every
write (never on read).  ``save`` refuses anything that is not plain JSON
data before touching Redis; ``load`` treats an unreadable value as absent
and deletes it.  ``update`` is the optimistic read-modify-write used for
records with more than one writer.
"""

from __future__ import annotations

import json
import math
from typing import Any, Callable

import structlog

from delve.errors import ConcurrentUpdateError, CorruptedStateError, SerializationError
from delve.tools.redis_client import RedisClient

logger = structlog.get_logger().bind(component="state_store")

Mutator = Callable[[dict[str, Any] | None], dict[str, Any] | None]


def ensure_serializable(value: Any, path: str = "root", _seen: set[int] | None = None) -> None:
    """Raise SerializationError unless ``value`` is a tree of JSON data."""
    if value is None or isinstance(value, (bool, int, str)):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise SerializationError(f"non-finite float {value!r}", path)
        return

    if not isinstance(value, (dict, list, tuple)):
        raise SerializationError(f"unsupported type {type(value).__name__}", path)

    seen = _seen if _seen is not None else set()
    marker = id(value)
    if marker in seen:
        raise SerializationError("circular reference", path)
    seen.add(marker)
    try:
        if isinstance(value, dict):
            for k, v in value.items():
                if not isinstance(k, str):
                    raise SerializationError(f"non-string key {k!r}", path)
                ensure_serializable(v, f"{path}.{k}", seen)
        else:
            for i, item in enumerate(value):
                ensure_serializable(item, f"{path}[{i}]", seen)
    finally:
        # Shared (non-cyclic) references are fine; only ancestors count.
        seen.discard(marker)


def encode_record(record: dict[str, Any]) -> str:
    if not isinstance(record, dict):
        raise SerializationError(f"record must be a mapping, got {type(record).__name__}")
    ensure_serializable(record)
    return json.dumps(record, allow_nan=False, separators=(",", ":"))


def decode_record(key: str, raw: str) -> dict[str, Any]:
    try:
        value = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise CorruptedStateError(key, f"invalid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise CorruptedStateError(key, f"expected an object, got {type(value).__name__}")
    return value


class StateStore:
    """Key → JSON record persistence with TTL and prefix listing."""

    def __init__(self, redis: RedisClient | None = None, ttl: int | None = None) -> None:
        from delve.config import settings
        self._redis = redis or RedisClient()
        self.ttl = ttl if ttl is not None else settings.state_ttl_seconds

    @property
    def redis(self) -> RedisClient:
        return self._redis

    async def save(self, key: str, record: dict[str, Any], ttl: int | None = None) -> None:
        payload = encode_record(record)
        await self._redis.set(key, payload, ttl=ttl or self.ttl)

    async def load(self, key: str) -> dict[str, Any] | None:
        raw = await self._redis.get(key)
        if raw is None:
            return None
        try:
            return decode_record(key, raw)
        except CorruptedStateError as exc:
            logger.warning("state_corrupted_deleted", key=key, reason=exc.reason)
            await self._redis.delete(key)
            return None

    async def exists(self, key: str) -> bool:
        return await self._redis.exists(key)

    async def delete(self, key: str) -> None:
        await self._redis.delete(key)

    async def list_keys(self, prefix: str) -> list[str]:
        return await self._redis.keys_matching(f"{prefix}*")

    async def update(
        self,
        key: str,
        mutator: Mutator,
        ttl: int | None = None,
        max_attempts: int | None = None,
    ) -> dict[str, Any] | None:
        """Optimistic read-modify-write.

        ``mutator`` receives the current record (or None) and returns the
        new record, or None to leave the key untouched.  It may be called
        several times, so it must not have side effects.  Raises
        ConcurrentUpdateError once ``max_attempts`` writes have lost the race.
        """
        from delve.config import settings
        attempts = max_attempts or settings.cas_max_retries

        for attempt in range(1, attempts + 1):
            raw = await self._redis.get(key)
            current: dict[str, Any] | None = None
            if raw is not None:
                try:
                    current = decode_record(key, raw)
                except CorruptedStateError as exc:
                    logger.warning("state_corrupted_overwriting", key=key, reason=exc.reason)

            updated = mutator(current)
            if updated is None:
                return current

            payload = encode_record(updated)
            if await self._redis.compare_and_set(key, raw, payload, ttl=ttl or self.ttl):
                return updated
            logger.info("state_update_conflict", key=key, attempt=attempt)

        raise ConcurrentUpdateError(key, attempts)

    async def close(self) -> None:
        await self._redis.close()
