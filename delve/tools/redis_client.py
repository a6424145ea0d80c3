"""Redis client for run state and the search cache.

Tries to connect to Redis on first use. If Redis is unavailable,
falls back to an in-process dict so a single-process run always works.
Graceful degradation: the fallback is per-process, so multi-process
deployments must point every worker at a reachable Redis.
"""

from __future__ import annotations

import fnmatch
import time

import structlog

logger = structlog.get_logger().bind(component="redis_client")

# TTL default: 24 hours
DEFAULT_TTL = 86400


class RedisClient:
    """Async Redis client with in-process dict fallback.

    Priority:
        1. Real Redis via redis-py (if installed + server up)
        2. In-process dict with manual TTL (always works)

    Pass ``in_memory=True`` to skip the connection attempt entirely (tests,
    one-shot CLI runs).
    """

    def __init__(self, url: str | None = None, in_memory: bool = False) -> None:
        from delve.config import settings
        self.url = url or settings.redis_url
        self._redis = None          # redis.asyncio client (lazy)
        self._fallback: dict[str, tuple[str, float]] = {}            # key → (value, expire_at)
        self._fallback_sets: dict[str, tuple[set[str], float]] = {}  # key → (members, expire_at)
        self._use_fallback = in_memory  # set True once Redis is confirmed unavailable

    @property
    def is_in_memory(self) -> bool:
        return self._use_fallback

    async def _get_redis(self):
        """Lazy connect to Redis. Sets _use_fallback if unavailable."""
        if self._use_fallback:
            return None
        if self._redis is not None:
            return self._redis
        try:
            import redis.asyncio as aioredis  # type: ignore
            client = aioredis.from_url(self.url, decode_responses=True)
            await client.ping()
            self._redis = client
            logger.info("redis_connected", url=self.url)
            return self._redis
        except Exception as e:
            logger.warning("redis_unavailable_using_fallback", error=str(e))
            self._use_fallback = True
            return None

    # ── Fallback helpers ──────────────────────────────────────────────────────

    @staticmethod
    def _expired(expire_at: float) -> bool:
        return bool(expire_at) and time.time() > expire_at

    def _fallback_get(self, key: str) -> str | None:
        entry = self._fallback.get(key)
        if entry is None:
            return None
        value, expire_at = entry
        if self._expired(expire_at):
            del self._fallback[key]
            return None
        return value

    def _fallback_members(self, key: str) -> set[str]:
        entry = self._fallback_sets.get(key)
        if entry is None:
            return set()
        members, expire_at = entry
        if self._expired(expire_at):
            del self._fallback_sets[key]
            return set()
        return members

    # ── String keys ───────────────────────────────────────────────────────────

    async def get(self, key: str) -> str | None:
        """Retrieve value by key. Returns None if missing or expired."""
        r = await self._get_redis()
        if r:
            try:
                return await r.get(key)
            except Exception as e:
                logger.warning("redis_get_error", key=key, error=str(e))
        return self._fallback_get(key)

    async def set(self, key: str, value: str, ttl: int | None = DEFAULT_TTL) -> None:
        """Store key→value with optional TTL (seconds). ``ttl=None`` or 0 never expires."""
        r = await self._get_redis()
        if r:
            try:
                if ttl:
                    await r.setex(key, ttl, value)
                else:
                    await r.set(key, value)
                return
            except Exception as e:
                logger.warning("redis_set_error", key=key, error=str(e))

        expire_at = time.time() + ttl if ttl else 0.0
        self._fallback[key] = (value, expire_at)

    async def exists(self, key: str) -> bool:
        r = await self._get_redis()
        if r:
            try:
                return bool(await r.exists(key))
            except Exception as e:
                logger.warning("redis_exists_error", key=key, error=str(e))
        return self._fallback_get(key) is not None or bool(self._fallback_members(key))

    async def delete(self, key: str) -> None:
        """Delete a key."""
        r = await self._get_redis()
        if r:
            try:
                await r.delete(key)
                return
            except Exception as e:
                logger.warning("redis_delete_error", key=key, error=str(e))
        self._fallback.pop(key, None)
        self._fallback_sets.pop(key, None)

    async def expire(self, key: str, ttl: int) -> None:
        """Reset the TTL of an existing key (string or set)."""
        r = await self._get_redis()
        if r:
            try:
                await r.expire(key, ttl)
                return
            except Exception as e:
                logger.warning("redis_expire_error", key=key, error=str(e))
        expire_at = time.time() + ttl
        if self._fallback_get(key) is not None:
            value, _ = self._fallback[key]
            self._fallback[key] = (value, expire_at)
        if self._fallback_members(key):
            members, _ = self._fallback_sets[key]
            self._fallback_sets[key] = (members, expire_at)

    async def keys_matching(self, pattern: str) -> list[str]:
        """Return all keys matching a glob pattern (e.g. 'research:*')."""
        r = await self._get_redis()
        if r:
            try:
                return [k async for k in r.scan_iter(match=pattern)]
            except Exception as e:
                logger.warning("redis_keys_error", error=str(e))
        live = [k for k in list(self._fallback) if self._fallback_get(k) is not None]
        live += [k for k in list(self._fallback_sets) if self._fallback_members(k)]
        return sorted(k for k in live if fnmatch.fnmatchcase(k, pattern))

    # ── Sets ──────────────────────────────────────────────────────────────────

    async def sadd(self, key: str, *members: str) -> None:
        if not members:
            return
        r = await self._get_redis()
        if r:
            try:
                await r.sadd(key, *members)
                return
            except Exception as e:
                logger.warning("redis_sadd_error", key=key, error=str(e))
        current = self._fallback_members(key)
        expire_at = self._fallback_sets[key][1] if key in self._fallback_sets else 0.0
        self._fallback_sets[key] = (current | set(members), expire_at)

    async def srem(self, key: str, *members: str) -> None:
        if not members:
            return
        r = await self._get_redis()
        if r:
            try:
                await r.srem(key, *members)
                return
            except Exception as e:
                logger.warning("redis_srem_error", key=key, error=str(e))
        current = self._fallback_members(key)
        current.difference_update(members)

    async def smembers(self, key: str) -> set[str]:
        r = await self._get_redis()
        if r:
            try:
                return set(await r.smembers(key))
            except Exception as e:
                logger.warning("redis_smembers_error", key=key, error=str(e))
        return set(self._fallback_members(key))

    # ── Optimistic concurrency ────────────────────────────────────────────────

    async def compare_and_set(
        self,
        key: str,
        expected: str | None,
        value: str,
        ttl: int | None = DEFAULT_TTL,
    ) -> bool:
        """Write ``value`` only if the stored value still equals ``expected``.

        ``expected=None`` means "key must be absent".  Returns False when
        another writer got there first; the caller re-reads and retries.
        """
        r = await self._get_redis()
        if r:
            from redis.exceptions import WatchError  # type: ignore
            try:
                async with r.pipeline(transaction=True) as pipe:
                    await pipe.watch(key)
                    current = await pipe.get(key)
                    if current != expected:
                        await pipe.unwatch()
                        return False
                    pipe.multi()
                    if ttl:
                        pipe.setex(key, ttl, value)
                    else:
                        pipe.set(key, value)
                    await pipe.execute()
                    return True
            except WatchError:
                logger.debug("redis_cas_conflict", key=key)
                return False

        # No await between compare and write: atomic within one event loop.
        if self._fallback_get(key) != expected:
            return False
        expire_at = time.time() + ttl if ttl else 0.0
        self._fallback[key] = (value, expire_at)
        return True

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None
