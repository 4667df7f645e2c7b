"""
Dependency Cache: JSON key/value store with TTL and per-tenant hash maps.

Backends:
  - Redis (redis.asyncio) when cache.enabled and cache.redis_url are set
  - LocalTTLCache (in-process dict) otherwise, and whenever a Redis call fails

Both expose the same semantics, so callers never special-case availability:
  get(key) after set(key, v) returns v until delete(key) or the TTL elapses.

Keys written here:
  funnel:{funnel_id}                       public funnel payload
  deps:{bot}:{bot_upd}:{funnel}:{fun_upd}  base provider dependencies
  session-messages:{session_id}            recent conversation history
  prompt-funnel:{tenant_id}  (hash)        bot_id → prompt + funnel stages

Usage:
    cache = create_cache(settings.cache)
    await cache.connect()
    await cache.set("funnel:f1", payload)
    await cache.get("funnel:f1")
"""
from __future__ import annotations

import json
import time
import structlog
from collections import OrderedDict
from typing import Any, Callable, Optional

from config.settings import CacheConfig, get_settings

logger = structlog.get_logger()


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


class LocalTTLCache:
    """
    In-process fallback store.

    Entries expire lazily on read and are pruned on write; once max_size is
    reached the oldest entry is evicted.
    """

    def __init__(self, max_size: int = 10000, clock: Callable[[], float] = time.monotonic):
        self.max_size = max_size
        self._clock = clock
        self._entries: OrderedDict[str, tuple[Optional[float], str]] = OrderedDict()
        self._hashes: dict[str, dict[str, str]] = {}

    def get(self, key: str) -> Optional[str]:
        item = self._entries.get(key)
        if item is None:
            return None
        expires_at, raw = item
        if expires_at is not None and expires_at <= self._clock():
            del self._entries[key]
            return None
        return raw

    def set(self, key: str, raw: str, ttl: Optional[float] = None) -> None:
        expires_at = self._clock() + ttl if ttl and ttl > 0 else None
        self._entries.pop(key, None)
        self._entries[key] = (expires_at, raw)
        self._prune()

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def hash_set(self, map_key: str, field: str, raw: str) -> None:
        self._hashes.setdefault(map_key, {})[field] = raw

    def hash_get(self, map_key: str, field: str) -> Optional[str]:
        return self._hashes.get(map_key, {}).get(field)

    def hash_get_all(self, map_key: str) -> dict[str, str]:
        return dict(self._hashes.get(map_key, {}))

    def hash_delete(self, map_key: str, field: str) -> None:
        fields = self._hashes.get(map_key)
        if fields is None:
            return
        fields.pop(field, None)
        if not fields:
            del self._hashes[map_key]

    def __len__(self) -> int:
        return len(self._entries)

    def _prune(self):
        now = self._clock()
        expired = [k for k, (exp, _) in self._entries.items() if exp is not None and exp <= now]
        for k in expired:
            del self._entries[k]
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)


class DependencyCache:
    """Redis-backed cache with a transparent local fallback."""

    def __init__(self, config: CacheConfig = None, local: LocalTTLCache = None):
        self.config = config or get_settings().cache
        self.default_ttl = self.config.ttl_seconds
        self.local = local if local is not None else LocalTTLCache(max_size=self.config.local_max_size)
        self._redis = None

    @property
    def uses_redis(self) -> bool:
        return self._redis is not None

    async def connect(self):
        if not (self.config.enabled and self.config.redis_url):
            logger.info("dependency_cache_local", reason="redis not configured")
            return
        import redis.asyncio as aioredis
        try:
            client = aioredis.from_url(
                self.config.redis_url,
                decode_responses=True,
                max_connections=20,
            )
            await client.ping()
        except Exception as e:
            logger.warning("dependency_cache_redis_unavailable",
                           url=self.config.redis_url, error=str(e))
            return
        self._redis = client
        logger.info("dependency_cache_connected", url=self.config.redis_url)

    async def close(self):
        if self._redis:
            await self._redis.close()
            self._redis = None

    def _key(self, key: str) -> str:
        return f"{self.config.prefix}:{key}" if self.config.prefix else key

    # ── Plain keys ────────────────────────────────────────

    async def get(self, key: str) -> Any:
        full = self._key(key)
        if self._redis:
            try:
                raw = await self._redis.get(full)
                return json.loads(raw) if raw is not None else None
            except Exception as e:
                logger.warning("cache_get_failed", key=key, error=str(e))
        raw = self.local.get(full)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        full = self._key(key)
        ttl = self.default_ttl if ttl is None else ttl
        raw = _dumps(value)
        if self._redis:
            try:
                if ttl and ttl > 0:
                    await self._redis.set(full, raw, ex=int(max(ttl, 1)))
                else:
                    await self._redis.set(full, raw)
                return
            except Exception as e:
                logger.warning("cache_set_failed", key=key, error=str(e))
        self.local.set(full, raw, ttl)

    async def delete(self, key: str) -> None:
        full = self._key(key)
        if self._redis:
            try:
                await self._redis.delete(full)
            except Exception as e:
                logger.warning("cache_delete_failed", key=key, error=str(e))
        self.local.delete(full)

    # ── Hash maps ─────────────────────────────────────────

    async def hash_set(self, map_key: str, field: str, value: Any) -> None:
        full = self._key(map_key)
        raw = _dumps(value)
        if self._redis:
            try:
                await self._redis.hset(full, field, raw)
                return
            except Exception as e:
                logger.warning("cache_hset_failed", key=map_key, field=field, error=str(e))
        self.local.hash_set(full, field, raw)

    async def hash_get(self, map_key: str, field: str) -> Any:
        full = self._key(map_key)
        if self._redis:
            try:
                raw = await self._redis.hget(full, field)
                return json.loads(raw) if raw is not None else None
            except Exception as e:
                logger.warning("cache_hget_failed", key=map_key, field=field, error=str(e))
        raw = self.local.hash_get(full, field)
        return json.loads(raw) if raw is not None else None

    async def hash_get_all(self, map_key: str) -> dict[str, Any]:
        full = self._key(map_key)
        if self._redis:
            try:
                raw_map = await self._redis.hgetall(full)
                return {f: json.loads(v) for f, v in raw_map.items()}
            except Exception as e:
                logger.warning("cache_hgetall_failed", key=map_key, error=str(e))
        return {f: json.loads(v) for f, v in self.local.hash_get_all(full).items()}

    async def hash_delete(self, map_key: str, field: str) -> None:
        full = self._key(map_key)
        if self._redis:
            try:
                await self._redis.hdel(full, field)
            except Exception as e:
                logger.warning("cache_hdel_failed", key=map_key, field=field, error=str(e))
        self.local.hash_delete(full, field)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[DependencyCache] = None


def create_cache(config: CacheConfig = None) -> DependencyCache:
    """Factory: create the process-wide dependency cache."""
    global _instance
    if _instance is not None:
        return _instance
    _instance = DependencyCache(config)
    logger.info("dependency_cache_created",
                redis=bool(_instance.config.enabled and _instance.config.redis_url))
    return _instance


def get_cache() -> DependencyCache:
    """Return the singleton cache, creating a default one if none exists."""
    global _instance
    if _instance is None:
        _instance = create_cache()
    return _instance


def reset_cache() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
