"""
Debouncer: coalesces bursts of inbound messages per session.

Every submit() for a session restarts that session's timer. When a timer
runs out without a newer submit, the caller holding it receives its own
text and payload (last write wins); every earlier caller receives None and
should stop processing.

With a Redis-backed DependencyCache the "latest submit" marker lives in the
shared cache (debounce:{key} → token), so a burst spread across several
instances still yields a single dispatch.
"""
from __future__ import annotations

import asyncio
import structlog
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from cache.dependency_cache import DependencyCache

logger = structlog.get_logger()


def debounce_cache_key(key: str) -> str:
    return f"debounce:{key}"


@dataclass
class _Pending:
    generation: int = 0


class Debouncer:
    def __init__(
        self,
        max_pending: int = 10000,
        cache: DependencyCache = None,
        shared_ttl_seconds: float = 30.0,
    ):
        self.max_pending = max_pending
        self.cache = cache
        self.shared_ttl = shared_ttl_seconds
        self._pending: dict[str, _Pending] = {}

    @property
    def shared(self) -> bool:
        return self.cache is not None and self.cache.uses_redis

    async def submit(
        self,
        key: str,
        content: str,
        payload: Any = None,
        delay: float = 0.0,
    ) -> Optional[tuple[str, Any]]:
        if not delay or delay <= 0:
            return content, payload
        if self.shared:
            return await self._submit_shared(key, content, payload, delay)

        entry = self._pending.get(key)
        if entry is None:
            if len(self._pending) >= self.max_pending:
                logger.warning("debounce_capacity_reached", pending=len(self._pending))
                return content, payload
            entry = _Pending()
            self._pending[key] = entry
        entry.generation += 1
        generation = entry.generation

        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            if self._pending.get(key) is entry and entry.generation == generation:
                del self._pending[key]
            raise

        if self._pending.get(key) is not entry or entry.generation != generation:
            logger.debug("debounce_superseded", key=key)
            return None
        del self._pending[key]
        return content, payload

    async def _submit_shared(self, key: str, content: str, payload: Any,
                             delay: float) -> Optional[tuple[str, Any]]:
        token = uuid.uuid4().hex
        cache_key = debounce_cache_key(key)
        await self.cache.set(cache_key, token, ttl=max(self.shared_ttl, delay * 2))
        await asyncio.sleep(delay)
        if await self.cache.get(cache_key) != token:
            logger.debug("debounce_superseded", key=key, shared=True)
            return None
        return content, payload

    def pending(self, key: str) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)
