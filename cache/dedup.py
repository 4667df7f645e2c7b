"""
Inbound key store: last accepted inbound message id per session.

Used by the orchestrator's stale-reply guard: a provider reply tied to an
inbound id that is no longer the latest one for its session is discarded.
Entries older than ttl_seconds are dropped; entries younger than
refresh_seconds are trusted without re-reading the session record.
"""
from __future__ import annotations

import time
from collections import OrderedDict
from typing import Callable, Optional


class InboundKeyStore:
    """TTL- and size-bounded map of session_id → (key_id, stored_at)."""

    def __init__(
        self,
        ttl_seconds: float = 60.0,
        refresh_seconds: float = 20.0,
        max_size: int = 10000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl_seconds
        self.refresh = refresh_seconds
        self.max_size = max_size
        self._clock = clock
        self._keys: OrderedDict[str, tuple[str, float]] = OrderedDict()

    def set(self, session_id: str, key_id: str) -> None:
        if not session_id or not key_id:
            return
        self._keys.pop(session_id, None)
        self._keys[session_id] = (key_id, self._clock())
        self.prune()

    def get(self, session_id: str) -> Optional[str]:
        item = self._keys.get(session_id)
        return item[0] if item else None

    def age(self, session_id: str) -> Optional[float]:
        item = self._keys.get(session_id)
        if item is None:
            return None
        return self._clock() - item[1]

    def is_fresh(self, session_id: str) -> bool:
        age = self.age(session_id)
        return age is not None and age <= self.refresh

    def clear(self, session_id: str) -> None:
        self._keys.pop(session_id, None)

    def prune(self) -> None:
        cutoff = self._clock() - self.ttl
        expired = [k for k, (_, t) in self._keys.items() if t < cutoff]
        for k in expired:
            del self._keys[k]
        while len(self._keys) > self.max_size:
            self._keys.popitem(last=False)

    def __len__(self) -> int:
        return len(self._keys)
