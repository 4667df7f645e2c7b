"""Shared caches: dependency/prompt payloads and inbound reply keys."""
from cache.dependency_cache import (
    DependencyCache, LocalTTLCache,
    create_cache, get_cache, reset_cache,
)
from cache.dedup import InboundKeyStore

__all__ = [
    "DependencyCache", "LocalTTLCache",
    "create_cache", "get_cache", "reset_cache",
    "InboundKeyStore",
]
