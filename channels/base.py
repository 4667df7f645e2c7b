"""
Channel sinks: Outbound side of the channel layer.

Provides:
- ChannelError: structured error for delivery failures
- MessageDeduplicator: TTL seen-set for redelivered inbound webhooks
- ChannelSink: abstract base every outbound transport implements
- LoggingChannelSink: development sink that only logs
- ChannelRegistry: tenant → sink lookup with a default

Both normal dispatch and follow-up dispatch deliver through
ChannelSink.send_reply(tenant, remote_contact, text, session, metadata).
"""
from __future__ import annotations

import abc
import time
import uuid
import structlog
from typing import Any, Optional

from models.schemas import Session, Tenant

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for outbound delivery."""

    def __init__(self, message: str, tenant: str = "", retryable: bool = False):
        self.tenant = tenant
        self.retryable = retryable
        super().__init__(message)


# ══════════════════════════════════════════════════════════════
#  MESSAGE DEDUPLICATION
# ══════════════════════════════════════════════════════════════

class MessageDeduplicator:
    """TTL-based seen-set for inbound message ids."""

    def __init__(self, ttl_seconds: float = 300.0, max_size: int = 5000):
        self.ttl = ttl_seconds
        self.max_size = max_size
        self._seen: dict[str, float] = {}

    def is_duplicate(self, key: str) -> bool:
        self._prune()
        if key in self._seen:
            return True
        self._seen[key] = time.monotonic()
        return False

    def _prune(self):
        cutoff = time.monotonic() - self.ttl
        expired = [k for k, t in self._seen.items() if t < cutoff]
        for k in expired:
            del self._seen[k]
        if len(self._seen) >= self.max_size:
            oldest = sorted(self._seen.items(), key=lambda kv: kv[1])
            for k, _ in oldest[: len(self._seen) - self.max_size + 1]:
                del self._seen[k]


# ══════════════════════════════════════════════════════════════
#  CHANNEL SINK: Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelSink(abc.ABC):
    """
    Base class for outbound transports.

    Subclasses implement _do_send. send_reply never raises: failures come
    back as {"status": "failed", "error": ...}.
    """

    name: str = "sink"

    @abc.abstractmethod
    async def _do_send(self, tenant: Tenant, remote_contact: str, text: str,
                       metadata: dict[str, Any]) -> dict[str, Any]:
        ...

    async def send_reply(
        self,
        tenant: Tenant,
        remote_contact: str,
        text: str,
        session: Optional[Session] = None,
        metadata: dict[str, Any] = None,
    ) -> dict[str, Any]:
        metadata = dict(metadata or {})
        if session is not None:
            metadata.setdefault("session_id", session.id)
            metadata.setdefault("bot_id", session.bot_id)
        message_id = metadata.get("message_id") or uuid.uuid4().hex
        start = time.monotonic()
        try:
            result = await self._do_send(tenant, remote_contact, text, metadata)
        except Exception as e:
            logger.error("channel_send_failed",
                         sink=self.name, tenant=tenant.name,
                         remote_contact=remote_contact, error=str(e))
            return {"status": "failed", "message_id": message_id, "error": str(e)}
        result.setdefault("message_id", message_id)
        result["latency_ms"] = round((time.monotonic() - start) * 1000, 1)
        return result

    async def shutdown(self) -> None:
        pass


class LoggingChannelSink(ChannelSink):
    """Development sink: logs replies instead of delivering them."""

    name = "logging"

    async def _do_send(self, tenant: Tenant, remote_contact: str, text: str,
                       metadata: dict[str, Any]) -> dict[str, Any]:
        logger.info("reply_logged", tenant=tenant.name, remote_contact=remote_contact,
                    text=text[:200], **{k: v for k, v in metadata.items() if k in ("session_id", "followup")})
        return {"status": "logged"}


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:
    def __init__(self, default: ChannelSink = None):
        self._default = default or LoggingChannelSink()
        self._sinks: dict[str, ChannelSink] = {}

    def register(self, tenant_id: str, sink: ChannelSink):
        self._sinks[tenant_id] = sink

    def unregister(self, tenant_id: str):
        self._sinks.pop(tenant_id, None)

    def set_default(self, sink: ChannelSink):
        self._default = sink

    def get(self, tenant_id: str) -> ChannelSink:
        return self._sinks.get(tenant_id, self._default)

    async def send_reply(self, tenant: Tenant, remote_contact: str, text: str,
                         session: Optional[Session] = None,
                         metadata: dict[str, Any] = None) -> dict[str, Any]:
        return await self.get(tenant.id).send_reply(tenant, remote_contact, text, session, metadata)

    async def shutdown_all(self):
        for sink in {id(s): s for s in [self._default, *self._sinks.values()]}.values():
            try:
                await sink.shutdown()
            except Exception as e:
                logger.warning("channel_shutdown_failed", sink=sink.name, error=str(e))
