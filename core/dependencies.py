"""
Dependency payload: what a provider receives next to every message.

    dependencies = {
        "funnel":           public funnel fields (or None),
        "agent_prompt":     bot's static prompt,
        "agent_config":     bot's provider-specific config,
        "session_messages": recent history for the session,
    }

The first three are memoized in the DependencyCache under a fingerprint key
deps:{bot_id}:{bot_updated_at}:{funnel_id}:{funnel_updated_at}, so an edit
to the bot or funnel changes the key. Admin operations also delete keys
explicitly through invalidate()/invalidate_funnel().
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Optional

from cache.dependency_cache import DependencyCache
from database.store_base import BaseSessionStore
from models.schemas import BotBinding, Funnel, Session

logger = structlog.get_logger()


def _stamp(value: Any) -> str:
    if value is None:
        return "none"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def funnel_cache_key(funnel_id: str) -> str:
    return f"funnel:{funnel_id}"


def deps_cache_key(bot: BotBinding, funnel_id: Optional[str], funnel_updated_at: Any) -> str:
    return (
        f"deps:{bot.id or 'unknown'}:{_stamp(bot.updated_at)}:"
        f"{funnel_id or 'none'}:{_stamp(funnel_updated_at)}"
    )


def session_messages_key(session_id: str) -> str:
    return f"session-messages:{session_id}"


def funnel_public_payload(funnel: Funnel) -> dict[str, Any]:
    return {
        "id": funnel.id,
        "name": funnel.name,
        "goal": funnel.goal,
        "logic": funnel.logic,
        "followUp": {"stages": funnel.stages},
        "stages": funnel.stages,
        "status": funnel.status.value if hasattr(funnel.status, "value") else funnel.status,
    }


def session_state(session: Session, quoted_message: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    return {
        "funnelStage": session.funnel_stage,
        "followUpStage": session.follow_up_stage,
        "funnelEnable": session.funnel_enable,
        "followUpEnable": session.follow_up_enable,
        "quotedMessage": quoted_message,
    }


class DependencyResolver:
    """Builds and memoizes provider dependency payloads."""

    def __init__(self, store: BaseSessionStore, cache: DependencyCache, history_limit: int = 20):
        self.store = store
        self.cache = cache
        self.history_limit = history_limit

    # ── Funnel payload ────────────────────────────────────

    async def funnel_info(self, funnel_id: Optional[str]) -> Optional[dict[str, Any]]:
        """
        Cached {payload, updated_at, follow_up_enable} for a funnel.

        A missing funnel is cached too (payload None) so repeated lookups
        do not hit the store.
        """
        if not funnel_id:
            return None
        key = funnel_cache_key(funnel_id)
        cached = await self.cache.get(key)
        if cached is not None:
            return cached

        info: dict[str, Any] = {"payload": None, "updated_at": None, "follow_up_enable": None}
        try:
            funnel = await self.store.get_funnel(funnel_id)
        except Exception as e:
            logger.warning("funnel_payload_load_failed", funnel_id=funnel_id, error=str(e))
            return info
        if funnel:
            info = {
                "payload": funnel_public_payload(funnel),
                "updated_at": _stamp(funnel.updated_at),
                "follow_up_enable": funnel.follow_up_enable,
            }
        await self.cache.set(key, info)
        return info

    # ── Base dependencies ─────────────────────────────────

    async def base_dependencies(
        self,
        bot: BotBinding,
        funnel_payload: Optional[dict[str, Any]],
        funnel_updated_at: Any = None,
    ) -> dict[str, Any]:
        funnel_id = (funnel_payload or {}).get("id")
        key = deps_cache_key(bot, funnel_id, funnel_updated_at)
        cached = await self.cache.get(key)
        if cached:
            return cached

        dependencies = {
            "funnel": funnel_payload,
            "agent_prompt": (bot.prompt or "").strip() or None,
            "agent_config": bot.agent_config,
        }
        await self.cache.set(key, dependencies)
        return dependencies

    async def build(
        self,
        bot: BotBinding,
        session: Session,
        funnel: Optional[Funnel] = None,
    ) -> dict[str, Any]:
        """Full dependency payload for one provider call."""
        if funnel is not None:
            payload, updated_at = funnel_public_payload(funnel), _stamp(funnel.updated_at)
        else:
            info = await self.funnel_info(bot.funnel_id)
            payload = (info or {}).get("payload")
            updated_at = (info or {}).get("updated_at")

        base = await self.base_dependencies(bot, payload, updated_at)
        return {**base, "session_messages": await self.history(session.id)}

    # ── Conversation history ──────────────────────────────

    async def history(self, session_id: str) -> list[dict[str, Any]]:
        return await self.cache.get(session_messages_key(session_id)) or []

    async def append_history(self, session_id: str, role: str, content: str, at: int) -> None:
        if not content:
            return
        messages = await self.history(session_id)
        messages.append({"role": role, "content": content, "at": at})
        await self.cache.set(session_messages_key(session_id), messages[-self.history_limit:])

    # ── Invalidation ──────────────────────────────────────

    async def invalidate(self, bot: BotBinding) -> None:
        """Drop the cached dependencies for the bot's current fingerprint."""
        try:
            funnel_updated_at = None
            if bot.funnel_id:
                funnel = await self.store.get_funnel(bot.funnel_id)
                funnel_updated_at = _stamp(funnel.updated_at) if funnel else None
            await self.cache.delete(deps_cache_key(bot, bot.funnel_id if funnel_updated_at else None,
                                                   funnel_updated_at))
        except Exception as e:
            logger.warning("dependencies_invalidate_failed", bot_id=bot.id, error=str(e))

    async def invalidate_funnel(self, funnel_id: str) -> None:
        await self.cache.delete(funnel_cache_key(funnel_id))
