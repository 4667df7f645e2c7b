"""
Administrative hooks: bot, funnel and session-funnel management.

Every mutation that can change a provider's dependency payload deletes the
affected cache entries:
    deps:{bot}:...          via DependencyResolver.invalidate(bot)
    funnel:{id}             via DependencyResolver.invalidate_funnel(id)
    prompt-funnel:{tenant}  hash, one field per bot bound to a funnel
"""
from __future__ import annotations

import json
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from cache.dependency_cache import DependencyCache
from core.dependencies import DependencyResolver
from core.errors import InvalidRequestError, NotFoundError
from core.funnel import normalize_stages
from database.store_base import BaseSessionStore
from models.schemas import BotBinding, Funnel, FunnelStatus, Session, SessionStatus, Tenant

logger = structlog.get_logger()

SESSION_STATUSES = {"opened", "paused", "closed", "delete"}


def prompt_cache_key(tenant_id: str) -> str:
    return f"prompt-funnel:{tenant_id}"


def _stages_or_raise(stages: Any) -> list[dict[str, Any]]:
    if isinstance(stages, list):
        return stages
    if isinstance(stages, str):
        try:
            parsed = json.loads(stages)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            return parsed
    raise InvalidRequestError("invalid funnel stages")


class AdminService:
    def __init__(self, store: BaseSessionStore, cache: DependencyCache, history_limit: int = 20):
        self.store = store
        self.cache = cache
        self.resolver = DependencyResolver(store, cache, history_limit)

    # ── Lookups ───────────────────────────────────────────

    async def get_tenant(self, tenant_id: str) -> Tenant:
        tenant = await self.store.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError("tenant", tenant_id)
        return tenant

    async def get_bot(self, tenant_id: str, bot_id: str) -> BotBinding:
        bot = await self.store.get_bot(bot_id)
        if bot is None or bot.tenant_id != tenant_id:
            raise NotFoundError("bot", bot_id)
        return bot

    async def get_funnel(self, tenant_id: str, funnel_id: str) -> Funnel:
        funnel = await self.store.get_funnel(funnel_id)
        if funnel is None or funnel.tenant_id != tenant_id:
            raise NotFoundError("funnel", funnel_id)
        return funnel

    async def _check_funnel(self, tenant_id: str, funnel_id: Optional[str]) -> Optional[str]:
        if not funnel_id:
            return None
        await self.get_funnel(tenant_id, funnel_id)
        return funnel_id

    # ── Prompt cache ──────────────────────────────────────

    async def _cache_bot_prompt(self, bot: BotBinding, stages: Any = None) -> None:
        if not bot.funnel_id:
            await self.cache.hash_delete(prompt_cache_key(bot.tenant_id), bot.id)
            return
        if stages is None:
            funnel = await self.store.get_funnel(bot.funnel_id)
            stages = funnel.stages if funnel else []
        await self.cache.hash_set(prompt_cache_key(bot.tenant_id), bot.id, {
            "prompt": bot.prompt,
            "funnel_id": bot.funnel_id,
            "stages": normalize_stages(stages),
            "updated_at": datetime.now(timezone.utc).isoformat(),
        })

    async def cached_prompt(self, tenant_id: str, bot_id: str) -> Optional[dict[str, Any]]:
        return await self.cache.hash_get(prompt_cache_key(tenant_id), bot_id)

    # ══════════════════════════════════════════════════════
    #  BOTS
    # ══════════════════════════════════════════════════════

    async def create_bot(self, bot: BotBinding) -> BotBinding:
        await self.get_tenant(bot.tenant_id)
        bot.funnel_id = await self._check_funnel(bot.tenant_id, bot.funnel_id)
        stored = await self.store.upsert_bot(bot)
        await self._cache_bot_prompt(stored)
        created = await self.create_sessions_for_existing_chats(stored)
        logger.info("bot_created", bot_id=stored.id, tenant_id=stored.tenant_id,
                    kind=stored.kind.value, sessions_created=created)
        return stored

    async def update_bot(self, tenant_id: str, bot_id: str, changes: dict[str, Any]) -> BotBinding:
        current = await self.get_bot(tenant_id, bot_id)
        changes = {k: v for k, v in changes.items() if k not in ("id", "tenant_id", "updated_at")}
        if "funnel_id" in changes:
            changes["funnel_id"] = await self._check_funnel(tenant_id, changes["funnel_id"])

        await self.resolver.invalidate(current)
        updated = await self.store.upsert_bot(current.model_copy(update=changes))
        await self._cache_bot_prompt(updated)
        logger.info("bot_updated", bot_id=bot_id, fields=sorted(changes))
        return updated

    async def delete_bot(self, tenant_id: str, bot_id: str) -> dict[str, Any]:
        current = await self.get_bot(tenant_id, bot_id)
        await self.resolver.invalidate(current)
        removed = await self.store.delete_sessions(tenant_id, bot_id)
        await self.store.delete_bot(bot_id)
        await self.cache.hash_delete(prompt_cache_key(tenant_id), bot_id)
        logger.info("bot_deleted", bot_id=bot_id, sessions_removed=removed)
        return {"deleted": True, "sessions_removed": removed}

    async def create_sessions_for_existing_chats(self, bot: BotBinding) -> int:
        """Pre-create a session for every known chat of the tenant that has none."""
        chats = await self.store.list_chats(bot.tenant_id)
        if not chats:
            return 0
        existing = {s.remote_contact for s in await self.store.list_sessions(bot.tenant_id, bot.id)}
        has_funnel = bool(bot.funnel_id)
        sessions = [
            Session(
                tenant_id=bot.tenant_id,
                bot_id=bot.id,
                kind=bot.kind,
                remote_contact=chat.remote_contact,
                push_name=chat.name,
                status=SessionStatus.OPENED if bot.enabled else SessionStatus.PAUSED,
                await_user=False,
                funnel_id=bot.funnel_id,
                funnel_enable=has_funnel,
                follow_up_enable=has_funnel,
                funnel_stage=0 if has_funnel else None,
                follow_up_stage=0 if has_funnel else None,
            )
            for chat in chats
            if chat.remote_contact not in existing
        ]
        if not sessions:
            return 0
        return await self.store.bulk_create_sessions(sessions)

    async def change_status(
        self,
        tenant_id: str,
        bot_id: str,
        status: str,
        remote_contact: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Change the status of one session (remote_contact given) or of all the
        bot's sessions. "delete" removes sessions; "closed" removes them unless
        the tenant keeps closed sessions. For all sessions the bot is also
        enabled (opened) or disabled (anything else).
        """
        if status not in SESSION_STATUSES:
            raise InvalidRequestError(f"unknown status: {status}")
        tenant = await self.get_tenant(tenant_id)
        bot = await self.get_bot(tenant_id, bot_id)
        result = {"bot": {"remote_contact": remote_contact or "all", "status": status}}

        if remote_contact:
            if status == "delete" or (status == "closed" and not tenant.keep_open):
                await self.store.delete_sessions(tenant_id, bot_id, remote_contact)
                return result
            session = await self.store.find_session(tenant_id, bot_id, remote_contact)
            if session is None:
                raise NotFoundError("session", remote_contact)
            await self.store.update_session(session.id, status=SessionStatus(status))
            return result

        if status == "delete":
            await self.store.delete_sessions(tenant_id, bot_id)
            return result

        if status == "closed" and not tenant.keep_open:
            await self.store.delete_sessions(tenant_id, bot_id)
        else:
            await self.store.update_sessions(tenant_id, {"status": SessionStatus(status)}, bot_id=bot_id)

        await self.resolver.invalidate(bot)
        await self.store.upsert_bot(bot.model_copy(update={"enabled": status == "opened"}))
        logger.info("bot_status_changed", bot_id=bot_id, status=status)
        return result

    # ══════════════════════════════════════════════════════
    #  FUNNELS
    # ══════════════════════════════════════════════════════

    async def create_funnel(self, funnel: Funnel) -> Funnel:
        await self.get_tenant(funnel.tenant_id)
        funnel.stages = _stages_or_raise(funnel.stages)
        stored = await self.store.upsert_funnel(funnel)
        logger.info("funnel_created", funnel_id=stored.id, tenant_id=stored.tenant_id)
        return stored

    async def list_funnels(self, tenant_id: str) -> list[Funnel]:
        funnels = await self.store.list_funnels(tenant_id)
        return sorted(funnels, key=lambda f: f.updated_at, reverse=True)

    async def update_funnel(self, tenant_id: str, funnel_id: str, changes: dict[str, Any]) -> Funnel:
        current = await self.get_funnel(tenant_id, funnel_id)
        changes = {k: v for k, v in changes.items() if k not in ("id", "tenant_id", "updated_at")}
        if "stages" in changes:
            changes["stages"] = _stages_or_raise(changes["stages"])
        if "status" in changes:
            changes["status"] = FunnelStatus(changes["status"])

        bots = await self.store.list_bots(tenant_id, funnel_id=funnel_id)
        for bot in bots:
            await self.resolver.invalidate(bot)
        updated = await self.store.upsert_funnel(current.model_copy(update=changes))
        await self.resolver.invalidate_funnel(funnel_id)
        for bot in bots:
            await self._cache_bot_prompt(bot, updated.stages)
        logger.info("funnel_updated", funnel_id=funnel_id, fields=sorted(changes))
        return updated

    async def delete_funnel(self, tenant_id: str, funnel_id: str) -> dict[str, Any]:
        """Unbind bots, reset bound sessions, then delete the funnel."""
        await self.get_funnel(tenant_id, funnel_id)
        bots = await self.store.list_bots(tenant_id, funnel_id=funnel_id)
        for bot in bots:
            await self.resolver.invalidate(bot)
            await self.store.upsert_bot(bot.model_copy(update={"funnel_id": None}))
            await self.cache.hash_delete(prompt_cache_key(tenant_id), bot.id)

        reset = await self.store.update_sessions(tenant_id, {
            "funnel_id": None,
            "funnel_enable": False,
            "follow_up_enable": False,
            "funnel_stage": None,
            "follow_up_stage": None,
        }, funnel_id=funnel_id)
        await self.store.delete_funnel(funnel_id)
        await self.resolver.invalidate_funnel(funnel_id)
        logger.info("funnel_deleted", funnel_id=funnel_id, bots_unbound=len(bots), sessions_reset=reset)
        return {"deleted": True}

    # ══════════════════════════════════════════════════════
    #  SESSION FUNNEL
    # ══════════════════════════════════════════════════════

    async def update_session_funnel(self, tenant_id: str, remote_contact: str,
                                    changes: dict[str, Any]) -> Optional[Session]:
        """
        Rebind or adjust the funnel state of the contact's most recent session.

        Keys present in `changes` are applied; funnel_id=None unbinds.
        Binding a funnel resets both stage pointers to 0; moving funnel_stage
        without an explicit follow_up_stage restarts the follow-ups of the
        new stage. Follow-ups stay off while the resulting funnel_enable is
        false, and a session left without a funnel keeps null stage pointers
        whatever stage edits were asked for.
        """
        session = await self.store.find_latest_session(tenant_id, remote_contact)
        if session is None:
            return None

        update: dict[str, Any] = {}
        if changes.get("reset_stages"):
            update.update(funnel_stage=0, follow_up_stage=0)

        if "funnel_id" in changes:
            funnel_id = changes["funnel_id"]
            if funnel_id:
                funnel = await self.get_funnel(tenant_id, funnel_id)
                update.update(
                    funnel_id=funnel.id,
                    funnel_stage=0,
                    follow_up_stage=0,
                    funnel_enable=True,
                    follow_up_enable=changes.get("follow_up_enable", funnel.follow_up_enable),
                )
            else:
                update.update(
                    funnel_id=None,
                    funnel_stage=None,
                    follow_up_stage=None,
                    funnel_enable=False,
                    follow_up_enable=False,
                )

        if changes.get("funnel_stage") is not None:
            update["funnel_stage"] = changes["funnel_stage"]
            if changes.get("follow_up_stage") is None and session.funnel_stage != changes["funnel_stage"]:
                update["follow_up_stage"] = 0
        for name in ("follow_up_stage", "funnel_enable", "follow_up_enable"):
            if changes.get(name) is not None:
                update[name] = changes[name]

        if update.get("funnel_id", session.funnel_id) is None:
            if any(update.get(k) is not None for k in ("funnel_stage", "follow_up_stage", "funnel_enable")):
                logger.info("session_funnel_edit_ignored", session_id=session.id, reason="no_funnel")
            update.update(funnel_stage=None, follow_up_stage=None, funnel_enable=False)
        if not update.get("funnel_enable", session.funnel_enable):
            update["follow_up_enable"] = False

        update = {k: v for k, v in update.items() if getattr(session, k) != v}
        if not update:
            return session
        updated = await self.store.update_session(session.id, **update)
        logger.info("session_funnel_updated", session_id=session.id, fields=sorted(update))
        return updated
