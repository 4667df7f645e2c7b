"""
Session Orchestrator: routes inbound messages to the tenant's bot.

Flow:
  channel adapter → emit(tenant, contact, message)
    → record chat, route operator (from_me) messages, resolve bot
    → handle(): session → context stamp → debounce → funnel sync
      → dependency payload → provider adapter → stale-reply guard
      → channel sink → session update (opened / await_user)

Nothing here raises to the channel layer. Every path returns a result dict
{"status": "sent" | "skipped" | "failed" | ..., ...}.
"""
from __future__ import annotations

import time
import structlog
from typing import Any, Callable, Optional, Union

import httpx

from cache.dedup import InboundKeyStore
from cache.dependency_cache import DependencyCache
from channels.base import ChannelRegistry, ChannelSink, MessageDeduplicator
from config.settings import Settings, get_settings
from core.debounce import Debouncer
from core.dependencies import DependencyResolver, session_state
from core.media import build_chat_input, resolve_attachment
from database.store_base import BaseSessionStore
from models.schemas import (
    BotBinding, Funnel, InboundMessage, OutboundActor,
    Session, SessionStatus, Tenant,
)
from providers.base import ProviderConfigError, ProviderError, ProviderRegistry, ProviderRequest

logger = structlog.get_logger()


def user_identifier(remote_contact: str, tenant: Tenant) -> str:
    return f"{remote_contact}:{tenant.id}"


def inbound_cache_key(session_id: str) -> str:
    return f"inbound-key:{session_id}"


class SessionOrchestrator:
    """
    Per-message coordinator between channels, sessions and providers.

    Debounce timers and last-accepted inbound ids live in the injected
    Debouncer and InboundKeyStore; one orchestrator owns one of each.
    """

    def __init__(
        self,
        store: BaseSessionStore,
        cache: DependencyCache,
        providers: ProviderRegistry,
        sink: Union[ChannelSink, ChannelRegistry],
        dedup: InboundKeyStore = None,
        debouncer: Debouncer = None,
        settings: Settings = None,
        http_client: httpx.AsyncClient = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or get_settings()
        session_cfg = self.settings.session
        self.store = store
        self.cache = cache
        self.providers = providers
        self.sink = sink
        self.dedup = dedup if dedup is not None else InboundKeyStore(
            ttl_seconds=session_cfg.inbound_key_ttl_seconds,
            refresh_seconds=session_cfg.inbound_key_refresh_seconds,
            max_size=session_cfg.inbound_key_max_size,
        )
        self.debouncer = debouncer if debouncer is not None else Debouncer(cache=cache)
        self.redeliveries = MessageDeduplicator(ttl_seconds=session_cfg.inbound_key_ttl_seconds * 5)
        self.resolver = DependencyResolver(store, cache, session_cfg.history_limit)
        self.http_client = http_client
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    # ══════════════════════════════════════════════════════════
    #  ENTRY POINT: called by channel adapters
    # ══════════════════════════════════════════════════════════

    async def emit(
        self,
        tenant: Tenant,
        remote_contact: str,
        message: InboundMessage,
        push_name: Optional[str] = None,
    ) -> dict[str, Any]:
        try:
            return await self._emit(tenant, remote_contact, message, push_name)
        except Exception as e:
            logger.error("emit_failed", tenant=tenant.name, remote_contact=remote_contact,
                         key_id=message.key_id, error=str(e))
            return {"status": "failed", "error": str(e)}

    async def _emit(
        self,
        tenant: Tenant,
        remote_contact: str,
        message: InboundMessage,
        push_name: Optional[str],
        redeliver: bool = False,
    ) -> dict[str, Any]:
        push_name = push_name or message.push_name

        if message.key_id and not redeliver:
            if self.redeliveries.is_duplicate(f"{tenant.id}:{message.key_id}"):
                logger.debug("inbound_duplicate", tenant=tenant.name, key_id=message.key_id)
                return {"status": "skipped", "reason": "duplicate"}

        await self.store.upsert_chat(
            tenant.id, remote_contact,
            name=None if message.from_me else push_name,
            last_message=message.model_dump(mode="json"),
        )

        if remote_contact in (tenant.ignore_contacts or []):
            return {"status": "skipped", "reason": "ignored_contact"}

        bot = await self.resolve_bot(tenant)
        if bot is None:
            logger.info("no_bot_for_tenant", tenant=tenant.name)
            return {"status": "skipped", "reason": "no_bot"}

        if message.from_me:
            return await self.record_operator_message(tenant, bot, remote_contact, message)

        content = message.content or ""
        return await self.handle(tenant, bot, None, remote_contact, push_name, content, message)

    async def resolve_bot(self, tenant: Tenant) -> Optional[BotBinding]:
        """First enabled bot whose provider kind has a registered adapter."""
        available = set(self.providers.get_available())
        for bot in await self.store.list_bots(tenant.id):
            if bot.enabled and bot.kind in available:
                return bot
        return None

    async def record_operator_message(
        self,
        tenant: Tenant,
        bot: BotBinding,
        remote_contact: str,
        message: InboundMessage,
    ) -> dict[str, Any]:
        """A message typed on the tenant's own device: the manager took over."""
        session = await self.store.find_session(tenant.id, bot.id, remote_contact)
        if session is None:
            return {"status": "skipped", "reason": "from_me"}
        if message.key_id and message.key_id == (session.context or {}).get("last_outbound_key_id"):
            return {"status": "skipped", "reason": "own_echo"}

        now = self._now()

        def mutate(s: Session) -> dict[str, Any]:
            return {"context": {
                **(s.context or {}),
                "last_outbound_at": now,
                "last_outbound_by": OutboundActor.MANAGER.value,
            }}

        await self.store.transition_session(session.id, mutate)
        if message.content:
            await self.resolver.append_history(session.id, "manager", message.content, now)
        logger.info("operator_message_recorded", tenant=tenant.name, session_id=session.id)
        return {"status": "recorded", "reason": "from_me", "session_id": session.id}

    # ══════════════════════════════════════════════════════════
    #  HANDLE: one inbound message for one bot
    # ══════════════════════════════════════════════════════════

    async def handle(
        self,
        tenant: Tenant,
        bot: BotBinding,
        session: Optional[Session],
        remote_contact: str,
        push_name: Optional[str],
        content: str,
        message: Optional[InboundMessage] = None,
    ) -> dict[str, Any]:
        log = logger.bind(tenant=tenant.name, bot_id=bot.id, remote_contact=remote_contact)

        if session is None:
            session, created = await self.store.get_or_create_session(Session(
                tenant_id=tenant.id,
                bot_id=bot.id,
                kind=bot.kind,
                remote_contact=remote_contact,
                push_name=push_name,
                status=SessionStatus.OPENED,
            ))
            if created:
                log.info("session_created", session_id=session.id)

        if session.status != SessionStatus.OPENED:
            log.info("session_not_open", session_id=session.id, status=session.status.value)
            return {"status": "skipped", "reason": f"session_{session.status.value}",
                    "session_id": session.id}

        key_id = message.key_id if message else ""
        session = await self._stamp_inbound(session, key_id, push_name) or session

        delay = bot.debounce_seconds if bot.debounce_seconds is not None else self.settings.session.debounce_seconds
        merged = await self.debouncer.submit(session.id, content, message, delay)
        if merged is None:
            return {"status": "skipped", "reason": "debounced", "session_id": session.id}
        content, message = merged
        key_id = message.key_id if message else ""

        session, funnel = await self._sync_funnel(bot, session)

        adapter = self.providers.get(bot.kind)
        if adapter is None or not bot.enabled:
            log.warning("provider_unavailable", kind=bot.kind.value, enabled=bot.enabled)
            return {"status": "skipped", "reason": "provider_unavailable", "session_id": session.id}

        dependencies = await self.resolver.build(bot, session, funnel)
        chat_input = build_chat_input(content, message)
        await self.resolver.append_history(session.id, "user", chat_input, self._now())

        request = ProviderRequest(
            tenant=tenant,
            bot=bot,
            session=session,
            content=chat_input,
            user_id=user_identifier(remote_contact, tenant),
            session_state=session_state(session, message.quoted_message if message else None),
            dependencies=dependencies,
            push_name=push_name,
            key_id=key_id,
            from_me=bool(message and message.from_me),
            quoted_message=message.quoted_message if message else None,
            attachment=await resolve_attachment(message, self.http_client),
        )

        try:
            reply = await adapter.send_message(request)
        except ProviderConfigError as e:
            log.warning("provider_misconfigured", session_id=session.id, error=str(e))
            return {"status": "skipped", "reason": "provider_config", "session_id": session.id}
        except ProviderError as e:
            log.error("provider_call_failed", session_id=session.id, provider=e.provider,
                      status_code=e.status_code, body=e.body or None, error=str(e))
            return {"status": "failed", "reason": "provider_error", "session_id": session.id,
                    "error": str(e)}

        if not reply:
            log.info("provider_no_reply", session_id=session.id)
            return {"status": "skipped", "reason": "no_reply", "session_id": session.id}

        if not await self.should_send_response(session.id, key_id):
            log.info("stale_reply_discarded", session_id=session.id, key_id=key_id)
            return {"status": "skipped", "reason": "stale", "session_id": session.id}

        delivery = await self.sink.send_reply(tenant, remote_contact, reply, session,
                                              {"key_id": key_id})
        if delivery.get("status") == "failed":
            log.error("reply_delivery_failed", session_id=session.id, error=delivery.get("error"))
            return {"status": "failed", "reason": "delivery", "session_id": session.id,
                    "delivery": delivery}

        await self.mark_outbound(session.id, delivery.get("channel_message_id"))
        await self.resolver.append_history(session.id, "assistant", reply, self._now())
        log.info("reply_sent", session_id=session.id, key_id=key_id)
        return {"status": "sent", "session_id": session.id, "reply": reply, "delivery": delivery}

    async def _stamp_inbound(self, session: Session, key_id: str,
                             push_name: Optional[str]) -> Optional[Session]:
        now = self._now()

        def mutate(s: Session) -> dict[str, Any]:
            context = {**(s.context or {}), "last_inbound_at": now}
            if key_id:
                context["last_inbound_key_id"] = key_id
            changes: dict[str, Any] = {"context": context}
            if push_name and push_name != s.push_name:
                changes["push_name"] = push_name
            return changes

        if key_id:
            self.dedup.set(session.id, key_id)
            if self.cache.uses_redis:
                await self.cache.set(inbound_cache_key(session.id), key_id, ttl=self.dedup.ttl)
        return await self.store.transition_session(session.id, mutate)

    async def _sync_funnel(self, bot: BotBinding,
                           session: Session) -> tuple[Session, Optional[Funnel]]:
        """
        Bind the bot's funnel to the session and mirror its follow_up_enable.
        A session whose funnel was switched off keeps follow-ups off.
        """
        if not bot.funnel_id:
            return session, None
        funnel = await self.store.get_funnel(bot.funnel_id)
        if funnel is None:
            logger.warning("bot_funnel_missing", bot_id=bot.id, funnel_id=bot.funnel_id)
            return session, None

        def mutate(s: Session) -> Optional[dict[str, Any]]:
            changes: dict[str, Any] = {}
            if s.funnel_id != funnel.id:
                changes.update(funnel_id=funnel.id, funnel_enable=True,
                               funnel_stage=0, follow_up_stage=0)
            funnel_enable = changes.get("funnel_enable", s.funnel_enable)
            follow_up_enable = bool(funnel_enable and funnel.follow_up_enable)
            if s.follow_up_enable != follow_up_enable:
                changes["follow_up_enable"] = follow_up_enable
            return changes

        updated = await self.store.transition_session(session.id, mutate)
        if updated is not None and updated.funnel_id != session.funnel_id:
            logger.info("session_funnel_bound", session_id=session.id, funnel_id=funnel.id)
        return updated or session, funnel

    async def mark_outbound(self, session_id: str, channel_message_id: Optional[str] = None) -> Optional[Session]:
        """Reply delivered: session open, waiting for the user."""
        now = self._now()

        def mutate(s: Session) -> dict[str, Any]:
            context = {
                **(s.context or {}),
                "last_outbound_at": now,
                "last_outbound_by": OutboundActor.BOT.value,
            }
            if channel_message_id:
                context["last_outbound_key_id"] = channel_message_id
            return {"status": SessionStatus.OPENED, "await_user": True, "context": context}

        return await self.store.transition_session(session_id, mutate)

    # ══════════════════════════════════════════════════════════
    #  STALE-REPLY GUARD
    # ══════════════════════════════════════════════════════════

    async def should_send_response(self, session_id: str, key_id: Optional[str]) -> bool:
        """
        True when key_id is still the last accepted inbound id of the session.

        With Redis connected the shared inbound-key:{session_id} entry is
        authoritative. Otherwise a local id younger than the refresh window is
        trusted, and an older one is refreshed from the persisted session.
        """
        if not session_id or not key_id:
            return True

        if self.cache.uses_redis:
            shared = await self.cache.get(inbound_cache_key(session_id))
            if shared:
                self.dedup.set(session_id, shared)
                return shared == key_id

        cached = self.dedup.get(session_id)
        age = self.dedup.age(session_id)
        if cached and age is not None and age <= self.dedup.refresh:
            return cached == key_id
        if age is not None and age > self.dedup.ttl:
            self.dedup.clear(session_id)

        session = await self.store.get_session(session_id)
        latest = (session.context or {}).get("last_inbound_key_id") if session else None
        if latest:
            self.dedup.set(session_id, latest)
            return latest == key_id
        return True

    # ══════════════════════════════════════════════════════════
    #  RE-DISPATCH
    # ══════════════════════════════════════════════════════════

    async def emit_last_message(self, tenant: Tenant, remote_contact: str) -> dict[str, Any]:
        """Run the last stored inbound message of a chat through emit again."""
        chat = await self.store.get_chat(tenant.id, remote_contact)
        if chat is None or not chat.last_message:
            return {"sent": False, "reason": "not_found"}
        message = InboundMessage.model_validate(chat.last_message)
        if message.from_me:
            return {"sent": False, "reason": "last_from_me"}
        try:
            result = await self._emit(tenant, remote_contact, message, message.push_name, redeliver=True)
        except Exception as e:
            logger.error("emit_last_message_failed", tenant=tenant.name,
                         remote_contact=remote_contact, error=str(e))
            return {"sent": False, "reason": "failed", "error": str(e)}
        return {"sent": True, "result": result}

    async def history(self, session_id: str) -> list[dict[str, Any]]:
        return await self.resolver.history(session_id)
