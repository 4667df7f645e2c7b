"""
Funnel Follow-Up Scheduler: periodic sweep over waiting sessions.

One tick:
    candidates (opened, await_user, follow_up_enable, funnel bound)
    → batch-load funnels, drop disabled / missing ones
    → per session: next step due? operator quiet? user silent?
    → provider send_follow_up → forward reply through the channel sink
    → conditional follow_up_stage advance (only if nothing moved it meanwhile)

Runs as a background task inside the FastAPI lifespan, or on demand via tick().
"""
from __future__ import annotations

import asyncio
import math
import time
import structlog
from typing import Any, Callable, Optional, Union

from cache.dependency_cache import DependencyCache
from channels.base import ChannelRegistry, ChannelSink
from config.settings import Settings, get_settings
from core.dependencies import DependencyResolver, session_state
from core.funnel import funnel_steps
from core.orchestrator import user_identifier
from database.store_base import BaseSessionStore
from models.schemas import Funnel, FunnelStep, OutboundActor, Session, SessionStatus
from providers.base import ProviderConfigError, ProviderError, ProviderRegistry, ProviderRequest

logger = structlog.get_logger()


def _epoch(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) and number > 0 else None


def due_step(session: Session, steps: list[FunnelStep], now: float) -> tuple[Optional[int], str]:
    """
    (step_index, "due") when the session's next step should go out now,
    otherwise (None, reason).
    """
    step_index = session.follow_up_stage or 0
    if not steps or step_index >= len(steps):
        return None, "exhausted"

    delay_min = steps[step_index].delay_min
    if not isinstance(delay_min, (int, float)) or not math.isfinite(delay_min) or delay_min < 0:
        return None, "invalid_delay"

    context = session.context or {}
    last_inbound = _epoch(context.get("last_inbound_at"))
    last_outbound = _epoch(context.get("last_outbound_at"))
    references = [t for t in (last_inbound, last_outbound) if t is not None]
    if not references:
        return None, "no_reference"
    if context.get("last_outbound_by") == OutboundActor.MANAGER.value:
        return None, "manager_active"
    if last_outbound and last_inbound and last_inbound > last_outbound:
        return None, "user_replied"
    if now - max(references) < delay_min * 60:
        return None, "not_due"
    return step_index, "due"


class FunnelFollowUpScheduler:
    """
    Sends due funnel follow-ups.

    Configure in settings:
        scheduler:
          interval_seconds: 60
          concurrency: 5
          provider_kinds: ["agno", "n8n"]
    """

    def __init__(
        self,
        store: BaseSessionStore,
        cache: DependencyCache,
        providers: ProviderRegistry,
        sink: Union[ChannelSink, ChannelRegistry],
        settings: Settings = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.providers = providers
        self.sink = sink
        self.resolver = DependencyResolver(store, cache, self.settings.session.history_limit)
        self.interval_seconds = self.settings.scheduler.interval_seconds
        self._semaphore = asyncio.Semaphore(max(1, self.settings.scheduler.concurrency))
        self._clock = clock
        self._running = False
        self._task: Optional[asyncio.Task] = None

    # ── Lifecycle ─────────────────────────────────────────

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._run(), name="funnel_followup_scheduler")
        logger.info("followup_scheduler_started", interval_s=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("followup_scheduler_stopped")

    async def _run(self) -> None:
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("followup_tick_error", error=str(e))

            await asyncio.sleep(self.interval_seconds)

    # ── Tick ──────────────────────────────────────────────

    async def tick(self, tenant_id: Optional[str] = None) -> dict[str, int]:
        stats = {"candidates": 0, "dispatched": 0, "skipped": 0, "failed": 0}

        sessions = await self.store.list_followup_candidates(
            tenant_id, kinds=self.settings.scheduler.provider_kinds,
        )
        stats["candidates"] = len(sessions)
        if not sessions:
            return stats

        funnels = await self.store.get_funnels({s.funnel_id for s in sessions if s.funnel_id})
        now = self._clock()

        jobs = []
        for session in sessions:
            funnel = funnels.get(session.funnel_id)
            if funnel is None or not funnel.follow_up_enable or not session.funnel_enable:
                stats["skipped"] += 1
                continue
            try:
                steps = funnel_steps(funnel.stages)
            except Exception as e:
                logger.warning("funnel_steps_failed", funnel_id=funnel.id, error=str(e))
                stats["skipped"] += 1
                continue
            step_index, reason = due_step(session, steps, now)
            if step_index is None:
                logger.debug("followup_not_due", session_id=session.id, reason=reason)
                stats["skipped"] += 1
                continue
            jobs.append(self._guarded(session, funnel, steps, step_index))

        for outcome in await asyncio.gather(*jobs):
            stats[outcome] += 1

        if stats["dispatched"] or stats["failed"]:
            logger.info("followup_tick_complete", tenant_id=tenant_id, **stats)
        return stats

    async def _guarded(self, session: Session, funnel: Funnel,
                       steps: list[FunnelStep], step_index: int) -> str:
        async with self._semaphore:
            try:
                return await self.dispatch(session, funnel, steps, step_index)
            except Exception as e:
                logger.error("followup_dispatch_error", session_id=session.id,
                             tenant_id=session.tenant_id, bot_id=session.bot_id, error=str(e))
                return "failed"

    async def dispatch(self, session: Session, funnel: Funnel,
                       steps: list[FunnelStep], step_index: int) -> str:
        """Send one follow-up step; returns "dispatched", "skipped" or "failed"."""
        log = logger.bind(session_id=session.id, tenant_id=session.tenant_id,
                          bot_id=session.bot_id, step=step_index)

        bot = await self.store.get_bot(session.bot_id)
        tenant = await self.store.get_tenant(session.tenant_id)
        if bot is None or tenant is None:
            log.warning("followup_context_missing", bot=bot is not None, tenant=tenant is not None)
            return "skipped"
        if not bot.enabled:
            return "skipped"
        adapter = self.providers.get(bot.kind)
        if adapter is None:
            log.warning("provider_unavailable", kind=bot.kind.value)
            return "skipped"

        step = steps[step_index]
        next_step = steps[step_index + 1] if step_index + 1 < len(steps) else None
        request = ProviderRequest(
            tenant=tenant,
            bot=bot,
            session=session,
            content="",
            user_id=user_identifier(session.remote_contact, tenant),
            session_state=session_state(session),
            dependencies=await self.resolver.build(bot, session, funnel),
            push_name=session.push_name,
        )

        try:
            reply = await adapter.send_follow_up(request, step, next_step)
        except ProviderConfigError as e:
            log.warning("provider_misconfigured", error=str(e))
            return "skipped"
        except ProviderError as e:
            log.error("followup_provider_failed", status_code=e.status_code,
                      body=e.body or None, error=str(e))
            return "failed"

        channel_message_id = None
        if reply:
            delivery = await self.sink.send_reply(
                tenant, session.remote_contact, reply, session,
                {"followup": True, "stage": step.stage, "touch": step.touch},
            )
            if delivery.get("status") == "failed":
                log.error("followup_delivery_failed", error=delivery.get("error"))
                return "failed"
            channel_message_id = delivery.get("channel_message_id")

        advanced = await self.advance(session.id, funnel.id, step_index, channel_message_id)
        if advanced is None:
            log.info("followup_advance_skipped")
        if reply:
            await self.resolver.append_history(session.id, "assistant", reply, int(self._clock()))
        log.info("followup_dispatched", stage=step.stage, touch=step.touch)
        return "dispatched"

    async def advance(self, session_id: str, funnel_id: str, step_index: int,
                      channel_message_id: Optional[str] = None) -> Optional[Session]:
        """
        follow_up_stage = step_index + 1, unless the session was rebound or
        its pointer moved since the tick read it.
        """
        now = int(self._clock())

        def mutate(s: Session) -> Optional[dict[str, Any]]:
            if s.funnel_id != funnel_id or (s.follow_up_stage or 0) != step_index:
                return None
            context = {
                **(s.context or {}),
                "last_outbound_at": now,
                "last_outbound_by": OutboundActor.BOT.value,
            }
            if channel_message_id:
                context["last_outbound_key_id"] = channel_message_id
            return {
                "follow_up_stage": step_index + 1,
                "status": SessionStatus.OPENED,
                "await_user": True,
                "context": context,
            }

        updated = await self.store.transition_session(session_id, mutate)
        if updated is None or updated.follow_up_stage != step_index + 1:
            return None
        return updated
