"""
Tests for the funnel follow-up scheduler.

Covers:
  - due_step gating (delay, reference time, operator takeover, user reply)
  - the 0 / 30 / 61 minute touch scenario
  - eligibility filters (follow_up_enable, funnel_enable, await_user, funnel flag)
  - provider failure leaves the pointer in place, next tick retries
  - per-session error isolation and conditional pointer advance
  - background loop start/stop
"""
import asyncio
import pytest
from unittest.mock import AsyncMock

from conftest import RecordingSink, StubAdapter, provider_error, waiting_session
from core.funnel import funnel_steps
from core.scheduler import FunnelFollowUpScheduler, due_step
from models.schemas import BotKind, Funnel, FunnelStep
from providers.base import ProviderConfigError, ProviderRegistry


@pytest.fixture
def scheduler(store, cache, registry, sink, settings, clock):
    return FunnelFollowUpScheduler(store, cache, registry, sink, settings=settings, clock=clock)


# ──────────────────────────────────────────────────────────────
#  due_step
# ──────────────────────────────────────────────────────────────

class TestDueStep:
    @pytest.fixture
    def steps(self, stages):
        return funnel_steps(stages)

    def test_first_touch_due_immediately(self, clock, steps):
        assert due_step(waiting_session(clock), steps, clock.now) == (0, "due")

    def test_second_touch_waits_for_delay(self, clock, steps):
        session = waiting_session(clock, follow_up_stage=1)
        assert due_step(session, steps, clock.now + 59 * 60) == (None, "not_due")
        assert due_step(session, steps, clock.now + 60 * 60) == (1, "due")

    def test_exhausted(self, clock, steps):
        assert due_step(waiting_session(clock, follow_up_stage=2), steps, clock.now) == (None, "exhausted")

    def test_no_steps(self, clock):
        assert due_step(waiting_session(clock), [], clock.now) == (None, "exhausted")

    def test_no_reference_time(self, clock, steps):
        assert due_step(waiting_session(clock, context={}), steps, clock.now) == (None, "no_reference")

    def test_manager_suppresses(self, clock, steps):
        session = waiting_session(clock, context={"last_outbound_at": int(clock.now),
                                                  "last_outbound_by": "manager"})
        assert due_step(session, steps, clock.now + 30 * 86400) == (None, "manager_active")

    def test_user_replied_since_last_outbound(self, clock, steps):
        session = waiting_session(clock, context={"last_outbound_at": int(clock.now),
                                                  "last_inbound_at": int(clock.now) + 5})
        assert due_step(session, steps, clock.now + 3600) == (None, "user_replied")

    def test_inbound_only_uses_inbound_as_reference(self, clock, steps):
        session = waiting_session(clock, context={"last_inbound_at": int(clock.now)})
        assert due_step(session, steps, clock.now) == (0, "due")

    def test_reference_is_latest_of_both(self, clock, steps):
        session = waiting_session(clock, follow_up_stage=1, context={
            "last_inbound_at": int(clock.now) - 7200,
            "last_outbound_at": int(clock.now),
        })
        assert due_step(session, steps, clock.now + 1800) == (None, "not_due")

    def test_unusable_delay(self, clock):
        steps = [FunnelStep(stage=1, touch=1, delay_min=float("nan"))]
        assert due_step(waiting_session(clock), steps, clock.now) == (None, "invalid_delay")


# ──────────────────────────────────────────────────────────────
#  tick
# ──────────────────────────────────────────────────────────────

class TestTick:
    @pytest.mark.asyncio
    async def test_touch_progression_over_time(self, scheduler, store, bot, adapter, sink, clock):
        await store.get_or_create_session(waiting_session(clock))

        stats = await scheduler.tick()
        assert stats == {"candidates": 1, "dispatched": 1, "skipped": 0, "failed": 0}
        request, step, next_step = adapter.follow_ups[0]
        assert (step.stage, step.touch) == (1, 1)
        assert (next_step.stage, next_step.touch) == (1, 2)
        assert request.user_id == "5511999990000@s.whatsapp.net:t1"
        assert (await store.get_session("s1")).follow_up_stage == 1
        assert sink.sent[0]["text"] == "Hello from bot"
        assert sink.sent[0]["metadata"]["followup"] is True

        clock.advance(30 * 60)
        stats = await scheduler.tick()
        assert stats["dispatched"] == 0
        assert (await store.get_session("s1")).follow_up_stage == 1

        clock.advance(31 * 60)
        stats = await scheduler.tick()
        assert stats["dispatched"] == 1
        assert adapter.follow_ups[-1][1].touch == 2
        assert adapter.follow_ups[-1][2] is None
        assert (await store.get_session("s1")).follow_up_stage == 2

        clock.advance(7 * 86400)
        stats = await scheduler.tick()
        assert stats["dispatched"] == 0
        assert len(adapter.follow_ups) == 2

    @pytest.mark.asyncio
    async def test_dispatch_marks_session_waiting(self, scheduler, store, bot, clock):
        await store.get_or_create_session(waiting_session(clock, context={"last_inbound_at": int(clock.now)}))
        await scheduler.tick()
        session = await store.get_session("s1")
        assert session.await_user is True
        assert session.context["last_outbound_by"] == "bot"
        assert session.context["last_outbound_at"] == int(clock.now)
        assert session.context["last_outbound_key_id"] == "out-1"

    @pytest.mark.asyncio
    async def test_same_window_dispatches_once(self, scheduler, store, bot, adapter, clock):
        await store.get_or_create_session(waiting_session(clock))
        await scheduler.tick()
        await scheduler.tick()
        clock.advance(60)
        await scheduler.tick()
        assert len(adapter.follow_ups) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [
        {"follow_up_enable": False},
        {"await_user": False},
        {"funnel_enable": False},
        {"status": "paused"},
    ])
    async def test_ineligible_sessions_never_dispatch(self, scheduler, store, bot, adapter, clock, overrides):
        await store.get_or_create_session(waiting_session(clock, **overrides))
        for _ in range(3):
            clock.advance(86400)
            await scheduler.tick()
        assert adapter.follow_ups == []

    @pytest.mark.asyncio
    async def test_funnel_follow_up_disabled(self, scheduler, store, bot, funnel, adapter, clock):
        await store.upsert_funnel(funnel.model_copy(update={"follow_up_enable": False}))
        await store.get_or_create_session(waiting_session(clock))
        stats = await scheduler.tick()
        assert stats["skipped"] == 1
        assert adapter.follow_ups == []

    @pytest.mark.asyncio
    async def test_missing_funnel_skipped(self, scheduler, store, bot, adapter, clock):
        await store.get_or_create_session(waiting_session(clock, funnel_id="gone"))
        stats = await scheduler.tick()
        assert stats == {"candidates": 1, "dispatched": 0, "skipped": 1, "failed": 0}

    @pytest.mark.asyncio
    async def test_manager_takeover_blocks_follow_up(self, scheduler, store, bot, adapter, clock):
        await store.get_or_create_session(waiting_session(clock, context={
            "last_outbound_at": int(clock.now), "last_outbound_by": "manager",
        }))
        clock.advance(90 * 86400)
        await scheduler.tick()
        assert adapter.follow_ups == []

    @pytest.mark.asyncio
    async def test_provider_failure_keeps_pointer(self, scheduler, store, bot, adapter, sink, clock):
        await store.get_or_create_session(waiting_session(clock))
        adapter.error = provider_error()

        stats = await scheduler.tick()
        assert stats["failed"] == 1
        assert (await store.get_session("s1")).follow_up_stage == 0
        assert sink.sent == []

        adapter.error = None
        stats = await scheduler.tick()
        assert stats["dispatched"] == 1
        assert (await store.get_session("s1")).follow_up_stage == 1

    @pytest.mark.asyncio
    async def test_misconfigured_bot_is_skipped(self, scheduler, store, bot, adapter, clock):
        await store.get_or_create_session(waiting_session(clock))
        adapter.error = ProviderConfigError("n8n bot has no webhook_url", provider="n8n")
        stats = await scheduler.tick()
        assert stats["skipped"] == 1
        assert (await store.get_session("s1")).follow_up_stage == 0

    @pytest.mark.asyncio
    async def test_delivery_failure_keeps_pointer(self, store, cache, registry, settings, bot, clock):
        scheduler = FunnelFollowUpScheduler(store, cache, registry, RecordingSink(fail=True),
                                            settings=settings, clock=clock)
        await store.get_or_create_session(waiting_session(clock))
        stats = await scheduler.tick()
        assert stats["failed"] == 1
        assert (await store.get_session("s1")).follow_up_stage == 0

    @pytest.mark.asyncio
    async def test_empty_reply_still_advances(self, scheduler, store, bot, adapter, sink, clock):
        adapter.reply = None
        await store.get_or_create_session(waiting_session(clock))
        stats = await scheduler.tick()
        assert stats["dispatched"] == 1
        assert sink.sent == []
        assert (await store.get_session("s1")).follow_up_stage == 1

    @pytest.mark.asyncio
    async def test_one_bad_session_does_not_block_others(self, scheduler, store, bot, adapter, clock):
        await store.get_or_create_session(waiting_session(clock, id="s-orphan", bot_id="ghost",
                                                          remote_contact="orphan@s.whatsapp.net"))
        await store.get_or_create_session(waiting_session(clock))
        stats = await scheduler.tick()
        assert stats["dispatched"] == 1
        assert stats["skipped"] == 1
        assert (await store.get_session("s1")).follow_up_stage == 1
        assert (await store.get_session("s-orphan")).follow_up_stage == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_counts_as_failed(self, scheduler, store, bot, clock):
        await store.get_or_create_session(waiting_session(clock))
        scheduler.store.get_bot = AsyncMock(side_effect=RuntimeError("db gone"))
        stats = await scheduler.tick()
        assert stats["failed"] == 1

    @pytest.mark.asyncio
    async def test_malformed_stage_data_is_skipped(self, scheduler, store, bot, funnel, adapter, clock):
        await store.upsert_funnel(funnel.model_copy(update={"stages": "{not json"}))
        await store.get_or_create_session(waiting_session(clock))
        stats = await scheduler.tick()
        assert stats["skipped"] == 1
        assert adapter.follow_ups == []

    @pytest.mark.asyncio
    async def test_tenant_filter(self, scheduler, store, bot, adapter, clock):
        await store.get_or_create_session(waiting_session(clock))
        stats = await scheduler.tick("other-tenant")
        assert stats["candidates"] == 0
        stats = await scheduler.tick("t1")
        assert stats["dispatched"] == 1

    @pytest.mark.asyncio
    async def test_disabled_bot_is_skipped(self, scheduler, store, bot, adapter, clock):
        await store.upsert_bot(bot.model_copy(update={"enabled": False}))
        await store.get_or_create_session(waiting_session(clock))
        stats = await scheduler.tick()
        assert stats["skipped"] == 1
        assert adapter.follow_ups == []

    @pytest.mark.asyncio
    async def test_rebind_during_dispatch_wins(self, store, cache, sink, settings, bot, clock):
        await store.upsert_funnel(Funnel(id="f2", tenant_id="t1", name="Other", stages=[]))
        await store.get_or_create_session(waiting_session(clock))

        class RebindingAdapter(StubAdapter):
            async def send_follow_up(self, request, step, next_step=None):
                await store.update_session("s1", funnel_id="f2", funnel_stage=0, follow_up_stage=0)
                return await super().send_follow_up(request, step, next_step)

        registry = ProviderRegistry()
        registry.register(RebindingAdapter(BotKind.N8N))
        scheduler = FunnelFollowUpScheduler(store, cache, registry, sink, settings=settings, clock=clock)

        stats = await scheduler.tick()
        assert stats["dispatched"] == 1
        session = await store.get_session("s1")
        assert session.funnel_id == "f2"
        assert session.follow_up_stage == 0

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, store, cache, sink, settings, bot, clock):
        settings.scheduler.concurrency = 2
        active = {"now": 0, "peak": 0}

        class SlowAdapter(StubAdapter):
            async def send_follow_up(self, request, step, next_step=None):
                active["now"] += 1
                active["peak"] = max(active["peak"], active["now"])
                await asyncio.sleep(0.01)
                active["now"] -= 1
                return None

        registry = ProviderRegistry()
        registry.register(SlowAdapter(BotKind.N8N))
        scheduler = FunnelFollowUpScheduler(store, cache, registry, sink, settings=settings, clock=clock)
        for i in range(6):
            await store.get_or_create_session(waiting_session(clock, id=f"s{i}", remote_contact=f"c{i}"))

        stats = await scheduler.tick()
        assert stats["dispatched"] == 6
        assert active["peak"] <= 2


# ──────────────────────────────────────────────────────────────
#  Background loop
# ──────────────────────────────────────────────────────────────

class TestSchedulerLoop:
    @pytest.mark.asyncio
    async def test_start_runs_tick_and_stop_cancels(self, scheduler):
        scheduler.tick = AsyncMock(return_value={})
        scheduler.interval_seconds = 3600
        await scheduler.start()
        await asyncio.sleep(0.01)
        await scheduler.stop()
        scheduler.tick.assert_awaited_once()
        assert scheduler._task.done()

    @pytest.mark.asyncio
    async def test_loop_survives_tick_errors(self, scheduler):
        calls = []

        async def flaky_tick():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return {}

        scheduler.tick = flaky_tick
        scheduler.interval_seconds = 0
        await scheduler.start()
        await asyncio.sleep(0.01)
        await scheduler.stop()
        assert len(calls) >= 2
