"""Shared test fixtures for BotRelay."""
import pytest
import pytest_asyncio
from typing import Any, Optional

from cache.dedup import InboundKeyStore
from cache.dependency_cache import DependencyCache, LocalTTLCache
from channels.base import ChannelSink
from config.settings import CacheConfig, Settings
from database.store_memory import InMemorySessionStore
from models.schemas import BotBinding, BotKind, Funnel, FunnelStep, Session, SessionStatus, Tenant
from providers.base import ProviderAdapter, ProviderError, ProviderRegistry, ProviderRequest

NOW = 1_700_000_000.0


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = NOW):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSink(ChannelSink):
    name = "recording"

    def __init__(self, fail: bool = False):
        self.sent: list[dict[str, Any]] = []
        self.fail = fail

    async def _do_send(self, tenant, remote_contact, text, metadata):
        if self.fail:
            raise RuntimeError("gateway down")
        self.sent.append({"tenant": tenant.id, "remote_contact": remote_contact,
                          "text": text, "metadata": metadata})
        return {"status": "sent", "channel_message_id": f"out-{len(self.sent)}"}


class FakeRedis:
    """Dict-backed stand-in for the redis.asyncio calls the plain-key cache path makes."""

    def __init__(self):
        self.data: dict[str, str] = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value

    async def delete(self, key):
        self.data.pop(key, None)


class StubAdapter(ProviderAdapter):
    """Provider double: canned reply or error, records every request."""

    def __init__(self, kind: BotKind = BotKind.N8N, reply: Optional[str] = "Hello from bot",
                 error: Exception = None):
        super().__init__()
        self.kind = kind
        self.reply = reply
        self.error = error
        self.messages: list[ProviderRequest] = []
        self.follow_ups: list[tuple[ProviderRequest, FunnelStep, Optional[FunnelStep]]] = []
        self.on_message = None

    async def send_message(self, request):
        self.messages.append(request)
        if self.on_message:
            await self.on_message(request)
        if self.error:
            raise self.error
        return self.reply

    async def send_follow_up(self, request, step, next_step=None):
        self.follow_ups.append((request, step, next_step))
        if self.error:
            raise self.error
        return self.reply


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def cache() -> DependencyCache:
    return DependencyCache(CacheConfig(), local=LocalTTLCache())


@pytest.fixture
def shared_cache() -> DependencyCache:
    """A cache whose plain keys live in one Redis shared by several instances."""
    cache = DependencyCache(CacheConfig(), local=LocalTTLCache())
    cache._redis = FakeRedis()
    return cache


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def adapter() -> StubAdapter:
    return StubAdapter()


@pytest.fixture
def registry(adapter) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(adapter)
    return registry


@pytest.fixture
def dedup(clock) -> InboundKeyStore:
    return InboundKeyStore(ttl_seconds=60, refresh_seconds=20, clock=clock)


@pytest.fixture
def stages() -> list[dict[str, Any]]:
    return [
        {
            "stage": 1,
            "title": "Warm-up",
            "objective": "Get a first answer",
            "touches": [
                {"touch": 1, "delayMin": 0, "condition": "no reply"},
                {"touch": 2, "delayMin": 60, "condition": "still silent"},
            ],
        },
    ]


@pytest_asyncio.fixture
async def tenant(store) -> Tenant:
    return await store.upsert_tenant(Tenant(id="t1", name="acme", token="tok-1",
                                            outbound_url="https://gw.example/send"))


@pytest_asyncio.fixture
async def funnel(store, tenant, stages) -> Funnel:
    return await store.upsert_funnel(Funnel(id="f1", tenant_id=tenant.id, name="Onboarding",
                                            goal="Book a demo", logic="Be brief", stages=stages))


@pytest_asyncio.fixture
async def bot(store, tenant, funnel) -> BotBinding:
    return await store.upsert_bot(BotBinding(id="b1", tenant_id=tenant.id, kind=BotKind.N8N,
                                             webhook_url="https://n8n.example/hook",
                                             prompt="You are helpful", funnel_id=funnel.id))


def waiting_session(clock: FakeClock, **overrides) -> Session:
    """An opened session bound to f1, waiting for the user since `clock.now`."""
    data = dict(
        id="s1",
        tenant_id="t1",
        bot_id="b1",
        kind=BotKind.N8N,
        remote_contact="5511999990000@s.whatsapp.net",
        status=SessionStatus.OPENED,
        await_user=True,
        funnel_id="f1",
        funnel_enable=True,
        funnel_stage=0,
        follow_up_enable=True,
        follow_up_stage=0,
        context={"last_outbound_at": int(clock.now), "last_outbound_by": "bot"},
    )
    data.update(overrides)
    return Session(**data)


def provider_error(message: str = "n8n request timed out after 120.0s") -> ProviderError:
    return ProviderError(message, provider="n8n")
