"""
Tests for the provider adapters (workflow-engine webhook and agent runtime).
HTTP is served by httpx.MockTransport; every outgoing request is captured.
"""
import base64
import json
import pytest
from urllib.parse import parse_qs

import httpx

from config.settings import AgnoConfig, N8nConfig, Settings
from models.schemas import Attachment, BotBinding, BotKind, FunnelStep, Session, Tenant
from providers import create_default_registry
from providers.agno import AgentRuntimeAdapter, redact_dependencies
from providers.base import ProviderConfigError, ProviderError, ProviderRequest, extract_reply
from providers.n8n import N8nWebhookAdapter, follow_up_chat_input, merge_prompt


class Recorder:
    """MockTransport handler returning a canned response and keeping requests."""

    def __init__(self, status: int = 200, body=None, error: Exception = None):
        self.status = status
        self.body = {"output": "hi there"} if body is None else body
        self.error = error
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error:
            raise self.error
        if isinstance(self.body, (dict, list)):
            return httpx.Response(self.status, json=self.body)
        return httpx.Response(self.status, text=self.body)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]

    def last_json(self) -> dict:
        return json.loads(self.last.content)


def client_for(recorder: Recorder) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(recorder))


def make_request(bot: BotBinding, content: str = "hello", **kwargs) -> ProviderRequest:
    tenant = Tenant(id="t1", name="acme", token="tok-1")
    session = Session(id="s1", tenant_id="t1", bot_id=bot.id, kind=bot.kind,
                      remote_contact="5511@s.whatsapp.net",
                      funnel_id="f1", funnel_enable=True, funnel_stage=0,
                      follow_up_enable=True, follow_up_stage=1)
    defaults = dict(
        tenant=tenant, bot=bot, session=session, content=content,
        user_id="5511@s.whatsapp.net:t1",
        session_state={"funnelStage": 0, "followUpStage": 1},
        dependencies={"funnel": {"id": "f1", "goal": "Book a demo", "logic": "Be brief"},
                      "agent_prompt": "You are helpful", "agent_config": None,
                      "session_messages": []},
        push_name="Ana", key_id="k1",
    )
    defaults.update(kwargs)
    return ProviderRequest(**defaults)


STEP = FunnelStep(stage=1, touch=2, delay_min=60, condition="still silent",
                  title="Warm-up", objective="Get a first answer")
NEXT = FunnelStep(stage=2, touch=1, delay_min=120)


# ──────────────────────────────────────────────────────────────
#  Reply extraction
# ──────────────────────────────────────────────────────────────

class TestExtractReply:
    @pytest.mark.parametrize("body,expected", [
        ({"content": "a", "output": "b"}, "a"),
        ({"content": "", "output": "b"}, "b"),
        ({"content": "   ", "answer": "c"}, "c"),
        ({"message": 42}, "42"),
        ([{"output": "from list"}], "from list"),
        ({}, None),
        ([], None),
        ("plain", None),
    ])
    def test_first_non_empty_field(self, body, expected):
        assert extract_reply(body) == expected


# ──────────────────────────────────────────────────────────────
#  Workflow engine
# ──────────────────────────────────────────────────────────────

class TestN8nAdapter:
    def adapter(self, recorder: Recorder) -> N8nWebhookAdapter:
        return N8nWebhookAdapter(N8nConfig(timeout_seconds=5, followup_timeout_seconds=3),
                                 server_url="https://relay.example", client=client_for(recorder))

    def bot(self, **kwargs) -> BotBinding:
        return BotBinding(id="b1", tenant_id="t1", kind=BotKind.N8N,
                          webhook_url="https://n8n.example/hook", prompt="You are helpful",
                          funnel_id="f1", **kwargs)

    @pytest.mark.asyncio
    async def test_message_payload(self):
        recorder = Recorder()
        reply = await self.adapter(recorder).send_message(make_request(self.bot()))

        assert reply == "hi there"
        assert str(recorder.last.url) == "https://n8n.example/hook"
        payload = recorder.last_json()
        assert payload["chatInput"] == "hello"
        assert payload["sessionId"] == "s1"
        assert payload["userId"] == "5511@s.whatsapp.net:t1"
        assert payload["keyId"] == "k1"
        assert payload["instanceName"] == "acme"
        assert payload["apiKey"] == "tok-1"
        assert payload["serverUrl"] == "https://relay.example"
        assert payload["funnelId"] == "f1"
        assert payload["agentPrompt"] == "You are helpful\n\nBook a demo\nBe brief"
        assert payload["dependencies"]["agent_prompt"] == "You are helpful"
        assert payload["attachment"] is None

    @pytest.mark.asyncio
    async def test_attachment_is_inlined(self):
        recorder = Recorder()
        attachment = Attachment(filename="k1.png", content_type="image/png", data=b"png")
        await self.adapter(recorder).send_message(make_request(self.bot(), attachment=attachment))
        assert recorder.last_json()["attachment"] == {
            "filename": "k1.png", "content_type": "image/png",
            "base64": base64.b64encode(b"png").decode(),
        }

    @pytest.mark.asyncio
    async def test_basic_auth_header(self):
        recorder = Recorder()
        bot = self.bot(basic_auth_user="u", basic_auth_pass="p", bearer_token="ignored")
        await self.adapter(recorder).send_message(make_request(bot))
        assert recorder.last.headers["Authorization"] == "Basic " + base64.b64encode(b"u:p").decode()

    @pytest.mark.asyncio
    async def test_bearer_auth_header(self):
        recorder = Recorder()
        await self.adapter(recorder).send_message(make_request(self.bot(bearer_token="secret")))
        assert recorder.last.headers["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_no_auth_header_by_default(self):
        recorder = Recorder()
        await self.adapter(recorder).send_message(make_request(self.bot()))
        assert "Authorization" not in recorder.last.headers

    @pytest.mark.asyncio
    async def test_missing_webhook_is_config_error(self):
        recorder = Recorder()
        bot = self.bot().model_copy(update={"webhook_url": "  "})
        with pytest.raises(ProviderConfigError):
            await self.adapter(recorder).send_message(make_request(bot))
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_non_2xx_carries_status_and_body(self):
        recorder = Recorder(status=502, body="upstream exploded")
        with pytest.raises(ProviderError) as exc:
            await self.adapter(recorder).send_message(make_request(self.bot()))
        assert exc.value.status_code == 502
        assert exc.value.body == "upstream exploded"
        assert not isinstance(exc.value, ProviderConfigError)

    @pytest.mark.asyncio
    async def test_timeout_is_provider_error(self):
        recorder = Recorder(error=httpx.ReadTimeout("too slow"))
        with pytest.raises(ProviderError, match="timed out"):
            await self.adapter(recorder).send_message(make_request(self.bot()))

    @pytest.mark.asyncio
    async def test_empty_body_means_no_reply(self):
        recorder = Recorder(body="")
        assert await self.adapter(recorder).send_message(make_request(self.bot())) is None

    @pytest.mark.asyncio
    async def test_plain_text_body_is_the_reply(self):
        recorder = Recorder(body="just text")
        assert await self.adapter(recorder).send_message(make_request(self.bot())) == "just text"

    @pytest.mark.asyncio
    async def test_follow_up_payload(self):
        recorder = Recorder(body={"content": "checking in"})
        reply = await self.adapter(recorder).send_follow_up(make_request(self.bot()), STEP, NEXT)

        assert reply == "checking in"
        payload = recorder.last_json()
        assert payload["event"] == "followup"
        assert (payload["stage"], payload["touch"], payload["delayMin"]) == (1, 2, 60)
        assert (payload["nextStage"], payload["nextTouch"]) == (2, 1)
        assert payload["condition"] == "still silent"
        assert payload["chatInput"] == follow_up_chat_input(STEP)
        assert payload["funnelId"] == "f1"

    @pytest.mark.asyncio
    async def test_follow_up_without_next_step(self):
        recorder = Recorder()
        await self.adapter(recorder).send_follow_up(make_request(self.bot()), STEP)
        payload = recorder.last_json()
        assert payload["nextStage"] is None
        assert payload["nextTouch"] is None

    def test_merge_prompt(self):
        assert merge_prompt([" a ", None, "", "b"]) == "a\n\nb"
        assert merge_prompt([None, "  "]) is None

    def test_follow_up_chat_input(self):
        text = follow_up_chat_input(STEP)
        assert text.startswith("Follow-up: continue the dialogue at stage 1, touch 2.")
        assert "Touch: still silent." in text
        assert "Objective: Get a first answer." in text


# ──────────────────────────────────────────────────────────────
#  Agent runtime
# ──────────────────────────────────────────────────────────────

class TestAgnoAdapter:
    def adapter(self, recorder: Recorder, **config) -> AgentRuntimeAdapter:
        cfg = AgnoConfig(base_url="http://agents.local", default_port=7777, **config)
        return AgentRuntimeAdapter(cfg, client=client_for(recorder))

    def bot(self, **kwargs) -> BotBinding:
        data = dict(id="b2", tenant_id="t1", kind=BotKind.AGNO, agent_id="sales agent")
        data.update(kwargs)
        return BotBinding(**data)

    def test_base_url_uses_bot_port(self):
        adapter = self.adapter(Recorder())
        assert adapter.resolve_base_url(self.bot()) == "http://agents.local:7777"
        assert adapter.resolve_base_url(self.bot(agno_port=9000)) == "http://agents.local:9000"

    def test_webhook_url_overrides_base(self):
        adapter = self.adapter(Recorder())
        assert adapter.resolve_base_url(self.bot(webhook_url="https://hook.example/run/")) == \
            "https://hook.example/run"

    def test_agent_id_falls_back_to_default(self):
        adapter = self.adapter(Recorder(), default_agent_id="fallback")
        assert adapter.resolve_agent_id(self.bot(agent_id="")) == "fallback"
        assert adapter.resolve_agent_id(self.bot()) == "sales agent"

    def test_timeout_defaults_when_unset(self):
        assert self.adapter(Recorder(), timeout_ms=0).timeout == 120.0
        assert self.adapter(Recorder(), timeout_ms=1500).timeout == 1.5

    @pytest.mark.asyncio
    async def test_form_run(self):
        recorder = Recorder(body={"content": "agent says hi"})
        reply = await self.adapter(recorder).send_message(make_request(self.bot()))

        assert reply == "agent says hi"
        assert str(recorder.last.url) == "http://agents.local:7777/agents/sales%20agent/runs"
        form = parse_qs(recorder.last.content.decode())
        assert form["message"] == ["hello"]
        assert form["stream"] == ["false"]
        assert form["session_id"] == ["s1"]
        assert form["user_id"] == ["5511@s.whatsapp.net:t1"]
        assert json.loads(form["dependencies"][0])["agent_prompt"] == "You are helpful"
        assert json.loads(form["session_state"][0]) == {"funnelStage": 0, "followUpStage": 1}

    @pytest.mark.asyncio
    async def test_attachment_goes_multipart(self):
        recorder = Recorder()
        attachment = Attachment(filename="k1.png", content_type="image/png", data=b"png-bytes")
        await self.adapter(recorder).send_message(make_request(self.bot(), attachment=attachment))

        assert recorder.last.headers["Content-Type"].startswith("multipart/form-data")
        body = recorder.last.content
        assert b'name="files"; filename="k1.png"' in body
        assert b"png-bytes" in body

    @pytest.mark.asyncio
    async def test_webhook_mode_posts_json(self):
        recorder = Recorder()
        bot = self.bot(webhook_url="https://hook.example/run")
        await self.adapter(recorder).send_message(make_request(bot))

        assert str(recorder.last.url) == "https://hook.example/run"
        payload = recorder.last_json()
        assert payload["message"] == "hello"
        assert payload["stream"] is False
        assert payload["dependencies"]["funnel"]["id"] == "f1"

    @pytest.mark.asyncio
    async def test_follow_up_sends_continue(self):
        recorder = Recorder()
        attachment = Attachment(filename="k1.png", content_type="image/png", data=b"x")
        await self.adapter(recorder).send_follow_up(
            make_request(self.bot(), attachment=attachment), STEP, NEXT)

        body = recorder.last.content.decode()
        form = parse_qs(body)
        assert form["message"] == ["continue"]
        dependencies = json.loads(form["dependencies"][0])
        assert dependencies["event"] == "followup"
        assert (dependencies["stage"], dependencies["touch"]) == (1, 2)
        assert (dependencies["nextStage"], dependencies["nextTouch"]) == (2, 1)
        assert dependencies["funnel"]["id"] == "f1"

    @pytest.mark.asyncio
    async def test_missing_base_url_is_config_error(self):
        recorder = Recorder()
        adapter = AgentRuntimeAdapter(AgnoConfig(base_url=""), client=client_for(recorder))
        with pytest.raises(ProviderConfigError):
            await adapter.send_message(make_request(self.bot()))
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_missing_agent_id_is_config_error(self):
        with pytest.raises(ProviderConfigError):
            await self.adapter(Recorder()).send_message(make_request(self.bot(agent_id="")))

    @pytest.mark.asyncio
    async def test_http_error_is_provider_error(self):
        recorder = Recorder(status=500, body={"detail": "boom"})
        with pytest.raises(ProviderError) as exc:
            await self.adapter(recorder).send_message(make_request(self.bot()))
        assert exc.value.status_code == 500
        assert "boom" in exc.value.body

    def test_redacts_api_keys(self):
        redacted = redact_dependencies({
            "llm_api_key": "sk-1",
            "agent_config": {"llm_api_key": "sk-2", "model": "m"},
        })
        assert redacted["llm_api_key"] == "[REDACTED]"
        assert redacted["agent_config"] == {"llm_api_key": "[REDACTED]", "model": "m"}


# ──────────────────────────────────────────────────────────────
#  Registry
# ──────────────────────────────────────────────────────────────

class TestRegistry:
    def test_default_registry_has_both_kinds(self):
        registry = create_default_registry(Settings())
        assert set(registry.get_available()) == {BotKind.N8N, BotKind.AGNO}
        assert isinstance(registry.get("n8n"), N8nWebhookAdapter)
        assert isinstance(registry.get(BotKind.AGNO), AgentRuntimeAdapter)

    def test_disabled_kind_is_not_registered(self):
        settings = Settings()
        settings.providers.agno.enabled = False
        registry = create_default_registry(settings)
        assert registry.get_available() == [BotKind.N8N]
        assert registry.get(BotKind.AGNO) is None
