"""
HTTP surface tests, driven in-process through httpx.ASGITransport.
The provider adapter is replaced by a stub; replies go to the logging sink.
"""
import uuid
import pytest
import pytest_asyncio

import httpx

from channels.base import LoggingChannelSink
from channels.webhook_sink import WebhookChannelSink
from conftest import StubAdapter
from models.schemas import BotKind


@pytest.fixture
def main(monkeypatch):
    from api import main as app_module
    monkeypatch.setitem(app_module.providers._adapters, BotKind.N8N, StubAdapter(reply="Hi from the API"))
    return app_module


@pytest_asyncio.fixture
async def client(main):
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest_asyncio.fixture
async def tenant_id(client):
    tenant_id = f"t-{uuid.uuid4().hex[:8]}"
    response = await client.post("/api/v1/tenants", json={"id": tenant_id, "name": tenant_id})
    assert response.status_code == 200
    return tenant_id


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert "n8n" in body["providers"]


class TestTenants:
    @pytest.mark.asyncio
    async def test_get_tenant(self, client, tenant_id):
        response = await client.get(f"/api/v1/tenants/{tenant_id}")
        assert response.json()["name"] == tenant_id

    @pytest.mark.asyncio
    async def test_adding_outbound_url_routes_to_webhook(self, client, main, tenant_id):
        assert isinstance(main.channel_registry.get(tenant_id), LoggingChannelSink)

        response = await client.post("/api/v1/tenants", json={
            "id": tenant_id, "name": tenant_id, "outbound_url": "https://gateway.example/send",
        })

        assert response.status_code == 200
        assert isinstance(main.channel_registry.get(tenant_id), WebhookChannelSink)

    @pytest.mark.asyncio
    async def test_dropping_outbound_url_logs_replies(self, client, main):
        tenant_id = f"t-{uuid.uuid4().hex[:8]}"
        body = {"id": tenant_id, "name": tenant_id, "outbound_url": "https://gateway.example/send"}
        await client.post("/api/v1/tenants", json=body)
        assert isinstance(main.channel_registry.get(tenant_id), WebhookChannelSink)

        await client.post("/api/v1/tenants", json={**body, "outbound_url": ""})
        assert isinstance(main.channel_registry.get(tenant_id), LoggingChannelSink)

    @pytest.mark.asyncio
    async def test_unknown_tenant_is_404(self, client):
        response = await client.get("/api/v1/tenants/nope")
        assert response.status_code == 404
        assert "tenant not found" in response.json()["detail"]


class TestConversationFlow:
    @pytest.mark.asyncio
    async def test_message_to_reply(self, client, tenant_id):
        funnel = (await client.post(f"/api/v1/tenants/{tenant_id}/funnels", json={
            "name": "Onboarding",
            "stages": [{"stage": 1, "touches": [{"touch": 1, "delayMin": 0}]}],
        })).json()
        bot = (await client.post(f"/api/v1/tenants/{tenant_id}/bots", json={
            "kind": "n8n", "webhook_url": "https://n8n.example/hook", "funnel_id": funnel["id"],
        })).json()
        assert bot["funnel_id"] == funnel["id"]

        result = (await client.post(f"/api/v1/tenants/{tenant_id}/messages", json={
            "remote_contact": "5511@s.whatsapp.net", "key_id": "k1",
            "push_name": "Ana", "content": "hello",
        })).json()

        assert result["status"] == "sent"
        assert result["reply"] == "Hi from the API"
        assert result["delivery"]["status"] == "logged"

        [session] = (await client.get(f"/api/v1/tenants/{tenant_id}/sessions")).json()
        assert session["await_user"] is True
        assert session["funnel_id"] == funnel["id"]

        history = (await client.get(f"/api/v1/sessions/{session['id']}/messages")).json()
        assert [m["role"] for m in history] == ["user", "assistant"]

        rebound = await client.patch(f"/api/v1/tenants/{tenant_id}/sessions/funnel", json={
            "remote_contact": "5511@s.whatsapp.net", "funnel_id": None,
        })
        assert rebound.status_code == 200
        assert rebound.json()["funnel_id"] is None

    @pytest.mark.asyncio
    async def test_bad_funnel_stages_is_400(self, client, tenant_id):
        response = await client.post(f"/api/v1/tenants/{tenant_id}/funnels",
                                     json={"name": "F", "stages": "{oops"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_session_funnel_without_session_is_404(self, client, tenant_id):
        response = await client.patch(f"/api/v1/tenants/{tenant_id}/sessions/funnel",
                                      json={"remote_contact": "nobody"})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_tick_for_unknown_tenant_is_404(self, client):
        response = await client.post("/api/v1/followups/tick", params={"tenant_id": "nope"})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_tick_counts(self, client, tenant_id):
        response = await client.post("/api/v1/followups/tick", params={"tenant_id": tenant_id})
        assert response.json() == {"candidates": 0, "dispatched": 0, "skipped": 0, "failed": 0}
