"""
Webhook sink: delivers replies by POSTing to the tenant's channel gateway.

Request body:
    {"number": remote_contact, "text": text, "delay": 0,
     "sessionId": ..., "followUp": bool}
Auth: the tenant token in the "apikey" header.
"""
from __future__ import annotations

import structlog
from typing import Any

import httpx

from channels.base import ChannelError, ChannelSink
from models.schemas import Tenant

logger = structlog.get_logger()


class WebhookChannelSink(ChannelSink):
    name = "webhook"

    def __init__(self, client: httpx.AsyncClient = None, timeout: float = 30.0):
        self.client = client
        self.timeout = timeout

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=self.timeout)
        return self.client

    async def _do_send(self, tenant: Tenant, remote_contact: str, text: str,
                       metadata: dict[str, Any]) -> dict[str, Any]:
        if not tenant.outbound_url:
            raise ChannelError("tenant has no outbound_url", tenant=tenant.name)

        client = await self._get_client()
        response = await client.post(
            tenant.outbound_url,
            json={
                "number": remote_contact,
                "text": text,
                "delay": metadata.get("delay", 0),
                "sessionId": metadata.get("session_id"),
                "followUp": bool(metadata.get("followup")),
            },
            headers={"apikey": tenant.token} if tenant.token else {},
        )
        if response.status_code >= 400:
            logger.warning("webhook_sink_rejected",
                           tenant=tenant.name, status=response.status_code,
                           body=response.text[:300])
            return {"status": "failed", "error": f"HTTP {response.status_code}"}

        body: dict[str, Any] = {}
        if response.content:
            try:
                body = response.json()
            except ValueError:
                body = {}
        key = body.get("key") if isinstance(body, dict) else None
        return {
            "status": "sent",
            "channel_message_id": (key or {}).get("id", "") if isinstance(key, dict) else "",
        }

    async def shutdown(self) -> None:
        if self.client and not self.client.is_closed:
            await self.client.aclose()
