"""
Agent-runtime adapter: talks to an Agno agent server.

Endpoint resolution:
  bot.webhook_url set   → JSON POST to that URL (webhook mode)
  otherwise             → form POST to {base_url[:port]}/agents/{agent_id}/runs,
                          multipart when a file is attached

Agent id: bot.agent_id, else providers.agno.default_agent_id.
Timeout:  providers.agno.timeout_ms (default 120000).
Follow-ups send the message "continue" with the step merged into dependencies.
"""
from __future__ import annotations

import json
import structlog
from typing import Any, Optional
from urllib.parse import quote, urlsplit, urlunsplit

import httpx

from config.settings import AgnoConfig, get_settings
from models.schemas import BotBinding, BotKind, FunnelStep
from providers.base import (
    ProviderAdapter, ProviderConfigError, ProviderRequest,
    attachment_payload, extract_reply,
)

logger = structlog.get_logger()

FOLLOW_UP_MESSAGE = "continue"
_SECRET_KEYS = ("llm_api_key",)


def redact_dependencies(dependencies: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(dependencies)
    for key in _SECRET_KEYS:
        if sanitized.get(key):
            sanitized[key] = "[REDACTED]"
    config = sanitized.get("agent_config")
    if isinstance(config, dict):
        sanitized["agent_config"] = {
            k: ("[REDACTED]" if k in _SECRET_KEYS and v else v) for k, v in config.items()
        }
    return sanitized


def follow_up_dependencies(
    base: dict[str, Any],
    step: FunnelStep,
    next_step: Optional[FunnelStep],
) -> dict[str, Any]:
    return {
        **base,
        "event": "followup",
        "stage": step.stage,
        "touch": step.touch,
        "delayMin": step.delay_min,
        "condition": step.condition,
        "logicStage": step.logic_stage,
        "commonTouchCondition": step.common_touch_condition,
        "objective": step.objective,
        "title": step.title,
        "nextStage": next_step.stage if next_step else None,
        "nextTouch": next_step.touch if next_step else None,
    }


class AgentRuntimeAdapter(ProviderAdapter):
    kind = BotKind.AGNO

    def __init__(self, config: AgnoConfig = None, client: httpx.AsyncClient = None):
        super().__init__(client)
        self.config = config or get_settings().providers.agno

    @property
    def timeout(self) -> float:
        ms = self.config.timeout_ms if self.config.timeout_ms and self.config.timeout_ms > 0 else 120000
        return ms / 1000.0

    def resolve_base_url(self, bot: BotBinding) -> Optional[str]:
        webhook = (bot.webhook_url or "").strip()
        if webhook:
            return webhook.rstrip("/")

        base = (self.config.base_url or "").strip()
        if not base:
            return None
        port = bot.agno_port if bot.agno_port and bot.agno_port > 0 else self.config.default_port
        parts = urlsplit(base)
        if port and port > 0 and parts.hostname:
            netloc = f"{parts.hostname}:{port}"
            if parts.username:
                auth = parts.username + (f":{parts.password}" if parts.password else "")
                netloc = f"{auth}@{netloc}"
            parts = parts._replace(netloc=netloc)
        return urlunsplit(parts).rstrip("/")

    def resolve_agent_id(self, bot: BotBinding) -> Optional[str]:
        agent_id = (bot.agent_id or "").strip() or (self.config.default_agent_id or "").strip()
        return agent_id or None

    def _target(self, bot: BotBinding) -> tuple[str, bool]:
        base = self.resolve_base_url(bot)
        if not base:
            raise ProviderConfigError("agno base url is not configured", provider="agno")
        agent_id = self.resolve_agent_id(bot)
        if not agent_id:
            raise ProviderConfigError("agno agent id is not configured", provider="agno")
        if (bot.webhook_url or "").strip():
            return base, True
        return f"{base}/agents/{quote(agent_id, safe='')}/runs", False

    async def _run(self, request: ProviderRequest, message: str,
                   dependencies: dict[str, Any], with_attachment: bool) -> Optional[str]:
        endpoint, webhook = self._target(request.bot)
        session_id = request.session.id
        attachment = request.attachment if with_attachment else None

        logger.debug("agno_request",
                     endpoint=endpoint,
                     message=message,
                     session_id=session_id,
                     user_id=request.user_id,
                     session_state=request.session_state,
                     dependencies=redact_dependencies(dependencies),
                     attachment=({"filename": attachment.filename,
                                  "content_type": attachment.content_type,
                                  "size": attachment.size_bytes} if attachment else None))

        if webhook:
            data = await self._request(endpoint, self.timeout, json={
                "message": message,
                "stream": False,
                "session_id": session_id,
                "user_id": request.user_id,
                "session_state": request.session_state,
                "dependencies": dependencies,
                "attachment": attachment_payload(attachment),
            })
        else:
            form = {
                "message": message,
                "stream": "false",
                "session_id": session_id,
                "user_id": request.user_id,
                "session_state": json.dumps(request.session_state, default=str),
                "dependencies": json.dumps(dependencies, default=str),
            }
            files = None
            if attachment:
                files = {"files": (attachment.filename, attachment.data, attachment.content_type)}
            data = await self._request(endpoint, self.timeout, data=form, files=files)

        return extract_reply(data)

    async def send_message(self, request: ProviderRequest) -> Optional[str]:
        return await self._run(request, request.content, request.dependencies, with_attachment=True)

    async def send_follow_up(
        self,
        request: ProviderRequest,
        step: FunnelStep,
        next_step: Optional[FunnelStep] = None,
    ) -> Optional[str]:
        dependencies = follow_up_dependencies(request.dependencies, step, next_step)
        return await self._run(request, FOLLOW_UP_MESSAGE, dependencies, with_attachment=False)
