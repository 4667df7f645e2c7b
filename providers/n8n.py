"""
Workflow-engine adapter: posts JSON to an n8n webhook.

Auth: HTTP basic (basic_auth_user / basic_auth_pass) or a bearer token.
Timeouts: providers.n8n.timeout_seconds for messages,
          providers.n8n.followup_timeout_seconds for follow-ups.
Reply:    first non-empty of content / output / answer / message.
"""
from __future__ import annotations

import base64
import structlog
from typing import Any, Optional

import httpx

from config.settings import N8nConfig, get_settings
from models.schemas import BotBinding, BotKind, FunnelStep
from providers.base import (
    ProviderAdapter, ProviderConfigError, ProviderRequest,
    attachment_payload, extract_reply,
)

logger = structlog.get_logger()


def merge_prompt(parts: list[Optional[str]]) -> Optional[str]:
    """Join the non-blank parts with an empty line; None when nothing is left."""
    cleaned = [p.strip() for p in parts if isinstance(p, str) and p.strip()]
    return "\n\n".join(cleaned) if cleaned else None


def follow_up_chat_input(step: FunnelStep) -> str:
    text = f"Follow-up: continue the dialogue at stage {step.stage}"
    if step.touch:
        text += f", touch {step.touch}"
    text += (
        f". Stage: {step.common_touch_condition or '-'}."
        f" Touch: {step.condition or '-'}."
        f" Logic: {step.logic_stage or '-'}."
        f" Objective: {step.objective or '-'}."
    )
    return text


class N8nWebhookAdapter(ProviderAdapter):
    kind = BotKind.N8N

    def __init__(self, config: N8nConfig = None, server_url: str = None,
                 client: httpx.AsyncClient = None):
        super().__init__(client)
        settings = get_settings()
        self.config = config or settings.providers.n8n
        self.server_url = server_url if server_url is not None else settings.server_url

    @staticmethod
    def _headers(bot: BotBinding) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if bot.basic_auth_user and bot.basic_auth_pass:
            token = base64.b64encode(f"{bot.basic_auth_user}:{bot.basic_auth_pass}".encode()).decode()
            headers["Authorization"] = f"Basic {token}"
        elif bot.bearer_token:
            headers["Authorization"] = f"Bearer {bot.bearer_token}"
        return headers

    @staticmethod
    def _endpoint(bot: BotBinding) -> str:
        endpoint = (bot.webhook_url or "").strip()
        if not endpoint:
            raise ProviderConfigError("n8n bot has no webhook_url", provider="n8n")
        return endpoint

    def _common(self, request: ProviderRequest) -> dict[str, Any]:
        session = request.session
        return {
            "sessionId": session.id,
            "remoteJid": session.remote_contact,
            "userId": request.user_id,
            "funnelEnable": session.funnel_enable,
            "followUpEnable": session.follow_up_enable,
            "sessionState": request.session_state,
            "dependencies": request.dependencies,
            "instanceName": request.tenant.name,
            "instanceId": request.tenant.id,
            "serverUrl": self.server_url,
            "apiKey": request.tenant.token,
        }

    async def send_message(self, request: ProviderRequest) -> Optional[str]:
        endpoint = self._endpoint(request.bot)
        session = request.session
        funnel = request.dependencies.get("funnel") or None
        funnel_prompt = None
        if funnel and (funnel.get("goal") or funnel.get("logic")):
            funnel_prompt = "\n".join(p for p in (funnel.get("goal"), funnel.get("logic")) if p)

        payload = {
            **self._common(request),
            "chatInput": request.content,
            "pushName": request.push_name,
            "keyId": request.key_id or None,
            "fromMe": request.from_me,
            "quotedMessage": request.quoted_message,
            "funnelStage": session.funnel_stage,
            "followUpStage": session.follow_up_stage,
            "funnel": funnel,
            "agentPrompt": merge_prompt([request.bot.prompt, funnel_prompt]),
            "funnelId": (funnel or {}).get("id") or request.bot.funnel_id,
            "attachment": attachment_payload(request.attachment),
        }

        logger.info("n8n_request", endpoint=endpoint, session_id=session.id)
        data = await self._request(
            endpoint, self.config.timeout_seconds,
            json=payload, headers=self._headers(request.bot),
        )
        return extract_reply(data)

    async def send_follow_up(
        self,
        request: ProviderRequest,
        step: FunnelStep,
        next_step: Optional[FunnelStep] = None,
    ) -> Optional[str]:
        endpoint = self._endpoint(request.bot)
        funnel = request.dependencies.get("funnel") or {}

        payload = {
            **self._common(request),
            "event": "followup",
            "stage": step.stage,
            "touch": step.touch,
            "delayMin": step.delay_min,
            "condition": step.condition,
            "logicStage": step.logic_stage,
            "commonTouchCondition": step.common_touch_condition,
            "objective": step.objective,
            "title": step.title,
            "template": step.template,
            "nextStage": next_step.stage if next_step else None,
            "nextTouch": next_step.touch if next_step else None,
            "funnelId": funnel.get("id") or request.session.funnel_id,
            "agentPrompt": merge_prompt([request.bot.prompt, funnel.get("goal"), funnel.get("logic")]),
            "chatInput": follow_up_chat_input(step),
        }

        logger.info("n8n_followup_request", endpoint=endpoint,
                    session_id=request.session.id, stage=step.stage, touch=step.touch)
        data = await self._request(
            endpoint, self.config.followup_timeout_seconds,
            json=payload, headers=self._headers(request.bot),
        )
        return extract_reply(data)
