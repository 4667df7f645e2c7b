"""
Provider Adapters: Uniform interface to external automation back ends.

Every adapter:
  - builds its own wire payload from a ProviderRequest
  - applies its own auth scheme and a bounded request timeout
  - extracts the reply text from its provider-specific response
  - returns the text (or None); it never decides whether to forward it

Transport problems surface as ProviderError; a bot binding that cannot be
called at all (no webhook, no agent id) raises ProviderConfigError.
"""
from __future__ import annotations

import abc
import base64
import structlog
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from models.schemas import Attachment, BotBinding, BotKind, FunnelStep, Session, Tenant

logger = structlog.get_logger()

REPLY_FIELDS = ("content", "output", "answer", "message")


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ProviderError(Exception):
    """Transport, timeout or non-2xx failure talking to a provider."""

    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None,
                 body: str = ""):
        self.provider = provider
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class ProviderConfigError(ProviderError):
    """The bot binding lacks what the provider needs (endpoint, agent id)."""


# ══════════════════════════════════════════════════════════════
#  REQUEST
# ══════════════════════════════════════════════════════════════

@dataclass
class ProviderRequest:
    tenant: Tenant
    bot: BotBinding
    session: Session
    content: str
    user_id: str                                   # "remote_contact:tenant_id"
    session_state: dict[str, Any] = field(default_factory=dict)
    dependencies: dict[str, Any] = field(default_factory=dict)
    push_name: Optional[str] = None
    key_id: str = ""
    from_me: bool = False
    quoted_message: Optional[dict[str, Any]] = None
    attachment: Optional[Attachment] = None


def extract_reply(data: Any, fields: tuple[str, ...] = REPLY_FIELDS) -> Optional[str]:
    """First non-empty reply field of a provider response body."""
    if isinstance(data, list) and data:
        data = data[0]
    if not isinstance(data, dict):
        return None
    for name in fields:
        value = data.get(name)
        if value is None or value == "":
            continue
        text = value if isinstance(value, str) else str(value)
        if text.strip():
            return text
    return None


def step_payload(step: Optional[FunnelStep]) -> dict[str, Any]:
    """Wire form of a funnel step (camelCase, as providers expect it)."""
    if step is None:
        return {}
    return {
        "stage": step.stage,
        "touch": step.touch,
        "delayMin": step.delay_min,
        "template": step.template,
        "condition": step.condition,
        "title": step.title,
        "objective": step.objective,
        "logicStage": step.logic_stage,
        "commonTouchCondition": step.common_touch_condition,
    }


def attachment_payload(attachment: Optional[Attachment]) -> Optional[dict[str, Any]]:
    if attachment is None:
        return None
    return {
        "filename": attachment.filename,
        "content_type": attachment.content_type,
        "base64": base64.b64encode(attachment.data).decode("ascii"),
    }


# ══════════════════════════════════════════════════════════════
#  ADAPTER BASE
# ══════════════════════════════════════════════════════════════

class ProviderAdapter(abc.ABC):
    """Abstract base for all provider adapters."""

    kind: BotKind

    def __init__(self, client: httpx.AsyncClient = None):
        self.client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=30.0)
        return self.client

    @abc.abstractmethod
    async def send_message(self, request: ProviderRequest) -> Optional[str]:
        """Forward a user message; return the provider's reply text."""
        ...

    @abc.abstractmethod
    async def send_follow_up(
        self,
        request: ProviderRequest,
        step: FunnelStep,
        next_step: Optional[FunnelStep] = None,
    ) -> Optional[str]:
        """Push a synthetic follow-up turn for `step`; return the reply text."""
        ...

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type(httpx.ConnectError),
        reraise=True,
    )
    async def _post(self, url: str, timeout: float, **kwargs) -> httpx.Response:
        client = await self._get_client()
        return await client.post(url, timeout=timeout, **kwargs)

    async def _request(self, url: str, timeout: float, **kwargs) -> Any:
        """POST and decode the JSON body, mapping httpx failures to ProviderError."""
        provider = self.kind.value
        try:
            response = await self._post(url, timeout, **kwargs)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise ProviderError(f"{provider} request timed out after {timeout}s",
                                provider=provider) from e
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                f"{provider} returned HTTP {e.response.status_code}",
                provider=provider,
                status_code=e.response.status_code,
                body=e.response.text[:1000],
            ) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"{provider} request failed: {e}", provider=provider) from e

        logger.debug("provider_response", provider=provider, status=response.status_code)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"output": response.text}

    async def close(self):
        if self.client and not self.client.is_closed:
            await self.client.aclose()


# ══════════════════════════════════════════════════════════════
#  REGISTRY
# ══════════════════════════════════════════════════════════════

class ProviderRegistry:
    def __init__(self):
        self._adapters: dict[BotKind, ProviderAdapter] = {}

    def register(self, adapter: ProviderAdapter):
        self._adapters[adapter.kind] = adapter

    def get(self, kind: BotKind) -> Optional[ProviderAdapter]:
        return self._adapters.get(BotKind(kind))

    def get_available(self) -> list[BotKind]:
        return list(self._adapters.keys())

    async def close_all(self):
        for adapter in self._adapters.values():
            try:
                await adapter.close()
            except Exception as e:
                logger.warning("provider_close_failed", provider=adapter.kind.value, error=str(e))
