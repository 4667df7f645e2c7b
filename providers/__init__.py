"""Provider adapters for the supported automation back ends."""
from __future__ import annotations

import httpx

from config.settings import Settings, get_settings
from providers.base import (
    ProviderAdapter,
    ProviderConfigError,
    ProviderError,
    ProviderRegistry,
    ProviderRequest,
    extract_reply,
)
from providers.agno import AgentRuntimeAdapter
from providers.n8n import N8nWebhookAdapter


def create_default_registry(settings: Settings = None,
                            client: httpx.AsyncClient = None) -> ProviderRegistry:
    """Register one adapter per provider kind enabled in settings."""
    settings = settings or get_settings()
    registry = ProviderRegistry()
    if settings.providers.n8n.enabled:
        registry.register(N8nWebhookAdapter(settings.providers.n8n, settings.server_url, client=client))
    if settings.providers.agno.enabled:
        registry.register(AgentRuntimeAdapter(settings.providers.agno, client=client))
    return registry


__all__ = [
    "ProviderAdapter", "ProviderConfigError", "ProviderError",
    "ProviderRegistry", "ProviderRequest", "extract_reply",
    "AgentRuntimeAdapter", "N8nWebhookAdapter",
    "create_default_registry",
]
