"""
Core data models for the BotRelay system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class SessionStatus(str, Enum):
    OPENED = "opened"
    PAUSED = "paused"
    CLOSED = "closed"


class BotKind(str, Enum):
    N8N = "n8n"          # workflow-engine webhook
    AGNO = "agno"        # agent runtime


class FunnelStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"


class OutboundActor(str, Enum):
    BOT = "bot"
    MANAGER = "manager"


# ──────────────────────────────────────────────────────────────
#  Tenant: one connected channel instance
# ──────────────────────────────────────────────────────────────

class Tenant(BaseModel):
    id: str = Field(default_factory=_new_id)
    name: str
    token: str = ""                           # API key handed to providers
    outbound_url: str = ""                    # channel-side send endpoint
    keep_open: bool = False                   # closing keeps sessions instead of deleting
    ignore_contacts: list[str] = []


# ──────────────────────────────────────────────────────────────
#  Bot Binding: one automation provider configured for a tenant
# ──────────────────────────────────────────────────────────────

class BotBinding(BaseModel):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    kind: BotKind
    enabled: bool = True
    description: str = ""
    webhook_url: str = ""
    prompt: Optional[str] = None
    funnel_id: Optional[str] = None

    # workflow-engine auth
    basic_auth_user: str = ""
    basic_auth_pass: str = ""
    bearer_token: str = ""

    # agent-runtime
    agent_id: str = ""
    agent_config: Optional[dict[str, Any]] = None
    agno_port: Optional[int] = None

    debounce_seconds: Optional[float] = None  # overrides session.debounce_seconds
    updated_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Funnel: ordered stages of timed touches
# ──────────────────────────────────────────────────────────────

class Funnel(BaseModel):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    name: str
    goal: Optional[str] = None
    logic: Optional[str] = None
    follow_up_enable: bool = True
    status: FunnelStatus = FunnelStatus.ACTIVE
    stages: Any = []                          # list of stage dicts, or its JSON text
    updated_at: datetime = Field(default_factory=_utcnow)


class FunnelStep(BaseModel):
    """One touch of a funnel, addressed by its index in the flattened list."""
    stage: int
    touch: int
    delay_min: float
    template: Optional[str] = None
    condition: Optional[str] = None
    title: Optional[str] = None
    objective: Optional[str] = None
    logic_stage: Optional[str] = None
    common_touch_condition: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Session: conversation state per (tenant, bot, contact)
# ──────────────────────────────────────────────────────────────

class Session(BaseModel):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    bot_id: str
    kind: BotKind
    remote_contact: str
    push_name: Optional[str] = None
    status: SessionStatus = SessionStatus.OPENED
    await_user: bool = False
    context: dict[str, Any] = {}              # last_inbound_at, last_outbound_at, ...

    funnel_id: Optional[str] = None
    funnel_enable: bool = False
    funnel_stage: Optional[int] = None
    follow_up_enable: bool = False
    follow_up_stage: Optional[int] = None

    version: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Inbound message: normalized by the channel adapters
# ──────────────────────────────────────────────────────────────

class InboundMessage(BaseModel):
    key_id: str = ""                          # channel message id
    remote_contact: str
    push_name: Optional[str] = None
    from_me: bool = False
    timestamp: Optional[int] = None           # epoch seconds
    message_type: str = "conversation"
    content: str = ""
    raw: dict[str, Any] = {}                  # provider message body (captions, media)
    quoted_message: Optional[dict[str, Any]] = None


class Attachment(BaseModel):
    filename: str
    content_type: str
    data: bytes = b""

    @property
    def size_bytes(self) -> int:
        return len(self.data)


class Chat(BaseModel):
    """A known conversation on a tenant, used for bulk session creation."""
    tenant_id: str
    remote_contact: str
    name: Optional[str] = None
    last_message: Optional[dict[str, Any]] = None
    updated_at: datetime = Field(default_factory=_utcnow)
