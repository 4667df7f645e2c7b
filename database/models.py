"""
SQLAlchemy ORM models: Cross-database compatible.

Supports: PostgreSQL, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB; on SQLite it serializes
    to TEXT.
  - String primary keys (uuid hex), no database-specific sequences.
  - sessions carry a version column; every state transition is a
    conditional UPDATE ... WHERE version = :expected.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, String, Integer, Float, DateTime, Text, ForeignKey,
    Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Tenants
# ──────────────────────────────────────────────────────────────

class TenantRow(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    token: Mapped[str] = mapped_column(String(256), default="")
    outbound_url: Mapped[str] = mapped_column(String(512), default="")
    keep_open: Mapped[bool] = mapped_column(Boolean, default=False)
    ignore_contacts: Mapped[Any] = mapped_column(JSON, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Bots
# ──────────────────────────────────────────────────────────────

class BotRow(Base):
    __tablename__ = "bots"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    description: Mapped[str] = mapped_column(String(256), default="")
    webhook_url: Mapped[str] = mapped_column(String(512), default="")
    prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    funnel_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    basic_auth_user: Mapped[str] = mapped_column(String(128), default="")
    basic_auth_pass: Mapped[str] = mapped_column(String(256), default="")
    bearer_token: Mapped[str] = mapped_column(String(512), default="")

    agent_id: Mapped[str] = mapped_column(String(128), default="")
    agent_config: Mapped[Any] = mapped_column(JSON, nullable=True)
    agno_port: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    debounce_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_bots_tenant_kind", "tenant_id", "kind"),
        Index("ix_bots_funnel", "funnel_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Funnels
# ──────────────────────────────────────────────────────────────

class FunnelRow(Base):
    __tablename__ = "funnels"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    goal: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    logic: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    follow_up_enable: Mapped[bool] = mapped_column(Boolean, default=True)
    status: Mapped[str] = mapped_column(String(16), default="active")
    stages: Mapped[Any] = mapped_column(JSON, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_funnels_tenant", "tenant_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Sessions
# ──────────────────────────────────────────────────────────────

class SessionRow(Base):
    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    bot_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    remote_contact: Mapped[str] = mapped_column(String(128), nullable=False)
    push_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="opened")
    await_user: Mapped[bool] = mapped_column(Boolean, default=False)
    context: Mapped[Any] = mapped_column(JSON, default=dict)

    funnel_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    funnel_enable: Mapped[bool] = mapped_column(Boolean, default=False)
    funnel_stage: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    follow_up_enable: Mapped[bool] = mapped_column(Boolean, default=False)
    follow_up_stage: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "bot_id", "remote_contact", name="uq_sessions_tenant_bot_contact"),
        Index("ix_sessions_followup", "status", "await_user", "follow_up_enable", "funnel_id"),
        Index("ix_sessions_funnel", "tenant_id", "funnel_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Chats: conversations known to the channel
# ──────────────────────────────────────────────────────────────

class ChatRow(Base):
    __tablename__ = "chats"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), ForeignKey("tenants.id"), nullable=False)
    remote_contact: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    last_message: Mapped[Any] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "remote_contact", name="uq_chats_tenant_contact"),
    )
