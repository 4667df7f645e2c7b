"""
SqlSessionStore: Portable SQL queries for PostgreSQL and SQLite.

Session transitions are conditional updates:
    UPDATE sessions SET ..., version = version + 1
    WHERE id = :id AND version = :expected
A zero rowcount means another writer got there first; the caller re-reads.
"""
from __future__ import annotations

import json
import structlog
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import delete, select, update, and_
from sqlalchemy.exc import IntegrityError

from database.models import BotRow, ChatRow, FunnelRow, SessionRow, TenantRow
from database.session import get_session
from database.store_base import BaseSessionStore
from models.schemas import (
    BotBinding, BotKind, Chat, Funnel, FunnelStatus, Session, SessionStatus, Tenant,
)

logger = structlog.get_logger()

_SESSION_FIELDS = {
    "push_name", "status", "await_user", "context",
    "funnel_id", "funnel_enable", "funnel_stage",
    "follow_up_enable", "follow_up_stage",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _json(value: Any) -> Any:
    # SQLite hands JSON back as text when the column was written raw
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


def _plain(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


class SqlSessionStore(BaseSessionStore):
    """
    Persistent session store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL and SQLite.
    """

    # ── Tenant operations ──────────────────────────────────

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        async with get_session() as db:
            row = await db.get(TenantRow, tenant_id)
            return self._row_to_tenant(row) if row else None

    async def find_tenant_by_name(self, name: str) -> Optional[Tenant]:
        async with get_session() as db:
            result = await db.execute(select(TenantRow).where(TenantRow.name == name))
            row = result.scalar_one_or_none()
            return self._row_to_tenant(row) if row else None

    async def upsert_tenant(self, tenant: Tenant) -> Tenant:
        async with get_session() as db:
            row = await db.get(TenantRow, tenant.id)
            if row is None:
                row = TenantRow(id=tenant.id)
                db.add(row)
            row.name = tenant.name
            row.token = tenant.token
            row.outbound_url = tenant.outbound_url
            row.keep_open = tenant.keep_open
            row.ignore_contacts = list(tenant.ignore_contacts)
            return tenant

    # ── Bot operations ─────────────────────────────────────

    async def get_bot(self, bot_id: str) -> Optional[BotBinding]:
        async with get_session() as db:
            row = await db.get(BotRow, bot_id)
            return self._row_to_bot(row) if row else None

    async def list_bots(self, tenant_id: str, kind: Optional[BotKind] = None,
                        funnel_id: Optional[str] = None) -> list[BotBinding]:
        async with get_session() as db:
            stmt = select(BotRow).where(BotRow.tenant_id == tenant_id)
            if kind is not None:
                stmt = stmt.where(BotRow.kind == _plain(kind))
            if funnel_id is not None:
                stmt = stmt.where(BotRow.funnel_id == funnel_id)
            result = await db.execute(stmt.order_by(BotRow.created_at))
            return [self._row_to_bot(r) for r in result.scalars().all()]

    async def upsert_bot(self, bot: BotBinding) -> BotBinding:
        async with get_session() as db:
            row = await db.get(BotRow, bot.id)
            if row is None:
                row = BotRow(id=bot.id, tenant_id=bot.tenant_id)
                db.add(row)
            row.kind = _plain(bot.kind)
            row.enabled = bot.enabled
            row.description = bot.description
            row.webhook_url = bot.webhook_url
            row.prompt = bot.prompt
            row.funnel_id = bot.funnel_id
            row.basic_auth_user = bot.basic_auth_user
            row.basic_auth_pass = bot.basic_auth_pass
            row.bearer_token = bot.bearer_token
            row.agent_id = bot.agent_id
            row.agent_config = bot.agent_config
            row.agno_port = bot.agno_port
            row.debounce_seconds = bot.debounce_seconds
            row.updated_at = _utcnow()
            await db.flush()
            return self._row_to_bot(row)

    async def delete_bot(self, bot_id: str) -> None:
        async with get_session() as db:
            await db.execute(delete(BotRow).where(BotRow.id == bot_id))

    # ── Funnel operations ──────────────────────────────────

    async def get_funnel(self, funnel_id: str) -> Optional[Funnel]:
        async with get_session() as db:
            row = await db.get(FunnelRow, funnel_id)
            return self._row_to_funnel(row) if row else None

    async def get_funnels(self, funnel_ids: Iterable[str]) -> dict[str, Funnel]:
        ids = list(set(funnel_ids))
        if not ids:
            return {}
        async with get_session() as db:
            result = await db.execute(select(FunnelRow).where(FunnelRow.id.in_(ids)))
            return {r.id: self._row_to_funnel(r) for r in result.scalars().all()}

    async def list_funnels(self, tenant_id: str) -> list[Funnel]:
        async with get_session() as db:
            result = await db.execute(
                select(FunnelRow).where(FunnelRow.tenant_id == tenant_id).order_by(FunnelRow.created_at)
            )
            return [self._row_to_funnel(r) for r in result.scalars().all()]

    async def upsert_funnel(self, funnel: Funnel) -> Funnel:
        async with get_session() as db:
            row = await db.get(FunnelRow, funnel.id)
            if row is None:
                row = FunnelRow(id=funnel.id, tenant_id=funnel.tenant_id)
                db.add(row)
            row.name = funnel.name
            row.goal = funnel.goal
            row.logic = funnel.logic
            row.follow_up_enable = funnel.follow_up_enable
            row.status = _plain(funnel.status)
            row.stages = funnel.stages
            row.updated_at = _utcnow()
            await db.flush()
            return self._row_to_funnel(row)

    async def delete_funnel(self, funnel_id: str) -> None:
        async with get_session() as db:
            await db.execute(delete(FunnelRow).where(FunnelRow.id == funnel_id))

    # ── Session operations ─────────────────────────────────

    async def get_session(self, session_id: str) -> Optional[Session]:
        async with get_session() as db:
            row = await db.get(SessionRow, session_id)
            return self._row_to_session(row) if row else None

    async def find_session(self, tenant_id: str, bot_id: str, remote_contact: str) -> Optional[Session]:
        async with get_session() as db:
            stmt = select(SessionRow).where(and_(
                SessionRow.tenant_id == tenant_id,
                SessionRow.bot_id == bot_id,
                SessionRow.remote_contact == remote_contact,
            ))
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_session(row) if row else None

    async def find_latest_session(self, tenant_id: str, remote_contact: str) -> Optional[Session]:
        async with get_session() as db:
            stmt = (
                select(SessionRow)
                .where(and_(
                    SessionRow.tenant_id == tenant_id,
                    SessionRow.remote_contact == remote_contact,
                ))
                .order_by(SessionRow.updated_at.desc())
                .limit(1)
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_session(row) if row else None

    async def get_or_create_session(self, session: Session) -> tuple[Session, bool]:
        existing = await self.find_session(session.tenant_id, session.bot_id, session.remote_contact)
        if existing:
            return existing, False
        try:
            async with get_session() as db:
                db.add(self._session_to_row(session))
        except IntegrityError:
            # lost the insert race against another worker
            existing = await self.find_session(session.tenant_id, session.bot_id, session.remote_contact)
            if existing:
                return existing, False
            raise
        return session, True

    async def update_session(self, session_id: str, expected_version: Optional[int] = None,
                             **fields) -> Optional[Session]:
        values = {k: _plain(v) for k, v in fields.items() if k in _SESSION_FIELDS}
        async with get_session() as db:
            stmt = update(SessionRow).where(SessionRow.id == session_id)
            if expected_version is not None:
                stmt = stmt.where(SessionRow.version == expected_version)
            stmt = stmt.values(**values, version=SessionRow.version + 1, updated_at=_utcnow())
            stmt = stmt.execution_options(synchronize_session=False)
            result = await db.execute(stmt)
            if result.rowcount == 0:
                return None
        return await self.get_session(session_id)

    async def update_sessions(self, tenant_id: str, changes: dict[str, Any],
                              bot_id: Optional[str] = None, funnel_id: Optional[str] = None) -> int:
        values = {k: _plain(v) for k, v in changes.items() if k in _SESSION_FIELDS}
        async with get_session() as db:
            stmt = update(SessionRow).where(SessionRow.tenant_id == tenant_id)
            if bot_id is not None:
                stmt = stmt.where(SessionRow.bot_id == bot_id)
            if funnel_id is not None:
                stmt = stmt.where(SessionRow.funnel_id == funnel_id)
            stmt = stmt.values(**values, version=SessionRow.version + 1, updated_at=_utcnow())
            stmt = stmt.execution_options(synchronize_session=False)
            result = await db.execute(stmt)
            return result.rowcount or 0

    async def delete_sessions(self, tenant_id: str, bot_id: str,
                              remote_contact: Optional[str] = None) -> int:
        async with get_session() as db:
            stmt = delete(SessionRow).where(and_(
                SessionRow.tenant_id == tenant_id,
                SessionRow.bot_id == bot_id,
            ))
            if remote_contact is not None:
                stmt = stmt.where(SessionRow.remote_contact == remote_contact)
            stmt = stmt.execution_options(synchronize_session=False)
            result = await db.execute(stmt)
            return result.rowcount or 0

    async def list_sessions(self, tenant_id: str, bot_id: Optional[str] = None) -> list[Session]:
        async with get_session() as db:
            stmt = select(SessionRow).where(SessionRow.tenant_id == tenant_id)
            if bot_id is not None:
                stmt = stmt.where(SessionRow.bot_id == bot_id)
            result = await db.execute(stmt.order_by(SessionRow.created_at))
            return [self._row_to_session(r) for r in result.scalars().all()]

    async def list_followup_candidates(self, tenant_id: Optional[str] = None,
                                       kinds: Optional[Iterable[str]] = None) -> list[Session]:
        async with get_session() as db:
            stmt = select(SessionRow).where(and_(
                SessionRow.status == SessionStatus.OPENED.value,
                SessionRow.await_user.is_(True),
                SessionRow.follow_up_enable.is_(True),
                SessionRow.funnel_id.is_not(None),
            ))
            if tenant_id is not None:
                stmt = stmt.where(SessionRow.tenant_id == tenant_id)
            if kinds:
                stmt = stmt.where(SessionRow.kind.in_([_plain(k) for k in kinds]))
            result = await db.execute(stmt.order_by(SessionRow.updated_at))
            return [self._row_to_session(r) for r in result.scalars().all()]

    async def bulk_create_sessions(self, sessions: list[Session]) -> int:
        if not sessions:
            return 0
        created = 0
        async with get_session() as db:
            for s in sessions:
                stmt = select(SessionRow.id).where(and_(
                    SessionRow.tenant_id == s.tenant_id,
                    SessionRow.bot_id == s.bot_id,
                    SessionRow.remote_contact == s.remote_contact,
                ))
                if (await db.execute(stmt)).scalar_one_or_none():
                    continue
                db.add(self._session_to_row(s))
                created += 1
        return created

    # ── Chat operations ────────────────────────────────────

    async def upsert_chat(self, tenant_id: str, remote_contact: str, name: Optional[str] = None,
                          last_message: Optional[dict[str, Any]] = None) -> Chat:
        async with get_session() as db:
            stmt = select(ChatRow).where(and_(
                ChatRow.tenant_id == tenant_id,
                ChatRow.remote_contact == remote_contact,
            ))
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row is None:
                row = ChatRow(tenant_id=tenant_id, remote_contact=remote_contact)
                db.add(row)
            if name:
                row.name = name
            if last_message is not None:
                row.last_message = last_message
            row.updated_at = _utcnow()
            await db.flush()
            return self._row_to_chat(row)

    async def get_chat(self, tenant_id: str, remote_contact: str) -> Optional[Chat]:
        async with get_session() as db:
            stmt = select(ChatRow).where(and_(
                ChatRow.tenant_id == tenant_id,
                ChatRow.remote_contact == remote_contact,
            ))
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_chat(row) if row else None

    async def list_chats(self, tenant_id: str) -> list[Chat]:
        async with get_session() as db:
            result = await db.execute(select(ChatRow).where(ChatRow.tenant_id == tenant_id))
            return [self._row_to_chat(r) for r in result.scalars().all()]

    # ── Row converters ─────────────────────────────────────

    @staticmethod
    def _row_to_tenant(row: TenantRow) -> Tenant:
        return Tenant(
            id=row.id, name=row.name, token=row.token or "",
            outbound_url=row.outbound_url or "", keep_open=bool(row.keep_open),
            ignore_contacts=_json(row.ignore_contacts) or [],
        )

    @staticmethod
    def _row_to_bot(row: BotRow) -> BotBinding:
        return BotBinding(
            id=row.id, tenant_id=row.tenant_id, kind=BotKind(row.kind),
            enabled=bool(row.enabled), description=row.description or "",
            webhook_url=row.webhook_url or "", prompt=row.prompt, funnel_id=row.funnel_id,
            basic_auth_user=row.basic_auth_user or "", basic_auth_pass=row.basic_auth_pass or "",
            bearer_token=row.bearer_token or "", agent_id=row.agent_id or "",
            agent_config=_json(row.agent_config), agno_port=row.agno_port,
            debounce_seconds=row.debounce_seconds, updated_at=row.updated_at,
        )

    @staticmethod
    def _row_to_funnel(row: FunnelRow) -> Funnel:
        return Funnel(
            id=row.id, tenant_id=row.tenant_id, name=row.name,
            goal=row.goal, logic=row.logic,
            follow_up_enable=bool(row.follow_up_enable),
            status=FunnelStatus(row.status or "active"),
            stages=_json(row.stages) if row.stages is not None else [],
            updated_at=row.updated_at,
        )

    @staticmethod
    def _row_to_session(row: SessionRow) -> Session:
        return Session(
            id=row.id, tenant_id=row.tenant_id, bot_id=row.bot_id,
            kind=BotKind(row.kind), remote_contact=row.remote_contact,
            push_name=row.push_name, status=SessionStatus(row.status),
            await_user=bool(row.await_user), context=_json(row.context) or {},
            funnel_id=row.funnel_id, funnel_enable=bool(row.funnel_enable),
            funnel_stage=row.funnel_stage, follow_up_enable=bool(row.follow_up_enable),
            follow_up_stage=row.follow_up_stage, version=row.version or 0,
            created_at=row.created_at, updated_at=row.updated_at,
        )

    @staticmethod
    def _session_to_row(s: Session) -> SessionRow:
        return SessionRow(
            id=s.id, tenant_id=s.tenant_id, bot_id=s.bot_id, kind=_plain(s.kind),
            remote_contact=s.remote_contact, push_name=s.push_name,
            status=_plain(s.status), await_user=s.await_user, context=dict(s.context),
            funnel_id=s.funnel_id, funnel_enable=s.funnel_enable, funnel_stage=s.funnel_stage,
            follow_up_enable=s.follow_up_enable, follow_up_stage=s.follow_up_stage,
            version=s.version,
        )

    @staticmethod
    def _row_to_chat(row: ChatRow) -> Chat:
        return Chat(
            tenant_id=row.tenant_id, remote_contact=row.remote_contact, name=row.name,
            last_message=_json(row.last_message), updated_at=row.updated_at,
        )
