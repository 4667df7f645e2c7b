"""
InMemorySessionStore: Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlSessionStore
  - Safe under asyncio (single event loop, no awaits inside mutations)
  - All data lost on process restart

Records are stored and returned as deep copies, so callers never mutate
store state by accident.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from database.store_base import BaseSessionStore
from models.schemas import BotBinding, BotKind, Chat, Funnel, Session, SessionStatus, Tenant

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemorySessionStore(BaseSessionStore):

    def __init__(self):
        self._tenants: dict[str, Tenant] = {}
        self._bots: dict[str, BotBinding] = {}
        self._funnels: dict[str, Funnel] = {}
        self._sessions: dict[str, Session] = {}
        self._chats: dict[str, Chat] = {}                 # "tenant:contact" → chat

        # Indexes
        self._session_index: dict[str, str] = {}          # "tenant:bot:contact" → session_id
        logger.info("inmemory_store_initialized")

    @staticmethod
    def _session_key(tenant_id: str, bot_id: str, remote_contact: str) -> str:
        return f"{tenant_id}:{bot_id}:{remote_contact}"

    # ── Tenants ───────────────────────────────────────────

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        t = self._tenants.get(tenant_id)
        return t.model_copy(deep=True) if t else None

    async def find_tenant_by_name(self, name: str) -> Optional[Tenant]:
        for t in self._tenants.values():
            if t.name == name:
                return t.model_copy(deep=True)
        return None

    async def upsert_tenant(self, tenant: Tenant) -> Tenant:
        self._tenants[tenant.id] = tenant.model_copy(deep=True)
        return tenant

    # ── Bots ──────────────────────────────────────────────

    async def get_bot(self, bot_id: str) -> Optional[BotBinding]:
        b = self._bots.get(bot_id)
        return b.model_copy(deep=True) if b else None

    async def list_bots(self, tenant_id: str, kind: Optional[BotKind] = None,
                        funnel_id: Optional[str] = None) -> list[BotBinding]:
        return [
            b.model_copy(deep=True) for b in self._bots.values()
            if b.tenant_id == tenant_id
            and (kind is None or b.kind == kind)
            and (funnel_id is None or b.funnel_id == funnel_id)
        ]

    async def upsert_bot(self, bot: BotBinding) -> BotBinding:
        stored = bot.model_copy(deep=True, update={"updated_at": _utcnow()})
        self._bots[bot.id] = stored
        return stored.model_copy(deep=True)

    async def delete_bot(self, bot_id: str) -> None:
        self._bots.pop(bot_id, None)

    # ── Funnels ───────────────────────────────────────────

    async def get_funnel(self, funnel_id: str) -> Optional[Funnel]:
        f = self._funnels.get(funnel_id)
        return f.model_copy(deep=True) if f else None

    async def get_funnels(self, funnel_ids: Iterable[str]) -> dict[str, Funnel]:
        return {
            fid: self._funnels[fid].model_copy(deep=True)
            for fid in set(funnel_ids) if fid in self._funnels
        }

    async def list_funnels(self, tenant_id: str) -> list[Funnel]:
        return [f.model_copy(deep=True) for f in self._funnels.values() if f.tenant_id == tenant_id]

    async def upsert_funnel(self, funnel: Funnel) -> Funnel:
        stored = funnel.model_copy(deep=True, update={"updated_at": _utcnow()})
        self._funnels[funnel.id] = stored
        return stored.model_copy(deep=True)

    async def delete_funnel(self, funnel_id: str) -> None:
        self._funnels.pop(funnel_id, None)

    # ── Sessions ──────────────────────────────────────────

    async def get_session(self, session_id: str) -> Optional[Session]:
        s = self._sessions.get(session_id)
        return s.model_copy(deep=True) if s else None

    async def find_session(self, tenant_id: str, bot_id: str, remote_contact: str) -> Optional[Session]:
        sid = self._session_index.get(self._session_key(tenant_id, bot_id, remote_contact))
        if not sid:
            return None
        return await self.get_session(sid)

    async def find_latest_session(self, tenant_id: str, remote_contact: str) -> Optional[Session]:
        matches = [
            s for s in self._sessions.values()
            if s.tenant_id == tenant_id and s.remote_contact == remote_contact
        ]
        if not matches:
            return None
        matches.sort(key=lambda s: s.updated_at, reverse=True)
        return matches[0].model_copy(deep=True)

    async def get_or_create_session(self, session: Session) -> tuple[Session, bool]:
        key = self._session_key(session.tenant_id, session.bot_id, session.remote_contact)
        sid = self._session_index.get(key)
        if sid:
            return self._sessions[sid].model_copy(deep=True), False
        self._sessions[session.id] = session.model_copy(deep=True)
        self._session_index[key] = session.id
        return session.model_copy(deep=True), True

    async def update_session(self, session_id: str, expected_version: Optional[int] = None,
                             **fields) -> Optional[Session]:
        current = self._sessions.get(session_id)
        if current is None:
            return None
        if expected_version is not None and current.version != expected_version:
            return None
        updated = current.model_copy(deep=True, update={
            **fields,
            "version": current.version + 1,
            "updated_at": _utcnow(),
        })
        self._sessions[session_id] = updated
        return updated.model_copy(deep=True)

    async def update_sessions(self, tenant_id: str, changes: dict[str, Any],
                              bot_id: Optional[str] = None, funnel_id: Optional[str] = None) -> int:
        count = 0
        for sid, s in list(self._sessions.items()):
            if s.tenant_id != tenant_id:
                continue
            if bot_id is not None and s.bot_id != bot_id:
                continue
            if funnel_id is not None and s.funnel_id != funnel_id:
                continue
            await self.update_session(sid, **changes)
            count += 1
        return count

    async def delete_sessions(self, tenant_id: str, bot_id: str,
                              remote_contact: Optional[str] = None) -> int:
        doomed = [
            s for s in self._sessions.values()
            if s.tenant_id == tenant_id and s.bot_id == bot_id
            and (remote_contact is None or s.remote_contact == remote_contact)
        ]
        for s in doomed:
            del self._sessions[s.id]
            self._session_index.pop(self._session_key(s.tenant_id, s.bot_id, s.remote_contact), None)
        return len(doomed)

    async def list_sessions(self, tenant_id: str, bot_id: Optional[str] = None) -> list[Session]:
        return [
            s.model_copy(deep=True) for s in self._sessions.values()
            if s.tenant_id == tenant_id and (bot_id is None or s.bot_id == bot_id)
        ]

    async def list_followup_candidates(self, tenant_id: Optional[str] = None,
                                       kinds: Optional[Iterable[str]] = None) -> list[Session]:
        kinds = {BotKind(k) for k in kinds} if kinds else None
        return [
            s.model_copy(deep=True) for s in self._sessions.values()
            if s.status == SessionStatus.OPENED
            and s.await_user
            and s.follow_up_enable
            and s.funnel_id is not None
            and (tenant_id is None or s.tenant_id == tenant_id)
            and (kinds is None or s.kind in kinds)
        ]

    async def bulk_create_sessions(self, sessions: list[Session]) -> int:
        created = 0
        for s in sessions:
            _, was_created = await self.get_or_create_session(s)
            created += int(was_created)
        return created

    # ── Chats ─────────────────────────────────────────────

    async def upsert_chat(self, tenant_id: str, remote_contact: str, name: Optional[str] = None,
                          last_message: Optional[dict[str, Any]] = None) -> Chat:
        key = f"{tenant_id}:{remote_contact}"
        chat = self._chats.get(key) or Chat(tenant_id=tenant_id, remote_contact=remote_contact)
        if name:
            chat.name = name
        if last_message is not None:
            chat.last_message = last_message
        chat.updated_at = _utcnow()
        self._chats[key] = chat
        return chat.model_copy(deep=True)

    async def get_chat(self, tenant_id: str, remote_contact: str) -> Optional[Chat]:
        chat = self._chats.get(f"{tenant_id}:{remote_contact}")
        return chat.model_copy(deep=True) if chat else None

    async def list_chats(self, tenant_id: str) -> list[Chat]:
        return [c.model_copy(deep=True) for c in self._chats.values() if c.tenant_id == tenant_id]
