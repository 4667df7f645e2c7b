"""
Abstract Session Store: Interface for all storage backends.

Implementations:
  - SqlSessionStore      (PostgreSQL / SQLite via SQLAlchemy)
  - InMemorySessionStore (dict-based, single-process, no persistence)

Sessions are versioned. update_session(..., expected_version=v) only applies
when the stored version is still v and returns None otherwise; every applied
update increments the version. transition_session() wraps that in a
read-fresh / mutate / conditional-write loop.
"""
from __future__ import annotations

import structlog
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable, Optional

from models.schemas import BotBinding, BotKind, Chat, Funnel, Session, Tenant

logger = structlog.get_logger()


class BaseSessionStore(ABC):
    """Interface that all session store backends must implement."""

    # ── Tenants ───────────────────────────────────────────────

    @abstractmethod
    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        ...

    @abstractmethod
    async def find_tenant_by_name(self, name: str) -> Optional[Tenant]:
        ...

    @abstractmethod
    async def upsert_tenant(self, tenant: Tenant) -> Tenant:
        ...

    # ── Bots ──────────────────────────────────────────────────

    @abstractmethod
    async def get_bot(self, bot_id: str) -> Optional[BotBinding]:
        ...

    @abstractmethod
    async def list_bots(self, tenant_id: str, kind: Optional[BotKind] = None,
                        funnel_id: Optional[str] = None) -> list[BotBinding]:
        ...

    @abstractmethod
    async def upsert_bot(self, bot: BotBinding) -> BotBinding:
        """Insert or replace; always stamps a fresh updated_at."""
        ...

    @abstractmethod
    async def delete_bot(self, bot_id: str) -> None:
        ...

    # ── Funnels ───────────────────────────────────────────────

    @abstractmethod
    async def get_funnel(self, funnel_id: str) -> Optional[Funnel]:
        ...

    @abstractmethod
    async def get_funnels(self, funnel_ids: Iterable[str]) -> dict[str, Funnel]:
        ...

    @abstractmethod
    async def list_funnels(self, tenant_id: str) -> list[Funnel]:
        ...

    @abstractmethod
    async def upsert_funnel(self, funnel: Funnel) -> Funnel:
        """Insert or replace; always stamps a fresh updated_at."""
        ...

    @abstractmethod
    async def delete_funnel(self, funnel_id: str) -> None:
        ...

    # ── Sessions ──────────────────────────────────────────────

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def find_session(self, tenant_id: str, bot_id: str, remote_contact: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def find_latest_session(self, tenant_id: str, remote_contact: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def get_or_create_session(self, session: Session) -> tuple[Session, bool]:
        """Return the existing (tenant, bot, contact) session or insert this one."""
        ...

    @abstractmethod
    async def update_session(self, session_id: str, expected_version: Optional[int] = None,
                             **fields) -> Optional[Session]:
        ...

    @abstractmethod
    async def update_sessions(self, tenant_id: str, changes: dict[str, Any],
                              bot_id: Optional[str] = None, funnel_id: Optional[str] = None) -> int:
        ...

    @abstractmethod
    async def delete_sessions(self, tenant_id: str, bot_id: str,
                              remote_contact: Optional[str] = None) -> int:
        ...

    @abstractmethod
    async def list_sessions(self, tenant_id: str, bot_id: Optional[str] = None) -> list[Session]:
        ...

    @abstractmethod
    async def list_followup_candidates(self, tenant_id: Optional[str] = None,
                                       kinds: Optional[Iterable[str]] = None) -> list[Session]:
        """status=opened, await_user, follow_up_enable and a bound funnel."""
        ...

    @abstractmethod
    async def bulk_create_sessions(self, sessions: list[Session]) -> int:
        """Insert sessions whose (tenant, bot, contact) is not taken yet."""
        ...

    # ── Chats ─────────────────────────────────────────────────

    @abstractmethod
    async def upsert_chat(self, tenant_id: str, remote_contact: str, name: Optional[str] = None,
                          last_message: Optional[dict[str, Any]] = None) -> Chat:
        ...

    @abstractmethod
    async def get_chat(self, tenant_id: str, remote_contact: str) -> Optional[Chat]:
        ...

    @abstractmethod
    async def list_chats(self, tenant_id: str) -> list[Chat]:
        ...

    # ── Helpers ───────────────────────────────────────────────

    async def transition_session(
        self,
        session_id: str,
        mutate: Callable[[Session], Optional[dict[str, Any]]],
        attempts: int = 3,
    ) -> Optional[Session]:
        """
        Apply mutate(fresh_session) as a conditional update.

        mutate returns the fields to write, or None/{} to leave the session
        alone. On a version conflict the session is re-read and mutate is
        called again, up to `attempts` times.
        """
        for _ in range(attempts):
            session = await self.get_session(session_id)
            if session is None:
                return None
            changes = mutate(session)
            if not changes:
                return session
            updated = await self.update_session(session_id, expected_version=session.version, **changes)
            if updated is not None:
                return updated
        logger.warning("session_update_conflict", session_id=session_id, attempts=attempts)
        return None
