"""
Database layer: Session persistence.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  session = await store.get_session("s1")
"""
from database.models import (
    Base, TenantRow, BotRow, FunnelRow, SessionRow, ChatRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseSessionStore
from database.store import SqlSessionStore
from database.store_memory import InMemorySessionStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "TenantRow", "BotRow", "FunnelRow", "SessionRow", "ChatRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseSessionStore",
    # Store backends
    "SqlSessionStore", "InMemorySessionStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
