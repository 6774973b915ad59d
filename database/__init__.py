"""
Database layer — Multi-backend persistence for the check-in engine.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  item = await store.get_queue_item("abc123")
"""
from database.models import (
    Base, SubjectRow, PaymentRow, QueueItemRow, TemplateRow,
    DiagnosisInsertRow, EncouragementRow, CheckinResponseRow, AlertRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseCheckinStore
from database.store import SqlCheckinStore
from database.store_memory import InMemoryCheckinStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "SubjectRow", "PaymentRow", "QueueItemRow", "TemplateRow",
    "DiagnosisInsertRow", "EncouragementRow", "CheckinResponseRow", "AlertRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseCheckinStore",
    # Store backends
    "SqlCheckinStore", "InMemoryCheckinStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
