"""
Database layer — Multi-backend persistence for cadences and schedules.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  due = await store.select_due(now, limit=50)
"""
from database.models import (
    Base, CadenceRow, CadenceStepRow, CadenceLeadRow, LeadStepInstanceRow,
    ScheduleRow, AiPromptRow, ExampleMessageRow, ActivityLogRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseCadenceStore
from database.store import SqlCadenceStore
from database.store_memory import InMemoryCadenceStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "CadenceRow", "CadenceStepRow", "CadenceLeadRow", "LeadStepInstanceRow",
    "ScheduleRow", "AiPromptRow", "ExampleMessageRow", "ActivityLogRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseCadenceStore",
    # Store backends
    "SqlCadenceStore", "InMemoryCadenceStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
