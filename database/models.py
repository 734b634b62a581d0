"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - Status columns are plain strings; the schemas layer owns the enums.
  - String primary keys (uuid hex) — no database-specific sequences.
  - No unique index on open schedules per (step, lead): that rule needs a
    partial index, so it is enforced by the engine instead.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Float, DateTime, Text, ForeignKey,
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
#  Cadences
# ──────────────────────────────────────────────────────────────

class CadenceRow(Base):
    __tablename__ = "cadences"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(64), default="")
    name: Mapped[str] = mapped_column(String(256), default="")
    automation_mode: Mapped[str] = mapped_column(String(16), default="manual")
    timezone: Mapped[str] = mapped_column(String(64), default="America/New_York")
    status: Mapped[str] = mapped_column(String(16), default="draft")
    same_day_delay_hours: Mapped[float] = mapped_column(Float, default=1.0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_cadences_owner", "owner_id"),
    )


class CadenceStepRow(Base):
    __tablename__ = "cadence_steps"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    cadence_id: Mapped[str] = mapped_column(String(64), ForeignKey("cadences.id"), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(64), default="")
    step_type: Mapped[str] = mapped_column(String(64), nullable=False)
    step_label: Mapped[str] = mapped_column(String(256), default="")
    day_offset: Mapped[int] = mapped_column(Integer, default=0)
    order_in_day: Mapped[int] = mapped_column(Integer, default=0)
    config_json: Mapped[Any] = mapped_column(JSON, default=dict)

    __table_args__ = (
        UniqueConstraint("cadence_id", "day_offset", "order_in_day", name="uq_cadence_steps_position"),
        Index("ix_cadence_steps_cadence", "cadence_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Lead progress
# ──────────────────────────────────────────────────────────────

class CadenceLeadRow(Base):
    __tablename__ = "cadence_leads"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    cadence_id: Mapped[str] = mapped_column(String(64), ForeignKey("cadences.id"), nullable=False)
    lead_id: Mapped[str] = mapped_column(String(64), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(64), default="")
    current_step_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="active")

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("cadence_id", "lead_id", name="uq_cadence_leads_pair"),
    )


class LeadStepInstanceRow(Base):
    __tablename__ = "lead_step_instances"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    cadence_id: Mapped[str] = mapped_column(String(64), nullable=False)
    cadence_step_id: Mapped[str] = mapped_column(String(64), ForeignKey("cadence_steps.id"), nullable=False)
    lead_id: Mapped[str] = mapped_column(String(64), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(64), default="")
    status: Mapped[str] = mapped_column(String(16), default="pending")
    message_rendered_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result_snapshot: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("cadence_step_id", "lead_id", name="uq_lead_step_instances_pair"),
    )


# ──────────────────────────────────────────────────────────────
#  Schedules
# ──────────────────────────────────────────────────────────────

class ScheduleRow(Base):
    __tablename__ = "schedules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    cadence_id: Mapped[str] = mapped_column(String(64), nullable=False)
    cadence_step_id: Mapped[str] = mapped_column(String(64), nullable=False)
    lead_id: Mapped[str] = mapped_column(String(64), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(64), default="")
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    status: Mapped[str] = mapped_column(String(32), default="scheduled")
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    message_template_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    message_rendered_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_schedules_due", "status", "scheduled_at"),
        Index("ix_schedules_step_lead", "cadence_step_id", "lead_id"),
        Index("ix_schedules_cadence_lead", "cadence_id", "lead_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Prompt library
# ──────────────────────────────────────────────────────────────

class AiPromptRow(Base):
    __tablename__ = "ai_prompts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(64), default="")
    name: Mapped[str] = mapped_column(String(256), default="")
    prompt_body: Mapped[str] = mapped_column(Text, default="")
    tone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    language: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)


class ExampleMessageRow(Base):
    __tablename__ = "example_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    section_id: Mapped[str] = mapped_column(String(64), nullable=False)
    body: Mapped[str] = mapped_column(Text, default="")
    sort_order: Mapped[int] = mapped_column(Integer, default=0)

    __table_args__ = (
        Index("ix_example_messages_section", "section_id", "sort_order"),
    )


# ──────────────────────────────────────────────────────────────
#  Activity log
# ──────────────────────────────────────────────────────────────

class ActivityLogRow(Base):
    __tablename__ = "activity_log"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(64), default="")
    org_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    cadence_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    cadence_step_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    lead_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="ok")
    details: Mapped[Any] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_activity_log_cadence", "cadence_id", "created_at"),
    )
