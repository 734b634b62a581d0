"""
SqlCadenceStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

claim() is a single conditional UPDATE ... WHERE status = 'scheduled';
the row count tells the caller whether it won. No read-then-write.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update, and_

from database.models import (
    ActivityLogRow, AiPromptRow, CadenceLeadRow, CadenceRow, CadenceStepRow,
    ExampleMessageRow, LeadStepInstanceRow, ScheduleRow,
)
from database.session import get_session
from database.store_base import (
    BaseCadenceStore, DEFAULT_DUE_LIMIT, clamp_limit, instance_can_move_to,
)
from models.schemas import (
    ActivityEntry, ActivityStatus, AiPrompt, AutomationMode, Cadence, CadenceLead,
    CadenceLeadStatus, CadenceStatus, CadenceStep, ExampleMessage, InstanceStatus,
    LeadStepInstance, Schedule, ScheduleStatus,
)

logger = structlog.get_logger()

_OPEN_STATUSES = (ScheduleStatus.SCHEDULED.value, ScheduleStatus.PROCESSING.value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _plain(fields: dict[str, Any]) -> dict[str, Any]:
    """Enum members → their values, for column assignment."""
    return {k: getattr(v, "value", v) for k, v in fields.items()}


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlCadenceStore(BaseCadenceStore):
    """
    Persistent cadence store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Cadence operations ─────────────────────────────────

    async def get_cadence(self, cadence_id: str) -> Optional[Cadence]:
        async with get_session() as db:
            row = await db.get(CadenceRow, cadence_id)
            return self._row_to_cadence(row) if row else None

    async def save_cadence(self, cadence: Cadence) -> Cadence:
        async with get_session() as db:
            values = dict(
                owner_id=cadence.owner_id, name=cadence.name,
                automation_mode=cadence.automation_mode.value, timezone=cadence.timezone,
                status=cadence.status.value, same_day_delay_hours=cadence.same_day_delay_hours,
            )
            existing = await db.get(CadenceRow, cadence.id)
            if existing:
                for k, v in values.items():
                    setattr(existing, k, v)
            else:
                db.add(CadenceRow(id=cadence.id, created_at=cadence.created_at, **values))
        return cadence

    async def update_cadence(self, cadence_id: str, **fields: Any) -> None:
        async with get_session() as db:
            await db.execute(
                update(CadenceRow).where(CadenceRow.id == cadence_id)
                .values(**_plain(fields), updated_at=_utcnow())
            )

    # ── Step operations ────────────────────────────────────

    async def get_step(self, step_id: str) -> Optional[CadenceStep]:
        async with get_session() as db:
            row = await db.get(CadenceStepRow, step_id)
            return self._row_to_step(row) if row else None

    async def save_step(self, step: CadenceStep) -> CadenceStep:
        async with get_session() as db:
            existing = await db.get(CadenceStepRow, step.id)
            if existing:
                existing.step_type = step.step_type
                existing.step_label = step.step_label
                existing.day_offset = step.day_offset
                existing.order_in_day = step.order_in_day
                existing.config_json = dict(step.config)
            else:
                db.add(CadenceStepRow(
                    id=step.id, cadence_id=step.cadence_id, owner_id=step.owner_id,
                    step_type=step.step_type, step_label=step.step_label,
                    day_offset=step.day_offset, order_in_day=step.order_in_day,
                    config_json=dict(step.config),
                ))
        return step

    async def list_steps(self, cadence_id: str) -> list[CadenceStep]:
        async with get_session() as db:
            stmt = (
                select(CadenceStepRow)
                .where(CadenceStepRow.cadence_id == cadence_id)
                .order_by(CadenceStepRow.day_offset.asc(), CadenceStepRow.order_in_day.asc())
            )
            result = await db.execute(stmt)
            return [self._row_to_step(r) for r in result.scalars()]

    async def get_next_step(self, step: CadenceStep) -> Optional[CadenceStep]:
        async with get_session() as db:
            stmt = (
                select(CadenceStepRow)
                .where(and_(
                    CadenceStepRow.cadence_id == step.cadence_id,
                    (CadenceStepRow.day_offset > step.day_offset)
                    | and_(CadenceStepRow.day_offset == step.day_offset,
                           CadenceStepRow.order_in_day > step.order_in_day),
                ))
                .order_by(CadenceStepRow.day_offset.asc(), CadenceStepRow.order_in_day.asc())
                .limit(1)
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_step(row) if row else None

    # ── Cadence lead operations ────────────────────────────

    async def get_cadence_lead(self, cadence_id: str, lead_id: str) -> Optional[CadenceLead]:
        async with get_session() as db:
            row = await self._find_cadence_lead(db, cadence_id, lead_id)
            return self._row_to_cadence_lead(row) if row else None

    async def save_cadence_lead(self, cadence_lead: CadenceLead) -> CadenceLead:
        async with get_session() as db:
            row = await self._find_cadence_lead(db, cadence_lead.cadence_id, cadence_lead.lead_id)
            if row:
                row.owner_id = cadence_lead.owner_id
                row.current_step_id = cadence_lead.current_step_id
                row.status = cadence_lead.status.value
                return self._row_to_cadence_lead(row)
            db.add(CadenceLeadRow(
                id=cadence_lead.id, cadence_id=cadence_lead.cadence_id,
                lead_id=cadence_lead.lead_id, owner_id=cadence_lead.owner_id,
                current_step_id=cadence_lead.current_step_id,
                status=cadence_lead.status.value,
            ))
        return cadence_lead

    async def update_cadence_lead(self, cadence_id: str, lead_id: str, **fields: Any) -> None:
        async with get_session() as db:
            await db.execute(
                update(CadenceLeadRow)
                .where(and_(CadenceLeadRow.cadence_id == cadence_id, CadenceLeadRow.lead_id == lead_id))
                .values(**_plain(fields), updated_at=_utcnow())
            )

    @staticmethod
    async def _find_cadence_lead(db, cadence_id: str, lead_id: str) -> Optional[CadenceLeadRow]:
        stmt = select(CadenceLeadRow).where(and_(
            CadenceLeadRow.cadence_id == cadence_id, CadenceLeadRow.lead_id == lead_id,
        ))
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    # ── Lead step instance operations ──────────────────────

    async def get_instance(self, step_id: str, lead_id: str) -> Optional[LeadStepInstance]:
        async with get_session() as db:
            row = await self._find_instance(db, step_id, lead_id)
            return self._row_to_instance(row) if row else None

    async def upsert_instance(self, instance: LeadStepInstance) -> LeadStepInstance:
        async with get_session() as db:
            row = await self._find_instance(db, instance.cadence_step_id, instance.lead_id)
            if row is None:
                db.add(LeadStepInstanceRow(
                    id=instance.id, cadence_id=instance.cadence_id,
                    cadence_step_id=instance.cadence_step_id, lead_id=instance.lead_id,
                    owner_id=instance.owner_id, status=instance.status.value,
                    message_rendered_text=instance.message_rendered_text,
                    last_error=instance.last_error, result_snapshot=instance.result_snapshot,
                ))
                return instance
            if instance_can_move_to(InstanceStatus(row.status), instance.status):
                row.status = instance.status.value
                row.message_rendered_text = instance.message_rendered_text or row.message_rendered_text
                row.last_error = instance.last_error
            return self._row_to_instance(row)

    async def update_instance(self, step_id: str, lead_id: str, **fields: Any) -> None:
        async with get_session() as db:
            await db.execute(
                update(LeadStepInstanceRow)
                .where(and_(
                    LeadStepInstanceRow.cadence_step_id == step_id,
                    LeadStepInstanceRow.lead_id == lead_id,
                ))
                .values(**_plain(fields), updated_at=_utcnow())
            )

    @staticmethod
    async def _find_instance(db, step_id: str, lead_id: str) -> Optional[LeadStepInstanceRow]:
        stmt = select(LeadStepInstanceRow).where(and_(
            LeadStepInstanceRow.cadence_step_id == step_id, LeadStepInstanceRow.lead_id == lead_id,
        ))
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    # ── Schedule operations ────────────────────────────────

    async def create_schedule(self, schedule: Schedule) -> Schedule:
        async with get_session() as db:
            db.add(self._schedule_to_row(schedule))
        return schedule

    async def create_schedules(self, schedules: list[Schedule]) -> list[Schedule]:
        async with get_session() as db:
            db.add_all([self._schedule_to_row(s) for s in schedules])
        return schedules

    async def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        async with get_session() as db:
            row = await db.get(ScheduleRow, schedule_id)
            return self._row_to_schedule(row) if row else None

    async def select_due(self, now: datetime, limit: int = DEFAULT_DUE_LIMIT) -> list[Schedule]:
        now = now.astimezone(timezone.utc)
        async with get_session() as db:
            stmt = (
                select(ScheduleRow)
                .where(and_(
                    ScheduleRow.status == ScheduleStatus.SCHEDULED.value,
                    ScheduleRow.scheduled_at <= now,
                ))
                .order_by(ScheduleRow.scheduled_at.asc())
                .limit(clamp_limit(limit))
            )
            result = await db.execute(stmt)
            return [self._row_to_schedule(r) for r in result.scalars()]

    async def claim(self, schedule_id: str) -> bool:
        async with get_session() as db:
            result = await db.execute(
                update(ScheduleRow)
                .where(and_(
                    ScheduleRow.id == schedule_id,
                    ScheduleRow.status == ScheduleStatus.SCHEDULED.value,
                ))
                .values(status=ScheduleStatus.PROCESSING.value, updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def finish(self, schedule_id: str, status: ScheduleStatus, error: Optional[str] = None) -> None:
        async with get_session() as db:
            await db.execute(
                update(ScheduleRow).where(ScheduleRow.id == schedule_id)
                .values(status=status.value, last_error=error, updated_at=_utcnow())
            )

    async def find_open_schedule(self, step_id: str, lead_id: str) -> Optional[Schedule]:
        async with get_session() as db:
            stmt = (
                select(ScheduleRow)
                .where(and_(
                    ScheduleRow.cadence_step_id == step_id,
                    ScheduleRow.lead_id == lead_id,
                    ScheduleRow.status.in_(_OPEN_STATUSES),
                ))
                .limit(1)
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_schedule(row) if row else None

    async def has_executed_duplicate(self, step_id: str, lead_id: str, exclude_id: str) -> bool:
        async with get_session() as db:
            stmt = (
                select(ScheduleRow.id)
                .where(and_(
                    ScheduleRow.cadence_step_id == step_id,
                    ScheduleRow.lead_id == lead_id,
                    ScheduleRow.status == ScheduleStatus.EXECUTED.value,
                    ScheduleRow.id != exclude_id,
                ))
                .limit(1)
            )
            result = await db.execute(stmt)
            return result.first() is not None

    async def cancel_open_schedules(self, cadence_id: str, lead_ids: list[str], reason: str) -> int:
        if not lead_ids:
            return 0
        async with get_session() as db:
            result = await db.execute(
                update(ScheduleRow)
                .where(and_(
                    ScheduleRow.cadence_id == cadence_id,
                    ScheduleRow.lead_id.in_(lead_ids),
                    ScheduleRow.status == ScheduleStatus.SCHEDULED.value,
                ))
                .values(status=ScheduleStatus.CANCELED.value, last_error=reason, updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    async def list_schedules(self, cadence_id: str, lead_id: Optional[str] = None) -> list[Schedule]:
        async with get_session() as db:
            stmt = select(ScheduleRow).where(ScheduleRow.cadence_id == cadence_id)
            if lead_id is not None:
                stmt = stmt.where(ScheduleRow.lead_id == lead_id)
            result = await db.execute(stmt.order_by(ScheduleRow.scheduled_at.asc()))
            return [self._row_to_schedule(r) for r in result.scalars()]

    # ── Prompt library ─────────────────────────────────────

    async def get_prompt(self, prompt_id: str) -> Optional[AiPrompt]:
        async with get_session() as db:
            row = await db.get(AiPromptRow, prompt_id)
            if not row:
                return None
            return AiPrompt(
                id=row.id, owner_id=row.owner_id, name=row.name,
                prompt_body=row.prompt_body, tone=row.tone, language=row.language,
            )

    async def save_prompt(self, prompt: AiPrompt) -> AiPrompt:
        async with get_session() as db:
            await db.merge(AiPromptRow(
                id=prompt.id, owner_id=prompt.owner_id, name=prompt.name,
                prompt_body=prompt.prompt_body, tone=prompt.tone, language=prompt.language,
            ))
        return prompt

    async def list_example_messages(self, section_id: str) -> list[ExampleMessage]:
        async with get_session() as db:
            stmt = (
                select(ExampleMessageRow)
                .where(ExampleMessageRow.section_id == section_id)
                .order_by(ExampleMessageRow.sort_order.asc())
            )
            result = await db.execute(stmt)
            return [
                ExampleMessage(id=r.id, section_id=r.section_id, body=r.body, sort_order=r.sort_order)
                for r in result.scalars()
            ]

    async def add_example_message(self, example: ExampleMessage) -> ExampleMessage:
        async with get_session() as db:
            db.add(ExampleMessageRow(
                id=example.id, section_id=example.section_id,
                body=example.body, sort_order=example.sort_order,
            ))
        return example

    # ── Activity ───────────────────────────────────────────

    async def log_activity(self, entry: ActivityEntry) -> None:
        async with get_session() as db:
            db.add(ActivityLogRow(
                id=entry.id, owner_id=entry.owner_id, org_id=entry.org_id,
                cadence_id=entry.cadence_id, cadence_step_id=entry.cadence_step_id,
                lead_id=entry.lead_id, action=entry.action, status=entry.status.value,
                details=entry.details, created_at=entry.created_at,
            ))

    async def list_activity(self, cadence_id: Optional[str] = None, limit: int = 100) -> list[ActivityEntry]:
        async with get_session() as db:
            stmt = select(ActivityLogRow)
            if cadence_id is not None:
                stmt = stmt.where(ActivityLogRow.cadence_id == cadence_id)
            stmt = stmt.order_by(ActivityLogRow.created_at.desc()).limit(limit)
            result = await db.execute(stmt)
            return [
                ActivityEntry(
                    id=r.id, owner_id=r.owner_id, org_id=r.org_id, cadence_id=r.cadence_id,
                    cadence_step_id=r.cadence_step_id, lead_id=r.lead_id, action=r.action,
                    status=ActivityStatus(r.status), details=r.details or {},
                    created_at=_aware(r.created_at),
                )
                for r in result.scalars()
            ]

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _row_to_cadence(row: CadenceRow) -> Cadence:
        return Cadence(
            id=row.id, owner_id=row.owner_id, name=row.name,
            automation_mode=AutomationMode(row.automation_mode),
            timezone=row.timezone, status=CadenceStatus(row.status),
            same_day_delay_hours=row.same_day_delay_hours,
            created_at=_aware(row.created_at),
        )

    @staticmethod
    def _row_to_step(row: CadenceStepRow) -> CadenceStep:
        return CadenceStep(
            id=row.id, cadence_id=row.cadence_id, owner_id=row.owner_id,
            step_type=row.step_type, step_label=row.step_label,
            day_offset=row.day_offset, order_in_day=row.order_in_day,
            config=row.config_json if isinstance(row.config_json, dict) else {},
        )

    @staticmethod
    def _row_to_cadence_lead(row: CadenceLeadRow) -> CadenceLead:
        return CadenceLead(
            id=row.id, cadence_id=row.cadence_id, lead_id=row.lead_id,
            owner_id=row.owner_id, current_step_id=row.current_step_id,
            status=CadenceLeadStatus(row.status),
            updated_at=_aware(row.updated_at) or _utcnow(),
        )

    @staticmethod
    def _row_to_instance(row: LeadStepInstanceRow) -> LeadStepInstance:
        return LeadStepInstance(
            id=row.id, cadence_id=row.cadence_id, cadence_step_id=row.cadence_step_id,
            lead_id=row.lead_id, owner_id=row.owner_id, status=InstanceStatus(row.status),
            message_rendered_text=row.message_rendered_text, last_error=row.last_error,
            result_snapshot=row.result_snapshot,
            updated_at=_aware(row.updated_at) or _utcnow(),
        )

    @staticmethod
    def _schedule_to_row(schedule: Schedule) -> ScheduleRow:
        return ScheduleRow(
            id=schedule.id, cadence_id=schedule.cadence_id,
            cadence_step_id=schedule.cadence_step_id, lead_id=schedule.lead_id,
            owner_id=schedule.owner_id, scheduled_at=schedule.scheduled_at,
            timezone=schedule.timezone, status=schedule.status.value,
            last_error=schedule.last_error,
            message_template_text=schedule.message_template_text,
            message_rendered_text=schedule.message_rendered_text,
            created_at=schedule.created_at,
        )

    @staticmethod
    def _row_to_schedule(row: ScheduleRow) -> Schedule:
        return Schedule(
            id=row.id, cadence_id=row.cadence_id, cadence_step_id=row.cadence_step_id,
            lead_id=row.lead_id, owner_id=row.owner_id, scheduled_at=row.scheduled_at,
            timezone=row.timezone, status=ScheduleStatus(row.status),
            last_error=row.last_error, message_template_text=row.message_template_text,
            message_rendered_text=row.message_rendered_text,
            created_at=_aware(row.created_at) or _utcnow(),
            updated_at=_aware(row.updated_at) or _utcnow(),
        )
