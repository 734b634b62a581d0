"""
InMemoryCadenceStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlCadenceStore
  - claim() is atomic under asyncio: the status check and the write
    happen with no await in between
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from database.store_base import (
    BaseCadenceStore, DEFAULT_DUE_LIMIT, clamp_limit, instance_can_move_to, sort_steps,
)
from models.schemas import (
    ActivityEntry, AiPrompt, Cadence, CadenceLead, CadenceStep, ExampleMessage,
    LeadStepInstance, Schedule, ScheduleStatus,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryCadenceStore(BaseCadenceStore):
    """
    Full-featured in-memory store with the same interface as SqlCadenceStore.
    Keeps pydantic models and hands out copies so callers can't mutate state.
    """

    def __init__(self):
        self._cadences: dict[str, Cadence] = {}
        self._steps: dict[str, CadenceStep] = {}
        self._cadence_leads: dict[tuple[str, str], CadenceLead] = {}      # (cadence_id, lead_id)
        self._instances: dict[tuple[str, str], LeadStepInstance] = {}    # (step_id, lead_id)
        self._schedules: dict[str, Schedule] = {}
        self._prompts: dict[str, AiPrompt] = {}
        self._examples: dict[str, ExampleMessage] = {}
        self._activity: list[ActivityEntry] = []
        logger.info("inmemory_store_initialized")

    # ── Cadences ──────────────────────────────────────────

    async def get_cadence(self, cadence_id: str) -> Optional[Cadence]:
        cadence = self._cadences.get(cadence_id)
        return cadence.model_copy() if cadence else None

    async def save_cadence(self, cadence: Cadence) -> Cadence:
        self._cadences[cadence.id] = cadence.model_copy()
        return cadence

    async def update_cadence(self, cadence_id: str, **fields: Any) -> None:
        cadence = self._cadences.get(cadence_id)
        if cadence:
            self._cadences[cadence_id] = cadence.model_copy(update=fields)

    # ── Steps ─────────────────────────────────────────────

    async def get_step(self, step_id: str) -> Optional[CadenceStep]:
        step = self._steps.get(step_id)
        return step.model_copy(deep=True) if step else None

    async def save_step(self, step: CadenceStep) -> CadenceStep:
        self._steps[step.id] = step.model_copy(deep=True)
        return step

    async def list_steps(self, cadence_id: str) -> list[CadenceStep]:
        return sort_steps(
            s.model_copy(deep=True) for s in self._steps.values() if s.cadence_id == cadence_id
        )

    # ── Cadence leads ─────────────────────────────────────

    async def get_cadence_lead(self, cadence_id: str, lead_id: str) -> Optional[CadenceLead]:
        row = self._cadence_leads.get((cadence_id, lead_id))
        return row.model_copy() if row else None

    async def save_cadence_lead(self, cadence_lead: CadenceLead) -> CadenceLead:
        key = (cadence_lead.cadence_id, cadence_lead.lead_id)
        existing = self._cadence_leads.get(key)
        if existing:
            cadence_lead = cadence_lead.model_copy(update={"id": existing.id})
        self._cadence_leads[key] = cadence_lead.model_copy(update={"updated_at": _utcnow()})
        return cadence_lead

    async def update_cadence_lead(self, cadence_id: str, lead_id: str, **fields: Any) -> None:
        key = (cadence_id, lead_id)
        row = self._cadence_leads.get(key)
        if row:
            self._cadence_leads[key] = row.model_copy(update={**fields, "updated_at": _utcnow()})

    # ── Lead step instances ───────────────────────────────

    async def get_instance(self, step_id: str, lead_id: str) -> Optional[LeadStepInstance]:
        row = self._instances.get((step_id, lead_id))
        return row.model_copy(deep=True) if row else None

    async def upsert_instance(self, instance: LeadStepInstance) -> LeadStepInstance:
        key = (instance.cadence_step_id, instance.lead_id)
        existing = self._instances.get(key)
        if existing is None:
            self._instances[key] = instance.model_copy(deep=True)
            return instance
        if not instance_can_move_to(existing.status, instance.status):
            return existing.model_copy(deep=True)
        updated = existing.model_copy(update={
            "status": instance.status,
            "message_rendered_text": instance.message_rendered_text or existing.message_rendered_text,
            "last_error": instance.last_error,
            "updated_at": _utcnow(),
        })
        self._instances[key] = updated
        return updated.model_copy(deep=True)

    async def update_instance(self, step_id: str, lead_id: str, **fields: Any) -> None:
        key = (step_id, lead_id)
        row = self._instances.get(key)
        if row:
            self._instances[key] = row.model_copy(update={**fields, "updated_at": _utcnow()})

    # ── Schedules ─────────────────────────────────────────

    async def create_schedule(self, schedule: Schedule) -> Schedule:
        self._schedules[schedule.id] = schedule.model_copy()
        return schedule

    async def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        row = self._schedules.get(schedule_id)
        return row.model_copy() if row else None

    async def select_due(self, now: datetime, limit: int = DEFAULT_DUE_LIMIT) -> list[Schedule]:
        due = [
            s for s in self._schedules.values()
            if s.status == ScheduleStatus.SCHEDULED and s.scheduled_at <= now
        ]
        due.sort(key=lambda s: s.scheduled_at)
        return [s.model_copy() for s in due[:clamp_limit(limit)]]

    async def claim(self, schedule_id: str) -> bool:
        row = self._schedules.get(schedule_id)
        if row is None or row.status != ScheduleStatus.SCHEDULED:
            return False
        self._schedules[schedule_id] = row.model_copy(update={
            "status": ScheduleStatus.PROCESSING, "updated_at": _utcnow(),
        })
        return True

    async def finish(self, schedule_id: str, status: ScheduleStatus, error: Optional[str] = None) -> None:
        row = self._schedules.get(schedule_id)
        if row:
            self._schedules[schedule_id] = row.model_copy(update={
                "status": status, "last_error": error, "updated_at": _utcnow(),
            })

    async def find_open_schedule(self, step_id: str, lead_id: str) -> Optional[Schedule]:
        for s in self._schedules.values():
            if s.cadence_step_id == step_id and s.lead_id == lead_id and s.status.is_open:
                return s.model_copy()
        return None

    async def has_executed_duplicate(self, step_id: str, lead_id: str, exclude_id: str) -> bool:
        return any(
            s.cadence_step_id == step_id and s.lead_id == lead_id
            and s.status == ScheduleStatus.EXECUTED and s.id != exclude_id
            for s in self._schedules.values()
        )

    async def cancel_open_schedules(self, cadence_id: str, lead_ids: list[str], reason: str) -> int:
        wanted = set(lead_ids)
        canceled = 0
        for sid, s in list(self._schedules.items()):
            if s.cadence_id == cadence_id and s.lead_id in wanted and s.status == ScheduleStatus.SCHEDULED:
                self._schedules[sid] = s.model_copy(update={
                    "status": ScheduleStatus.CANCELED, "last_error": reason, "updated_at": _utcnow(),
                })
                canceled += 1
        return canceled

    async def list_schedules(self, cadence_id: str, lead_id: Optional[str] = None) -> list[Schedule]:
        rows = [
            s.model_copy() for s in self._schedules.values()
            if s.cadence_id == cadence_id and (lead_id is None or s.lead_id == lead_id)
        ]
        rows.sort(key=lambda s: s.scheduled_at)
        return rows

    # ── Prompt library ────────────────────────────────────

    async def get_prompt(self, prompt_id: str) -> Optional[AiPrompt]:
        prompt = self._prompts.get(prompt_id)
        return prompt.model_copy() if prompt else None

    async def save_prompt(self, prompt: AiPrompt) -> AiPrompt:
        self._prompts[prompt.id] = prompt.model_copy()
        return prompt

    async def list_example_messages(self, section_id: str) -> list[ExampleMessage]:
        rows = [e.model_copy() for e in self._examples.values() if e.section_id == section_id]
        rows.sort(key=lambda e: e.sort_order)
        return rows

    async def add_example_message(self, example: ExampleMessage) -> ExampleMessage:
        self._examples[example.id] = example.model_copy()
        return example

    # ── Activity ──────────────────────────────────────────

    async def log_activity(self, entry: ActivityEntry) -> None:
        self._activity.append(entry.model_copy(deep=True))

    async def list_activity(self, cadence_id: Optional[str] = None, limit: int = 100) -> list[ActivityEntry]:
        rows = [a for a in self._activity if cadence_id is None or a.cadence_id == cadence_id]
        return [a.model_copy(deep=True) for a in reversed(rows[-limit:])]
