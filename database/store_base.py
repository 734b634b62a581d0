"""
Abstract Cadence Store — Interface for all storage backends.

Implementations:
  - SqlCadenceStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryCadenceStore (dict-based, single-process, no persistence)

The schedule methods are the engine's only coordination point. claim() is
a compare-and-swap from "scheduled" to "processing"; every backend must
guarantee that exactly one of N concurrent callers gets True.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, Optional

from models.schemas import (
    ActivityEntry, AiPrompt, Cadence, CadenceLead, CadenceStep, ExampleMessage,
    InstanceStatus, LeadStepInstance, Schedule, ScheduleStatus,
)

DEFAULT_DUE_LIMIT = 50
MAX_DUE_LIMIT = 100


def clamp_limit(limit: int) -> int:
    return max(1, min(int(limit or DEFAULT_DUE_LIMIT), MAX_DUE_LIMIT))


def sort_steps(steps: Iterable[CadenceStep]) -> list[CadenceStep]:
    return sorted(steps, key=lambda s: s.position)


def next_step_after(steps: Iterable[CadenceStep], current: CadenceStep) -> Optional[CadenceStep]:
    """First step strictly after current in (day_offset, order_in_day) order."""
    later = [s for s in steps if s.position > current.position]
    return min(later, key=lambda s: s.position) if later else None


class BaseCadenceStore(ABC):
    """Interface that all cadence store backends must implement."""

    # ── Cadences ──────────────────────────────────────────────

    @abstractmethod
    async def get_cadence(self, cadence_id: str) -> Optional[Cadence]:
        ...

    @abstractmethod
    async def save_cadence(self, cadence: Cadence) -> Cadence:
        ...

    @abstractmethod
    async def update_cadence(self, cadence_id: str, **fields: Any) -> None:
        ...

    # ── Steps ─────────────────────────────────────────────────

    @abstractmethod
    async def get_step(self, step_id: str) -> Optional[CadenceStep]:
        ...

    @abstractmethod
    async def save_step(self, step: CadenceStep) -> CadenceStep:
        ...

    @abstractmethod
    async def list_steps(self, cadence_id: str) -> list[CadenceStep]:
        """All steps of a cadence, ordered by (day_offset, order_in_day)."""
        ...

    async def get_next_step(self, step: CadenceStep) -> Optional[CadenceStep]:
        return next_step_after(await self.list_steps(step.cadence_id), step)

    # ── Cadence leads ─────────────────────────────────────────

    @abstractmethod
    async def get_cadence_lead(self, cadence_id: str, lead_id: str) -> Optional[CadenceLead]:
        ...

    @abstractmethod
    async def save_cadence_lead(self, cadence_lead: CadenceLead) -> CadenceLead:
        """Insert or replace the row for (cadence_id, lead_id)."""
        ...

    @abstractmethod
    async def update_cadence_lead(self, cadence_id: str, lead_id: str, **fields: Any) -> None:
        ...

    # ── Lead step instances ───────────────────────────────────

    @abstractmethod
    async def get_instance(self, step_id: str, lead_id: str) -> Optional[LeadStepInstance]:
        ...

    @abstractmethod
    async def upsert_instance(self, instance: LeadStepInstance) -> LeadStepInstance:
        """Insert, or update status/text of the row for (cadence_step_id, lead_id)."""
        ...

    @abstractmethod
    async def update_instance(self, step_id: str, lead_id: str, **fields: Any) -> None:
        ...

    # ── Schedules ─────────────────────────────────────────────

    @abstractmethod
    async def create_schedule(self, schedule: Schedule) -> Schedule:
        ...

    async def create_schedules(self, schedules: list[Schedule]) -> list[Schedule]:
        return [await self.create_schedule(s) for s in schedules]

    @abstractmethod
    async def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        ...

    @abstractmethod
    async def select_due(self, now: datetime, limit: int = DEFAULT_DUE_LIMIT) -> list[Schedule]:
        """Scheduled rows with scheduled_at <= now, oldest first, at most limit (max 100)."""
        ...

    @abstractmethod
    async def claim(self, schedule_id: str) -> bool:
        """Move scheduled → processing. True only for the caller that won."""
        ...

    @abstractmethod
    async def finish(self, schedule_id: str, status: ScheduleStatus, error: Optional[str] = None) -> None:
        ...

    @abstractmethod
    async def find_open_schedule(self, step_id: str, lead_id: str) -> Optional[Schedule]:
        """A scheduled or processing row for (step, lead), if any."""
        ...

    @abstractmethod
    async def has_executed_duplicate(self, step_id: str, lead_id: str, exclude_id: str) -> bool:
        ...

    @abstractmethod
    async def cancel_open_schedules(self, cadence_id: str, lead_ids: list[str], reason: str) -> int:
        """Cancel rows still in 'scheduled' for these leads. Processing rows are left alone."""
        ...

    @abstractmethod
    async def list_schedules(self, cadence_id: str, lead_id: Optional[str] = None) -> list[Schedule]:
        ...

    # ── Prompt library ────────────────────────────────────────

    @abstractmethod
    async def get_prompt(self, prompt_id: str) -> Optional[AiPrompt]:
        ...

    @abstractmethod
    async def save_prompt(self, prompt: AiPrompt) -> AiPrompt:
        ...

    @abstractmethod
    async def list_example_messages(self, section_id: str) -> list[ExampleMessage]:
        """Examples of a section ordered by sort_order."""
        ...

    @abstractmethod
    async def add_example_message(self, example: ExampleMessage) -> ExampleMessage:
        ...

    # ── Activity ──────────────────────────────────────────────

    @abstractmethod
    async def log_activity(self, entry: ActivityEntry) -> None:
        ...

    @abstractmethod
    async def list_activity(self, cadence_id: Optional[str] = None, limit: int = 100) -> list[ActivityEntry]:
        """Most recent first."""
        ...


def instance_can_move_to(current: Optional[InstanceStatus], new: InstanceStatus) -> bool:
    """A sent instance is final; re-enrolment must not reopen it."""
    return current != InstanceStatus.SENT or new == InstanceStatus.SENT
