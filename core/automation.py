"""
Automation start/stop for a cadence.

start() enrols leads and pre-creates one schedule per step per lead, so
the runner finds the whole cadence on the queue. The advancer only fills
gaps (steps added later, or schedules canceled in between).

stop_lead() pulls a lead out of a cadence, e.g. when they reply. Only
schedules still waiting are canceled; one already being processed runs
to completion.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from pydantic import BaseModel, Field, field_validator

from core.errors import CadenceHasNoStepsError, CadenceNotFoundError
from core.timezones import DEFAULT_TIMEZONE, compute_fire_time
from database.store_base import BaseCadenceStore
from models.schemas import (
    ActivityEntry, AutomationMode, CadenceLead, CadenceLeadStatus, CadenceStatus,
    CadenceStep, ExecutionContext, InstanceStatus, LeadStepInstance, Schedule,
    ScheduleStatus, normalize_hhmm,
)

logger = structlog.get_logger()

REPLACED_REASON = "Replaced by new automation run"
REPLIED_REASON = "Lead replied - cadence paused"

LAST_HOUR = 23
IMMEDIATE_BASE_SECONDS = 60
STEP_GAP_SECONDS = 30


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepOverrides(BaseModel):
    """
    Per-step settings chosen when automation starts. Only fields that were
    explicitly set are written; an explicit None clears the key.
    """
    scheduled_time: Optional[str] = None
    ai_prompt_id: Optional[str] = None
    ai_research_prompt_id: Optional[str] = None
    ai_example_section_id: Optional[str] = None
    template_id: Optional[str] = None
    message_template: Optional[str] = None
    send_note: Optional[bool] = None

    @field_validator("scheduled_time")
    @classmethod
    def _valid_time(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        normalized = normalize_hhmm(value)
        if normalized is None:
            raise ValueError(f"scheduled_time must be HH:MM, got {value!r}")
        return normalized


class StartReport(BaseModel):
    cadence_id: str
    lead_count: int
    step_count: int
    schedules_created: int
    schedules_replaced: int
    timezone: str
    first_fire_at: Optional[datetime] = None
    step_times: dict[str, str] = Field(default_factory=dict)


def default_step_times(steps: list[CadenceStep], first_time: str = "09:00") -> dict[str, str]:
    """
    first_time for the first step of each day, one hour later for each further
    step that day (never past 23:00). A configured scheduled_time wins.
    """
    first_hour, minute = (normalize_hhmm(first_time) or "09:00").split(":")
    times: dict[str, str] = {}
    hour, last_day = int(first_hour), None
    for step in steps:
        if step.day_offset != last_day:
            hour, last_day = int(first_hour), step.day_offset
        configured = step.typed_config().scheduled_time
        times[step.id] = configured or f"{min(hour, LAST_HOUR):02d}:{minute}"
        hour += 1
    return times


class AutomationStarter:

    def __init__(self, store: BaseCadenceStore,
                 default_timezone: str = DEFAULT_TIMEZONE,
                 lead_stagger_seconds: int = 10,
                 first_step_time: str = "09:00",
                 clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.default_timezone = default_timezone
        self.lead_stagger_seconds = lead_stagger_seconds
        self.first_step_time = first_step_time
        self._clock = clock

    async def start(self, cadence_id: str, lead_ids: list[str], ctx: ExecutionContext,
                    timezone_name: Optional[str] = None,
                    overrides: Optional[dict[str, StepOverrides]] = None) -> StartReport:
        cadence = await self.store.get_cadence(cadence_id)
        if cadence is None:
            raise CadenceNotFoundError(cadence_id)
        steps = await self.store.list_steps(cadence_id)
        if not steps:
            raise CadenceHasNoStepsError(cadence_id)

        lead_ids = list(dict.fromkeys(lead_ids))
        owner_id = ctx.owner_id or cadence.owner_id
        tz = timezone_name or cadence.timezone or self.default_timezone
        overrides = overrides or {}
        now = self._clock()

        # Persist the chosen times and per-step overrides into step configs
        times = default_step_times(steps, self.first_step_time)
        for step in steps:
            override = overrides.get(step.id)
            config = dict(step.config)
            if override is not None:
                for key in override.model_fields_set:
                    config[key] = getattr(override, key)
                if override.scheduled_time:
                    times[step.id] = override.scheduled_time
            config["scheduled_time"] = times[step.id]
            if config != step.config:
                await self.store.save_step(step.model_copy(update={"config": config}))

        first = steps[0]
        for lead_id in lead_ids:
            await self.store.save_cadence_lead(CadenceLead(
                cadence_id=cadence_id, lead_id=lead_id, owner_id=owner_id,
                current_step_id=first.id, status=CadenceLeadStatus.SCHEDULED,
            ))
            for step in steps:
                await self.store.upsert_instance(LeadStepInstance(
                    cadence_id=cadence_id, cadence_step_id=step.id,
                    lead_id=lead_id, owner_id=owner_id, status=InstanceStatus.PENDING,
                ))

        schedules = self._build_schedules(steps, lead_ids, times, tz, owner_id, cadence_id, now)

        replaced = await self.store.cancel_open_schedules(cadence_id, lead_ids, REPLACED_REASON)
        await self.store.create_schedules(schedules)

        await self.store.update_cadence(
            cadence_id,
            automation_mode=AutomationMode.AUTOMATED, status=CadenceStatus.ACTIVE, timezone=tz,
        )
        await self.store.log_activity(ActivityEntry(
            owner_id=owner_id, org_id=ctx.org_id, cadence_id=cadence_id,
            action="automation_started",
            details={"lead_count": len(lead_ids), "step_count": len(steps), "first_step_id": first.id},
        ))
        logger.info("automation_started", cadence_id=cadence_id, leads=len(lead_ids),
                    steps=len(steps), schedules=len(schedules), replaced=replaced, timezone=tz)

        return StartReport(
            cadence_id=cadence_id, lead_count=len(lead_ids), step_count=len(steps),
            schedules_created=len(schedules), schedules_replaced=replaced, timezone=tz,
            first_fire_at=min((s.scheduled_at for s in schedules), default=None),
            step_times=times,
        )

    def _build_schedules(self, steps: list[CadenceStep], lead_ids: list[str], times: dict[str, str],
                         tz: str, owner_id: str, cadence_id: str, now: datetime) -> list[Schedule]:
        base_day = steps[0].day_offset
        stagger = self.lead_stagger_seconds
        schedules: list[Schedule] = []

        for step_index, step in enumerate(steps):
            step_at = compute_fire_time(times[step.id], step.day_offset - base_day, tz, now)
            already_passed = step_at <= now

            for lead_index, lead_id in enumerate(lead_ids):
                if already_passed:
                    offset = (IMMEDIATE_BASE_SECONDS
                              + step_index * (len(lead_ids) * stagger + STEP_GAP_SECONDS)
                              + lead_index * stagger)
                    fire_at = now + timedelta(seconds=offset)
                else:
                    fire_at = step_at + timedelta(seconds=lead_index * stagger)

                schedules.append(Schedule(
                    cadence_id=cadence_id, cadence_step_id=step.id, lead_id=lead_id,
                    owner_id=owner_id, scheduled_at=fire_at, timezone="UTC",
                    status=ScheduleStatus.SCHEDULED,
                ))
        return schedules

    async def stop_lead(self, cadence_id: str, lead_id: str, ctx: ExecutionContext,
                        reason: str = REPLIED_REASON,
                        status: CadenceLeadStatus = CadenceLeadStatus.REPLIED) -> int:
        canceled = await self.store.cancel_open_schedules(cadence_id, [lead_id], reason)
        await self.store.update_cadence_lead(cadence_id, lead_id, status=status)
        await self.store.log_activity(ActivityEntry(
            owner_id=ctx.owner_id or "", org_id=ctx.org_id, cadence_id=cadence_id,
            lead_id=lead_id, action="lead_removed",
            details={"reason": reason, "status": status.value, "canceled_schedules": canceled},
        ))
        logger.info("cadence_lead_stopped", cadence_id=cadence_id, lead_id=lead_id,
                    status=status.value, canceled=canceled)
        return canceled
