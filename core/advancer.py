"""
Cadence Advancer — moves a lead past the step that was just processed.

Runs after every outcome, success or failure, so a broken step never
leaves a lead stuck. For automated cadences it also makes sure the next
step has a schedule.
"""
from __future__ import annotations

import random
import structlog
from datetime import datetime, timezone
from typing import Callable, Optional

from core.timezones import DEFAULT_TIMEZONE, fallback_fire_time, next_fire_time
from database.store_base import BaseCadenceStore
from models.schemas import (
    AdvanceOutcome, Cadence, CadenceLeadStatus, CadenceStep, InstanceStatus,
    LeadStepInstance, Schedule, ScheduleStatus,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CadenceAdvancer:

    def __init__(self, store: BaseCadenceStore,
                 default_timezone: str = DEFAULT_TIMEZONE,
                 clock: Callable[[], datetime] = _utcnow,
                 rng: Optional[random.Random] = None):
        self.store = store
        self.default_timezone = default_timezone
        self._clock = clock
        self._rng = rng or random.Random()

    async def advance(self, schedule: Schedule, step: CadenceStep) -> AdvanceOutcome:
        cadence_id, lead_id = schedule.cadence_id, schedule.lead_id
        next_step = await self.store.get_next_step(step)

        if next_step is None:
            await self.store.update_cadence_lead(
                cadence_id, lead_id,
                status=CadenceLeadStatus.COMPLETED, current_step_id=None,
            )
            logger.info("cadence_lead_completed", cadence_id=cadence_id, lead_id=lead_id)
            return AdvanceOutcome(completed=True)

        await self.store.update_cadence_lead(
            cadence_id, lead_id,
            current_step_id=next_step.id, status=CadenceLeadStatus.ACTIVE,
        )
        await self.store.upsert_instance(LeadStepInstance(
            cadence_id=cadence_id, cadence_step_id=next_step.id,
            lead_id=lead_id, owner_id=schedule.owner_id,
            status=InstanceStatus.PENDING,
        ))
        logger.info("cadence_lead_advanced", cadence_id=cadence_id, lead_id=lead_id,
                    next_step_id=next_step.id, next_step_label=next_step.step_label)

        outcome = AdvanceOutcome(advanced=True, next_step_id=next_step.id)

        cadence = await self.store.get_cadence(cadence_id)
        if cadence is None or not cadence.is_automated:
            return outcome

        existing = await self.store.find_open_schedule(next_step.id, lead_id)
        if existing:
            logger.info("next_schedule_exists", schedule_id=existing.id, lead_id=lead_id,
                        step_id=next_step.id)
            outcome.scheduled_at = existing.scheduled_at
        else:
            created = await self._schedule_next(schedule, step, next_step, cadence)
            outcome.scheduled_at = created.scheduled_at
            outcome.schedule_created = True

        await self.store.update_cadence_lead(cadence_id, lead_id, status=CadenceLeadStatus.SCHEDULED)
        return outcome

    async def _schedule_next(self, schedule: Schedule, step: CadenceStep,
                             next_step: CadenceStep, cadence: Cadence) -> Schedule:
        now = self._clock()
        tz = cadence.timezone or self.default_timezone
        day_diff = next_step.day_offset - step.day_offset
        local_time = next_step.typed_config().scheduled_time

        if local_time:
            fire_at = next_fire_time(local_time, day_diff, tz, now)
        else:
            fire_at = fallback_fire_time(day_diff, tz, now, cadence.same_day_delay_hours, self._rng)

        created = await self.store.create_schedule(Schedule(
            cadence_id=schedule.cadence_id,
            cadence_step_id=next_step.id,
            lead_id=schedule.lead_id,
            owner_id=schedule.owner_id,
            scheduled_at=fire_at,
            timezone="UTC",
            status=ScheduleStatus.SCHEDULED,
        ))
        logger.info("next_schedule_created", schedule_id=created.id, lead_id=schedule.lead_id,
                    step_id=next_step.id, scheduled_at=fire_at.isoformat(),
                    local_time=local_time, timezone=tz)
        return created
