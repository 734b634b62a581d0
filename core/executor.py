"""
Schedule Executor — runs one due schedule from claim to terminal status.

    claim ──lost──▶ silent skip
      │
    duplicate? ──▶ skipped_due_to_state_change
      │
    step missing? ──▶ failed (lead stays where it is)
      │
    unsupported type? ──▶ skipped_due_to_state_change, advance
      │
    resolve content ──hard failure──▶ failed, advance
      │
    dispatch ──▶ executed | failed, advance

    unexpected error ──▶ failed, advance

Everything after a won claim ends in a terminal status; nothing is
retried.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from content.resolver import ContentResolver
from core.advancer import CadenceAdvancer
from core.dispatcher import ActionDispatcher
from database.store_base import BaseCadenceStore
from models.schemas import (
    ActivityEntry, ActivityStatus, AdvanceOutcome, CadenceStep, ExecutionContext,
    InstanceStatus, LeadStepInstance, ProcessResult, Schedule, ScheduleStatus,
)

logger = structlog.get_logger()

DUPLICATE_EXECUTED = "Duplicate: step already executed for this lead"
DUPLICATE_SENT = "Duplicate: lead_step_instance already sent"
STEP_NOT_FOUND = "Cadence step not found"


class ScheduleExecutor:

    def __init__(self, store: BaseCadenceStore, resolver: ContentResolver,
                 dispatcher: ActionDispatcher, advancer: CadenceAdvancer):
        self.store = store
        self.resolver = resolver
        self.dispatcher = dispatcher
        self.advancer = advancer

    async def process(self, schedule: Schedule, ctx: ExecutionContext) -> ProcessResult:
        ctx = ctx.for_owner(schedule.owner_id)
        log = logger.bind(schedule_id=schedule.id, lead_id=schedule.lead_id)

        if not await self.store.claim(schedule.id):
            log.info("schedule_claim_lost")
            return self._result(schedule, "skipped", True)

        try:
            return await self._run_claimed(schedule, ctx, log)
        except Exception as e:
            log.exception("schedule_processing_error")
            return await self.recover(schedule, str(e) or type(e).__name__)

    async def _run_claimed(self, schedule: Schedule, ctx: ExecutionContext, log) -> ProcessResult:
        # ── Persistent dedup ──────────────────────────────────
        if await self.store.has_executed_duplicate(schedule.cadence_step_id, schedule.lead_id, schedule.id):
            log.info("schedule_duplicate_skipped", reason="executed")
            await self.store.finish(schedule.id, ScheduleStatus.SKIPPED, DUPLICATE_EXECUTED)
            return self._result(schedule, "skipped", True)

        instance = await self.store.get_instance(schedule.cadence_step_id, schedule.lead_id)
        if instance and instance.status == InstanceStatus.SENT:
            log.info("schedule_duplicate_skipped", reason="instance_sent")
            await self.store.finish(schedule.id, ScheduleStatus.SKIPPED, DUPLICATE_SENT)
            return self._result(schedule, "skipped", True)

        # ── Step lookup ───────────────────────────────────────
        step = await self.store.get_step(schedule.cadence_step_id)
        if step is None:
            log.error("schedule_step_not_found", step_id=schedule.cadence_step_id)
            await self.store.finish(schedule.id, ScheduleStatus.FAILED, STEP_NOT_FOUND)
            return self._result(schedule, "unknown", False, STEP_NOT_FOUND)

        if step.kind is None:
            error = f"Unsupported step type: {step.step_type}"
            log.warning("schedule_unsupported_step", step_type=step.step_type)
            await self.store.finish(schedule.id, ScheduleStatus.SKIPPED, error)
            await self.advancer.advance(schedule, step)
            return self._result(schedule, step.step_type, False, error)

        if instance is None:
            instance = await self.store.upsert_instance(LeadStepInstance(
                cadence_id=schedule.cadence_id, cadence_step_id=step.id,
                lead_id=schedule.lead_id, owner_id=schedule.owner_id,
            ))

        # ── Content ───────────────────────────────────────────
        content = await self.resolver.resolve(schedule, step, ctx)
        if content.failed:
            log.error("schedule_content_failed", error=content.error)
            await self._fail(schedule, content.error)
            outcome = await self.advancer.advance(schedule, step)
            await self._log_activity(schedule, step, ctx, ActivityStatus.FAILED, outcome,
                                     error=content.error, ai_generated=False)
            return self._result(schedule, step.step_type, False, content.error)

        # ── Dispatch ──────────────────────────────────────────
        result = await self.dispatcher.dispatch(schedule, step, content, ctx, instance.id)

        if result.success:
            await self.store.finish(schedule.id, ScheduleStatus.EXECUTED)
            await self.store.update_instance(
                step.id, schedule.lead_id,
                status=InstanceStatus.SENT, result_snapshot=result.data, last_error=None,
            )
            log.info("schedule_executed", step_type=step.step_type)
        else:
            log.warning("schedule_dispatch_failed", step_type=step.step_type, error=result.error)
            await self._fail(schedule, result.error)

        outcome = await self.advancer.advance(schedule, step)
        await self._log_activity(
            schedule, step, ctx,
            ActivityStatus.OK if result.success else ActivityStatus.FAILED, outcome,
            result=result.data if result.success else None,
            error=None if result.success else result.error,
            ai_generated=content.generated,
        )
        return self._result(schedule, step.step_type, result.success, result.error if not result.success else None)

    async def recover(self, schedule: Schedule, error: str) -> ProcessResult:
        """
        Close out a schedule whose processing raised. The row is marked
        failed if still open and the lead moves on, so one bad item never
        leaves a lead parked on a step that already ran. Each write is
        best-effort.
        """
        log = logger.bind(schedule_id=schedule.id, lead_id=schedule.lead_id)
        try:
            current = await self.store.get_schedule(schedule.id)
            if current is None or current.status.is_open:
                await self.store.finish(schedule.id, ScheduleStatus.FAILED, error)
            instance = await self.store.get_instance(schedule.cadence_step_id, schedule.lead_id)
            if instance and instance.status != InstanceStatus.SENT:
                await self.store.update_instance(
                    schedule.cadence_step_id, schedule.lead_id,
                    status=InstanceStatus.FAILED, last_error=error,
                )
        except Exception as mark_error:
            log.error("schedule_mark_failed_error", error=str(mark_error))

        step_type = "unknown"
        try:
            step = await self.store.get_step(schedule.cadence_step_id)
            if step is not None:
                step_type = step.step_type
                outcome = await self.advancer.advance(schedule, step)
                log.info("schedule_recovered", advanced=outcome.advanced, completed=outcome.completed)
        except Exception as advance_error:
            log.error("schedule_recover_advance_failed", error=str(advance_error))

        return self._result(schedule, step_type, False, error)

    # ── Helpers ───────────────────────────────────────────────

    async def _fail(self, schedule: Schedule, error: Optional[str]) -> None:
        await self.store.finish(schedule.id, ScheduleStatus.FAILED, error)
        await self.store.update_instance(
            schedule.cadence_step_id, schedule.lead_id,
            status=InstanceStatus.FAILED, last_error=error,
        )

    async def _log_activity(self, schedule: Schedule, step: CadenceStep, ctx: ExecutionContext,
                            status: ActivityStatus, outcome: AdvanceOutcome,
                            result: Optional[dict[str, Any]] = None,
                            error: Optional[str] = None, ai_generated: bool = False) -> None:
        details: dict[str, Any] = {
            "scheduleId": schedule.id,
            "advancedToNextStep": outcome.advanced,
            "nextStepId": outcome.next_step_id,
            "cadenceCompleted": outcome.completed,
            "aiGenerated": ai_generated,
        }
        if result is not None:
            details["result"] = result
        if error is not None:
            details["error"] = error
        await self.store.log_activity(ActivityEntry(
            owner_id=schedule.owner_id, org_id=ctx.org_id,
            cadence_id=schedule.cadence_id, cadence_step_id=step.id, lead_id=schedule.lead_id,
            action=f"queue_process_{step.step_type}", status=status, details=details,
        ))

    @staticmethod
    def _result(schedule: Schedule, step_type: str, success: bool,
                error: Optional[str] = None) -> ProcessResult:
        return ProcessResult(
            schedule_id=schedule.id, lead_id=schedule.lead_id,
            step_type=step_type, success=success, error=error,
        )
