"""
Batch Runner — one queue-processing run.

Selects due schedules, then works through them strictly one at a time with
a random pause between items so channel APIs never see a burst. Runs keep
no state between invocations; overlapping runs are safe because every item
goes through the store's claim first.
"""
from __future__ import annotations

import asyncio
import random
import structlog
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from core.errors import BatchQueryError
from core.executor import ScheduleExecutor
from database.store_base import BaseCadenceStore
from models.schemas import (
    BatchOptions, BatchReport, ExecutionContext, ProcessResult, Schedule, ScheduleStatus,
)

logger = structlog.get_logger()

BATCH_DUPLICATE = "Duplicate: same lead+step already processed in batch"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueRunner:

    def __init__(self, store: BaseCadenceStore, executor: ScheduleExecutor,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 clock: Callable[[], datetime] = _utcnow,
                 rng: Optional[random.Random] = None):
        self.store = store
        self.executor = executor
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()

    async def run(self, options: BatchOptions, ctx: ExecutionContext) -> BatchReport:
        try:
            due = await self.store.select_due(self._clock(), options.limit)
        except Exception as e:
            logger.error("queue_select_failed", error=str(e))
            raise BatchQueryError() from e

        if not due:
            logger.info("queue_empty")
            return BatchReport(message="No scheduled items to process")

        if options.dry_run:
            logger.info("queue_dry_run", would_process=len(due))
            return BatchReport(
                message="Dry run - no items processed",
                dry_run=True,
                would_process=[
                    {
                        "id": s.id,
                        "leadId": s.lead_id,
                        "cadenceStepId": s.cadence_step_id,
                        "scheduledAt": s.scheduled_at.isoformat(),
                    }
                    for s in due
                ],
            )

        logger.info("queue_run_started", due=len(due), limit=options.limit)
        results: list[ProcessResult] = []
        seen: set[tuple[str, str]] = set()

        for index, schedule in enumerate(due):
            if schedule.dedup_key in seen:
                logger.info("queue_batch_duplicate", schedule_id=schedule.id, lead_id=schedule.lead_id)
                try:
                    await self.store.finish(schedule.id, ScheduleStatus.SKIPPED, BATCH_DUPLICATE)
                except Exception as e:
                    logger.error("queue_batch_duplicate_mark_failed", schedule_id=schedule.id, error=str(e))
                continue
            seen.add(schedule.dedup_key)

            results.append(await self._process_one(schedule, ctx))

            if index < len(due) - 1:
                delay_ms = self._rng.randint(options.min_delay_ms, options.max_delay_ms)
                logger.debug("queue_delay", ms=delay_ms)
                await self._sleep(delay_ms / 1000)

        succeeded = sum(1 for r in results if r.success)
        report = BatchReport(
            message=f"Processed {len(results)} scheduled items",
            processed=len(results),
            succeeded=succeeded,
            failed=len(results) - succeeded,
            results=results,
        )
        logger.info("queue_run_finished", processed=report.processed,
                    succeeded=report.succeeded, failed=report.failed)
        return report

    async def _process_one(self, schedule: Schedule, ctx: ExecutionContext) -> ProcessResult:
        try:
            return await self.executor.process(schedule, ctx)
        except Exception as e:
            logger.exception("schedule_processing_error", schedule_id=schedule.id)
            error = str(e) or type(e).__name__
            try:
                return await self.executor.recover(schedule, error)
            except Exception as recover_error:
                logger.error("schedule_recover_error", schedule_id=schedule.id, error=str(recover_error))
            return ProcessResult(
                schedule_id=schedule.id, lead_id=schedule.lead_id,
                step_type="unknown", success=False, error=error,
            )
