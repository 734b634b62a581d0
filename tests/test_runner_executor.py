"""
Tests for batch processing.

Covers:
  - Per-schedule state machine (claim, dedup, step lookup, content, dispatch)
  - Batch runner: in-batch dedup, delays, dry run, progress after failures
  - Racing automation runs that leave duplicate schedules
"""
import asyncio
import random
import httpx
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock

from channels.base import MockStepAdapter
from config.settings import ContentConfig
from content.provider import HttpContentProvider
from content.resolver import AUTO_FALLBACK_ERROR, ContentResolver
from core.advancer import CadenceAdvancer
from core.dispatcher import ActionDispatcher
from core.errors import BatchQueryError
from core.executor import DUPLICATE_EXECUTED, DUPLICATE_SENT, STEP_NOT_FOUND, ScheduleExecutor
from core.runner import BATCH_DUPLICATE
from models.schemas import (
    BatchOptions, CadenceLeadStatus, InstanceStatus, LeadStepInstance, Schedule,
    ScheduleStatus, StepType,
)

NO_DELAY = BatchOptions(min_delay_ms=0, max_delay_ms=0)


# ══════════════════════════════════════════════════════════════
#  EXECUTOR
# ══════════════════════════════════════════════════════════════

class TestScheduleExecutor:
    @pytest.mark.asyncio
    async def test_successful_send(self, store, make_cadence, enroll, executor, registry, ctx):
        cadence, (first, second) = await make_cadence([
            {"step_type": "linkedin_message", "config": {"message_template": "Hi there"}},
            {"step_type": "send_email", "day_offset": 1, "config": {"scheduled_time": "10:00"}},
        ])
        schedule = await enroll(cadence, first)

        result = await executor.process(schedule, ctx)

        assert result.success and result.error is None
        assert result.step_type == "linkedin_message"
        assert (await store.get_schedule(schedule.id)).status == ScheduleStatus.EXECUTED
        instance = await store.get_instance(first.id, "lead_1")
        assert instance.status == InstanceStatus.SENT
        assert instance.result_snapshot["mock"] is True
        sent = registry.get(StepType.LINKEDIN_MESSAGE).sent
        assert sent[0]["payload"]["message"] == "Hi there"
        lead = await store.get_cadence_lead(cadence.id, "lead_1")
        assert lead.current_step_id == second.id
        assert await store.find_open_schedule(second.id, "lead_1") is not None

    @pytest.mark.asyncio
    async def test_activity_logged(self, store, make_cadence, enroll, executor, ctx):
        cadence, (step,) = await make_cadence([{"config": {"message_template": "Hi"}}])
        schedule = await enroll(cadence, step)

        await executor.process(schedule, ctx)

        (entry,) = await store.list_activity(cadence.id)
        assert entry.action == "queue_process_linkedin_message"
        assert entry.org_id == "org_1"
        assert entry.details["scheduleId"] == schedule.id
        assert entry.details["cadenceCompleted"] is True
        assert entry.details["aiGenerated"] is False

    @pytest.mark.asyncio
    async def test_lost_claim_is_silent(self, store, make_cadence, enroll, executor, ctx):
        cadence, (step,) = await make_cadence([{}])
        schedule = await enroll(cadence, step)
        await store.claim(schedule.id)

        result = await executor.process(schedule, ctx)

        assert result.success and result.step_type == "skipped"
        assert (await store.get_schedule(schedule.id)).status == ScheduleStatus.PROCESSING
        assert await store.list_activity(cadence.id) == []

    @pytest.mark.asyncio
    async def test_already_executed_elsewhere(self, store, make_cadence, enroll, executor, registry, ctx):
        cadence, (step,) = await make_cadence([{}])
        await enroll(cadence, step, status=ScheduleStatus.EXECUTED)
        duplicate = await enroll(cadence, step)

        result = await executor.process(duplicate, ctx)

        assert result.success and result.step_type == "skipped"
        row = await store.get_schedule(duplicate.id)
        assert row.status == ScheduleStatus.SKIPPED
        assert row.last_error == DUPLICATE_EXECUTED
        assert registry.get(StepType.LINKEDIN_MESSAGE).sent == []

    @pytest.mark.asyncio
    async def test_instance_already_sent(self, store, make_cadence, enroll, executor, ctx):
        cadence, (step,) = await make_cadence([{}])
        schedule = await enroll(cadence, step)
        await store.upsert_instance(LeadStepInstance(cadence_id=cadence.id, cadence_step_id=step.id,
                                                     lead_id="lead_1", status=InstanceStatus.SENT))

        await executor.process(schedule, ctx)

        row = await store.get_schedule(schedule.id)
        assert row.status == ScheduleStatus.SKIPPED
        assert row.last_error == DUPLICATE_SENT

    @pytest.mark.asyncio
    async def test_missing_step_fails_without_advancing(self, store, make_cadence, enroll, executor, ctx):
        cadence, (step,) = await make_cadence([{}])
        schedule = await enroll(cadence, step)
        orphan = await store.create_schedule(schedule.model_copy(update={
            "id": "orphan", "cadence_step_id": "deleted_step",
        }))

        result = await executor.process(orphan, ctx)

        assert not result.success
        assert result.step_type == "unknown"
        assert result.error == STEP_NOT_FOUND
        assert (await store.get_schedule("orphan")).status == ScheduleStatus.FAILED
        lead = await store.get_cadence_lead(cadence.id, "lead_1")
        assert lead.current_step_id == step.id

    @pytest.mark.asyncio
    async def test_unsupported_step_skipped_and_advanced(self, store, make_cadence, enroll, executor, ctx):
        cadence, (odd, nxt) = await make_cadence([
            {"step_type": "linkedin_view_profile"},
            {"step_type": "linkedin_message", "day_offset": 1},
        ])
        schedule = await enroll(cadence, odd)

        result = await executor.process(schedule, ctx)

        assert not result.success
        assert result.error == "Unsupported step type: linkedin_view_profile"
        assert (await store.get_schedule(schedule.id)).status == ScheduleStatus.SKIPPED
        lead = await store.get_cadence_lead(cadence.id, "lead_1")
        assert lead.current_step_id == nxt.id

    @pytest.mark.asyncio
    async def test_content_failure_fails_and_advances(self, store, make_cadence, enroll, executor,
                                                      provider, registry, ctx):
        provider.failures = 1
        cadence, (email,) = await make_cadence([{"step_type": "send_email"}])
        schedule = await enroll(cadence, email)

        result = await executor.process(schedule, ctx)

        assert result.error == AUTO_FALLBACK_ERROR
        assert (await store.get_schedule(schedule.id)).status == ScheduleStatus.FAILED
        instance = await store.get_instance(email.id, "lead_1")
        assert instance.status == InstanceStatus.FAILED
        assert instance.last_error == AUTO_FALLBACK_ERROR
        assert (await store.get_cadence_lead(cadence.id, "lead_1")).status == CadenceLeadStatus.COMPLETED
        assert registry.get(StepType.SEND_EMAIL).sent == []

    @pytest.mark.asyncio
    async def test_adapter_failure_fails_and_advances(self, store, make_cadence, enroll, executor,
                                                      registry, ctx):
        registry.register(MockStepAdapter(StepType.LINKEDIN_CONNECT, fail_with="Invitation limit reached"))
        cadence, (connect, message) = await make_cadence([
            {"step_type": "linkedin_connect"},
            {"step_type": "linkedin_message", "day_offset": 2},
        ])
        schedule = await enroll(cadence, connect)

        result = await executor.process(schedule, ctx)

        assert not result.success
        assert result.error == "Invitation limit reached"
        row = await store.get_schedule(schedule.id)
        assert (row.status, row.last_error) == (ScheduleStatus.FAILED, "Invitation limit reached")
        assert (await store.get_cadence_lead(cadence.id, "lead_1")).current_step_id == message.id
        (entry,) = await store.list_activity(cadence.id)
        assert entry.status.value == "failed"
        assert entry.details["error"] == "Invitation limit reached"

    @pytest.mark.asyncio
    async def test_malformed_provider_reply_fails_and_advances(self, store, make_cadence, enroll,
                                                               registry, post_lookup, content_config,
                                                               fake_sleep, now, ctx):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={
            "success": True, "generatedMessage": "Hi", "generatedSubject": 123,
        })))
        provider = HttpContentProvider(ContentConfig(provider="http", base_url="https://fn.example.com"),
                                       client=client)
        executor = ScheduleExecutor(
            store, ContentResolver(store, provider, content_config, sleep=fake_sleep),
            ActionDispatcher(registry, post_lookup),
            CadenceAdvancer(store, clock=lambda: now, rng=random.Random(7)),
        )
        cadence, (email, message) = await make_cadence([
            {"step_type": "send_email", "day_offset": 0},
            {"step_type": "linkedin_message", "day_offset": 1, "config": {"scheduled_time": "10:00"}},
        ])
        schedule = await enroll(cadence, email)

        result = await executor.process(schedule, ctx)

        assert not result.success
        assert result.step_type == "send_email"
        assert result.error == AUTO_FALLBACK_ERROR
        assert (await store.get_schedule(schedule.id)).status == ScheduleStatus.FAILED
        assert (await store.get_cadence_lead(cadence.id, "lead_1")).current_step_id == message.id
        assert await store.find_open_schedule(message.id, "lead_1") is not None
        assert registry.get(StepType.SEND_EMAIL).sent == []

    @pytest.mark.asyncio
    async def test_unexpected_error_after_claim_fails_and_advances(self, store, make_cadence, enroll,
                                                                   executor, ctx, monkeypatch):
        cadence, (first, second) = await make_cadence([
            {"config": {"message_template": "Hi"}},
            {"day_offset": 1, "config": {"scheduled_time": "10:00"}},
        ])
        schedule = await enroll(cadence, first)
        monkeypatch.setattr(executor.dispatcher, "dispatch",
                            AsyncMock(side_effect=RuntimeError("adapter registry corrupted")))

        result = await executor.process(schedule, ctx)

        assert not result.success
        assert result.step_type == "linkedin_message"
        assert result.error == "adapter registry corrupted"
        row = await store.get_schedule(schedule.id)
        assert (row.status, row.last_error) == (ScheduleStatus.FAILED, "adapter registry corrupted")
        assert (await store.get_instance(first.id, "lead_1")).status == InstanceStatus.FAILED
        lead = await store.get_cadence_lead(cadence.id, "lead_1")
        assert lead.current_step_id == second.id
        assert lead.status == CadenceLeadStatus.SCHEDULED
        assert await store.find_open_schedule(second.id, "lead_1") is not None

    @pytest.mark.asyncio
    async def test_recover_keeps_executed_status(self, store, make_cadence, enroll, executor, ctx):
        cadence, (step,) = await make_cadence([{"config": {"message_template": "Hi"}}])
        schedule = await enroll(cadence, step)
        await store.finish(schedule.id, ScheduleStatus.EXECUTED)

        result = await executor.recover(schedule, "activity log unavailable")

        assert not result.success
        assert (await store.get_schedule(schedule.id)).status == ScheduleStatus.EXECUTED
        assert (await store.get_cadence_lead(cadence.id, "lead_1")).status == CadenceLeadStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_generated_content_is_sent(self, store, make_cadence, enroll, executor, registry, ctx):
        cadence, (comment,) = await make_cadence([
            {"step_type": "linkedin_comment", "config": {"post_url": "https://li/p/1"}},
        ])
        schedule = await enroll(cadence, comment)

        result = await executor.process(schedule, ctx)

        assert result.success
        payload = registry.get(StepType.LINKEDIN_COMMENT).sent[0]["payload"]
        assert payload["comment"] == "Hola Ana, ¿hablamos?"
        assert payload["postUrl"] == "https://li/p/1"
        (entry,) = await store.list_activity(cadence.id)
        assert entry.details["aiGenerated"] is True


# ══════════════════════════════════════════════════════════════
#  RUNNER
# ══════════════════════════════════════════════════════════════

class TestQueueRunner:
    @pytest.mark.asyncio
    async def test_empty_queue(self, runner, ctx):
        report = await runner.run(BatchOptions(), ctx)
        assert report.to_api() == {
            "success": True, "message": "No scheduled items to process",
            "processed": 0, "succeeded": 0, "failed": 0, "results": [],
        }

    @pytest.mark.asyncio
    async def test_dry_run_touches_nothing(self, store, make_cadence, enroll, runner, ctx):
        cadence, (step,) = await make_cadence([{}])
        schedule = await enroll(cadence, step)

        body = (await runner.run(BatchOptions(dry_run=True), ctx)).to_api()

        assert body["message"] == "Dry run - no items processed"
        assert body["wouldProcess"] == 1
        assert body["schedules"][0] == {
            "id": schedule.id, "leadId": "lead_1", "cadenceStepId": step.id,
            "scheduledAt": schedule.scheduled_at.isoformat(),
        }
        assert (await store.get_schedule(schedule.id)).status == ScheduleStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_future_schedules_not_selected(self, store, make_cadence, enroll, runner, now, ctx):
        cadence, (step,) = await make_cadence([{}])
        await enroll(cadence, step, scheduled_at=now + timedelta(minutes=10))
        report = await runner.run(NO_DELAY, ctx)
        assert report.processed == 0

    @pytest.mark.asyncio
    async def test_delay_between_items_only(self, store, make_cadence, enroll, runner, fake_sleep, ctx):
        cadence, (step,) = await make_cadence([{"config": {"message_template": "Hi"}}])
        for lead in ("a", "b", "c"):
            await enroll(cadence, step, lead_id=lead)

        report = await runner.run(BatchOptions(min_delay_ms=5000, max_delay_ms=10000), ctx)

        assert report.processed == 3
        assert len(fake_sleep.calls) == 2
        assert all(5.0 <= s <= 10.0 for s in fake_sleep.calls)

    @pytest.mark.asyncio
    async def test_batch_duplicate_processed_once(self, store, make_cadence, enroll, runner,
                                                  registry, fake_sleep, now, ctx):
        cadence, (step,) = await make_cadence([{"config": {"message_template": "Hi"}}])
        first = await enroll(cadence, step, scheduled_at=now - timedelta(minutes=5))
        second = await enroll(cadence, step, scheduled_at=now - timedelta(minutes=2))

        report = await runner.run(BatchOptions(min_delay_ms=1000, max_delay_ms=1000), ctx)

        assert report.processed == 1
        assert [r.schedule_id for r in report.results] == [first.id]
        assert len(registry.get(StepType.LINKEDIN_MESSAGE).sent) == 1
        row = await store.get_schedule(second.id)
        assert (row.status, row.last_error) == (ScheduleStatus.SKIPPED, BATCH_DUPLICATE)
        # One item processed, one delay before the skipped duplicate
        assert fake_sleep.calls == [1.0]

    @pytest.mark.asyncio
    async def test_progress_after_failures(self, store, make_cadence, enroll, runner, now, ctx):
        cadence, (odd, good) = await make_cadence([
            {"step_type": "fax", "day_offset": 0},
            {"step_type": "linkedin_message", "day_offset": 0, "config": {"message_template": "Hi"}},
        ])
        unsupported = await enroll(cadence, odd, lead_id="a")
        orphan = await store.create_schedule(Schedule(
            cadence_id=cadence.id, cadence_step_id="missing", lead_id="b",
            owner_id="owner_1", scheduled_at=now - timedelta(minutes=1),
        ))
        valid = await enroll(cadence, good, lead_id="c")

        report = await runner.run(NO_DELAY, ctx)

        assert report.processed == 3
        assert report.succeeded == 1
        assert report.failed == 2
        for schedule in (unsupported, orphan, valid):
            assert not (await store.get_schedule(schedule.id)).status.is_open

    @pytest.mark.asyncio
    async def test_unexpected_error_marks_failed_and_continues(self, store, make_cadence, enroll,
                                                               runner, executor, ctx, monkeypatch):
        cadence, (step, follow_up) = await make_cadence([
            {"config": {"message_template": "Hi"}},
            {"day_offset": 1, "config": {"scheduled_time": "10:00"}},
        ])
        broken = await enroll(cadence, step, lead_id="a")
        fine = await enroll(cadence, step, lead_id="b")
        original = executor.process

        async def flaky(schedule, run_ctx):
            if schedule.id == broken.id:
                raise RuntimeError("database went away")
            return await original(schedule, run_ctx)

        monkeypatch.setattr(executor, "process", flaky)
        report = await runner.run(NO_DELAY, ctx)

        by_id = {r.schedule_id: r for r in report.results}
        assert by_id[broken.id].error == "database went away"
        assert by_id[broken.id].step_type == "linkedin_message"
        assert by_id[fine.id].success
        assert (await store.get_schedule(broken.id)).status == ScheduleStatus.FAILED
        # the failed lead still moves on to its next step
        lead = await store.get_cadence_lead(cadence.id, "a")
        assert lead.current_step_id == follow_up.id
        assert await store.find_open_schedule(follow_up.id, "a") is not None

    @pytest.mark.asyncio
    async def test_duplicate_mark_failure_does_not_abort_batch(self, store, make_cadence, enroll, runner,
                                                               registry, now, ctx, monkeypatch):
        cadence, (step,) = await make_cadence([{"config": {"message_template": "Hi"}}])
        first = await enroll(cadence, step, lead_id="a", scheduled_at=now - timedelta(minutes=5))
        duplicate = await enroll(cadence, step, lead_id="a", scheduled_at=now - timedelta(minutes=3))
        other = await enroll(cadence, step, lead_id="b", scheduled_at=now - timedelta(minutes=1))
        original = store.finish

        async def finish(schedule_id, status, error=None):
            if error == BATCH_DUPLICATE:
                raise RuntimeError("lock wait timeout")
            return await original(schedule_id, status, error)

        monkeypatch.setattr(store, "finish", finish)
        report = await runner.run(NO_DELAY, ctx)

        assert [r.schedule_id for r in report.results] == [first.id, other.id]
        assert report.succeeded == 2
        assert len(registry.get(StepType.LINKEDIN_MESSAGE).sent) == 2
        assert (await store.get_schedule(duplicate.id)).status == ScheduleStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_select_failure_aborts_run(self, store, runner, ctx):
        store.select_due = AsyncMock(side_effect=RuntimeError("connection reset"))
        with pytest.raises(BatchQueryError, match="Failed to query schedules"):
            await runner.run(NO_DELAY, ctx)

    @pytest.mark.asyncio
    async def test_results_in_api_shape(self, make_cadence, enroll, runner, ctx):
        cadence, (step,) = await make_cadence([{"step_type": "fax"}])
        schedule = await enroll(cadence, step)
        body = (await runner.run(NO_DELAY, ctx)).to_api()
        assert body["message"] == "Processed 1 scheduled items"
        assert body["results"] == [{
            "scheduleId": schedule.id, "leadId": "lead_1", "stepType": "fax",
            "success": False, "error": "Unsupported step type: fax",
        }]


# ══════════════════════════════════════════════════════════════
#  CONCURRENCY
# ══════════════════════════════════════════════════════════════

class TestRacingRuns:
    @pytest.mark.asyncio
    async def test_duplicate_schedules_execute_once_across_runs(self, store, make_cadence, enroll,
                                                                executor, registry, ctx, now):
        from core.runner import QueueRunner
        cadence, (step,) = await make_cadence([{"config": {"message_template": "Hi"}}])
        # Two automation runs raced and each left a schedule for the same lead and step
        await enroll(cadence, step)
        await enroll(cadence, step)

        async def no_sleep(_):
            await asyncio.sleep(0)

        runners = [QueueRunner(store, executor, sleep=no_sleep, clock=lambda: now) for _ in range(3)]

        await asyncio.gather(*(r.run(NO_DELAY, ctx) for r in runners))

        assert len(registry.get(StepType.LINKEDIN_MESSAGE).sent) == 1
        statuses = sorted(s.status.value for s in await store.list_schedules(cadence.id))
        assert statuses == ["executed", "skipped_due_to_state_change"]

    @pytest.mark.asyncio
    async def test_overlapping_runs_claim_each_schedule_once(self, store, make_cadence, enroll,
                                                             executor, registry, ctx, now):
        from core.runner import QueueRunner
        cadence, (step,) = await make_cadence([{"config": {"message_template": "Hi"}}])
        for i in range(10):
            await enroll(cadence, step, lead_id=f"lead_{i}")

        async def yield_sleep(_):
            await asyncio.sleep(0)

        runners = [QueueRunner(store, executor, sleep=yield_sleep, clock=lambda: now) for _ in range(4)]
        await asyncio.gather(*(r.run(BatchOptions(min_delay_ms=1, max_delay_ms=1), ctx) for r in runners))

        sent = registry.get(StepType.LINKEDIN_MESSAGE).sent
        assert sorted(s["lead_id"] for s in sent) == sorted(f"lead_{i}" for i in range(10))
