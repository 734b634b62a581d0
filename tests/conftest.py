"""Shared test fixtures for the cadence engine."""
import random
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any

from channels.base import ChannelRegistry, MockStepAdapter
from channels.post_lookup import MockPostLookup
from config.settings import ContentConfig
from content.provider import MockContentProvider
from content.resolver import ContentResolver
from core.advancer import CadenceAdvancer
from core.dispatcher import ActionDispatcher
from core.executor import ScheduleExecutor
from core.runner import QueueRunner
from database.store_memory import InMemoryCadenceStore
from models.schemas import (
    AutomationMode, Cadence, CadenceLead, CadenceLeadStatus, CadenceStep,
    ExecutionContext, Schedule, StepType,
)

NOW = datetime(2024, 3, 5, 13, 0, tzinfo=timezone.utc)


class FakeSleep:
    """Records requested delays instead of waiting."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def store() -> InMemoryCadenceStore:
    return InMemoryCadenceStore()


@pytest.fixture
def ctx() -> ExecutionContext:
    return ExecutionContext(token="Bearer test-token", owner_id="owner_1", org_id="org_1")


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def provider() -> MockContentProvider:
    return MockContentProvider(message="Hola Ana, ¿hablamos?")


@pytest.fixture
def post_lookup() -> MockPostLookup:
    return MockPostLookup()


@pytest.fixture
def registry() -> ChannelRegistry:
    registry = ChannelRegistry()
    for step_type in StepType:
        registry.register(MockStepAdapter(step_type))
    return registry


@pytest.fixture
def content_config() -> ContentConfig:
    return ContentConfig(max_attempts=2, retry_backoff_seconds=3.0)


@pytest.fixture
def make_cadence(store):
    async def _make(steps: list[dict[str, Any]], automated: bool = True,
                    tz: str = "America/New_York", **kwargs) -> tuple[Cadence, list[CadenceStep]]:
        cadence = Cadence(
            owner_id="owner_1", name="Q1 outreach", timezone=tz,
            automation_mode=AutomationMode.AUTOMATED if automated else AutomationMode.MANUAL,
            **kwargs,
        )
        await store.save_cadence(cadence)
        saved = []
        for i, spec in enumerate(steps):
            step = CadenceStep(
                cadence_id=cadence.id,
                owner_id="owner_1",
                step_type=spec.get("step_type", "linkedin_message"),
                step_label=spec.get("label", f"Step {i + 1}"),
                day_offset=spec.get("day_offset", 0),
                order_in_day=spec.get("order_in_day", i),
                config=spec.get("config", {}),
            )
            await store.save_step(step)
            saved.append(step)
        return cadence, saved
    return _make


@pytest.fixture
def enroll(store):
    async def _enroll(cadence: Cadence, step: CadenceStep, lead_id: str = "lead_1",
                      scheduled_at: datetime = NOW - timedelta(minutes=1), **kwargs) -> Schedule:
        await store.save_cadence_lead(CadenceLead(
            cadence_id=cadence.id, lead_id=lead_id, owner_id=cadence.owner_id,
            current_step_id=step.id, status=CadenceLeadStatus.SCHEDULED,
        ))
        return await store.create_schedule(Schedule(
            cadence_id=cadence.id, cadence_step_id=step.id, lead_id=lead_id,
            owner_id=cadence.owner_id, scheduled_at=scheduled_at, **kwargs,
        ))
    return _enroll


@pytest.fixture
def executor(store, provider, registry, post_lookup, content_config, fake_sleep, now):
    resolver = ContentResolver(store, provider, content_config, sleep=fake_sleep)
    dispatcher = ActionDispatcher(registry, post_lookup)
    advancer = CadenceAdvancer(store, clock=lambda: now, rng=random.Random(7))
    return ScheduleExecutor(store, resolver, dispatcher, advancer)


@pytest.fixture
def runner(store, executor, fake_sleep, now):
    return QueueRunner(store, executor, sleep=fake_sleep, clock=lambda: now, rng=random.Random(3))
