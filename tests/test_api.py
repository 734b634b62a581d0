"""Tests for the HTTP surface."""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from fastapi.testclient import TestClient

from channels.base import build_registry
from channels.post_lookup import MockPostLookup
from config.settings import ChannelsConfig, Settings
from content.provider import MockContentProvider
from core.engine import CadenceEngine
from database.store_memory import InMemoryCadenceStore
from models.schemas import (
    AutomationMode, Cadence, CadenceLeadStatus, CadenceStep, Schedule, ScheduleStatus,
)

AUTH = {"Authorization": "Bearer test-token"}


@pytest.fixture
def engine(fake_sleep):
    return CadenceEngine(
        Settings(),
        store=InMemoryCadenceStore(),
        registry=build_registry(ChannelsConfig(adapter="mock")),
        post_lookup=MockPostLookup(),
        provider=MockContentProvider(message="Generated text"),
        sleep=fake_sleep,
    )


@pytest.fixture
def client(engine, monkeypatch):
    import api.main as main
    monkeypatch.setattr(main, "engine", engine)
    return TestClient(main.app)


@pytest.fixture
async def seeded(engine):
    store = engine.store
    cadence = Cadence(id="cad_1", owner_id="owner_1", automation_mode=AutomationMode.AUTOMATED)
    await store.save_cadence(cadence)
    step = CadenceStep(id="st_1", cadence_id="cad_1", step_type="linkedin_message",
                       config={"message_template": "Hi"})
    await store.save_step(step)
    due = datetime.now(timezone.utc) - timedelta(minutes=1)
    for i in range(3):
        await store.create_schedule(Schedule(
            id=f"sch_{i}", cadence_id="cad_1", cadence_step_id="st_1", lead_id=f"lead_{i}",
            owner_id="owner_1", scheduled_at=due,
        ))
    return store


class TestHealth:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["store_backend"] == "InMemoryCadenceStore"
        assert "send_email" in body["step_types"]


class TestProcessQueue:
    def test_missing_authorization(self, client):
        resp = client.post("/functions/v1/process-queue", json={})
        assert resp.status_code == 401
        assert resp.json() == {"success": False, "error": "Missing authorization header"}

    def test_empty_queue(self, client):
        resp = client.post("/functions/v1/process-queue", headers=AUTH, json={})
        assert resp.status_code == 200
        body = resp.json()
        assert body["message"] == "No scheduled items to process"
        assert body["processed"] == 0
        assert body["results"] == []

    def test_invalid_json_uses_defaults(self, client):
        resp = client.post("/api/v1/process-queue", headers={**AUTH, "Content-Type": "application/json"},
                           content=b"{not json")
        assert resp.status_code == 200
        assert resp.json()["success"] is True

    @pytest.mark.asyncio
    async def test_dry_run(self, client, seeded):
        resp = client.post("/functions/v1/process-queue", headers=AUTH,
                           json={"dryRun": True, "limit": 2})
        body = resp.json()
        assert body["message"] == "Dry run - no items processed"
        assert body["wouldProcess"] == 2
        assert {"id", "leadId", "cadenceStepId", "scheduledAt"} == set(body["schedules"][0])
        assert (await seeded.get_schedule("sch_0")).status == ScheduleStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_processes_batch(self, client, seeded, fake_sleep):
        resp = client.post("/functions/v1/process-queue", headers=AUTH,
                           json={"minDelayMs": 10, "maxDelayMs": 20})
        body = resp.json()
        assert body["message"] == "Processed 3 scheduled items"
        assert (body["processed"], body["succeeded"], body["failed"]) == (3, 3, 0)
        assert {r["leadId"] for r in body["results"]} == {"lead_0", "lead_1", "lead_2"}
        assert len(fake_sleep.calls) == 2
        assert all(0.01 <= s <= 0.02 for s in fake_sleep.calls)

    def test_query_failure(self, client, engine):
        engine.store.select_due = AsyncMock(side_effect=RuntimeError("db down"))
        resp = client.post("/functions/v1/process-queue", headers=AUTH, json={})
        assert resp.status_code == 500
        assert resp.json() == {"success": False, "error": "Failed to query schedules"}

    def test_unexpected_error(self, client, engine):
        engine.runner.run = AsyncMock(side_effect=RuntimeError("boom"))
        resp = client.post("/functions/v1/process-queue", headers=AUTH, json={})
        assert resp.status_code == 500
        assert resp.json() == {"success": False, "error": "boom"}


class TestAutomationEndpoints:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, client, seeded):
        resp = client.post("/api/v1/cadences/cad_1/automation", headers=AUTH,
                           json={"lead_ids": ["lead_9"], "timezone": "Europe/Madrid",
                                 "step_overrides": {"st_1": {"scheduled_time": "10:15"}}})
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["schedules_created"] == 1
        assert body["step_times"] == {"st_1": "10:15"}

        resp = client.post("/api/v1/cadences/cad_1/leads/lead_9/stop", headers=AUTH)
        assert resp.status_code == 200
        assert resp.json()["canceled_schedules"] == 1
        lead = await seeded.get_cadence_lead("cad_1", "lead_9")
        assert lead.status == CadenceLeadStatus.REPLIED

    def test_start_unknown_cadence(self, client):
        resp = client.post("/api/v1/cadences/nope/automation", headers=AUTH, json={"lead_ids": ["l1"]})
        assert resp.status_code == 404

    def test_start_requires_leads(self, client):
        resp = client.post("/api/v1/cadences/cad_1/automation", headers=AUTH, json={"lead_ids": []})
        assert resp.status_code == 422

    def test_invalid_override_time(self, client):
        resp = client.post("/api/v1/cadences/cad_1/automation", headers=AUTH,
                           json={"lead_ids": ["l1"], "step_overrides": {"st_1": {"scheduled_time": "99:99"}}})
        assert resp.status_code == 422
