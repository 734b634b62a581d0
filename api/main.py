"""
FastAPI Application — queue processing and cadence automation endpoints.

Provides:
- The process-queue endpoint a cron trigger calls every few minutes
- Automation start for a cadence and out-of-band stop for one lead
- Health and adapter metrics
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config.settings import get_settings
from core.automation import REPLIED_REASON, StepOverrides
from core.engine import CadenceEngine
from core.errors import BatchQueryError, CadenceHasNoStepsError, CadenceNotFoundError
from database.session import close_db, init_db
from models.schemas import CadenceLeadStatus, ExecutionContext

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

settings = get_settings()
engine = CadenceEngine.from_settings(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.database.store_backend == "sql":
        await init_db(settings.database.url)

    logger.info("cadence_engine_started",
                store_backend=settings.database.store_backend,
                adapter=settings.channels.adapter,
                content_provider=settings.content.provider)
    yield

    await engine.shutdown()
    if settings.database.store_backend == "sql":
        await close_db()
    logger.info("cadence_engine_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="Cadence Engine API",
    description="Scheduled step execution for outreach cadences",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class StartAutomationRequest(BaseModel):
    lead_ids: list[str] = Field(min_length=1)
    timezone: Optional[str] = None
    owner_id: Optional[str] = None
    org_id: Optional[str] = None
    step_overrides: dict[str, StepOverrides] = {}


class StopLeadRequest(BaseModel):
    reason: str = REPLIED_REASON
    status: CadenceLeadStatus = CadenceLeadStatus.REPLIED
    owner_id: Optional[str] = None
    org_id: Optional[str] = None


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status_code)


def _context(request: Request, owner_id: Optional[str] = None,
             org_id: Optional[str] = None) -> ExecutionContext:
    return ExecutionContext(
        token=request.headers.get("authorization", ""),
        owner_id=owner_id,
        org_id=org_id,
    )


async def _json_body(request: Request) -> dict[str, Any]:
    """Request body as a dict; an empty or malformed body means defaults."""
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "store_backend": type(engine.store).__name__,
        "step_types": [s.value for s in engine.registry.get_available()],
        "adapters": await engine.registry.health_check_all(),
    }


# ══════════════════════════════════════════════════════════════
#  QUEUE PROCESSING
# ══════════════════════════════════════════════════════════════

@app.post("/functions/v1/process-queue")
@app.post("/api/v1/process-queue")
async def process_queue(request: Request):
    if not request.headers.get("authorization"):
        return _error("Missing authorization header", 401)

    body = await _json_body(request)
    try:
        report = await engine.process_queue(body, _context(request))
    except BatchQueryError as e:
        return _error(str(e), 500)
    except Exception as e:
        logger.exception("process_queue_error")
        return _error(str(e) or type(e).__name__, 500)

    return report.to_api()


# ══════════════════════════════════════════════════════════════
#  CADENCE AUTOMATION
# ══════════════════════════════════════════════════════════════

@app.post("/api/v1/cadences/{cadence_id}/automation")
async def start_automation(cadence_id: str, req: StartAutomationRequest, request: Request):
    ctx = _context(request, req.owner_id, req.org_id)
    try:
        report = await engine.automation.start(
            cadence_id, req.lead_ids, ctx,
            timezone_name=req.timezone, overrides=req.step_overrides,
        )
    except CadenceNotFoundError:
        raise HTTPException(404, "Cadence not found")
    except CadenceHasNoStepsError:
        raise HTTPException(400, "Cadence has no steps")
    return {"success": True, **report.model_dump(mode="json")}


@app.post("/api/v1/cadences/{cadence_id}/leads/{lead_id}/stop")
async def stop_lead(cadence_id: str, lead_id: str, request: Request,
                    req: Optional[StopLeadRequest] = None):
    req = req or StopLeadRequest()
    ctx = _context(request, req.owner_id, req.org_id)
    canceled = await engine.automation.stop_lead(
        cadence_id, lead_id, ctx, reason=req.reason, status=req.status,
    )
    return {"success": True, "cadence_id": cadence_id, "lead_id": lead_id,
            "canceled_schedules": canceled, "status": req.status.value}
