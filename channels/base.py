"""
Channel Adapters — one adapter per step type, behind a uniform send().

Provides:
- ChannelError: structured error for adapter failures
- ChannelMetrics: per-step-type send/fail/latency tracking
- StepAdapter: abstract base; send() never raises, failures come back as data
- HttpStepAdapter: POSTs the payload to the endpoint configured for its step type
- MockStepAdapter: records payloads in memory (development, tests)
- ChannelRegistry: closed step type → adapter mapping

Adapters never retry. A schedule is dispatched at most once, so a second
attempt after an ambiguous failure could deliver the same action twice.
"""
from __future__ import annotations

import abc
import time
import structlog
from typing import Any, Optional

import httpx

from config.settings import ChannelsConfig
from models.schemas import DispatchResult, ExecutionContext, StepType

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, step_type: str = "", retryable: bool = False):
        self.step_type = step_type
        self.retryable = retryable
        super().__init__(message)


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Tracks per-step-type send, failure, and latency metrics."""

    def __init__(self, step_type: StepType):
        self.step_type = step_type
        self.actions_sent: int = 0
        self.actions_failed: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.actions_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)

    def record_failure(self, error: str = ""):
        self.actions_failed += 1
        if error:
            self._errors.append(error)

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.actions_sent + self.actions_failed
        return self.actions_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_type": self.step_type.value,
            "sent": self.actions_sent,
            "failed": self.actions_failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  STEP ADAPTER — Abstract Base
# ══════════════════════════════════════════════════════════════

class StepAdapter(abc.ABC):
    """
    Base class for all step adapters.

    Subclasses implement _do_send and return the normalized result. The
    base class turns every exception into a failed DispatchResult and
    keeps metrics.
    """

    step_type: StepType

    def __init__(self, step_type: StepType):
        self.step_type = step_type
        self._metrics = ChannelMetrics(step_type)

    @abc.abstractmethod
    async def _do_send(self, lead_id: str, payload: dict[str, Any], ctx: ExecutionContext) -> DispatchResult:
        ...

    async def send(self, lead_id: str, payload: dict[str, Any], ctx: ExecutionContext) -> DispatchResult:
        start = time.monotonic()
        try:
            result = await self._do_send(lead_id, payload, ctx)
        except ChannelError as e:
            result = DispatchResult(success=False, error=str(e))
        except Exception as e:
            logger.error("step_adapter_error", step_type=self.step_type.value,
                         lead_id=lead_id, error=str(e))
            result = DispatchResult(success=False, error=str(e) or type(e).__name__)

        if result.success:
            self._metrics.record_send((time.monotonic() - start) * 1000)
        else:
            self._metrics.record_failure(result.error or "")
        return result

    async def health_check(self) -> dict[str, Any]:
        return {"step_type": self.step_type.value, "metrics": self._metrics.to_dict()}

    async def shutdown(self) -> None:
        pass


class HttpStepAdapter(StepAdapter):
    """
    Calls the action endpoint for one step type.

    Non-2xx → error from the body's "error" field, else "HTTP <code>: <reason>".
    2xx → success only when the body says success: true.
    """

    def __init__(self, step_type: StepType, base_url: str, endpoint: str,
                 timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        super().__init__(step_type)
        self.base_url = base_url.rstrip("/")
        self.endpoint = endpoint
        self.timeout = timeout
        self.client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=self.timeout)
        return self.client

    async def _do_send(self, lead_id: str, payload: dict[str, Any], ctx: ExecutionContext) -> DispatchResult:
        client = await self._get_client()
        url = f"{self.base_url}{self.endpoint}"
        logger.info("step_adapter_request", step_type=self.step_type.value, lead_id=lead_id, url=url)

        response = await client.post(
            url, json=payload,
            headers={"Content-Type": "application/json", **ctx.auth_header},
        )
        data = _json_body(response)

        if not response.is_success:
            error = data.get("error") or f"HTTP {response.status_code}: {response.reason_phrase}"
            return DispatchResult(success=False, error=str(error), data=data)

        success = data.get("success") is True
        error = None if success else str(data.get("error") or "Action reported failure")
        return DispatchResult(success=success, error=error, data=data)

    async def shutdown(self) -> None:
        if self.client is not None and not self.client.is_closed:
            await self.client.aclose()


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {"data": body}


class MockStepAdapter(StepAdapter):
    """In-memory adapter. Records every payload; can be told to fail."""

    def __init__(self, step_type: StepType, fail_with: Optional[str] = None):
        super().__init__(step_type)
        self.fail_with = fail_with
        self.sent: list[dict[str, Any]] = []

    async def _do_send(self, lead_id: str, payload: dict[str, Any], ctx: ExecutionContext) -> DispatchResult:
        self.sent.append({"lead_id": lead_id, "payload": dict(payload)})
        if self.fail_with:
            return DispatchResult(success=False, error=self.fail_with)
        logger.info("mock_step_sent", step_type=self.step_type.value, lead_id=lead_id)
        return DispatchResult(
            success=True,
            data={"success": True, "mock": True, "stepType": self.step_type.value},
        )


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:
    def __init__(self):
        self._adapters: dict[StepType, StepAdapter] = {}

    def register(self, adapter: StepAdapter):
        self._adapters[adapter.step_type] = adapter

    def get(self, step_type: Optional[StepType]) -> Optional[StepAdapter]:
        if step_type is None:
            return None
        return self._adapters.get(step_type)

    def get_available(self) -> list[StepType]:
        return list(self._adapters.keys())

    async def health_check_all(self) -> dict[str, Any]:
        return {st.value: await a.health_check() for st, a in self._adapters.items()}

    async def shutdown_all(self):
        for a in self._adapters.values():
            try:
                await a.shutdown()
            except Exception as e:
                logger.warning("step_adapter_shutdown_failed", step_type=a.step_type.value, error=str(e))


def build_registry(config: ChannelsConfig) -> ChannelRegistry:
    """Register one adapter per supported step type, HTTP or mock per config."""
    registry = ChannelRegistry()
    for step_type in StepType:
        if config.adapter == "http":
            registry.register(HttpStepAdapter(
                step_type, config.base_url, config.endpoints[step_type.value], config.timeout,
            ))
        else:
            registry.register(MockStepAdapter(step_type))
    logger.info("channel_registry_built", adapter=config.adapter,
                step_types=[s.value for s in registry.get_available()])
    return registry
