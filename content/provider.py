"""
Content provider client — the external message generation service.

The engine treats generation as opaque: it sends the lead, the step type
and optional prompt material, and gets back a message (plus a subject for
email). Any failure is raised as ContentGenerationError; retry policy lives
in the resolver.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx
from pydantic import BaseModel, ValidationError

from config.settings import ContentConfig
from models.schemas import ExecutionContext

logger = structlog.get_logger()


class ContentGenerationError(Exception):
    """The provider could not produce a message."""


class GenerationRequest(BaseModel):
    owner_id: str
    lead_id: str
    step_type: str
    tone: str = "professional"
    language: str = "es"
    message_template: Optional[str] = None         # prompt body
    research_prompt: Optional[str] = None
    example_messages: Optional[list[str]] = None

    def to_payload(self) -> dict[str, Any]:
        payload = {
            "ownerId": self.owner_id,
            "leadId": self.lead_id,
            "stepType": self.step_type,
            "tone": self.tone,
            "language": self.language,
            "messageTemplate": self.message_template,
            "researchPrompt": self.research_prompt,
            "exampleMessages": self.example_messages,
        }
        return {k: v for k, v in payload.items() if v is not None}


class GeneratedContent(BaseModel):
    message: str
    subject: Optional[str] = None


class ContentProvider(abc.ABC):
    @abc.abstractmethod
    async def generate(self, request: GenerationRequest, ctx: ExecutionContext) -> GeneratedContent:
        ...

    async def shutdown(self) -> None:
        pass


class HttpContentProvider(ContentProvider):
    def __init__(self, config: ContentConfig, client: Optional[httpx.AsyncClient] = None):
        self.url = f"{config.base_url.rstrip('/')}{config.endpoint}"
        self.timeout = config.timeout
        self.client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=self.timeout)
        return self.client

    async def generate(self, request: GenerationRequest, ctx: ExecutionContext) -> GeneratedContent:
        client = await self._get_client()
        try:
            response = await client.post(
                self.url, json=request.to_payload(),
                headers={"Content-Type": "application/json", **ctx.auth_header},
            )
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ContentGenerationError(f"Generation request failed: {e}") from e

        if not isinstance(data, dict):
            raise ContentGenerationError(f"Unexpected response body (HTTP {response.status_code})")
        if not response.is_success or not data.get("success"):
            raise ContentGenerationError(str(data.get("error") or f"HTTP {response.status_code}"))

        message = data.get("generatedMessage")
        if not isinstance(message, str) or not message.strip():
            raise ContentGenerationError("Provider returned an empty message")
        try:
            return GeneratedContent(message=message, subject=data.get("generatedSubject") or None)
        except ValidationError as e:
            raise ContentGenerationError(f"Malformed provider response: {e}") from e

    async def shutdown(self) -> None:
        if self.client is not None and not self.client.is_closed:
            await self.client.aclose()


class MockContentProvider(ContentProvider):
    """
    Development stand-in. Fails the first `failures` calls, then returns
    `message` (or a canned text per step type).
    """

    def __init__(self, message: Optional[str] = None, subject: Optional[str] = None,
                 failures: int = 0):
        self.message = message
        self.subject = subject
        self.failures = failures
        self.requests: list[GenerationRequest] = []

    async def generate(self, request: GenerationRequest, ctx: ExecutionContext) -> GeneratedContent:
        self.requests.append(request)
        if self.failures > 0:
            self.failures -= 1
            raise ContentGenerationError("Mock provider failure")
        message = self.message or f"Hello from the {request.step_type} step"
        return GeneratedContent(message=message, subject=self.subject)


def create_content_provider(config: ContentConfig) -> ContentProvider:
    if config.provider == "http":
        logger.info("content_provider_created", provider="http", endpoint=config.endpoint)
        return HttpContentProvider(config)
    logger.info("content_provider_created", provider="mock")
    return MockContentProvider()
