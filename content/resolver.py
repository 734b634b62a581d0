"""
Content Resolver — decides what text a step sends.

Priority:
  1. Text already rendered on the schedule is used as is.
  2. A step with an AI prompt calls the provider (two attempts, fixed
     backoff). If both fail, the step's static template is used; with no
     template a content step fails hard.
  3. A content step with no template at all gets one best-effort
     generation with the default tone and language.
  4. Otherwise nothing is generated and the dispatcher uses the template.

A successful generation marks the lead's step instance as generated,
whatever happens to the send afterwards.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Awaitable, Callable, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from config.settings import ContentConfig, get_settings
from content.provider import (
    ContentGenerationError, ContentProvider, GeneratedContent, GenerationRequest,
)
from database.store_base import BaseCadenceStore
from models.schemas import (
    CadenceStep, ExecutionContext, InstanceStatus, ResolvedContent, Schedule, StepType,
)

logger = structlog.get_logger()

AI_FALLBACK_ERROR = "AI generation failed and no fallback template available"
AUTO_FALLBACK_ERROR = "Content generation failed and no fallback template available"


class ContentResolver:

    def __init__(self, store: BaseCadenceStore, provider: ContentProvider,
                 config: Optional[ContentConfig] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.store = store
        self.provider = provider
        self.config = config or get_settings().content
        self._sleep = sleep

    async def resolve(self, schedule: Schedule, step: CadenceStep, ctx: ExecutionContext) -> ResolvedContent:
        if schedule.message_rendered_text:
            return ResolvedContent(text=schedule.message_rendered_text, source="schedule")

        cfg = step.typed_config()
        template = cfg.message_template or schedule.message_template_text
        fallback = template or cfg.body_fallback()

        if cfg.ai_prompt_id:
            generated = await self._generate_from_prompt(schedule, step, ctx)
            if generated:
                await self._persist(schedule, generated)
                return ResolvedContent(text=generated.message, subject=generated.subject, source="ai_prompt")
            if cfg.needs_content and not fallback:
                return ResolvedContent(error=AI_FALLBACK_ERROR)
            logger.warning("content_ai_fallback_to_template", schedule_id=schedule.id)
            return ResolvedContent(source="template" if fallback else "none")

        if cfg.needs_content and not template:
            generated = await self._auto_generate(schedule, step, ctx)
            if generated:
                await self._persist(schedule, generated)
                return ResolvedContent(text=generated.message, subject=generated.subject, source="auto")
            if fallback or step.kind == StepType.LINKEDIN_CONNECT:
                # A connection request can go out without a note
                return ResolvedContent(source="template" if fallback else "none")
            return ResolvedContent(error=AUTO_FALLBACK_ERROR)

        return ResolvedContent(source="template" if fallback else "none")

    # ── Generation paths ──────────────────────────────────────

    async def _generate_from_prompt(self, schedule: Schedule, step: CadenceStep,
                                    ctx: ExecutionContext) -> Optional[GeneratedContent]:
        cfg = step.typed_config()
        prompt = await self.store.get_prompt(cfg.ai_prompt_id)
        if not prompt:
            logger.warning("content_prompt_not_found", prompt_id=cfg.ai_prompt_id, schedule_id=schedule.id)
            return None

        research_body = None
        if cfg.ai_research_prompt_id:
            research = await self.store.get_prompt(cfg.ai_research_prompt_id)
            research_body = research.prompt_body if research else None

        examples = None
        if cfg.ai_example_section_id:
            rows = await self.store.list_example_messages(cfg.ai_example_section_id)
            examples = [r.body for r in rows] or None

        request = GenerationRequest(
            owner_id=schedule.owner_id,
            lead_id=schedule.lead_id,
            step_type=step.step_type,
            message_template=prompt.prompt_body,
            research_prompt=research_body,
            tone=prompt.tone or self.config.default_tone,
            language=prompt.language or self.config.default_language,
            example_messages=examples,
        )
        logger.info("content_generating", schedule_id=schedule.id, lead_id=schedule.lead_id,
                    step_type=step.step_type, prompt=prompt.name)

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.max_attempts),
                wait=wait_fixed(self.config.retry_backoff_seconds),
                retry=retry_if_exception_type(ContentGenerationError),
                sleep=self._sleep,
                reraise=True,
            ):
                with attempt:
                    return await self.provider.generate(request, ctx)
        except ContentGenerationError as e:
            logger.error("content_generation_failed", schedule_id=schedule.id,
                         attempts=self.config.max_attempts, error=str(e))
        return None

    async def _auto_generate(self, schedule: Schedule, step: CadenceStep,
                             ctx: ExecutionContext) -> Optional[GeneratedContent]:
        request = GenerationRequest(
            owner_id=schedule.owner_id,
            lead_id=schedule.lead_id,
            step_type=step.step_type,
            tone=self.config.default_tone,
            language=self.config.default_language,
        )
        logger.info("content_auto_generating", schedule_id=schedule.id, step_type=step.step_type)
        try:
            return await self.provider.generate(request, ctx)
        except ContentGenerationError as e:
            logger.warning("content_auto_generation_failed", schedule_id=schedule.id, error=str(e))
            return None

    async def _persist(self, schedule: Schedule, generated: GeneratedContent) -> None:
        await self.store.update_instance(
            schedule.cadence_step_id, schedule.lead_id,
            message_rendered_text=generated.message,
            status=InstanceStatus.GENERATED,
        )
