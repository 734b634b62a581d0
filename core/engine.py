"""
Cadence Engine — wires the store, content, channels and scheduling pieces
into one object the API and scripts share.

    engine = CadenceEngine.from_settings(get_settings())
    report = await engine.process_queue(body, ctx)
"""
from __future__ import annotations

import asyncio
import random
import structlog
from typing import Any, Awaitable, Callable, Optional

from channels.base import ChannelRegistry, build_registry
from channels.post_lookup import PostLookup, create_post_lookup
from config.settings import Settings
from content.provider import ContentProvider, create_content_provider
from content.resolver import ContentResolver
from core.advancer import CadenceAdvancer
from core.automation import AutomationStarter
from core.dispatcher import ActionDispatcher
from core.executor import ScheduleExecutor
from core.runner import QueueRunner
from database.store_base import BaseCadenceStore
from database.store_factory import create_store
from models.schemas import BatchOptions, BatchReport, ExecutionContext

logger = structlog.get_logger()


class CadenceEngine:

    def __init__(self, settings: Settings, store: BaseCadenceStore,
                 registry: ChannelRegistry, post_lookup: PostLookup,
                 provider: ContentProvider,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 rng: Optional[random.Random] = None):
        self.settings = settings
        self.store = store
        self.registry = registry
        self.post_lookup = post_lookup
        self.provider = provider

        rng = rng or random.Random()
        tz = settings.scheduling.default_timezone

        self.resolver = ContentResolver(store, provider, settings.content, sleep=sleep)
        self.dispatcher = ActionDispatcher(registry, post_lookup)
        self.advancer = CadenceAdvancer(store, default_timezone=tz, rng=rng)
        self.executor = ScheduleExecutor(store, self.resolver, self.dispatcher, self.advancer)
        self.runner = QueueRunner(store, self.executor, sleep=sleep, rng=rng)
        self.automation = AutomationStarter(
            store,
            default_timezone=tz,
            lead_stagger_seconds=settings.scheduling.lead_stagger_seconds,
            first_step_time=settings.scheduling.first_step_time,
        )

    @classmethod
    def from_settings(cls, settings: Settings,
                      store: Optional[BaseCadenceStore] = None,
                      registry: Optional[ChannelRegistry] = None,
                      post_lookup: Optional[PostLookup] = None,
                      provider: Optional[ContentProvider] = None,
                      sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> "CadenceEngine":
        """Build every collaborator from config unless one is passed in."""
        engine = cls(
            settings,
            store=store or create_store({"store_backend": settings.database.store_backend}),
            registry=registry or build_registry(settings.channels),
            post_lookup=post_lookup or create_post_lookup(settings.channels),
            provider=provider or create_content_provider(settings.content),
            sleep=sleep,
        )
        logger.info("cadence_engine_ready", store=type(engine.store).__name__,
                    adapter=settings.channels.adapter, content=settings.content.provider)
        return engine

    def batch_options(self, body: Optional[dict[str, Any]] = None) -> BatchOptions:
        """Request body over the configured runner defaults."""
        runner = self.settings.runner
        merged: dict[str, Any] = {
            "minDelayMs": runner.min_delay_ms,
            "maxDelayMs": runner.max_delay_ms,
            "limit": runner.default_limit,
        }
        for key, value in (body or {}).items():
            if value is not None:
                merged[key] = value
        return BatchOptions.model_validate(merged)

    async def process_queue(self, body: Optional[dict[str, Any]],
                            ctx: ExecutionContext) -> BatchReport:
        return await self.runner.run(self.batch_options(body), ctx)

    async def shutdown(self) -> None:
        await self.registry.shutdown_all()
        await self.post_lookup.shutdown()
        await self.provider.shutdown()
        logger.info("cadence_engine_shutdown")
