"""Step adapters for every supported cadence step type."""
from channels.base import (
    StepAdapter,
    HttpStepAdapter,
    MockStepAdapter,
    ChannelRegistry,
    ChannelError,
    ChannelMetrics,
    build_registry,
)
from channels.post_lookup import (
    PostLookup, PostRef, HttpPostLookup, MockPostLookup, create_post_lookup,
)

__all__ = [
    "StepAdapter", "HttpStepAdapter", "MockStepAdapter",
    "ChannelRegistry", "ChannelError", "ChannelMetrics", "build_registry",
    "PostLookup", "PostRef", "HttpPostLookup", "MockPostLookup", "create_post_lookup",
]
