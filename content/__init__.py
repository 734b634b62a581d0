"""Message content: the generation service client and the resolver policy."""
from content.provider import (
    ContentProvider,
    ContentGenerationError,
    GenerationRequest,
    GeneratedContent,
    HttpContentProvider,
    MockContentProvider,
    create_content_provider,
)
from content.resolver import ContentResolver

__all__ = [
    "ContentProvider", "ContentGenerationError", "GenerationRequest", "GeneratedContent",
    "HttpContentProvider", "MockContentProvider", "create_content_provider",
    "ContentResolver",
]
