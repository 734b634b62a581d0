"""
Latest-post lookup for like and comment steps.

Finds the most recent post of a lead when the step has no post configured.
Lookup problems are not errors here: any failure means "no post", and the
caller turns that into a failed step.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx
from pydantic import BaseModel

from config.settings import ChannelsConfig
from models.schemas import ExecutionContext

logger = structlog.get_logger()


class PostRef(BaseModel):
    post_id: Optional[str] = None
    post_url: Optional[str] = None


class PostLookup(abc.ABC):
    @abc.abstractmethod
    async def latest_post(self, lead_id: str, ctx: ExecutionContext) -> Optional[PostRef]:
        ...

    async def shutdown(self) -> None:
        pass


class HttpPostLookup(PostLookup):
    def __init__(self, base_url: str, endpoint: str, timeout: float = 30.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.url = f"{base_url.rstrip('/')}{endpoint}"
        self.timeout = timeout
        self.client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=self.timeout)
        return self.client

    async def latest_post(self, lead_id: str, ctx: ExecutionContext) -> Optional[PostRef]:
        try:
            client = await self._get_client()
            response = await client.post(
                self.url,
                json={"leadId": lead_id, "ownerId": ctx.owner_id},
                headers={"Content-Type": "application/json", **ctx.auth_header},
            )
            if not response.is_success:
                logger.warning("post_lookup_http_error", lead_id=lead_id, status=response.status_code)
                return None
            data: dict[str, Any] = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("post_lookup_failed", lead_id=lead_id, error=str(e))
            return None

        if not isinstance(data, dict) or not data.get("success") or not data.get("posts"):
            logger.info("post_lookup_empty", lead_id=lead_id)
            return None
        posts = data["posts"]
        first = posts[0] if isinstance(posts, list) else None
        if not isinstance(first, dict):
            logger.warning("post_lookup_malformed", lead_id=lead_id)
            return None
        url = first.get("url")
        ref = PostRef(
            post_id=str(first["id"]) if first.get("id") is not None else None,
            post_url=url if isinstance(url, str) else None,
        )
        return ref if (ref.post_id or ref.post_url) else None

    async def shutdown(self) -> None:
        if self.client is not None and not self.client.is_closed:
            await self.client.aclose()


class MockPostLookup(PostLookup):
    """Returns posts from a dict keyed by lead id."""

    def __init__(self, posts: Optional[dict[str, PostRef]] = None):
        self.posts = dict(posts or {})
        self.calls: list[str] = []

    async def latest_post(self, lead_id: str, ctx: ExecutionContext) -> Optional[PostRef]:
        self.calls.append(lead_id)
        return self.posts.get(lead_id)


def create_post_lookup(config: ChannelsConfig) -> PostLookup:
    if config.adapter == "http":
        return HttpPostLookup(config.base_url, config.post_lookup_endpoint, config.timeout)
    return MockPostLookup()
