"""
Action Dispatcher — turns a claimed schedule plus resolved content into
exactly one adapter call.

Payload per step type:
  linkedin_message  message
  linkedin_connect  message (optional note)
  linkedin_like     postId, postUrl, reactionType
  linkedin_comment  postId, postUrl, comment
  send_email        to, subject, body (HTML)

All carry leadId, cadenceId, cadenceStepId, scheduleId, instanceId, ownerId.
"""
from __future__ import annotations

import html
import re
import structlog
from typing import Any, Optional

from channels.base import ChannelError, ChannelRegistry
from channels.post_lookup import PostLookup
from models.schemas import (
    CadenceStep, CommentStepConfig, DispatchResult, EmailStepConfig,
    ExecutionContext, LikeStepConfig, ResolvedContent, Schedule, StepConfig, StepType,
)

logger = structlog.get_logger()

_SUBJECT_LINE = re.compile(r"^SUBJECT:\s*(.+?)(?:\n|$)", re.IGNORECASE)
_SUBJECT_BLOCK = re.compile(r"^SUBJECT:\s*.+\n*", re.IGNORECASE)
_HAS_MARKUP = re.compile(r"<[a-z][\s\S]*>", re.IGNORECASE)
_PARAGRAPH_BREAK = re.compile(r"\n{2,}")
_PARAGRAPH = '<p style="margin:0 0 16px 0">{}</p>'


def strip_subject_prefix(text: str) -> tuple[str, Optional[str]]:
    """Split a leading "SUBJECT: ..." line off a generated body."""
    match = _SUBJECT_LINE.match(text)
    if not match:
        return text, None
    return _SUBJECT_BLOCK.sub("", text, count=1).strip(), match.group(1).strip()


def text_to_html(text: str) -> str:
    """Plain text → minimal email HTML. Text that already has tags is left alone."""
    if _HAS_MARKUP.search(text):
        return text
    escaped = html.escape(text, quote=False)
    return "".join(
        _PARAGRAPH.format(p.replace("\n", "<br>")) for p in _PARAGRAPH_BREAK.split(escaped)
    )


def _body_text(schedule: Schedule, cfg: StepConfig, content: ResolvedContent) -> Optional[str]:
    return (
        content.text
        or schedule.message_rendered_text
        or schedule.message_template_text
        or cfg.message_template
        or cfg.body_fallback()
    )


class ActionDispatcher:

    def __init__(self, registry: ChannelRegistry, post_lookup: PostLookup):
        self.registry = registry
        self.post_lookup = post_lookup

    async def dispatch(self, schedule: Schedule, step: CadenceStep, content: ResolvedContent,
                       ctx: ExecutionContext, instance_id: Optional[str] = None) -> DispatchResult:
        adapter = self.registry.get(step.kind)
        if adapter is None:
            return DispatchResult(success=False, error=f"Unsupported step type: {step.step_type}")

        try:
            payload = await self.build_payload(schedule, step, content, ctx, instance_id)
        except ChannelError as e:
            logger.warning("dispatch_payload_failed", schedule_id=schedule.id, error=str(e))
            return DispatchResult(success=False, error=str(e))
        except Exception as e:
            logger.exception("dispatch_payload_error", schedule_id=schedule.id)
            return DispatchResult(success=False, error=str(e) or type(e).__name__)

        logger.info("dispatching_step", schedule_id=schedule.id, step_type=step.step_type,
                    lead_id=schedule.lead_id)
        return await adapter.send(schedule.lead_id, payload, ctx)

    async def build_payload(self, schedule: Schedule, step: CadenceStep, content: ResolvedContent,
                            ctx: ExecutionContext, instance_id: Optional[str] = None) -> dict[str, Any]:
        cfg = step.typed_config()
        payload: dict[str, Any] = {
            "leadId": schedule.lead_id,
            "cadenceId": schedule.cadence_id,
            "cadenceStepId": schedule.cadence_step_id,
            "scheduleId": schedule.id,
            "instanceId": instance_id,
            "ownerId": schedule.owner_id,
        }
        text = _body_text(schedule, cfg, content)
        kind = step.kind

        if kind == StepType.LINKEDIN_MESSAGE:
            payload["message"] = strip_subject_prefix(text or "")[0]

        elif kind == StepType.LINKEDIN_CONNECT:
            payload["message"] = strip_subject_prefix(text)[0] if text else None

        elif kind == StepType.LINKEDIN_LIKE:
            payload.update(await self._target_post(schedule, cfg, ctx, "to like"))
            payload["reactionType"] = cfg.reaction_type

        elif kind == StepType.LINKEDIN_COMMENT:
            payload.update(await self._target_post(schedule, cfg, ctx, "to comment on"))
            payload["comment"] = strip_subject_prefix(text or "")[0]

        elif kind == StepType.SEND_EMAIL:
            body, found_subject = strip_subject_prefix(text or "")
            payload["to"] = cfg.to_email or ""
            payload["subject"] = content.subject or cfg.subject or found_subject or "No subject"
            payload["body"] = text_to_html(body)

        return payload

    async def _target_post(self, schedule: Schedule, cfg: LikeStepConfig | CommentStepConfig,
                           ctx: ExecutionContext, purpose: str) -> dict[str, Any]:
        if cfg.post_id or cfg.post_url:
            return {"postId": cfg.post_id, "postUrl": cfg.post_url}

        logger.info("dispatch_fetching_latest_post", lead_id=schedule.lead_id, schedule_id=schedule.id)
        post = await self.post_lookup.latest_post(schedule.lead_id, ctx)
        if post is None:
            raise ChannelError(f"No LinkedIn posts found for this lead {purpose}", retryable=False)
        return {"postId": post.post_id, "postUrl": post.post_url}
