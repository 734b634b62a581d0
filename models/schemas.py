"""
Core data models for the cadence engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class StepType(str, Enum):
    LINKEDIN_MESSAGE = "linkedin_message"
    LINKEDIN_CONNECT = "linkedin_connect"
    LINKEDIN_LIKE = "linkedin_like"
    LINKEDIN_COMMENT = "linkedin_comment"
    SEND_EMAIL = "send_email"

    @classmethod
    def parse(cls, raw: Optional[str]) -> Optional["StepType"]:
        """Return the matching member, or None for types outside the supported set."""
        try:
            return cls(raw)
        except ValueError:
            return None


class AutomationMode(str, Enum):
    MANUAL = "manual"
    AUTOMATED = "automated"


class CadenceStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class CadenceLeadStatus(str, Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    COMPLETED = "completed"
    REPLIED = "replied"
    PAUSED = "paused"
    FAILED = "failed"


class InstanceStatus(str, Enum):
    PENDING = "pending"
    GENERATED = "generated"
    SENT = "sent"
    FAILED = "failed"


class ScheduleStatus(str, Enum):
    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    EXECUTED = "executed"
    FAILED = "failed"
    SKIPPED = "skipped_due_to_state_change"
    CANCELED = "canceled"

    @property
    def is_open(self) -> bool:
        return self in (ScheduleStatus.SCHEDULED, ScheduleStatus.PROCESSING)


class ActivityStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"


# ──────────────────────────────────────────────────────────────
#  Step configuration — one model per step type
# ──────────────────────────────────────────────────────────────

_HHMM = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")

# Fields that must be non-empty strings; anything else degrades to None.
_TEXT_FIELDS = (
    "message_template", "template_id", "ai_prompt_id", "ai_research_prompt_id",
    "ai_example_section_id", "keyword_filter",
)


def normalize_hhmm(value: Any) -> Optional[str]:
    """Canonical "HH:MM", or None when the value is not a valid time of day."""
    if not isinstance(value, str):
        return None
    match = _HHMM.match(value.strip())
    if not match:
        return None
    return f"{int(match.group(1)):02d}:{match.group(2)}"


def _text_or_none(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


class BaseStepConfig(BaseModel):
    """
    Options shared by every step type.

    Values come from a free-form JSON map edited by users, so validation
    never raises: wrong types and unparseable times fall back to defaults.
    """
    model_config = ConfigDict(extra="ignore")

    scheduled_time: Optional[str] = None           # cadence-local "HH:MM"
    message_template: Optional[str] = None
    template_id: Optional[str] = None
    ai_prompt_id: Optional[str] = None
    ai_research_prompt_id: Optional[str] = None
    ai_example_section_id: Optional[str] = None
    timeout_days: Optional[int] = None
    keyword_filter: Optional[str] = None

    @field_validator("scheduled_time", mode="before")
    @classmethod
    def _valid_time(cls, value: Any) -> Optional[str]:
        return normalize_hhmm(value)

    @field_validator(*_TEXT_FIELDS, mode="before")
    @classmethod
    def _valid_text(cls, value: Any) -> Optional[str]:
        return _text_or_none(value)

    @field_validator("timeout_days", mode="before")
    @classmethod
    def _valid_days(cls, value: Any) -> Optional[int]:
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)) and value >= 0:
            return int(value)
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
        return None

    @property
    def needs_content(self) -> bool:
        return False

    def body_fallback(self) -> Optional[str]:
        """Legacy per-type body field used when no template is set."""
        return None


class MessageStepConfig(BaseStepConfig):
    message: Optional[str] = None

    @field_validator("message", mode="before")
    @classmethod
    def _valid_message(cls, value: Any) -> Optional[str]:
        return _text_or_none(value)

    @property
    def needs_content(self) -> bool:
        return True

    def body_fallback(self) -> Optional[str]:
        return self.message


class ConnectStepConfig(BaseStepConfig):
    connection_message: Optional[str] = None
    send_note: bool = False

    @field_validator("connection_message", mode="before")
    @classmethod
    def _valid_note(cls, value: Any) -> Optional[str]:
        return _text_or_none(value)

    @field_validator("send_note", mode="before")
    @classmethod
    def _strict_flag(cls, value: Any) -> bool:
        # Only a literal true enables the note
        return value is True

    @property
    def needs_content(self) -> bool:
        return self.send_note

    def body_fallback(self) -> Optional[str]:
        return self.connection_message


class _PostStepConfig(BaseStepConfig):
    post_id: Optional[str] = None
    post_url: Optional[str] = None

    @field_validator("post_id", "post_url", mode="before")
    @classmethod
    def _valid_post(cls, value: Any) -> Optional[str]:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return _text_or_none(value)


class LikeStepConfig(_PostStepConfig):
    reaction_type: str = "LIKE"

    @field_validator("reaction_type", mode="before")
    @classmethod
    def _valid_reaction(cls, value: Any) -> str:
        return value.strip().upper() if _text_or_none(value) else "LIKE"


class CommentStepConfig(_PostStepConfig):
    comment: Optional[str] = None

    @field_validator("comment", mode="before")
    @classmethod
    def _valid_comment(cls, value: Any) -> Optional[str]:
        return _text_or_none(value)

    @property
    def needs_content(self) -> bool:
        return True

    def body_fallback(self) -> Optional[str]:
        return self.comment


class EmailStepConfig(BaseStepConfig):
    to_email: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None

    @field_validator("to_email", "subject", "body", mode="before")
    @classmethod
    def _valid_email_text(cls, value: Any) -> Optional[str]:
        return _text_or_none(value)

    @property
    def needs_content(self) -> bool:
        return True

    def body_fallback(self) -> Optional[str]:
        return self.body


class GenericStepConfig(BaseStepConfig):
    """Config for step types outside the supported set."""


StepConfig = Union[
    MessageStepConfig, ConnectStepConfig, LikeStepConfig,
    CommentStepConfig, EmailStepConfig, GenericStepConfig,
]

_CONFIG_BY_TYPE: dict[StepType, type[BaseStepConfig]] = {
    StepType.LINKEDIN_MESSAGE: MessageStepConfig,
    StepType.LINKEDIN_CONNECT: ConnectStepConfig,
    StepType.LINKEDIN_LIKE: LikeStepConfig,
    StepType.LINKEDIN_COMMENT: CommentStepConfig,
    StepType.SEND_EMAIL: EmailStepConfig,
}


def parse_step_config(step_type: Optional[str], raw: Any) -> StepConfig:
    """Parse a stored config map into the model for its step type."""
    model = _CONFIG_BY_TYPE.get(StepType.parse(step_type), GenericStepConfig)
    return model.model_validate(raw if isinstance(raw, dict) else {})


# ──────────────────────────────────────────────────────────────
#  Cadence structure
# ──────────────────────────────────────────────────────────────

class Cadence(BaseModel):
    """A named outreach sequence owning an ordered list of steps."""
    id: str = Field(default_factory=_new_id)
    owner_id: str = ""
    name: str = ""
    automation_mode: AutomationMode = AutomationMode.MANUAL
    timezone: str = "America/New_York"
    status: CadenceStatus = CadenceStatus.DRAFT
    same_day_delay_hours: float = 1.0
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_automated(self) -> bool:
        return self.automation_mode == AutomationMode.AUTOMATED


class CadenceStep(BaseModel):
    """
    One step definition inside a cadence.

    step_type stays a plain string so rows written with a type this engine
    doesn't know can still be loaded and reported as unsupported.
    """
    id: str = Field(default_factory=_new_id)
    cadence_id: str
    owner_id: str = ""
    step_type: str
    step_label: str = ""
    day_offset: int = 0
    order_in_day: int = 0
    config: dict[str, Any] = Field(default_factory=dict)

    @property
    def kind(self) -> Optional[StepType]:
        return StepType.parse(self.step_type)

    @property
    def position(self) -> tuple[int, int]:
        return (self.day_offset, self.order_in_day)

    def typed_config(self) -> StepConfig:
        return parse_step_config(self.step_type, self.config)


class CadenceLead(BaseModel):
    id: str = Field(default_factory=_new_id)
    cadence_id: str
    lead_id: str
    owner_id: str = ""
    current_step_id: Optional[str] = None
    status: CadenceLeadStatus = CadenceLeadStatus.ACTIVE
    updated_at: datetime = Field(default_factory=_utcnow)


class LeadStepInstance(BaseModel):
    """Per-lead, per-step execution record."""
    id: str = Field(default_factory=_new_id)
    cadence_id: str
    cadence_step_id: str
    lead_id: str
    owner_id: str = ""
    status: InstanceStatus = InstanceStatus.PENDING
    message_rendered_text: Optional[str] = None
    last_error: Optional[str] = None
    result_snapshot: Optional[dict[str, Any]] = None
    updated_at: datetime = Field(default_factory=_utcnow)


class Schedule(BaseModel):
    """A single timed intent to execute one step for one lead."""
    id: str = Field(default_factory=_new_id)
    cadence_id: str
    cadence_step_id: str
    lead_id: str
    owner_id: str = ""
    scheduled_at: datetime
    timezone: str = "UTC"
    status: ScheduleStatus = ScheduleStatus.SCHEDULED
    last_error: Optional[str] = None
    message_template_text: Optional[str] = None
    message_rendered_text: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("scheduled_at")
    @classmethod
    def _aware_utc(cls, value: datetime) -> datetime:
        # SQLite hands back naive datetimes; everything stored is UTC
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.lead_id, self.cadence_step_id)


class AiPrompt(BaseModel):
    id: str = Field(default_factory=_new_id)
    owner_id: str = ""
    name: str = ""
    prompt_body: str = ""
    tone: Optional[str] = None
    language: Optional[str] = None


class ExampleMessage(BaseModel):
    id: str = Field(default_factory=_new_id)
    section_id: str
    body: str
    sort_order: int = 0


class ActivityEntry(BaseModel):
    id: str = Field(default_factory=_new_id)
    owner_id: str = ""
    org_id: Optional[str] = None
    cadence_id: Optional[str] = None
    cadence_step_id: Optional[str] = None
    lead_id: Optional[str] = None
    action: str
    status: ActivityStatus = ActivityStatus.OK
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Execution context and results
# ──────────────────────────────────────────────────────────────

class ExecutionContext(BaseModel):
    """Caller identity threaded through every engine call."""
    model_config = ConfigDict(frozen=True)

    token: str = ""                           # full Authorization header value
    owner_id: Optional[str] = None
    org_id: Optional[str] = None

    def for_owner(self, owner_id: str) -> "ExecutionContext":
        return self.model_copy(update={"owner_id": owner_id or self.owner_id})

    @property
    def auth_header(self) -> dict[str, str]:
        return {"Authorization": self.token} if self.token else {}


class ResolvedContent(BaseModel):
    text: Optional[str] = None
    subject: Optional[str] = None
    source: str = "none"                      # schedule | ai_prompt | auto | template | none
    error: Optional[str] = None

    @property
    def generated(self) -> bool:
        return self.source in ("ai_prompt", "auto")

    @property
    def failed(self) -> bool:
        return self.error is not None


class DispatchResult(BaseModel):
    success: bool
    error: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)


class AdvanceOutcome(BaseModel):
    advanced: bool = False
    next_step_id: Optional[str] = None
    completed: bool = False
    scheduled_at: Optional[datetime] = None
    schedule_created: bool = False


class ProcessResult(BaseModel):
    schedule_id: str
    lead_id: str
    step_type: str
    success: bool
    error: Optional[str] = None

    def to_api(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "scheduleId": self.schedule_id,
            "leadId": self.lead_id,
            "stepType": self.step_type,
            "success": self.success,
        }
        if self.error:
            out["error"] = self.error
        return out


MAX_BATCH_LIMIT = 100

_OPTION_DEFAULTS = {"min_delay_ms": 5000, "max_delay_ms": 10000, "limit": 50}


class BatchOptions(BaseModel):
    """
    Options accepted by one queue-processing run.

    Accepts the camelCase keys of the HTTP body. Missing, negative or
    non-numeric values fall back to the defaults, as does a zero limit;
    limit is capped at 100.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    min_delay_ms: int = Field(5000, alias="minDelayMs")
    max_delay_ms: int = Field(10000, alias="maxDelayMs")
    limit: int = 50
    dry_run: bool = Field(False, alias="dryRun")

    @field_validator("min_delay_ms", "max_delay_ms", "limit", mode="before")
    @classmethod
    def _number_or_default(cls, value: Any, info: ValidationInfo) -> int:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            return _OPTION_DEFAULTS[info.field_name]
        if info.field_name == "limit" and value == 0:
            return _OPTION_DEFAULTS["limit"]
        return int(value)

    @field_validator("dry_run", mode="before")
    @classmethod
    def _strict_flag(cls, value: Any) -> bool:
        return value is True

    @model_validator(mode="after")
    def _clamp(self) -> "BatchOptions":
        if self.limit > MAX_BATCH_LIMIT:
            self.limit = MAX_BATCH_LIMIT
        if self.max_delay_ms < self.min_delay_ms:
            self.max_delay_ms = self.min_delay_ms
        return self


class BatchReport(BaseModel):
    success: bool = True
    message: str = ""
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    results: list[ProcessResult] = Field(default_factory=list)
    dry_run: bool = False
    would_process: list[dict[str, Any]] = Field(default_factory=list)

    def to_api(self) -> dict[str, Any]:
        if self.dry_run:
            return {
                "success": self.success,
                "message": self.message,
                "wouldProcess": len(self.would_process),
                "schedules": self.would_process,
            }
        return {
            "success": self.success,
            "message": self.message,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "results": [r.to_api() for r in self.results],
        }
