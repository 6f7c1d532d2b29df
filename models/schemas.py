"""
Core data models for the notification pipeline.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator


_TIME_RE = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class MessagePriority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"


class MessageStatus(str, Enum):
    QUEUED = "queued"
    POSTPONED = "postponed"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    RETRYING = "retrying"
    CANCELLED = "cancelled"


class QueueTier(str, Enum):
    PRIORITY = "priority"
    REGULAR = "regular"


class ActivityPattern(str, Enum):
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


class TypingSpeed(str, Enum):
    SLOW = "slow"
    NORMAL = "normal"
    FAST = "fast"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ──────────────────────────────────────────────────────────────
#  Business hours
# ──────────────────────────────────────────────────────────────

class BusinessHoursWindow(BaseModel):
    """
    Local-time range and day set during which sends are permitted.

    days_of_week uses 0 = Sunday … 6 = Saturday. A start time later than
    the end time describes an overnight window (e.g. 22:00 → 06:00).
    """
    enabled: bool = True
    start_time: str = "09:00"
    end_time: str = "17:00"
    days_of_week: list[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])
    timezone: str = "UTC"

    @field_validator("start_time", "end_time")
    @classmethod
    def _check_time(cls, v: str) -> str:
        if not _TIME_RE.match(v):
            raise ValueError(f"Invalid time format {v!r}. Use HH:MM")
        return v

    @field_validator("days_of_week")
    @classmethod
    def _check_days(cls, v: list[int]) -> list[int]:
        if not v:
            raise ValueError("At least one day of week must be specified")
        invalid = [d for d in v if d not in range(7)]
        if invalid:
            raise ValueError(f"Invalid days of week: {invalid}")
        return v

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone {v!r}")
        return v

    @property
    def start_minutes(self) -> int:
        hours, minutes = self.start_time.split(":")
        return int(hours) * 60 + int(minutes)

    @property
    def end_minutes(self) -> int:
        hours, minutes = self.end_time.split(":")
        return int(hours) * 60 + int(minutes)

    @property
    def is_overnight(self) -> bool:
        return self.start_minutes > self.end_minutes


# ──────────────────────────────────────────────────────────────
#  Message Envelope — the unit of queued work
# ──────────────────────────────────────────────────────────────

class BehaviorConfig(BaseModel):
    """Per-message delivery behaviour: timing pattern, typing, window, batch slot."""
    pattern: ActivityPattern = ActivityPattern.MODERATE
    typing_speed: TypingSpeed = TypingSpeed.NORMAL
    enable_typing_indicator: bool = True
    enable_jitter: bool = True
    business_hours: Optional[BusinessHoursWindow] = None   # None → effective service window
    batch_index: int = 0
    batch_position: int = 0
    batch_size: int = 1


class EnvelopeMetadata(BaseModel):
    created_at: datetime = Field(default_factory=_utcnow)
    attempts: int = 0
    max_attempts: int = 3
    estimated_length: int = 0
    not_before: Optional[float] = None     # epoch seconds; worker skips the envelope until then
    last_error: str = ""


class MessageEnvelope(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    tenant_id: str
    recipient_address: str
    content: str
    template_ref: Optional[str] = None
    priority: MessagePriority = MessagePriority.NORMAL
    type: str = "manual"                    # category tag used by dedup/rate rules
    behavior_config: BehaviorConfig = Field(default_factory=BehaviorConfig)
    metadata: EnvelopeMetadata = Field(default_factory=EnvelopeMetadata)
    status: MessageStatus = MessageStatus.QUEUED
    context: dict[str, Any] = {}            # originating rule, entity id, …

    @field_validator("tenant_id", "recipient_address", "content")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v

    @property
    def tier(self) -> QueueTier:
        return QueueTier.PRIORITY if self.priority == MessagePriority.HIGH else QueueTier.REGULAR

    def is_ready(self, now: float) -> bool:
        return self.metadata.not_before is None or self.metadata.not_before <= now


class MessageRequest(BaseModel):
    """What a caller submits; the pipeline turns it into a MessageEnvelope."""
    recipient_address: str
    content: str = ""
    template_ref: Optional[str] = None
    template_data: dict[str, Any] = {}
    priority: MessagePriority = MessagePriority.NORMAL
    type: str = "manual"
    max_attempts: Optional[int] = None
    context: dict[str, Any] = {}


# ──────────────────────────────────────────────────────────────
#  Policy results
# ──────────────────────────────────────────────────────────────

class DuplicateCheck(BaseModel):
    duplicate: bool = False
    reason: Optional[str] = None            # content_duplicate | daily_cap_exceeded
    content_hash: str = ""
    original_message_id: Optional[str] = None
    daily_count: Optional[int] = None
    daily_cap: Optional[int] = None


class RateDecision(BaseModel):
    allowed: bool = True
    reason: str = ""
    wait_seconds: float = 0.0               # spacing backpressure, advisory
    limit: Optional[str] = None             # hourly | daily
    hourly_count: int = 0
    daily_count: int = 0


class BurstAnalysis(BaseModel):
    is_burst: bool = False
    risk_level: RiskLevel = RiskLevel.LOW
    messages_in_window: int = 0
    average_interval_ms: float = 0.0
    recommended_cooldown_ms: int = 0


class SendResult(BaseModel):
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Exposed operation results
# ──────────────────────────────────────────────────────────────

class EnqueueResult(BaseModel):
    accepted: bool
    message_id: Optional[str] = None
    estimated_delay_ms: int = 0
    queue_position: int = 0
    reason: Optional[str] = None
    detail: str = ""


class BulkEnqueueResult(BaseModel):
    total_messages: int = 0
    success_count: int = 0
    failure_count: int = 0
    batches: int = 0
    results: list[EnqueueResult] = []

    @property
    def success(self) -> bool:
        return self.success_count > 0


class StatusTransition(BaseModel):
    status: MessageStatus
    at: datetime
    reason: str = ""


class MessageStatusRecord(BaseModel):
    message_id: str
    tenant_id: str
    status: MessageStatus
    attempts: int = 0
    reason: str = ""
    provider_message_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=_utcnow)
    history: list[StatusTransition] = []
    envelope: Optional[MessageEnvelope] = None


class QueueStatus(BaseModel):
    tenant_id: str
    priority_length: int = 0
    regular_length: int = 0
    processing: bool = False
    paused: bool = False
    recent_sends: int = 0
    burst: BurstAnalysis = Field(default_factory=BurstAnalysis)
    store_backend: str = ""

    @property
    def total_length(self) -> int:
        return self.priority_length + self.regular_length


# ──────────────────────────────────────────────────────────────
#  Automation rules
# ──────────────────────────────────────────────────────────────

class RuleCondition(BaseModel):
    field: str
    operator: str           # eq | neq | gt | gte | lt | lte | in | contains | regex | exists | not_exists
    value: Any = None


class RuleSchedule(BaseModel):
    time: str = "09:00"
    frequency: str = "daily"                # daily | weekly
    days_of_week: list[str] = []            # weekday names, lowercase, for weekly rules

    @field_validator("time")
    @classmethod
    def _check_time(cls, v: str) -> str:
        if not _TIME_RE.match(v):
            raise ValueError(f"Invalid time format {v!r}. Use HH:MM")
        return v

    @field_validator("days_of_week")
    @classmethod
    def _lower(cls, v: list[str]) -> list[str]:
        return [d.lower() for d in v]


class DueDateCriterion(BaseModel):
    condition: str                          # overdue | before | after
    days: int = 0
    field: str = "due_date"


class RuleCriteria(BaseModel):
    status: Optional[str] = None
    status_field: str = "payment_status"
    due_date: Optional[DueDateCriterion] = None
    equals: dict[str, Any] = {}             # categorical equality, e.g. {"class_id": "C-7"}
    conditions: list[RuleCondition] = []


class AutomationRule(BaseModel):
    id: str
    tenant_id: str
    name: str = ""
    enabled: bool = True
    schedule: RuleSchedule = Field(default_factory=RuleSchedule)
    criteria: RuleCriteria = Field(default_factory=RuleCriteria)
    entity_type: str = "students"           # which entity collection the rule filters
    template_id: Optional[str] = None
    message_type: str = "automation"
    recipient_field: str = "whatsapp_number"
    priority: MessagePriority = MessagePriority.NORMAL
    behavior: Optional[BehaviorConfig] = None
    last_run_at: Optional[datetime] = None


class MessageTemplate(BaseModel):
    id: str
    name: str = ""
    content: str
    category: str = "general"
    variables: list[str] = []


class SweepReport(BaseModel):
    rules_total: int = 0
    rules_matched: int = 0
    submitted: int = 0
    rejected: int = 0
    errors: int = 0
    skipped: dict[str, str] = {}            # rule_id → reason
    started_at: datetime = Field(default_factory=_utcnow)
