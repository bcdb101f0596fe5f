from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator


def _as_utc(value: datetime | None) -> datetime | None:
    # Naive timestamps from imports are taken to be UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class ActionKind(str, Enum):
    MARK_TREATED = "MARK_TREATED"
    SEND_SMS = "SEND_SMS"
    SEND_EMAIL = "SEND_EMAIL"
    CREATE_TASK = "CREATE_TASK"
    STOP = "STOP"


class Channel(str, Enum):
    SMS = "SMS"
    EMAIL = "EMAIL"
    TASK = "TASK"
    NONE = "NONE"


class RunStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    BLOCKED = "BLOCKED"
    SKIPPED = "SKIPPED"


class BlockReason(str, Enum):
    ALREADY_RUNNING = "ALREADY_RUNNING"
    ALREADY_TREATED = "ALREADY_TREATED"
    MISSING_CONTACT = "MISSING_CONTACT"
    OPTOUT = "OPTOUT"
    COOLDOWN_ACTIVE = "COOLDOWN_ACTIVE"
    MISSING_TEMPLATE = "MISSING_TEMPLATE"
    MISSING_REQUIRED_VARS = "MISSING_REQUIRED_VARS"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    UNKNOWN = "UNKNOWN"


class FindingType(str, Enum):
    """Finding types the decision rules know about. ``Finding.type`` stays open-ended."""

    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    ACTIVATION_MISSING = "ACTIVATION_MISSING"
    NO_REPLY = "NO_REPLY"
    INACTIVE_CLIENT = "INACTIVE_CLIENT"
    FOLLOW_UP_REQUIRED = "FOLLOW_UP_REQUIRED"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"


class LeverStrategy(str, Enum):
    COUNT = "COUNT"
    VALUE = "VALUE"


class UndoState(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"


# ---------------------------------------------------------------------------
# Findings
# ---------------------------------------------------------------------------


class Finding(BaseModel):
    """One detected recovery opportunity and its lifecycle flags."""

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    severity: int = Field(ge=1, le=5)
    value_cents: int = Field(default=0, ge=0)
    title: str = ""
    description: str = ""
    action: str = ""
    handled: bool = False
    handled_at: datetime | None = None
    autopilot_queued: bool = False
    autopilot_queued_at: datetime | None = None
    created_at: datetime | None = None
    batch_id: str | None = None

    @field_validator("handled_at", "autopilot_queued_at", "created_at", mode="after")
    @classmethod
    def _timestamps_are_utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)

    @model_validator(mode="after")
    def _check_lifecycle_flags(self) -> "Finding":
        if self.handled != (self.handled_at is not None):
            raise ValueError(f"finding {self.id}: handled and handled_at must be set together")
        if self.autopilot_queued != (self.autopilot_queued_at is not None):
            raise ValueError(f"finding {self.id}: autopilot_queued and autopilot_queued_at must be set together")
        if self.autopilot_queued and self.handled:
            raise ValueError(f"finding {self.id}: a handled finding cannot stay in the autopilot queue")
        return self


class FindingCollection(BaseModel):
    """On-disk document holding every finding keyed by id."""

    updated_at: datetime | None = None
    findings: dict[str, Finding] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Auto-pilot context and decisions
# ---------------------------------------------------------------------------


class Contact(BaseModel):
    phone: str | None = None
    email: str | None = None
    opt_out: bool = False

    @property
    def has_phone(self) -> bool:
        return bool(self.phone and self.phone.strip())

    @property
    def has_email(self) -> bool:
        return bool(self.email and self.email.strip())

    @property
    def has_any(self) -> bool:
        return self.has_phone or self.has_email


class AutoPilotContext(BaseModel):
    """Per-invocation projection of a finding plus contact data. Never persisted."""

    opportunity_id: str = Field(min_length=1)
    finding_id: str | None = None
    finding_type: str
    severity: int
    treated: bool = False
    contact: Contact = Field(default_factory=Contact)

    invoice_amount: float | None = None
    payment_link: str | None = None
    last_attempt_at: datetime | None = None
    never_activated: bool | None = None
    last_contact_at: datetime | None = None
    last_activity_at: datetime | None = None

    title: str | None = None

    @field_validator("opportunity_id", "finding_id", mode="after")
    @classmethod
    def _strip_ids(cls, value: str | None, info: ValidationInfo) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        if not stripped and info.field_name == "opportunity_id":
            raise ValueError("opportunity_id must not be blank")
        return stripped or None

    @property
    def lock_key(self) -> str:
        finding_id = (self.finding_id or "").strip()
        return finding_id or self.opportunity_id

    @property
    def display_label(self) -> str:
        if self.title and self.title.strip():
            return self.title.strip()
        return self.finding_type or "Opportunité"


class Decision(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ActionKind
    channel: Channel
    summary_label: str
    cooldown_hours: int | None = None
    template_key: str | None = None
    required_fields: tuple[str, ...] = ()
    rule: str = ""


class RenderedMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    body: str
    subject: str | None = None


# ---------------------------------------------------------------------------
# Action log and run results
# ---------------------------------------------------------------------------


class LogEntry(BaseModel):
    """Immutable record of one attempted step."""

    model_config = ConfigDict(frozen=True)

    ts: datetime
    source: str = "AUTO_PILOT"
    opportunity_id: str
    finding_id: str | None = None
    finding_type: str
    action: ActionKind
    channel: Channel
    status: RunStatus
    reason: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    @field_validator("ts", mode="after")
    @classmethod
    def _ts_is_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class RunSummary(BaseModel):
    title: str
    lines: list[str] = Field(default_factory=list, max_length=4)


class AutoPilotRunResult(BaseModel):
    ok: bool
    blocked: bool = False
    block_reason: BlockReason | None = None
    fallback_reason: BlockReason | None = None
    steps: list[LogEntry] = Field(default_factory=list)
    summary: RunSummary


# ---------------------------------------------------------------------------
# Store operation results
# ---------------------------------------------------------------------------


class LeverSelection(BaseModel):
    type: str | None = None
    strategy: LeverStrategy
    candidate_ids: list[str] = Field(default_factory=list)
    candidate_value_cents: int = 0


class EnqueueResult(BaseModel):
    queued_count: int
    queued_value_cents: int
    ids: list[str] = Field(default_factory=list)
    target_type: str | None = None


class DequeueResult(BaseModel):
    updated_count: int
    ids: list[str] = Field(default_factory=list)


class ExecuteResult(BaseModel):
    handled_count: int
    total_value_cents: int
    ids: list[str] = Field(default_factory=list)


class UndoResult(BaseModel):
    restored_count: int
    ids: list[str] = Field(default_factory=list)


class QueueListing(BaseModel):
    count: int
    total_value_cents: int
    items: list[Finding] = Field(default_factory=list)
