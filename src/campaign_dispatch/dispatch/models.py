"""Pydantic models for message dispatch."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from campaign_dispatch.models import Channel, utcnow


class MessageStatus(str, Enum):
    """Delivery status of one message to one recipient."""

    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    BOUNCED = "bounced"
    FAILED = "failed"
    OPENED = "opened"
    CLICKED = "clicked"


# Forward-only lattice: a status may only be replaced by one of higher rank.
STATUS_RANK: dict[MessageStatus, int] = {
    MessageStatus.QUEUED: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.BOUNCED: 2,
    MessageStatus.FAILED: 2,
    MessageStatus.OPENED: 3,
    MessageStatus.CLICKED: 4,
}

# Nothing follows these.
TERMINAL_STATUSES = frozenset({MessageStatus.BOUNCED, MessageStatus.FAILED})


def predecessors(status: MessageStatus) -> list[MessageStatus]:
    """Statuses from which ``status`` may be reached."""
    rank = STATUS_RANK[status]
    return [
        s for s, r in STATUS_RANK.items() if r < rank and s not in TERMINAL_STATUSES
    ]


def can_transition(current: MessageStatus, new: MessageStatus) -> bool:
    return current in predecessors(new)


class ErrorKind(str, Enum):
    """Failure classification for a send attempt."""

    INVALID_RECIPIENT = "invalid_recipient"
    PROVIDER_THROTTLED = "provider_throttled"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    AUTH_ERROR = "auth_error"
    QUOTA_EXCEEDED = "quota_exceeded"
    INTERNAL_ERROR = "internal_error"


TRANSIENT_ERROR_KINDS = frozenset(
    {ErrorKind.PROVIDER_THROTTLED, ErrorKind.PROVIDER_UNAVAILABLE}
)


class SourceKind(str, Enum):
    """What produced a message record."""

    CAMPAIGN = "campaign"
    WORKFLOW_RUN = "workflow_run"


class MessageRecord(BaseModel):
    """One row per (source kind, source id, recipient, channel)."""

    id: str
    store_id: str
    source_kind: SourceKind
    source_id: str
    recipient_id: str
    channel: Channel
    status: MessageStatus = MessageStatus.QUEUED
    provider_message_id: str | None = None
    claimed_at: datetime | None = None
    attempts: int = 0
    error_kind: ErrorKind | None = None
    last_error: str | None = None
    skip_reason: str | None = None
    deferred_until: datetime | None = None
    queued_at: datetime = Field(default_factory=utcnow)
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    bounced_at: datetime | None = None
    failed_at: datetime | None = None
    opened_at: datetime | None = None
    clicked_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def in_flight(self) -> bool:
        return self.status == MessageStatus.QUEUED and self.claimed_at is not None

    @property
    def retriable_failure(self) -> bool:
        """A failure caused only by exhausted transient retries."""
        return self.status == MessageStatus.FAILED and self.error_kind in TRANSIENT_ERROR_KINDS

    @property
    def blocks_send(self) -> bool:
        """True if sending again could double-deliver or contradict a final outcome."""
        if self.status == MessageStatus.QUEUED:
            return self.in_flight
        if self.status == MessageStatus.FAILED:
            return not self.retriable_failure
        return True


class MessageContent(BaseModel):
    """Channel content before variable substitution."""

    subject: str | None = None
    html: str | None = None
    text: str | None = None
    body: str | None = None  # SMS body
    from_email: str | None = None
    from_number: str | None = None
    from_name: str | None = None
    reply_to: str | None = None
    preview_text: str | None = None


class UnitKind(str, Enum):
    """Dispatch unit kinds."""

    CAMPAIGN_BATCH = "campaign_batch"
    AUTOMATION_SEND = "automation_send"


class UnitStatus(str, Enum):
    """Dispatch unit queue status."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    CANCELLED = "cancelled"


class DispatchUnit(BaseModel):
    """A batch of recipients sent with the same content on one channel."""

    id: str
    kind: UnitKind
    source_kind: SourceKind
    source_id: str
    store_id: str
    channel: Channel
    content: MessageContent
    recipient_ids: list[str]
    variables: dict[str, Any] = Field(default_factory=dict)
    status: UnitStatus = UnitStatus.PENDING
    available_at: datetime = Field(default_factory=utcnow)
    lease_until: datetime | None = None
    attempts: int = 0
    last_error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class RenderedMessage(BaseModel):
    """A message ready for a provider."""

    channel: Channel
    to: str
    subject: str | None = None
    html: str | None = None
    text: str | None = None
    body: str | None = None
    from_email: str | None = None
    from_number: str | None = None
    from_name: str | None = None
    reply_to: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)
    idempotency_key: str | None = None


class SendResult(BaseModel):
    """Outcome of one provider call."""

    accepted: bool
    provider_message_id: str | None = None
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    retryable: bool = False

    @classmethod
    def ok(cls, provider_message_id: str) -> SendResult:
        return cls(accepted=True, provider_message_id=provider_message_id)

    @classmethod
    def error(cls, kind: ErrorKind, message: str = "") -> SendResult:
        return cls(
            accepted=False,
            error_kind=kind,
            error_message=message,
            retryable=kind in TRANSIENT_ERROR_KINDS,
        )


class OutcomeKind(str, Enum):
    """Per-recipient result of processing a dispatch unit."""

    SENT = "sent"
    SKIPPED = "skipped"
    DEFERRED = "deferred"
    FAILED = "failed"
    DUPLICATE = "duplicate"


class RecipientOutcome(BaseModel):
    """What happened to one recipient of a unit."""

    recipient_id: str
    outcome: OutcomeKind
    record_id: str | None = None
    provider_message_id: str | None = None
    reason: str | None = None
    retry_at: datetime | None = None
    attempts: int = 0


class BatchResult(BaseModel):
    """Aggregated outcomes of one dispatch unit."""

    unit_id: str
    outcomes: list[RecipientOutcome] = Field(default_factory=list)

    def count(self, kind: OutcomeKind) -> int:
        return sum(1 for o in self.outcomes if o.outcome == kind)

    @property
    def deferred(self) -> list[RecipientOutcome]:
        return [o for o in self.outcomes if o.outcome == OutcomeKind.DEFERRED]

    @property
    def earliest_deferral(self) -> datetime | None:
        times = [o.retry_at for o in self.deferred if o.retry_at is not None]
        return min(times) if times else None

    def summary(self) -> dict[str, int]:
        return {kind.value: self.count(kind) for kind in OutcomeKind}
