"""Pydantic models for bulk campaigns."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, model_validator

from campaign_dispatch.dispatch.models import MessageContent
from campaign_dispatch.models import Channel, utcnow
from campaign_dispatch.utils.validation import check_sms_body


class CampaignStatus(str, Enum):
    """Campaign lifecycle: draft -> (scheduled ->) sending -> sent | failed | cancelled."""

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_CAMPAIGN_STATUSES = frozenset(
    {CampaignStatus.SENT, CampaignStatus.FAILED, CampaignStatus.CANCELLED}
)


class AudienceDefinition(BaseModel):
    """Which store contacts a campaign targets. Empty criteria select everyone."""

    segments: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    contact_ids: list[str] = Field(default_factory=list)
    min_total_spent: float | None = None
    max_total_spent: float | None = None
    min_orders: int | None = None
    max_orders: int | None = None


class CampaignCounters(BaseModel):
    """Counters recomputed from message records."""

    recipient_count: int = 0
    sent_count: int = 0
    delivered_count: int = 0
    bounced_count: int = 0
    opened_count: int = 0
    clicked_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    pending_count: int = 0


class Campaign(BaseModel):
    """A one-shot bulk send."""

    id: str
    store_id: str
    name: str
    channel: Channel
    content: MessageContent
    audience: AudienceDefinition = Field(default_factory=AudienceDefinition)
    status: CampaignStatus = CampaignStatus.DRAFT
    recipient_count: int = 0
    sent_count: int = 0
    delivered_count: int = 0
    bounced_count: int = 0
    opened_count: int = 0
    clicked_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    scheduled_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancel_requested: bool = False
    audience_enqueued_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _sms_body_fits(self) -> Campaign:
        if self.channel == Channel.SMS and self.content.body:
            check_sms_body(self.content.body)
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CAMPAIGN_STATUSES


class CampaignExecutionResult(BaseModel):
    """Returned by ``CampaignExecutionEngine.execute``."""

    campaign_id: str
    status: CampaignStatus
    started: bool = False
    recipient_count: int = 0
    units_enqueued: int = 0
    outcomes: dict[str, int] = Field(default_factory=dict)
    next_retry_at: datetime | None = None


class CampaignAnalytics(BaseModel):
    """Delivery and engagement rates for a campaign."""

    campaign_id: str
    status: CampaignStatus
    counters: CampaignCounters
    delivery_rate: float = 0.0
    open_rate: float = 0.0
    click_rate: float = 0.0
    bounce_rate: float = 0.0
    failure_rate: float = 0.0


class ChannelPerformance(BaseModel):
    """Totals and rates across a store's campaigns on one channel."""

    channel: Channel
    campaign_count: int = 0
    recipient_count: int = 0
    sent_count: int = 0
    delivered_count: int = 0
    opened_count: int = 0
    clicked_count: int = 0
    delivery_rate: float = 0.0
    open_rate: float = 0.0
    click_rate: float = 0.0


class CampaignPerformanceSummary(BaseModel):
    """Store-level campaign performance, one entry per channel."""

    store_id: str
    email: ChannelPerformance = Field(
        default_factory=lambda: ChannelPerformance(channel=Channel.EMAIL)
    )
    sms: ChannelPerformance = Field(default_factory=lambda: ChannelPerformance(channel=Channel.SMS))
