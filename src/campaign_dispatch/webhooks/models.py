"""Provider delivery event models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from campaign_dispatch.dispatch.models import MessageStatus
from campaign_dispatch.models import utcnow


class ReconcileResult(str, Enum):
    """Outcome of applying one provider event."""

    APPLIED = "applied"
    STALE = "stale"
    UNKNOWN_MESSAGE = "unknown_message"
    UNSUPPORTED = "unsupported"


class ProviderEvent(BaseModel):
    """A normalised delivery callback from Resend or Telnyx."""

    provider: str
    provider_message_id: str
    event_type: str
    occurred_at: datetime = Field(default_factory=utcnow)
    # Explicit status from the payload; overrides the event type mapping
    status_hint: MessageStatus | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
