"""Rate counter and admission models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel

from campaign_dispatch.models import Channel


class Period(str, Enum):
    """Counter periods."""

    DAY = "day"
    CYCLE = "cycle"  # Billing cycle, anchored on the account's anchor day


class RateCounter(BaseModel):
    """Sends counted for (account, channel, period, period_key)."""

    account_id: str
    channel: Channel
    period: Period
    period_key: str
    count: int = 0


class CounterCheck(BaseModel):
    """One counter to increment, with its cap."""

    period: Period
    period_key: str
    limit: int
    resets_at: datetime


class Admission(BaseModel):
    """Result of a rate limit check."""

    admitted: bool
    reason: str | None = None
    retry_after: datetime | None = None
    quota_exhausted: bool = False

    @classmethod
    def admit(cls) -> Admission:
        return cls(admitted=True)
