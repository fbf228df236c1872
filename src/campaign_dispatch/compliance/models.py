"""Consent ledger and gate decision models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from campaign_dispatch.models import Channel, utcnow


class DenyReason(str, Enum):
    """Why the consent gate refused a send."""

    NO_CONSENT = "no_consent"
    CONSENT_REVOKED = "consent_revoked"
    OPTED_OUT = "opted_out"
    MISSING_ADDRESS = "missing_address"
    QUIET_HOURS = "quiet_hours"


class ConsentRecord(BaseModel):
    """One append-only consent ledger entry."""

    id: int | None = None
    contact_id: str
    channel: Channel
    consented: bool
    source: str = "manual"
    ip_address: str | None = None
    recorded_at: datetime = Field(default_factory=utcnow)


class OptOutRecord(BaseModel):
    """An opt-out request; active until ``revoked_at`` is set."""

    id: int | None = None
    contact_id: str
    channel: Channel
    source: str = "manual"
    keyword: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    revoked_at: datetime | None = None

    @property
    def active(self) -> bool:
        return self.revoked_at is None


class ConsentDecision(BaseModel):
    """Result of a consent check.

    A denial with ``retry_at`` set is deferrable: the same send becomes
    permissible at that instant without any change in consent.
    """

    allowed: bool
    reason: DenyReason | None = None
    retry_at: datetime | None = None

    @property
    def deferrable(self) -> bool:
        return not self.allowed and self.retry_at is not None

    @classmethod
    def allow(cls) -> ConsentDecision:
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: DenyReason, retry_at: datetime | None = None) -> ConsentDecision:
        return cls(allowed=False, reason=reason, retry_at=retry_at)


class InboundMessage(BaseModel):
    """An inbound SMS received by the provider."""

    provider: str
    from_number: str
    to_number: str | None = None
    text: str = ""
    received_at: datetime = Field(default_factory=utcnow)
