"""Core entities shared across the dispatch engine."""

from __future__ import annotations

from datetime import UTC, datetime, time
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_serializer,
    model_validator,
)


def utcnow() -> datetime:
    """Timezone-aware current UTC time; the default engine clock."""
    return datetime.now(UTC)


class Channel(str, Enum):
    """Delivery channel."""

    EMAIL = "email"
    SMS = "sms"


class Contact(BaseModel):
    """A store-owned contact (a synced customer or a manual subscriber)."""

    id: str
    store_id: str
    email: str | None = None
    phone: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    # Denormalised consent flags used for the audience pre-filter only;
    # the consent ledger is authoritative at send time.
    email_consent: bool | None = None
    sms_consent: bool | None = None
    tags: list[str] = Field(default_factory=list)
    segments: list[str] = Field(default_factory=list)
    total_spent: float = 0.0
    orders_count: int = 0
    attributes: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def address_for(self, channel: Channel) -> str | None:
        """Return the contact's address on a channel, if any."""
        address = self.email if channel == Channel.EMAIL else self.phone
        return address or None

    def consent_flag(self, channel: Channel) -> bool | None:
        return self.email_consent if channel == Channel.EMAIL else self.sms_consent

    def template_vars(self) -> dict[str, Any]:
        """Variables exposed to message templates under ``contact``."""
        return {
            "id": self.id,
            "email": self.email or "",
            "phone": self.phone or "",
            "first_name": self.first_name or "",
            "last_name": self.last_name or "",
            "tags": list(self.tags),
            **self.attributes,
        }


class ContactUpdate(BaseModel):
    """Changes to apply to a contact.

    Only fields that are set are written, and only they are serialized, so a
    stored update reloads with the same meaning. ``segments`` replaces the
    contact's segments; ``attributes`` entries are merged into the existing ones.
    """

    model_config = ConfigDict(extra="forbid")

    email: str | None = None
    phone: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    segments: list[str] | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _changes_something(self) -> ContactUpdate:
        if not self.model_fields_set:
            raise ValueError("at least one field must be updated")
        return self

    @model_serializer(mode="wrap")
    def _dump_set_fields(self, handler) -> dict[str, Any]:
        data = handler(self)
        return {key: value for key, value in data.items() if key in self.model_fields_set}


class AccountSettings(BaseModel):
    """Per-store sending configuration: timezone, quiet hours and plan limits."""

    store_id: str
    timezone: str = "UTC"
    quiet_hours_start: time | None = None
    quiet_hours_end: time | None = None
    sms_daily_limit: int = Field(1000, ge=0)
    email_monthly_credits: int = Field(50000, ge=0)
    sms_monthly_credits: int = Field(5000, ge=0)
    billing_cycle_anchor_day: int = Field(1, ge=1, le=28)

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {value}") from e
        return value

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def monthly_credits(self, channel: Channel) -> int:
        if channel == Channel.EMAIL:
            return self.email_monthly_credits
        return self.sms_monthly_credits


class DomainEvent(BaseModel):
    """An inbound domain event: ``{type, store_id, payload, event_id}``."""

    event_id: str
    type: str
    store_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)
