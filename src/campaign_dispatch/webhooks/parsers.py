"""Normalisation of Resend and Telnyx webhook bodies."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from campaign_dispatch.compliance.models import InboundMessage
from campaign_dispatch.dispatch.models import MessageStatus
from campaign_dispatch.errors import WebhookPayloadError
from campaign_dispatch.models import utcnow

from .models import ProviderEvent

logger = logging.getLogger(__name__)

RESEND = "resend"
TELNYX = "telnyx"

# Telnyx per-recipient status values reported on message.finalized
TELNYX_RECIPIENT_STATUS = {
    "sent": MessageStatus.SENT,
    "delivered": MessageStatus.DELIVERED,
    "delivery_failed": MessageStatus.FAILED,
    "sending_failed": MessageStatus.FAILED,
    "delivery_unconfirmed": MessageStatus.SENT,
}


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 provider timestamp; missing or bad values mean now."""
    if not value:
        return utcnow()
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparseable provider timestamp {value!r}; using receipt time")
        return utcnow()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def parse_resend_event(body: dict[str, Any]) -> ProviderEvent:
    """``{"type": "email.delivered", "created_at": ..., "data": {"email_id": ...}}``"""
    if not isinstance(body, dict):
        raise WebhookPayloadError("Resend webhook body must be an object")
    event_type = body.get("type")
    data = body.get("data") or {}
    email_id = data.get("email_id") if isinstance(data, dict) else None
    if not event_type or not email_id:
        raise WebhookPayloadError(
            "Resend webhook is missing type or data.email_id",
            {"type": event_type},
        )
    return ProviderEvent(
        provider=RESEND,
        provider_message_id=str(email_id),
        event_type=str(event_type),
        occurred_at=parse_timestamp(data.get("created_at") or body.get("created_at")),
        payload=body,
    )


def parse_telnyx_event(body: dict[str, Any]) -> ProviderEvent | InboundMessage:
    """Telnyx wraps every event as ``{"data": {"event_type", "occurred_at", "payload"}}``.

    ``message.received`` is an inbound SMS and becomes an ``InboundMessage``;
    everything else is a delivery event for an outbound message.
    """
    if not isinstance(body, dict) or not isinstance(body.get("data"), dict):
        raise WebhookPayloadError("Telnyx webhook body must carry a data object")
    data = body["data"]
    event_type = data.get("event_type")
    payload = data.get("payload") or {}
    if not event_type or not isinstance(payload, dict):
        raise WebhookPayloadError("Telnyx webhook is missing data.event_type or data.payload")
    occurred_at = parse_timestamp(data.get("occurred_at"))

    if event_type == "message.received":
        sender = payload.get("from") or {}
        recipients = payload.get("to") or []
        from_number = sender.get("phone_number") if isinstance(sender, dict) else None
        if not from_number:
            raise WebhookPayloadError("Inbound Telnyx message has no sender number")
        to_number = None
        if recipients and isinstance(recipients[0], dict):
            to_number = recipients[0].get("phone_number")
        return InboundMessage(
            provider=TELNYX,
            from_number=from_number,
            to_number=to_number,
            text=payload.get("text") or "",
            received_at=occurred_at,
        )

    message_id = payload.get("id")
    if not message_id:
        raise WebhookPayloadError(
            "Telnyx webhook is missing data.payload.id", {"event_type": event_type}
        )

    status_hint = None
    if event_type == "message.finalized":
        recipients = payload.get("to") or []
        if recipients and isinstance(recipients[0], dict):
            status_hint = TELNYX_RECIPIENT_STATUS.get(recipients[0].get("status"))

    return ProviderEvent(
        provider=TELNYX,
        provider_message_id=str(message_id),
        event_type=str(event_type),
        occurred_at=occurred_at,
        status_hint=status_hint,
        payload=body,
    )
