"""Applies provider delivery callbacks to message records."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

from campaign_dispatch.compliance.models import InboundMessage
from campaign_dispatch.compliance.opt_out import OptOutHandler
from campaign_dispatch.dispatch.models import MessageStatus, SourceKind
from campaign_dispatch.models import utcnow

from .models import ProviderEvent, ReconcileResult

if TYPE_CHECKING:
    from campaign_dispatch.state.repository import Repository

logger = logging.getLogger(__name__)

EVENT_STATUS: dict[str, MessageStatus] = {
    "sent": MessageStatus.SENT,
    "email.sent": MessageStatus.SENT,
    "message.sent": MessageStatus.SENT,
    "delivered": MessageStatus.DELIVERED,
    "email.delivered": MessageStatus.DELIVERED,
    "message.delivered": MessageStatus.DELIVERED,
    "bounced": MessageStatus.BOUNCED,
    "email.bounced": MessageStatus.BOUNCED,
    "failed": MessageStatus.FAILED,
    "message.delivery_failed": MessageStatus.FAILED,
    "opened": MessageStatus.OPENED,
    "email.opened": MessageStatus.OPENED,
    "clicked": MessageStatus.CLICKED,
    "email.clicked": MessageStatus.CLICKED,
}


def status_for(event: ProviderEvent) -> MessageStatus | None:
    return event.status_hint or EVENT_STATUS.get(event.event_type)


class DeliveryReconciler:
    """Single idempotent entry point for delivery callbacks.

    Every status change is one forward-only compare-and-set, so duplicate,
    reordered and racing callbacks converge on the highest status seen.

    Records are found by ``provider_message_id``, which is only stored when
    the worker marks the message ``sent``. A callback that arrives before
    that finds no record and is reported as ``unknown_message``; it is still
    kept in ``delivery_events`` and can be replayed with ``reconcile``.
    """

    def __init__(
        self,
        repository: Repository,
        opt_outs: OptOutHandler | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.opt_outs = opt_outs or OptOutHandler(repository, clock)
        self.clock = clock

    def apply_provider_event(self, event: ProviderEvent) -> ReconcileResult:
        result = self._apply(event)
        self.repository.record_delivery_event(
            event.provider,
            event.provider_message_id,
            event.event_type,
            event.occurred_at,
            result.value,
            event.payload,
            self.clock(),
        )
        return result

    def _apply(self, event: ProviderEvent) -> ReconcileResult:
        status = status_for(event)
        if status is None:
            logger.debug(f"Ignoring unsupported {event.provider} event {event.event_type}")
            return ReconcileResult.UNSUPPORTED

        record = self.repository.get_message_record_by_provider_id(event.provider_message_id)
        if record is None:
            logger.warning(
                f"{event.provider} {event.event_type} for unknown message; discarded",
                extra={"provider_message_id": event.provider_message_id},
            )
            return ReconcileResult.UNKNOWN_MESSAGE

        if not self.repository.advance_message_status(
            event.provider_message_id, status, event.occurred_at
        ):
            logger.debug(
                f"Stale {event.event_type}: record is already {record.status.value}",
                extra={"provider_message_id": event.provider_message_id},
            )
            return ReconcileResult.STALE

        logger.info(
            f"Message {record.id} -> {status.value}",
            extra={"provider_message_id": event.provider_message_id},
        )
        if record.source_kind == SourceKind.CAMPAIGN:
            self._refresh_campaign(record.source_id)
        return ReconcileResult.APPLIED

    def _refresh_campaign(self, campaign_id: str) -> None:
        campaign = self.repository.get_campaign(campaign_id)
        if campaign is None:
            return
        counters = self.repository.message_counters(SourceKind.CAMPAIGN, campaign_id)
        counters.recipient_count = campaign.recipient_count
        self.repository.update_campaign_counters(campaign_id, counters, self.clock())

    def handle_inbound(self, message: InboundMessage) -> list[str]:
        """Route an inbound SMS to the opt-out handler."""
        return self.opt_outs.handle_inbound_sms(message)
