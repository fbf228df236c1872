"""Per-recipient send pipeline for one dispatch unit."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

from campaign_dispatch.compliance.consent_gate import ConsentGate
from campaign_dispatch.errors import (
    ConfigurationError,
    DispatchFailed,
    RateLimited,
    RepositoryUnavailable,
)
from campaign_dispatch.models import Channel, Contact, utcnow
from campaign_dispatch.providers.base import MessageSender
from campaign_dispatch.ratelimit.limiter import RateLimiter

from .models import (
    BatchResult,
    DispatchUnit,
    ErrorKind,
    MessageRecord,
    OutcomeKind,
    RecipientOutcome,
)
from .renderer import render_message
from .retry import RetryStrategy

if TYPE_CHECKING:
    from campaign_dispatch.state.repository import Repository

logger = logging.getLogger(__name__)


class DispatchWorker:
    """Runs every recipient of a unit through consent, rate limit, render and send.

    Recipients are processed concurrently under a semaphore and
    independently: one recipient's failure never aborts the others. Only
    ``RepositoryUnavailable`` aborts the unit, which stays safe to re-run
    because every committed write is keyed per recipient.
    """

    def __init__(
        self,
        repository: Repository,
        consent_gate: ConsentGate,
        rate_limiter: RateLimiter,
        senders: dict[Channel, MessageSender],
        retry: RetryStrategy | None = None,
        clock: Callable[[], datetime] = utcnow,
        concurrency: int = 10,
    ):
        self.repository = repository
        self.consent_gate = consent_gate
        self.rate_limiter = rate_limiter
        self.senders = senders
        self.retry = retry or RetryStrategy()
        self.clock = clock
        self.concurrency = concurrency

    def _sender_for(self, channel: Channel) -> MessageSender:
        sender = self.senders.get(channel)
        if sender is None:
            raise ConfigurationError(f"No sender configured for channel {channel.value}")
        return sender

    async def process_unit(self, unit: DispatchUnit) -> BatchResult:
        """Process every recipient of a unit and collect their outcomes."""
        start = time.monotonic()
        sender = self._sender_for(unit.channel)
        contacts = self.repository.get_contacts(unit.recipient_ids)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(recipient_id: str) -> RecipientOutcome:
            async with semaphore:
                return await self._process_recipient(
                    unit, recipient_id, contacts.get(recipient_id), sender
                )

        results = await asyncio.gather(
            *(run(recipient_id) for recipient_id in unit.recipient_ids),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

        batch = BatchResult(unit_id=unit.id, outcomes=list(results))
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            f"Unit {unit.id} processed: {batch.summary()}",
            extra={"unit_id": unit.id, "duration_ms": duration_ms},
        )
        return batch

    async def _process_recipient(
        self,
        unit: DispatchUnit,
        recipient_id: str,
        contact: Contact | None,
        sender: MessageSender,
    ) -> RecipientOutcome:
        try:
            return await self._dispatch(unit, recipient_id, contact, sender)
        except RepositoryUnavailable:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error sending to {recipient_id} in unit {unit.id}")
            return RecipientOutcome(
                recipient_id=recipient_id,
                outcome=OutcomeKind.FAILED,
                reason=f"unexpected_error: {e}",
            )

    async def _dispatch(
        self,
        unit: DispatchUnit,
        recipient_id: str,
        contact: Contact | None,
        sender: MessageSender,
    ) -> RecipientOutcome:
        now = self.clock()
        channel = unit.channel
        record = self.repository.ensure_message_record(
            unit.store_id, unit.source_kind, unit.source_id, recipient_id, channel, now
        )

        if record.blocks_send:
            return self._duplicate(record)

        decision = self.consent_gate.can_send(contact or recipient_id, channel, now)
        if not decision.allowed:
            reason = decision.reason.value
            if decision.deferrable:
                self.repository.mark_message_deferred(record.id, decision.retry_at, reason, now)
                return RecipientOutcome(
                    recipient_id=recipient_id,
                    outcome=OutcomeKind.DEFERRED,
                    record_id=record.id,
                    reason=reason,
                    retry_at=decision.retry_at,
                )
            self.repository.mark_message_skipped(record.id, reason, now)
            return RecipientOutcome(
                recipient_id=recipient_id,
                outcome=OutcomeKind.SKIPPED,
                record_id=record.id,
                reason=reason,
            )

        if not self.repository.claim_message_record(record.id, now):
            current = self.repository.get_message_record(record.id)
            return self._duplicate(current or record)

        try:
            return await self._send_claimed(unit, record, contact, sender, now)
        except RepositoryUnavailable:
            raise
        except Exception as e:
            logger.exception(
                f"Unexpected error sending to {recipient_id} in unit {unit.id}; "
                f"marking the message failed",
                extra={"unit_id": unit.id, "recipient_id": recipient_id},
            )
            self.repository.mark_message_failed(
                record.id,
                ErrorKind.INTERNAL_ERROR,
                str(e) or type(e).__name__,
                record.attempts,
                self.clock(),
            )
            return RecipientOutcome(
                recipient_id=recipient_id,
                outcome=OutcomeKind.FAILED,
                record_id=record.id,
                reason=ErrorKind.INTERNAL_ERROR.value,
            )

    async def _send_claimed(
        self,
        unit: DispatchUnit,
        record: MessageRecord,
        contact: Contact | None,
        sender: MessageSender,
        now: datetime,
    ) -> RecipientOutcome:
        """Rate limit, render and send a message whose record this worker has claimed."""
        recipient_id = record.recipient_id
        channel = unit.channel
        try:
            self.rate_limiter.acquire(unit.store_id, channel, now)
        except RateLimited as e:
            if channel == Channel.SMS:
                self.repository.release_message_claim(record.id, now, e.retry_after, e.reason)
                return RecipientOutcome(
                    recipient_id=recipient_id,
                    outcome=OutcomeKind.DEFERRED,
                    record_id=record.id,
                    reason=e.reason,
                    retry_at=e.retry_after,
                )
            self.repository.mark_message_failed(
                record.id, ErrorKind.QUOTA_EXCEEDED, e.message, record.attempts, now
            )
            return RecipientOutcome(
                recipient_id=recipient_id,
                outcome=OutcomeKind.FAILED,
                record_id=record.id,
                reason=ErrorKind.QUOTA_EXCEEDED.value,
            )

        message = render_message(
            unit.content,
            channel,
            contact,
            unit.variables,
            tags={"source_kind": unit.source_kind.value, "source_id": unit.source_id},
            idempotency_key=record.id,
        )

        try:
            result, attempts = await self.retry.send(sender, message, recipient_id)
        except DispatchFailed as e:
            self.repository.mark_message_failed(
                record.id, ErrorKind(e.error_kind), e.message, e.attempts, self.clock()
            )
            logger.warning(
                f"Giving up on {recipient_id} after {e.attempts} attempts",
                extra={"unit_id": unit.id, "recipient_id": recipient_id},
            )
            return RecipientOutcome(
                recipient_id=recipient_id,
                outcome=OutcomeKind.FAILED,
                record_id=record.id,
                reason=e.error_kind,
                attempts=e.attempts,
            )

        if result.accepted:
            self.repository.mark_message_sent(
                record.id, result.provider_message_id, attempts, self.clock()
            )
            return RecipientOutcome(
                recipient_id=recipient_id,
                outcome=OutcomeKind.SENT,
                record_id=record.id,
                provider_message_id=result.provider_message_id,
                attempts=attempts,
            )

        if result.error_kind == ErrorKind.AUTH_ERROR:
            logger.critical(
                f"{sender.name} rejected our credentials; {channel.value} sends will keep "
                f"failing until the API key is fixed",
                extra={"unit_id": unit.id},
            )
        self.repository.mark_message_failed(
            record.id, result.error_kind, result.error_message, attempts, self.clock()
        )
        return RecipientOutcome(
            recipient_id=recipient_id,
            outcome=OutcomeKind.FAILED,
            record_id=record.id,
            reason=result.error_kind.value,
            attempts=attempts,
        )

    @staticmethod
    def _duplicate(record: MessageRecord) -> RecipientOutcome:
        reason = "in_flight" if record.in_flight else record.status.value
        return RecipientOutcome(
            recipient_id=record.recipient_id,
            outcome=OutcomeKind.DUPLICATE,
            record_id=record.id,
            provider_message_id=record.provider_message_id,
            reason=reason,
        )
