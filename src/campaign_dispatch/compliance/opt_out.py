"""Consent ledger writes: opt-in, opt-out and inbound STOP handling."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

from campaign_dispatch.models import Channel, utcnow
from campaign_dispatch.utils.validation import is_stop_keyword, normalize_phone

from .models import ConsentRecord, InboundMessage, OptOutRecord

if TYPE_CHECKING:
    from campaign_dispatch.state.repository import Repository

logger = logging.getLogger(__name__)


class OptOutHandler:
    """Appends consent records and maintains opt-outs.

    An opt-out writes both an opt-out record and a ``consented=False`` ledger
    entry; a later opt-in revokes active opt-outs.
    """

    def __init__(self, repository: Repository, clock: Callable[[], datetime] = utcnow):
        self.repository = repository
        self.clock = clock

    def opt_in(
        self,
        contact_id: str,
        channel: Channel,
        source: str = "manual",
        ip_address: str | None = None,
    ) -> ConsentRecord:
        now = self.clock()
        record = self.repository.append_consent(
            ConsentRecord(
                contact_id=contact_id,
                channel=channel,
                consented=True,
                source=source,
                ip_address=ip_address,
                recorded_at=now,
            )
        )
        revoked = self.repository.revoke_opt_outs(contact_id, channel, now)
        if revoked:
            logger.info(f"Revoked {revoked} opt-out(s) for contact {contact_id} on {channel.value}")
        return record

    def opt_out(
        self,
        contact_id: str,
        channel: Channel,
        source: str = "manual",
        keyword: str | None = None,
    ) -> OptOutRecord:
        now = self.clock()
        opt_out = self.repository.add_opt_out(
            OptOutRecord(
                contact_id=contact_id,
                channel=channel,
                source=source,
                keyword=keyword,
                created_at=now,
            )
        )
        self.repository.append_consent(
            ConsentRecord(
                contact_id=contact_id,
                channel=channel,
                consented=False,
                source=source,
                recorded_at=now,
            )
        )
        logger.info(f"Contact {contact_id} opted out of {channel.value} via {source}")
        return opt_out

    def handle_inbound_sms(self, message: InboundMessage) -> list[str]:
        """Opt out every contact with the sender's number if the text is a STOP keyword.

        Returns:
            IDs of contacts that were opted out
        """
        if not is_stop_keyword(message.text):
            return []
        phone = normalize_phone(message.from_number)
        if phone is None:
            logger.warning("STOP request from an unparseable number ignored")
            return []

        opted_out = []
        for contact in self.repository.find_contact_by_phone(phone):
            self.opt_out(
                contact.id,
                Channel.SMS,
                source=f"{message.provider}_inbound",
                keyword=message.text.strip().lower(),
            )
            opted_out.append(contact.id)
        if not opted_out:
            logger.info("STOP request from a number with no matching contact")
        return opted_out
