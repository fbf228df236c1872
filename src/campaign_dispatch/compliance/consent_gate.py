"""Send-time consent checks.

``evaluate_consent`` holds the rules as a pure function over already-loaded
state; ``ConsentGate`` loads that state from the repository.
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timedelta
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from campaign_dispatch.models import AccountSettings, Channel, Contact

from .models import ConsentDecision, ConsentRecord, DenyReason, OptOutRecord

if TYPE_CHECKING:
    from campaign_dispatch.state.repository import Repository

logger = logging.getLogger(__name__)


def quiet_hours_end(
    now: datetime, tz: ZoneInfo, start: time | None, end: time | None
) -> datetime | None:
    """Return the instant the quiet-hours window ends if ``now`` falls inside it.

    The window is evaluated in local time: start inclusive, end exclusive,
    wrapping midnight when start > end. start == end means no window.
    """
    if start is None or end is None or start == end:
        return None

    local = now.astimezone(tz)
    current = local.time().replace(tzinfo=None)
    today = local.date()

    if start < end:
        if not (start <= current < end):
            return None
        end_date = today
    else:
        if current >= start:
            end_date = today + timedelta(days=1)
        elif current < end:
            end_date = today
        else:
            return None

    return datetime.combine(end_date, end, tzinfo=tz).astimezone(now.tzinfo)


def evaluate_consent(
    contact: Contact | None,
    channel: Channel,
    latest_consent: ConsentRecord | None,
    opt_out: OptOutRecord | None,
    account: AccountSettings,
    now: datetime,
) -> ConsentDecision:
    """Decide whether a message may be sent to a contact right now."""
    if contact is None or not contact.address_for(channel):
        return ConsentDecision.deny(DenyReason.MISSING_ADDRESS)

    if opt_out is not None and opt_out.active:
        return ConsentDecision.deny(DenyReason.OPTED_OUT)

    if latest_consent is None:
        return ConsentDecision.deny(DenyReason.NO_CONSENT)
    if not latest_consent.consented:
        return ConsentDecision.deny(DenyReason.CONSENT_REVOKED)

    if channel == Channel.SMS:
        window_end = quiet_hours_end(
            now, account.tz, account.quiet_hours_start, account.quiet_hours_end
        )
        if window_end is not None:
            return ConsentDecision.deny(DenyReason.QUIET_HOURS, retry_at=window_end)

    return ConsentDecision.allow()


class ConsentGate:
    """Answers "may we send this channel to this contact now?".

    Reads only; never writes.
    """

    def __init__(self, repository: Repository):
        self.repository = repository

    def can_send(
        self, recipient: Contact | str, channel: Channel, now: datetime
    ) -> ConsentDecision:
        if isinstance(recipient, str):
            contact = self.repository.get_contact(recipient)
        else:
            contact = recipient

        if contact is None:
            logger.debug(f"Consent check for unknown contact {recipient}")
            return ConsentDecision.deny(DenyReason.MISSING_ADDRESS)

        decision = evaluate_consent(
            contact,
            channel,
            self.repository.latest_consent(contact.id, channel),
            self.repository.active_opt_out(contact.id, channel),
            self.repository.get_account_settings(contact.store_id),
            now,
        )
        if not decision.allowed:
            logger.debug(
                f"Consent denied for contact {contact.id} on {channel.value}: "
                f"{decision.reason.value}"
            )
        return decision
