"""Audience snapshot resolution."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from campaign_dispatch.models import Channel, Contact

from .models import AudienceDefinition, Campaign

if TYPE_CHECKING:
    from campaign_dispatch.state.repository import Repository

logger = logging.getLogger(__name__)


def matches_definition(contact: Contact, definition: AudienceDefinition) -> bool:
    """True if the contact satisfies every criterion the definition sets."""
    if definition.contact_ids and contact.id not in definition.contact_ids:
        return False
    if definition.tags and not set(definition.tags) & set(contact.tags):
        return False
    if definition.segments and not set(definition.segments) & set(contact.segments):
        return False
    if definition.min_total_spent is not None and contact.total_spent < definition.min_total_spent:
        return False
    if definition.max_total_spent is not None and contact.total_spent > definition.max_total_spent:
        return False
    if definition.min_orders is not None and contact.orders_count < definition.min_orders:
        return False
    if definition.max_orders is not None and contact.orders_count > definition.max_orders:
        return False
    return True


def prefilter(contact: Contact, channel: Channel) -> bool:
    """Cheap channel filter: an address, and not explicitly flagged as non-consenting.

    The consent gate still decides each send.
    """
    return bool(contact.address_for(channel)) and contact.consent_flag(channel) is not False


def select_audience(
    contacts: list[Contact], definition: AudienceDefinition, channel: Channel
) -> list[Contact]:
    return [c for c in contacts if prefilter(c, channel) and matches_definition(c, definition)]


class AudienceResolver:
    """Takes a one-time snapshot of a campaign's recipients."""

    def __init__(self, repository: Repository):
        self.repository = repository

    def resolve(self, campaign: Campaign) -> list[str]:
        contacts = self.repository.list_contacts(campaign.store_id)
        selected = select_audience(contacts, campaign.audience, campaign.channel)
        logger.info(
            f"Campaign {campaign.id} audience: {len(selected)} of {len(contacts)} contacts",
            extra={"campaign_id": campaign.id, "store_id": campaign.store_id},
        )
        return [c.id for c in selected]
