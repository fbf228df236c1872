"""Bulk campaign execution."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

from campaign_dispatch.dispatch.models import (
    DispatchUnit,
    OutcomeKind,
    SourceKind,
    UnitKind,
)
from campaign_dispatch.dispatch.queue import DispatchQueue, WorkerPool
from campaign_dispatch.errors import CampaignNotFoundError, InvalidTransitionError
from campaign_dispatch.models import Channel, utcnow
from campaign_dispatch.utils.validation import warn_if_multi_segment

from .analytics import compute_analytics, compute_performance_summary
from .audience import AudienceResolver
from .models import (
    Campaign,
    CampaignAnalytics,
    CampaignExecutionResult,
    CampaignPerformanceSummary,
    CampaignStatus,
)

if TYPE_CHECKING:
    from campaign_dispatch.state.repository import Repository

logger = logging.getLogger(__name__)


class CampaignExecutionEngine:
    """Moves a campaign from draft (or scheduled) through sending to a final status.

    ``execute`` is re-entrant: a campaign that is already sending or finished
    is returned unchanged, and the draft/scheduled -> sending step is a
    compare-and-set, so at most one caller ever dispatches a campaign. Its
    batches are stored together with the ``audience_enqueued_at`` marker; a
    sending campaign without the marker is resumed rather than finalized.
    """

    def __init__(
        self,
        repository: Repository,
        queue: DispatchQueue,
        pool: WorkerPool,
        batch_size: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.queue = queue
        self.pool = pool
        self.batch_size = batch_size
        self.clock = clock
        self.audience = AudienceResolver(repository)

    def _load(self, campaign_id: str) -> Campaign:
        campaign = self.repository.get_campaign(campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(
                f"Campaign not found: {campaign_id}", {"campaign_id": campaign_id}
            )
        return campaign

    def create(self, campaign: Campaign) -> Campaign:
        if campaign.channel == Channel.SMS:
            warn_if_multi_segment(campaign.content.body, f"Campaign {campaign.id}")
        self.repository.save_campaign(campaign)
        return self._load(campaign.id)

    def _unchanged(self, campaign: Campaign) -> CampaignExecutionResult:
        return CampaignExecutionResult(
            campaign_id=campaign.id,
            status=campaign.status,
            recipient_count=campaign.recipient_count,
        )

    def _partition(self, campaign: Campaign, recipient_ids: list[str]) -> list[DispatchUnit]:
        now = self.clock()
        return [
            DispatchUnit(
                id=str(uuid.uuid4()),
                kind=UnitKind.CAMPAIGN_BATCH,
                source_kind=SourceKind.CAMPAIGN,
                source_id=campaign.id,
                store_id=campaign.store_id,
                channel=campaign.channel,
                content=campaign.content,
                recipient_ids=recipient_ids[i : i + self.batch_size],
                variables={"campaign": {"id": campaign.id, "name": campaign.name}},
                available_at=now,
                created_at=now,
            )
            for i in range(0, len(recipient_ids), self.batch_size)
        ]

    async def execute(self, campaign_id: str) -> CampaignExecutionResult:
        """Dispatch a draft or scheduled campaign to its audience.

        A campaign left sending without its audience enqueued (the store
        failed between the two steps) is resumed from audience resolution.
        """
        campaign = self._load(campaign_id)
        resuming = campaign.status == CampaignStatus.SENDING and not campaign.audience_enqueued_at
        if not resuming and (campaign.status == CampaignStatus.SENDING or campaign.is_terminal):
            logger.info(
                f"Campaign {campaign_id} is already {campaign.status.value}; nothing to do",
                extra={"campaign_id": campaign_id},
            )
            return self._unchanged(campaign)

        now = self.clock()
        if resuming:
            logger.warning(
                f"Campaign {campaign_id} is sending with no audience enqueued; resuming",
                extra={"campaign_id": campaign_id},
            )
        elif not self.repository.transition_campaign(
            campaign_id,
            [CampaignStatus.DRAFT, CampaignStatus.SCHEDULED],
            CampaignStatus.SENDING,
            now,
            started_at=now,
        ):
            return self._unchanged(self._load(campaign_id))

        recipient_ids = self.audience.resolve(campaign)
        units = self._partition(campaign, recipient_ids)
        if not self.repository.enqueue_campaign_audience(
            campaign_id, units, len(recipient_ids), now
        ):
            logger.info(
                f"Campaign {campaign_id} audience was enqueued by another caller",
                extra={"campaign_id": campaign_id},
            )
            return self._unchanged(self._load(campaign_id))
        logger.info(
            f"Campaign {campaign_id} sending to {len(recipient_ids)} recipients "
            f"in {len(units)} batches",
            extra={"campaign_id": campaign_id, "store_id": campaign.store_id},
        )

        results = await self.pool.drain(source_id=campaign_id)

        outcomes = {kind.value: 0 for kind in OutcomeKind}
        next_retry_at = None
        for _, batch in results:
            for kind, count in batch.summary().items():
                outcomes[kind] += count
            if batch.earliest_deferral and (
                next_retry_at is None or batch.earliest_deferral < next_retry_at
            ):
                next_retry_at = batch.earliest_deferral

        final = self.finalize(campaign_id)
        return CampaignExecutionResult(
            campaign_id=campaign_id,
            status=final.status,
            started=True,
            recipient_count=len(recipient_ids),
            units_enqueued=len(units),
            outcomes=outcomes,
            next_retry_at=next_retry_at,
        )

    def refresh_counters(self, campaign_id: str) -> Campaign:
        """Recompute counters from message records; recipient_count stays the snapshot size."""
        campaign = self._load(campaign_id)
        counters = self.repository.message_counters(SourceKind.CAMPAIGN, campaign_id)
        counters.recipient_count = campaign.recipient_count
        self.repository.update_campaign_counters(campaign_id, counters, self.clock())
        return self._load(campaign_id)

    def finalize(self, campaign_id: str) -> Campaign:
        """Refresh counters and settle a sending campaign whose units are all done.

        sent if anything was sent; failed if the audience was empty or nothing
        could be sent; otherwise it keeps sending until its deferred units run.
        A campaign whose audience was never enqueued is left for ``resume_stranded``.
        """
        campaign = self.refresh_counters(campaign_id)
        if campaign.status != CampaignStatus.SENDING:
            return campaign
        if campaign.audience_enqueued_at is None:
            return campaign

        open_units, next_at = self.queue.open_units(campaign_id)
        if open_units:
            logger.info(
                f"Campaign {campaign_id} has {open_units} open units; next at {next_at}",
                extra={"campaign_id": campaign_id},
            )
            return campaign

        new_status = CampaignStatus.SENT if campaign.sent_count > 0 else CampaignStatus.FAILED
        now = self.clock()
        if self.repository.transition_campaign(
            campaign_id, [CampaignStatus.SENDING], new_status, now, completed_at=now
        ):
            logger.info(
                f"Campaign {campaign_id} {new_status.value}: sent {campaign.sent_count}, "
                f"skipped {campaign.skipped_count}, failed {campaign.failed_count}",
                extra={"campaign_id": campaign_id},
            )
        return self._load(campaign_id)

    def schedule(self, campaign_id: str, at: datetime) -> Campaign:
        """Schedule a draft campaign; the scheduler starts it once ``at`` passes."""
        campaign = self._load(campaign_id)
        if not self.repository.transition_campaign(
            campaign_id,
            [CampaignStatus.DRAFT, CampaignStatus.SCHEDULED],
            CampaignStatus.SCHEDULED,
            self.clock(),
            scheduled_at=at,
        ):
            raise InvalidTransitionError(
                f"Campaign {campaign_id} cannot be scheduled from {campaign.status.value}",
                current=campaign.status.value,
                requested=CampaignStatus.SCHEDULED.value,
            )
        return self._load(campaign_id)

    def cancel(self, campaign_id: str) -> Campaign:
        """Stop admitting new batches of a sending campaign; in-flight units finish."""
        campaign = self._load(campaign_id)
        now = self.clock()
        if not self.repository.transition_campaign(
            campaign_id,
            [CampaignStatus.SENDING],
            CampaignStatus.CANCELLED,
            now,
            cancel_requested=True,
            completed_at=now,
        ):
            raise InvalidTransitionError(
                f"Campaign {campaign_id} can only be cancelled while sending",
                current=campaign.status.value,
                requested=CampaignStatus.CANCELLED.value,
            )
        cancelled_units = self.queue.cancel_source(campaign_id)
        logger.info(
            f"Campaign {campaign_id} cancelled; {cancelled_units} pending units dropped",
            extra={"campaign_id": campaign_id},
        )
        return self.refresh_counters(campaign_id)

    async def start_due(self, now: datetime) -> list[CampaignExecutionResult]:
        """Execute every scheduled campaign whose time has come."""
        results = []
        for campaign in self.repository.list_due_campaigns(now):
            results.append(await self.execute(campaign.id))
        return results

    async def resume_stranded(self) -> list[CampaignExecutionResult]:
        """Re-execute sending campaigns whose audience was never enqueued."""
        results = []
        for campaign in self.repository.list_campaigns(CampaignStatus.SENDING):
            if campaign.audience_enqueued_at is None:
                results.append(await self.execute(campaign.id))
        return results

    def finalize_open(self) -> list[Campaign]:
        """Finalize every sending campaign; used after the scheduler drains units."""
        return [self.finalize(c.id) for c in self.repository.list_campaigns(CampaignStatus.SENDING)]

    def get_analytics(self, campaign_id: str) -> CampaignAnalytics:
        campaign = self._load(campaign_id)
        counters = self.repository.message_counters(SourceKind.CAMPAIGN, campaign_id)
        counters.recipient_count = campaign.recipient_count
        return compute_analytics(campaign, counters)

    def get_performance_summary(self, store_id: str) -> CampaignPerformanceSummary:
        """Per-channel totals and rates over every campaign of a store."""
        campaigns = []
        for campaign in self.repository.list_campaigns(store_id=store_id):
            counters = self.repository.message_counters(SourceKind.CAMPAIGN, campaign.id)
            counters.recipient_count = campaign.recipient_count
            campaigns.append((campaign, counters))
        return compute_performance_summary(store_id, campaigns)
