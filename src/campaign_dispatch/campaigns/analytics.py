"""Campaign delivery and engagement rates."""

from __future__ import annotations

from collections.abc import Iterable

from campaign_dispatch.models import Channel

from .models import (
    Campaign,
    CampaignAnalytics,
    CampaignCounters,
    CampaignPerformanceSummary,
    ChannelPerformance,
)


def _rate(numerator: int, denominator: int) -> float:
    if denominator <= 0:
        return 0.0
    return round(numerator / denominator, 4)


def compute_analytics(campaign: Campaign, counters: CampaignCounters) -> CampaignAnalytics:
    """Rates relative to sent messages; opens and clicks relative to deliveries."""
    return CampaignAnalytics(
        campaign_id=campaign.id,
        status=campaign.status,
        counters=counters,
        delivery_rate=_rate(counters.delivered_count, counters.sent_count),
        open_rate=_rate(counters.opened_count, counters.delivered_count),
        click_rate=_rate(counters.clicked_count, counters.delivered_count),
        bounce_rate=_rate(counters.bounced_count, counters.sent_count),
        failure_rate=_rate(counters.failed_count, counters.recipient_count),
    )


def compute_performance_summary(
    store_id: str, campaigns: Iterable[tuple[Campaign, CampaignCounters]]
) -> CampaignPerformanceSummary:
    """Sum counters per channel, then take rates over the sums.

    Rates are weighted by volume, so a large campaign moves the average more
    than a small one. They use the same denominators as ``compute_analytics``.
    """
    summary = CampaignPerformanceSummary(store_id=store_id)
    for campaign, counters in campaigns:
        totals = summary.email if campaign.channel == Channel.EMAIL else summary.sms
        totals.campaign_count += 1
        totals.recipient_count += counters.recipient_count
        totals.sent_count += counters.sent_count
        totals.delivered_count += counters.delivered_count
        totals.opened_count += counters.opened_count
        totals.clicked_count += counters.clicked_count

    for totals in (summary.email, summary.sms):
        totals.delivery_rate = _rate(totals.delivered_count, totals.sent_count)
        totals.open_rate = _rate(totals.opened_count, totals.delivered_count)
        totals.click_rate = _rate(totals.clicked_count, totals.delivered_count)
    return summary
