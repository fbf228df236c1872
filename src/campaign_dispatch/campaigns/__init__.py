"""Bulk campaign execution."""

from .analytics import compute_analytics, compute_performance_summary
from .audience import AudienceResolver
from .engine import CampaignExecutionEngine
from .models import (
    AudienceDefinition,
    Campaign,
    CampaignAnalytics,
    CampaignCounters,
    CampaignExecutionResult,
    CampaignPerformanceSummary,
    CampaignStatus,
    ChannelPerformance,
)

__all__ = [
    "compute_analytics",
    "compute_performance_summary",
    "AudienceResolver",
    "CampaignExecutionEngine",
    "AudienceDefinition",
    "Campaign",
    "CampaignAnalytics",
    "CampaignCounters",
    "CampaignExecutionResult",
    "CampaignPerformanceSummary",
    "CampaignStatus",
    "ChannelPerformance",
]
