"""Automation and campaign dispatch engine for email and SMS marketing."""

__version__ = "0.1.0"

from .automation import AutomationEngine, DispatchScheduler, Workflow, WorkflowRun
from .campaigns import Campaign, CampaignExecutionEngine, CampaignStatus
from .compliance import ConsentGate, OptOutHandler
from .config import Settings, get_settings
from .dispatch import DispatchQueue, DispatchWorker, RetryStrategy, WorkerPool
from .models import AccountSettings, Channel, Contact, DomainEvent
from .ratelimit import RateLimiter
from .state import Repository
from .webhooks import DeliveryReconciler

__all__ = [
    "Settings",
    "get_settings",
    "AccountSettings",
    "Channel",
    "Contact",
    "DomainEvent",
    "Repository",
    "ConsentGate",
    "OptOutHandler",
    "RateLimiter",
    "DispatchQueue",
    "DispatchWorker",
    "RetryStrategy",
    "WorkerPool",
    "Campaign",
    "CampaignExecutionEngine",
    "CampaignStatus",
    "AutomationEngine",
    "DispatchScheduler",
    "Workflow",
    "WorkflowRun",
    "DeliveryReconciler",
]
