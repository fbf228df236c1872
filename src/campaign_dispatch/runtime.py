"""Wiring of the engine's components from settings."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime

from .automation.engine import AutomationEngine
from .automation.scheduler import DispatchScheduler
from .campaigns.engine import CampaignExecutionEngine
from .compliance.consent_gate import ConsentGate
from .compliance.opt_out import OptOutHandler
from .config.settings import Settings, get_settings
from .dispatch.queue import DispatchQueue, WorkerPool
from .dispatch.retry import RetryStrategy
from .dispatch.worker import DispatchWorker
from .models import Channel, utcnow
from .providers.base import MessageSender
from .providers.mock_provider import MockSender
from .providers.resend_provider import ResendEmailSender
from .providers.telnyx_provider import TelnyxSmsSender
from .ratelimit.limiter import RateLimiter
from .state.backends import create_backend
from .state.repository import Repository
from .webhooks.reconciler import DeliveryReconciler

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Every long-lived component, built once and shared."""

    settings: Settings
    repository: Repository
    senders: dict[Channel, MessageSender]
    consent_gate: ConsentGate
    rate_limiter: RateLimiter
    opt_outs: OptOutHandler
    queue: DispatchQueue
    worker: DispatchWorker
    pool: WorkerPool
    campaigns: CampaignExecutionEngine
    automation: AutomationEngine
    reconciler: DeliveryReconciler
    scheduler: DispatchScheduler

    async def aclose(self) -> None:
        self.scheduler.shutdown(wait=False)
        for sender in self.senders.values():
            await sender.aclose()


def build_senders(settings: Settings) -> dict[Channel, MessageSender]:
    """Real providers where credentials exist, mock senders elsewhere."""
    senders: dict[Channel, MessageSender] = {}
    if settings.has_email_provider:
        senders[Channel.EMAIL] = ResendEmailSender(
            settings.resend_api_key,
            base_url=settings.resend_base_url,
            timeout=settings.provider_timeout,
        )
    else:
        logger.warning("No Resend API key configured; email goes to the mock sender")
        senders[Channel.EMAIL] = MockSender(Channel.EMAIL)

    if settings.has_sms_provider:
        senders[Channel.SMS] = TelnyxSmsSender(
            settings.telnyx_api_key,
            base_url=settings.telnyx_base_url,
            messaging_profile_id=settings.telnyx_messaging_profile_id,
            timeout=settings.provider_timeout,
        )
    else:
        logger.warning("No Telnyx API key configured; SMS goes to the mock sender")
        senders[Channel.SMS] = MockSender(Channel.SMS)
    return senders


def build_runtime(
    settings: Settings | None = None,
    repository: Repository | None = None,
    senders: dict[Channel, MessageSender] | None = None,
    clock: Callable[[], datetime] = utcnow,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Runtime:
    """Build the engine from settings.

    Args:
        settings: Defaults to ``get_settings()``
        repository: Existing repository; otherwise one over ``database_url``
        senders: Channel senders; otherwise built from provider settings
        clock: Source of "now" for every component
        sleep: Backoff sleep used between send retries
    """
    settings = settings or get_settings()
    if repository is None:
        repository = Repository(
            create_backend(settings.database_url),
            account_defaults=settings.account_defaults(),
        )
    senders = senders if senders is not None else build_senders(settings)

    consent_gate = ConsentGate(repository)
    rate_limiter = RateLimiter(repository)
    opt_outs = OptOutHandler(repository, clock)
    retry = RetryStrategy(
        max_attempts=settings.retry_max_attempts,
        base_delay=settings.retry_base_delay,
        max_delay=settings.retry_max_delay,
        jitter=settings.retry_jitter,
        sleep=sleep,
    )
    worker = DispatchWorker(
        repository,
        consent_gate,
        rate_limiter,
        senders,
        retry=retry,
        clock=clock,
        concurrency=settings.recipient_concurrency,
    )
    queue = DispatchQueue(repository, lease_seconds=settings.unit_lease_seconds, clock=clock)
    pool = WorkerPool(queue, worker, workers_per_channel=settings.workers_per_channel)
    campaigns = CampaignExecutionEngine(
        repository, queue, pool, batch_size=settings.batch_size, clock=clock
    )
    automation = AutomationEngine(
        repository, queue, pool, clock=clock, lease_seconds=settings.run_lease_seconds
    )
    reconciler = DeliveryReconciler(repository, opt_outs, clock)
    scheduler = DispatchScheduler(
        automation,
        campaigns,
        pool,
        interval_seconds=settings.scheduler_interval_seconds,
        clock=clock,
    )
    return Runtime(
        settings=settings,
        repository=repository,
        senders=senders,
        consent_gate=consent_gate,
        rate_limiter=rate_limiter,
        opt_outs=opt_outs,
        queue=queue,
        worker=worker,
        pool=pool,
        campaigns=campaigns,
        automation=automation,
        reconciler=reconciler,
        scheduler=scheduler,
    )
