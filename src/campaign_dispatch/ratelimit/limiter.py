"""Per-account send admission against daily caps and plan credits."""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import TYPE_CHECKING, Any

from campaign_dispatch.errors import RateLimited
from campaign_dispatch.models import Channel

from .models import Admission, Period
from .quota import counter_checks

if TYPE_CHECKING:
    from campaign_dispatch.state.repository import Repository

logger = logging.getLogger(__name__)


class RateLimiter:
    """Admits sends while every applicable counter is under its limit.

    All counters for one send are checked and incremented in a single
    repository transaction, each through a conditional update, so concurrent
    workers can never jointly exceed a cap. The lock serialises admissions
    from threads sharing this process.
    """

    def __init__(self, repository: Repository):
        self.repository = repository
        self._lock = threading.Lock()

    def try_admit(self, account_id: str, channel: Channel, now: datetime) -> Admission:
        account = self.repository.get_account_settings(account_id)
        checks = counter_checks(account, channel, now)

        with self._lock:
            rejected = self.repository.increment_counters(account_id, channel, checks)

        if rejected is None:
            return Admission.admit()

        quota_exhausted = rejected.period == Period.CYCLE
        if channel == Channel.EMAIL:
            reason = "quota_exceeded"
        else:
            reason = f"{rejected.period.value}_limit_reached"
        logger.info(
            f"Rate limit hit for account {account_id} on {channel.value}: "
            f"{rejected.period.value} {rejected.period_key} at {rejected.limit}"
        )
        return Admission(
            admitted=False,
            reason=reason,
            retry_after=rejected.resets_at,
            quota_exhausted=quota_exhausted,
        )

    def acquire(self, account_id: str, channel: Channel, now: datetime) -> None:
        """Admit one send or raise RateLimited."""
        admission = self.try_admit(account_id, channel, now)
        if not admission.admitted:
            raise RateLimited(
                f"{channel.value} send rejected for account {account_id}",
                reason=admission.reason,
                retry_after=admission.retry_after,
            )

    def get_usage(self, account_id: str, now: datetime) -> dict[str, Any]:
        """Current counts and limits per channel and period."""
        account = self.repository.get_account_settings(account_id)
        usage: dict[str, Any] = {}
        for channel in Channel:
            periods = {}
            for check in counter_checks(account, channel, now):
                used = self.repository.get_counter(
                    account_id, channel, check.period, check.period_key
                )
                periods[check.period.value] = {
                    "period_key": check.period_key,
                    "used": used,
                    "limit": check.limit,
                    "remaining": max(check.limit - used, 0),
                    "resets_at": check.resets_at.isoformat(),
                }
            usage[channel.value] = periods
        return usage

    def adjust_counter(
        self,
        account_id: str,
        channel: Channel,
        period: Period,
        period_key: str,
        delta: int,
    ) -> int:
        """Administrative correction of a counter. Returns the new count."""
        with self._lock:
            count = self.repository.adjust_counter(account_id, channel, period, period_key, delta)
        logger.warning(
            f"Counter adjusted by {delta} for account {account_id} "
            f"{channel.value}/{period.value}/{period_key}; now {count}"
        )
        return count
