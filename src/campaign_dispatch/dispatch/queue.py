"""Durable dispatch unit queue and the per-channel worker pool that drains it."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from campaign_dispatch.errors import RepositoryUnavailable
from campaign_dispatch.models import Channel, utcnow

from .models import BatchResult, DispatchUnit, UnitKind, UnitStatus
from .worker import DispatchWorker

if TYPE_CHECKING:
    from campaign_dispatch.state.repository import Repository

logger = logging.getLogger(__name__)


class DispatchQueue:
    """Dispatch units stored in the repository, claimed under a lease.

    A unit whose worker dies keeps its lease until expiry and is then
    claimable again.
    """

    def __init__(
        self,
        repository: Repository,
        lease_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.lease = timedelta(seconds=lease_seconds)
        self.clock = clock

    def enqueue(self, units: list[DispatchUnit]) -> None:
        self.repository.enqueue_units(units)
        for unit in units:
            logger.debug(
                f"Enqueued unit {unit.id} ({len(unit.recipient_ids)} recipients) "
                f"for {unit.source_kind.value} {unit.source_id}",
                extra={"unit_id": unit.id},
            )

    def claim(self, channel: Channel, source_id: str | None = None) -> DispatchUnit | None:
        now = self.clock()
        return self.repository.claim_next_unit(channel, now, now + self.lease, source_id)

    def complete(self, unit: DispatchUnit) -> None:
        self.repository.complete_unit(unit.id)

    def cancel_source(self, source_id: str) -> int:
        """Cancel every pending unit of a source. Running units finish."""
        return self.repository.cancel_pending_units(source_id)

    def open_units(self, source_id: str) -> tuple[int, datetime | None]:
        return self.repository.open_unit_summary(source_id)

    def requeue_deferred(self, unit: DispatchUnit, batch: BatchResult) -> list[DispatchUnit]:
        """Enqueue deferred recipients of a campaign batch as new units.

        Recipients sharing a retry time go into one unit available at that time.
        Nothing is enqueued once the campaign has stopped sending.
        """
        if unit.kind != UnitKind.CAMPAIGN_BATCH:
            return []
        if batch.deferred and not self.repository.is_campaign_sending(unit.source_id):
            logger.info(
                f"Campaign {unit.source_id} is no longer sending; dropping "
                f"{len(batch.deferred)} deferred recipients of unit {unit.id}",
                extra={"campaign_id": unit.source_id, "unit_id": unit.id},
            )
            return []
        groups: dict[datetime, list[str]] = defaultdict(list)
        for outcome in batch.deferred:
            if outcome.retry_at is not None:
                groups[outcome.retry_at].append(outcome.recipient_id)

        followups = [
            unit.model_copy(
                update={
                    "id": str(uuid.uuid4()),
                    "recipient_ids": recipients,
                    "status": UnitStatus.PENDING,
                    "available_at": retry_at,
                    "lease_until": None,
                    "attempts": 0,
                    "last_error": None,
                    "created_at": self.clock(),
                }
            )
            for retry_at, recipients in sorted(groups.items())
        ]
        self.enqueue(followups)
        return followups


class WorkerPool:
    """Runs ``workers_per_channel`` cooperative workers per channel over the queue."""

    def __init__(
        self,
        queue: DispatchQueue,
        worker: DispatchWorker,
        workers_per_channel: int = 4,
        channels: tuple[Channel, ...] = tuple(Channel),
    ):
        self.queue = queue
        self.worker = worker
        self.workers_per_channel = workers_per_channel
        self.channels = channels

    async def _work(
        self,
        channel: Channel,
        source_id: str | None,
        results: list[tuple[DispatchUnit, BatchResult]],
    ) -> None:
        while True:
            unit = self.queue.claim(channel, source_id)
            if unit is None:
                return
            try:
                batch = await self.worker.process_unit(unit)
            except RepositoryUnavailable:
                logger.error(
                    f"Repository unavailable while processing unit {unit.id}; "
                    f"it will be retried after its lease expires",
                    extra={"unit_id": unit.id},
                )
                raise
            self.queue.requeue_deferred(unit, batch)
            self.queue.complete(unit)
            results.append((unit, batch))

    async def drain(self, source_id: str | None = None) -> list[tuple[DispatchUnit, BatchResult]]:
        """Process units until none are ready, optionally only those of one source.

        Returns:
            (unit, result) pairs for every unit processed
        """
        results: list[tuple[DispatchUnit, BatchResult]] = []
        tasks = [
            self._work(channel, source_id, results)
            for channel in self.channels
            for _ in range(self.workers_per_channel)
        ]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        return results

