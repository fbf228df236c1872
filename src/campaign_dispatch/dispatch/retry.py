"""Exponential backoff for transient provider failures."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable

from campaign_dispatch.dispatch.models import RenderedMessage, SendResult
from campaign_dispatch.errors import DispatchFailed
from campaign_dispatch.providers.base import MessageSender

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class RetryStrategy:
    """Configurable retry strategy with exponential backoff."""

    def __init__(
        self,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        sleep: SleepFn = asyncio.sleep,
    ):
        """Initialize retry strategy.

        Args:
            max_attempts: Total send attempts, including the first
            base_delay: Initial delay in seconds
            max_delay: Maximum delay between retries
            exponential_base: Base for exponential backoff
            jitter: Add randomization to prevent thundering herd
            sleep: Awaitable used to wait between attempts
        """
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.sleep = sleep

    def get_delay(self, attempt: int) -> float:
        """Calculate delay after a failed attempt (0-indexed)."""
        delay = self.base_delay * (self.exponential_base**attempt)
        if self.jitter:
            delay *= 0.5 + random.random()  # 50-150% of calculated delay
        return min(delay, self.max_delay)

    async def send(
        self,
        sender: MessageSender,
        message: RenderedMessage,
        recipient_id: str | None = None,
    ) -> tuple[SendResult, int]:
        """Send with retries on retryable errors.

        Returns:
            The accepted or non-retryable result and the number of attempts made

        Raises:
            DispatchFailed: if retryable errors persist past ``max_attempts``
        """
        attempt = 0
        while True:
            result = await sender.send(message)
            attempt += 1
            if result.accepted or not result.retryable:
                return result, attempt
            if attempt >= self.max_attempts:
                raise DispatchFailed(
                    f"{sender.name} still failing after {attempt} attempts: "
                    f"{result.error_message}",
                    recipient_id=recipient_id,
                    attempts=attempt,
                    error_kind=result.error_kind.value,
                )
            delay = self.get_delay(attempt - 1)
            logger.info(
                f"{sender.name} returned {result.error_kind.value}; "
                f"retry {attempt}/{self.max_attempts - 1} in {delay:.2f}s"
            )
            await self.sleep(delay)
