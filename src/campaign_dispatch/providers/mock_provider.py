"""Scriptable in-memory sender for development and tests."""

from __future__ import annotations

import itertools
import logging
from collections import deque

from campaign_dispatch.dispatch.models import ErrorKind, RenderedMessage, SendResult
from campaign_dispatch.models import Channel

from .base import MessageSender

logger = logging.getLogger(__name__)


class MockSender(MessageSender):
    """Accepts every message unless scripted otherwise.

    ``script`` queues error kinds (or None for success) consumed one per
    call; ``failures`` maps an address to an error kind returned on every
    call for that address.
    """

    name = "mock"

    def __init__(self, channel: Channel = Channel.EMAIL, prefix: str = "mock"):
        self.channel = channel
        self.prefix = prefix
        self.sent: list[RenderedMessage] = []
        self.calls: list[RenderedMessage] = []
        self._script: deque[ErrorKind | None] = deque()
        self.failures: dict[str, ErrorKind] = {}
        self._ids = itertools.count(1)

    def script(self, *outcomes: ErrorKind | None) -> None:
        self._script.extend(outcomes)

    def fail_address(self, address: str, kind: ErrorKind) -> None:
        self.failures[address] = kind

    def calls_to(self, address: str) -> list[RenderedMessage]:
        return [m for m in self.calls if m.to == address]

    async def send(self, message: RenderedMessage) -> SendResult:
        self.calls.append(message)
        if message.to in self.failures:
            return SendResult.error(self.failures[message.to], "scripted address failure")
        if self._script:
            kind = self._script.popleft()
            if kind is not None:
                return SendResult.error(kind, "scripted failure")
        self.sent.append(message)
        message_id = f"{self.prefix}-{self.channel.value}-{next(self._ids)}"
        logger.debug(f"Mock sender accepted {message_id}")
        return SendResult.ok(message_id)
