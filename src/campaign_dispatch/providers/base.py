"""Message sender abstraction."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import httpx

from campaign_dispatch.dispatch.models import (
    TRANSIENT_ERROR_KINDS,
    ErrorKind,
    RenderedMessage,
    SendResult,
)
from campaign_dispatch.errors import ProviderError, ProviderPermanent, ProviderTransient
from campaign_dispatch.models import Channel

logger = logging.getLogger(__name__)


def classify_status(status_code: int) -> ErrorKind | None:
    """Map a provider HTTP status to an error kind. None means success."""
    if 200 <= status_code < 300:
        return None
    if status_code in (401, 403):
        return ErrorKind.AUTH_ERROR
    if status_code == 429:
        return ErrorKind.PROVIDER_THROTTLED
    if status_code >= 500 or status_code == 408:
        return ErrorKind.PROVIDER_UNAVAILABLE
    return ErrorKind.INVALID_RECIPIENT


class MessageSender(ABC):
    """Sends one rendered message to one address through a provider."""

    name: str = "base"
    channel: Channel

    @abstractmethod
    async def send(self, message: RenderedMessage) -> SendResult:
        """Send a message. Never raises for provider-side failures."""
        pass

    async def aclose(self) -> None:
        """Release network resources."""
        pass


class HttpMessageSender(MessageSender):
    """Base for REST providers reached over a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    @abstractmethod
    def build_request(self, message: RenderedMessage) -> tuple[str, dict]:
        """Return the request path and JSON body for a message."""
        pass

    @abstractmethod
    def extract_message_id(self, body: dict) -> str | None:
        """Pull the provider message id out of a success response."""
        pass

    async def _post(self, message: RenderedMessage) -> str:
        """POST a message and return the provider message id.

        Raises:
            ProviderTransient: throttling, 5xx, timeouts, connection errors
            ProviderPermanent: bad recipient or bad credentials
        """
        path, payload = self.build_request(message)
        headers = {}
        if message.idempotency_key:
            headers["Idempotency-Key"] = message.idempotency_key

        try:
            response = await self._get_client().post(path, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise ProviderTransient(
                f"{self.name} request timed out", self.name, ErrorKind.PROVIDER_UNAVAILABLE.value
            ) from e
        except httpx.TransportError as e:
            raise ProviderTransient(
                f"{self.name} connection error: {e}",
                self.name,
                ErrorKind.PROVIDER_UNAVAILABLE.value,
            ) from e

        kind = classify_status(response.status_code)
        if kind is not None:
            error_cls = ProviderTransient if kind in TRANSIENT_ERROR_KINDS else ProviderPermanent
            raise error_cls(
                f"HTTP {response.status_code}: {response.text[:200]}", self.name, kind.value
            )

        try:
            message_id = self.extract_message_id(response.json())
        except ValueError as e:
            raise ProviderTransient(
                f"{self.name} returned an unparseable body",
                self.name,
                ErrorKind.PROVIDER_UNAVAILABLE.value,
            ) from e
        if not message_id:
            raise ProviderTransient(
                f"{self.name} response missing message id",
                self.name,
                ErrorKind.PROVIDER_UNAVAILABLE.value,
            )
        return message_id

    async def send(self, message: RenderedMessage) -> SendResult:
        try:
            message_id = await self._post(message)
        except ProviderError as e:
            logger.warning(f"{self.name} send failed ({e.kind}): {e.message}")
            return SendResult.error(ErrorKind(e.kind), e.message)
        return SendResult.ok(message_id)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
