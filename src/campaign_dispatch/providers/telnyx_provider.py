"""Telnyx SMS sender."""

from __future__ import annotations

import httpx

from campaign_dispatch.dispatch.models import RenderedMessage
from campaign_dispatch.models import Channel

from .base import HttpMessageSender


class TelnyxSmsSender(HttpMessageSender):
    """Sends SMS through the Telnyx v2 messages API (``POST /messages``)."""

    name = "telnyx"
    channel = Channel.SMS

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.telnyx.com/v2",
        messaging_profile_id: str | None = None,
        default_from: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(api_key, base_url, timeout, client)
        self.messaging_profile_id = messaging_profile_id
        self.default_from = default_from

    def build_request(self, message: RenderedMessage) -> tuple[str, dict]:
        payload = {"to": message.to, "text": message.body or message.text or ""}
        sender = message.from_number or self.default_from
        if sender:
            payload["from"] = sender
        if self.messaging_profile_id:
            payload["messaging_profile_id"] = self.messaging_profile_id
        return "/messages", payload

    def extract_message_id(self, body: dict) -> str | None:
        return (body.get("data") or {}).get("id")
