"""Resend email sender."""

from __future__ import annotations

import httpx

from campaign_dispatch.dispatch.models import RenderedMessage
from campaign_dispatch.models import Channel

from .base import HttpMessageSender


class ResendEmailSender(HttpMessageSender):
    """Sends email through the Resend REST API (``POST /emails``)."""

    name = "resend"
    channel = Channel.EMAIL

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.resend.com",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(api_key, base_url, timeout, client)

    def build_request(self, message: RenderedMessage) -> tuple[str, dict]:
        sender = message.from_email or ""
        if message.from_name:
            sender = f"{message.from_name} <{sender}>"
        payload = {
            "from": sender,
            "to": [message.to],
            "subject": message.subject or "",
        }
        if message.html:
            payload["html"] = message.html
        if message.text:
            payload["text"] = message.text
        if message.reply_to:
            payload["reply_to"] = message.reply_to
        if message.tags:
            payload["tags"] = [{"name": k, "value": v} for k, v in message.tags.items()]
        return "/emails", payload

    def extract_message_id(self, body: dict) -> str | None:
        return body.get("id")
