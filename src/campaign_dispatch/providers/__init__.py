"""Message provider integrations."""

from .base import HttpMessageSender, MessageSender, classify_status
from .mock_provider import MockSender
from .resend_provider import ResendEmailSender
from .telnyx_provider import TelnyxSmsSender

__all__ = [
    "MessageSender",
    "HttpMessageSender",
    "classify_status",
    "MockSender",
    "ResendEmailSender",
    "TelnyxSmsSender",
]
