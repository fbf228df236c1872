"""Input normalisation and log redaction helpers.

Covers:
- Redaction of provider keys and contact details in log output
- Email address and E.164 phone number normalisation
- SMS body length and segment checks
"""

from __future__ import annotations

import logging
import math
import re

logger = logging.getLogger(__name__)

# Loose address check; the provider is the final authority on deliverability
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# E.164: leading +, country code, up to 15 digits total
E164_PATTERN = re.compile(r"^\+[1-9]\d{6,14}$")

# Inbound SMS keywords that count as an opt-out request
STOP_KEYWORDS = frozenset({"stop", "unsubscribe", "quit", "cancel", "end", "opt-out"})

# Carrier segment size for GSM-7 text and the longest concatenated message accepted
SMS_SEGMENT_LENGTH = 160
SMS_MAX_LENGTH = 1600


def normalize_email(value: str | None) -> str | None:
    """Lower-case and strip an email address; return None if it is not usable."""
    if not value:
        return None
    candidate = value.strip().lower()
    if not EMAIL_PATTERN.match(candidate):
        return None
    return candidate


def normalize_phone(value: str | None) -> str | None:
    """Normalise a phone number to E.164.

    Strips spaces, dashes, dots and parentheses. A bare 10-digit number is
    assumed to be North American and gets a +1 prefix.

    Returns:
        The E.164 string, or None if the value cannot be normalised
    """
    if not value:
        return None
    digits = re.sub(r"[\s\-().]", "", value.strip())
    if not digits.startswith("+"):
        if len(digits) == 10 and digits.isdigit():
            digits = "+1" + digits
        elif len(digits) == 11 and digits.startswith("1") and digits.isdigit():
            digits = "+" + digits
        else:
            return None
    if not E164_PATTERN.match(digits):
        return None
    return digits


def is_stop_keyword(text: str | None) -> bool:
    """Return True if an inbound SMS body is an opt-out keyword."""
    if not text:
        return False
    return text.strip().lower() in STOP_KEYWORDS


def sanitize_log_message(message: str, sensitive_patterns: list[str] | None = None) -> str:
    """Sanitize a log message to remove sensitive data.

    Args:
        message: Message to sanitize
        sensitive_patterns: Additional patterns to redact

    Returns:
        Sanitized message with sensitive data redacted
    """
    result = message

    # Default sensitive patterns
    default_patterns = [
        (r"\bre_[a-zA-Z0-9_]{16,}", "[REDACTED_API_KEY]"),  # Resend keys
        (r"\bKEY[0-9A-F]{20,}_[a-zA-Z0-9]+", "[REDACTED_API_KEY]"),  # Telnyx keys
        (r"Bearer\s+[a-zA-Z0-9._\-]+", "Bearer [REDACTED]"),
        (r'api_key["\']?\s*[:=]\s*["\']?[^"\'\s,}]+', "api_key=[REDACTED]"),
        (r"[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}", "[REDACTED_EMAIL]"),
        (r"\+[1-9]\d{6,14}\b", "[REDACTED_PHONE]"),
    ]

    for pattern, replacement in default_patterns:
        # Telnyx key prefix is case-sensitive
        flags = 0 if pattern.startswith(r"\bKEY") else re.IGNORECASE
        result = re.sub(pattern, replacement, result, flags=flags)

    # Apply additional patterns
    if sensitive_patterns:
        for pattern in sensitive_patterns:
            result = re.sub(pattern, "[REDACTED]", result, flags=re.IGNORECASE)

    return result


def sms_segments(body: str) -> int:
    """Number of SMS_SEGMENT_LENGTH-character segments a body is billed as."""
    return math.ceil(len(body) / SMS_SEGMENT_LENGTH)


def check_sms_body(body: str) -> str:
    """Reject SMS bodies longer than SMS_MAX_LENGTH characters.

    Raises:
        ValueError: If the body cannot be sent as one message
    """
    if len(body) > SMS_MAX_LENGTH:
        raise ValueError(
            f"SMS body is {len(body)} characters; the maximum is {SMS_MAX_LENGTH}"
        )
    return body


def warn_if_multi_segment(body: str | None, where: str) -> int:
    """Log a warning when an SMS body spans more than one segment. Returns the count."""
    if not body:
        return 0
    segments = sms_segments(body)
    if segments > 1:
        logger.warning(
            f"{where}: SMS body is {len(body)} characters and will be sent as "
            f"{segments} segments"
        )
    return segments
