"""Campaign dispatch utility modules."""

from campaign_dispatch.utils.validation import (
    SMS_MAX_LENGTH,
    SMS_SEGMENT_LENGTH,
    STOP_KEYWORDS,
    check_sms_body,
    is_stop_keyword,
    normalize_email,
    normalize_phone,
    sanitize_log_message,
    sms_segments,
    warn_if_multi_segment,
)

__all__ = [
    "SMS_MAX_LENGTH",
    "SMS_SEGMENT_LENGTH",
    "STOP_KEYWORDS",
    "check_sms_body",
    "is_stop_keyword",
    "normalize_email",
    "normalize_phone",
    "sanitize_log_message",
    "sms_segments",
    "warn_if_multi_segment",
]
