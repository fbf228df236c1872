"""Log output for the dispatch engine.

Engine code passes identifiers through ``extra`` (``campaign_id``,
``unit_id`` and so on). The JSON formatter emits them as top-level keys; the
text formatter appends them as ``key=value`` pairs after the message.
"""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from campaign_dispatch.utils.validation import sanitize_log_message

# ``extra`` keys carried into formatted output, in display order
DISPATCH_CONTEXT_FIELDS = (
    "store_id",
    "campaign_id",
    "workflow_id",
    "run_id",
    "unit_id",
    "recipient_id",
    "channel",
    "provider_message_id",
    "duration_ms",
)

# Chatty libraries capped at WARNING
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "apscheduler")


def dispatch_context(record: logging.LogRecord) -> dict[str, Any]:
    return {
        field: getattr(record, field)
        for field in DISPATCH_CONTEXT_FIELDS
        if getattr(record, field, None) is not None
    }


class SanitizingFilter(logging.Filter):
    """Redacts provider keys, bearer tokens, email addresses and phone numbers.

    The message is rendered with its arguments first, so f-string and
    %-style calls are redacted alike.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = sanitize_log_message(record.getMessage())
        record.args = None
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **dispatch_context(record),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    def __init__(self):
        super().__init__(
            fmt="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        context = dispatch_context(record)
        if context:
            line += " [" + " ".join(f"{k}={v}" for k, v in context.items()) + "]"
        return line


def configure_logging(
    level: str = "INFO", format: str = "text", sanitize_logs: bool = True
) -> None:
    """Route all logging to stdout with one handler.

    Args:
        level: Log level name, case-insensitive
        format: 'text' or 'json'
        sanitize_logs: Redact keys and contact details from every record
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(JSONFormatter() if format.lower() == "json" else TextFormatter())
    if sanitize_logs:
        handler.addFilter(SanitizingFilter())

    root = logging.getLogger()
    root.setLevel(log_level)
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
