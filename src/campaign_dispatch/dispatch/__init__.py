"""Message dispatch: records, rendering, retries, workers and the unit queue."""

from .models import (
    BatchResult,
    DispatchUnit,
    ErrorKind,
    MessageContent,
    MessageRecord,
    MessageStatus,
    OutcomeKind,
    RecipientOutcome,
    RenderedMessage,
    SendResult,
    SourceKind,
    UnitKind,
    UnitStatus,
)
from .queue import DispatchQueue, WorkerPool
from .renderer import render_message, render_template
from .retry import RetryStrategy
from .worker import DispatchWorker

__all__ = [
    "BatchResult",
    "DispatchUnit",
    "ErrorKind",
    "MessageContent",
    "MessageRecord",
    "MessageStatus",
    "OutcomeKind",
    "RecipientOutcome",
    "RenderedMessage",
    "SendResult",
    "SourceKind",
    "UnitKind",
    "UnitStatus",
    "DispatchQueue",
    "WorkerPool",
    "render_message",
    "render_template",
    "RetryStrategy",
    "DispatchWorker",
]
