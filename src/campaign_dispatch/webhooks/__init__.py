"""Provider delivery callbacks."""

from .models import ProviderEvent, ReconcileResult
from .parsers import parse_resend_event, parse_telnyx_event
from .reconciler import DeliveryReconciler

__all__ = [
    "ProviderEvent",
    "ReconcileResult",
    "parse_resend_event",
    "parse_telnyx_event",
    "DeliveryReconciler",
]
