"""Consent, opt-out and quiet-hours enforcement."""

from .consent_gate import ConsentGate, evaluate_consent, quiet_hours_end
from .models import ConsentDecision, ConsentRecord, DenyReason, InboundMessage, OptOutRecord
from .opt_out import OptOutHandler

__all__ = [
    "ConsentGate",
    "evaluate_consent",
    "quiet_hours_end",
    "ConsentDecision",
    "ConsentRecord",
    "DenyReason",
    "InboundMessage",
    "OptOutRecord",
    "OptOutHandler",
]
