"""Dispatch Engine Error Hierarchy.

Structured exception types for the automation and campaign dispatch engine.
Consent denials are not errors; they surface as ``ConsentDecision`` outcomes.
"""

from __future__ import annotations

from datetime import datetime


class DispatchEngineError(Exception):
    """Base error for all dispatch engine exceptions."""

    code = "DISPATCH_ENGINE_ERROR"

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


# Sending Errors
class RateLimited(DispatchEngineError):
    """Send attempt rejected by a rate counter or plan quota."""

    code = "RATE_LIMITED"

    def __init__(
        self,
        message: str,
        reason: str = "",
        retry_after: datetime | None = None,
    ):
        super().__init__(
            message,
            {
                "reason": reason,
                "retry_after": retry_after.isoformat() if retry_after else None,
            },
        )
        self.reason = reason
        self.retry_after = retry_after


class ProviderError(DispatchEngineError):
    """Base error for message provider failures."""

    code = "PROVIDER_ERROR"

    def __init__(self, message: str, provider: str = None, kind: str = None):
        super().__init__(message, {"provider": provider, "kind": kind})
        self.provider = provider
        self.kind = kind


class ProviderTransient(ProviderError):
    """Provider failed in a way that may succeed on retry."""

    code = "PROVIDER_TRANSIENT"


class ProviderPermanent(ProviderError):
    """Provider rejected the message for good (bad address, bad credentials)."""

    code = "PROVIDER_PERMANENT"


class DispatchFailed(DispatchEngineError):
    """Transient provider failures persisted past the retry ceiling."""

    code = "DISPATCH_FAILED"

    def __init__(
        self,
        message: str,
        recipient_id: str = None,
        attempts: int = 0,
        error_kind: str = None,
    ):
        super().__init__(
            message,
            {"recipient_id": recipient_id, "attempts": attempts, "error_kind": error_kind},
        )
        self.recipient_id = recipient_id
        self.attempts = attempts
        self.error_kind = error_kind


# Storage Errors
class RepositoryUnavailable(DispatchEngineError):
    """Durable storage could not be reached; the current unit of work is aborted."""

    code = "REPOSITORY_UNAVAILABLE"

    def __init__(self, message: str, operation: str = None, cause: Exception = None):
        details = {"operation": operation}
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.operation = operation
        self.cause = cause


class InvalidTransitionError(DispatchEngineError):
    """A state change was requested that the state machine does not allow."""

    code = "INVALID_TRANSITION"

    def __init__(self, message: str, current: str = None, requested: str = None):
        super().__init__(message, {"current": current, "requested": requested})
        self.current = current
        self.requested = requested


# Configuration Errors
class ConfigurationError(DispatchEngineError):
    """Engine configuration is invalid; processing cannot continue."""

    code = "CONFIGURATION_ERROR"


# Workflow Errors
class WorkflowError(DispatchEngineError):
    """Base error for automation workflow failures."""

    code = "WORKFLOW_ERROR"


class WorkflowValidationError(WorkflowError):
    """Workflow definition is malformed."""

    code = "WORKFLOW_INVALID"

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message, {"errors": errors or []})
        self.errors = errors or []


class WorkflowNotFoundError(WorkflowError):
    """Workflow definition not found."""

    code = "WORKFLOW_NOT_FOUND"


# Campaign Errors
class CampaignError(DispatchEngineError):
    """Base error for campaign execution failures."""

    code = "CAMPAIGN_ERROR"


class CampaignNotFoundError(CampaignError):
    """Campaign not found."""

    code = "CAMPAIGN_NOT_FOUND"


# Webhook Errors
class WebhookPayloadError(DispatchEngineError):
    """Provider callback body could not be understood."""

    code = "WEBHOOK_PAYLOAD_INVALID"
