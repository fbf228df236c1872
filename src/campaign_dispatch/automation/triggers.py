"""Trigger matching and recipient extraction for domain events."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from campaign_dispatch.models import Contact, DomainEvent

from .models import ConditionOperator, TriggerCondition, Workflow

if TYPE_CHECKING:
    from campaign_dispatch.state.repository import Repository

logger = logging.getLogger(__name__)


class TriggerEvaluation(BaseModel):
    """Which conditions of a filter held for a payload."""

    should_trigger: bool
    matched: list[TriggerCondition] = Field(default_factory=list)
    failed: list[TriggerCondition] = Field(default_factory=list)


def get_nested_value(data: dict[str, Any], path: str) -> Any:
    """Read a dot-notation path; missing segments yield None."""
    current: Any = data
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return None
    return current


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def evaluate_condition(condition: TriggerCondition, payload: dict[str, Any]) -> bool:
    actual = get_nested_value(payload, condition.field)
    expected = condition.value
    op = condition.operator

    if op == ConditionOperator.EQUALS:
        return actual == expected
    if op == ConditionOperator.NOT_EQUALS:
        return actual != expected
    if op == ConditionOperator.CONTAINS:
        if isinstance(actual, str) and isinstance(expected, str):
            return expected.lower() in actual.lower()
        if isinstance(actual, list):
            return expected in actual
        return False
    if op in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        left, right = _as_number(actual), _as_number(expected)
        if left is None or right is None:
            return False
        return left > right if op == ConditionOperator.GREATER_THAN else left < right
    if op == ConditionOperator.IN:
        return actual in expected
    if op == ConditionOperator.NOT_IN:
        return actual not in expected
    return False


def evaluate_conditions(
    conditions: list[TriggerCondition], payload: dict[str, Any]
) -> TriggerEvaluation:
    """All conditions must hold; an empty filter always matches."""
    matched, failed = [], []
    for condition in conditions:
        (matched if evaluate_condition(condition, payload) else failed).append(condition)
    return TriggerEvaluation(should_trigger=not failed, matched=matched, failed=failed)


class TriggerMatcher:
    """Finds the active workflows an event fires and the contact it concerns."""

    def __init__(self, repository: Repository):
        self.repository = repository

    def matching_workflows(self, event: DomainEvent) -> list[Workflow]:
        workflows = self.repository.list_active_workflows(event.store_id, event.type)
        matching = []
        for workflow in workflows:
            evaluation = evaluate_conditions(workflow.conditions, event.payload)
            if evaluation.should_trigger:
                matching.append(workflow)
            else:
                logger.debug(
                    f"Workflow {workflow.id} filter rejected event {event.event_id}: "
                    f"{[c.field for c in evaluation.failed]}"
                )
        return matching

    def resolve_recipient(self, event: DomainEvent) -> Contact | None:
        """Find the store contact an event is about.

        Tried in order: ``contact_id``, ``customer.id``, ``customer.email``,
        ``email``.
        """
        payload = event.payload
        customer = payload.get("customer") if isinstance(payload.get("customer"), dict) else {}

        for candidate_id in (payload.get("contact_id"), customer.get("id")):
            if candidate_id is None:
                continue
            contact = self.repository.get_contact(str(candidate_id))
            if contact is not None and contact.store_id == event.store_id:
                return contact

        for email in (customer.get("email"), payload.get("email")):
            if isinstance(email, str) and email.strip():
                contact = self.repository.find_contact_by_email(event.store_id, email)
                if contact is not None:
                    return contact
        return None
