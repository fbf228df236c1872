"""Event-triggered workflows and the scheduler that drives them."""

from .engine import AutomationEngine, validate_workflow
from .models import (
    Action,
    ConditionOperator,
    RunStatus,
    TriggerCondition,
    TriggerType,
    Workflow,
    WorkflowRun,
    WorkflowStats,
)
from .scheduler import DispatchScheduler, TickResult
from .triggers import TriggerMatcher, evaluate_condition, evaluate_conditions

__all__ = [
    "AutomationEngine",
    "validate_workflow",
    "Action",
    "ConditionOperator",
    "RunStatus",
    "TriggerCondition",
    "TriggerType",
    "Workflow",
    "WorkflowRun",
    "WorkflowStats",
    "DispatchScheduler",
    "TickResult",
    "TriggerMatcher",
    "evaluate_condition",
    "evaluate_conditions",
]
