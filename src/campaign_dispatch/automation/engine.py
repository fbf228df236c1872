"""Event-driven workflow execution.

Runs advance on a logical clock: it starts at the triggering event's
``occurred_at``, and every wait resumes at exactly ``logical_time + delay``
regardless of when the scheduler actually picks the run up. Waiting never
blocks a thread; a waiting run is just a row with a ``resume_at``.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from campaign_dispatch.dispatch.models import OutcomeKind
from campaign_dispatch.dispatch.queue import DispatchQueue, WorkerPool
from campaign_dispatch.errors import WorkflowNotFoundError, WorkflowValidationError
from campaign_dispatch.models import DomainEvent, utcnow
from campaign_dispatch.utils.validation import warn_if_multi_segment

from .actions import ActionExecutor
from .models import (
    DelayAction,
    RunStatus,
    SendEmailAction,
    SendSmsAction,
    Workflow,
    WorkflowRun,
    WorkflowStats,
)
from .triggers import TriggerMatcher

if TYPE_CHECKING:
    from campaign_dispatch.state.repository import Repository

logger = logging.getLogger(__name__)


def validate_workflow(data: dict[str, Any] | Workflow) -> Workflow:
    """Parse a workflow definition, collecting every problem into one error."""
    if isinstance(data, Workflow):
        return data
    try:
        return Workflow.model_validate(data)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in err['loc']) or 'workflow'}: {err['msg']}"
            for err in e.errors()
        ]
        raise WorkflowValidationError("Invalid workflow definition", errors=errors) from e


class AutomationEngine:
    """Creates runs for matching workflows and steps them through their actions."""

    def __init__(
        self,
        repository: Repository,
        queue: DispatchQueue,
        pool: WorkerPool,
        clock: Callable[[], datetime] = utcnow,
        lease_seconds: int = 300,
    ):
        self.repository = repository
        self.clock = clock
        self.lease = timedelta(seconds=lease_seconds)
        self.matcher = TriggerMatcher(repository)
        self.actions = ActionExecutor(repository, queue, pool, clock)

    # ------------------------------------------------------------------
    # Workflow management
    # ------------------------------------------------------------------

    def save_workflow(self, data: dict[str, Any] | Workflow) -> Workflow:
        workflow = validate_workflow(data)
        for index, action in enumerate(workflow.actions):
            if isinstance(action, SendSmsAction):
                warn_if_multi_segment(action.message, f"Workflow {workflow.id} action {index}")
        self.repository.save_workflow(workflow)
        logger.info(f"Saved workflow {workflow.id} ({workflow.trigger_type.value})")
        return workflow

    def get_workflow(self, workflow_id: str) -> Workflow:
        workflow = self.repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(
                f"Workflow not found: {workflow_id}", {"workflow_id": workflow_id}
            )
        return workflow

    def set_workflow_active(self, workflow_id: str, active: bool) -> int:
        """Activate or deactivate a workflow.

        Deactivation cancels waiting runs only; a run with an action in flight
        finishes that action and is cancelled at its next step.

        Returns:
            Number of runs cancelled
        """
        self.get_workflow(workflow_id)
        now = self.clock()
        self.repository.set_workflow_active(workflow_id, active, now)
        if active:
            logger.info(f"Workflow {workflow_id} activated")
            return 0
        cancelled = self.repository.cancel_waiting_runs(workflow_id, now)
        logger.info(f"Workflow {workflow_id} deactivated; {cancelled} waiting runs cancelled")
        return cancelled

    def get_workflow_stats(self, workflow_id: str) -> WorkflowStats:
        self.get_workflow(workflow_id)
        by_status = self.repository.run_status_counts(workflow_id)
        return WorkflowStats(
            workflow_id=workflow_id,
            total_runs=sum(by_status.values()),
            by_status=by_status,
            messages_sent=self.repository.count_run_messages_sent(workflow_id),
        )

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    async def handle_event(self, event: DomainEvent) -> list[WorkflowRun]:
        """Start one run per matching workflow for the event's contact.

        Repeated deliveries of the same event id create no further runs.

        Returns:
            Newly created runs, after their first advance
        """
        workflows = self.matcher.matching_workflows(event)
        if not workflows:
            logger.debug(f"No active workflow matches {event.type} event {event.event_id}")
            return []

        contact = self.matcher.resolve_recipient(event)
        if contact is None:
            logger.info(
                f"Event {event.event_id} matched {len(workflows)} workflows but no contact",
                extra={"store_id": event.store_id},
            )
            return []

        created = []
        for workflow in workflows:
            run = WorkflowRun(
                id=str(uuid.uuid4()),
                workflow_id=workflow.id,
                store_id=event.store_id,
                event_id=event.event_id,
                recipient_id=contact.id,
                trigger_payload=event.payload,
                logical_time=event.occurred_at,
            )
            if self.repository.insert_run_if_absent(run):
                created.append(run)
                logger.info(
                    f"Started run {run.id} of workflow {workflow.id}",
                    extra={"run_id": run.id, "workflow_id": workflow.id},
                )
            else:
                logger.debug(
                    f"Run for workflow {workflow.id} and event {event.event_id} already exists"
                )

        return [await self.advance_run(run.id) for run in created]

    # ------------------------------------------------------------------
    # Run execution
    # ------------------------------------------------------------------

    def _wait(self, run: WorkflowRun, until: datetime, now: datetime) -> WorkflowRun:
        run.status = RunStatus.WAITING
        run.resume_at = until
        run.lease_until = None
        self.repository.save_run_progress(run, now)
        logger.debug(
            f"Run {run.id} waiting until {until.isoformat()} at action {run.cursor}",
            extra={"run_id": run.id},
        )
        return run

    def _finish(
        self, run: WorkflowRun, status: RunStatus, now: datetime, error: str | None = None
    ) -> WorkflowRun:
        run.status = status
        run.error = error
        run.resume_at = None
        run.lease_until = None
        run.completed_at = now
        self.repository.save_run_progress(run, now)
        level = logging.WARNING if status == RunStatus.FAILED else logging.INFO
        logger.log(
            level,
            f"Run {run.id} {status.value}" + (f": {error}" if error else ""),
            extra={"run_id": run.id, "workflow_id": run.workflow_id},
        )
        return run

    async def advance_run(self, run_id: str) -> WorkflowRun | None:
        """Execute a run's actions from its cursor until it waits or ends."""
        now = self.clock()
        run = self.repository.get_run(run_id)
        if run is None or run.is_terminal:
            return run
        if not self.repository.claim_run(run_id, now, now + self.lease):
            return self.repository.get_run(run_id)

        run = self.repository.get_run(run_id)
        if run.resume_at is not None:
            run.logical_time = max(run.logical_time, run.resume_at)
            run.resume_at = None

        while True:
            workflow = self.repository.get_workflow(run.workflow_id)
            if workflow is None or not workflow.is_active:
                return self._finish(run, RunStatus.CANCELLED, now, "workflow inactive")
            if run.cursor >= len(workflow.actions):
                return self._finish(run, RunStatus.COMPLETED, now)

            action = workflow.actions[run.cursor]

            if action.delay and run.delay_done_cursor != run.cursor:
                run.delay_done_cursor = run.cursor
                return self._wait(run, run.logical_time + action.delay, now)

            if isinstance(action, DelayAction):
                run.cursor += 1
                return self._wait(run, run.logical_time + action.duration, now)

            if isinstance(action, (SendEmailAction, SendSmsAction)):
                outcome = await self.actions.send(run, workflow, action)
                now = self.clock()
                if outcome.outcome == OutcomeKind.DEFERRED:
                    return self._wait(run, outcome.retry_at or now, now)
                if outcome.outcome == OutcomeKind.FAILED:
                    return self._finish(
                        run, RunStatus.FAILED, now, f"{action.type} failed: {outcome.reason}"
                    )
                # sent, duplicate and skipped all move on
            else:
                if not self.actions.apply(run, action):
                    return self._finish(
                        run, RunStatus.FAILED, now, f"contact {run.recipient_id} not found"
                    )

            run.cursor += 1
            run.lease_until = now + self.lease
            if not self.repository.save_run_progress(run, now):
                logger.warning(f"Run {run.id} lost its claim; stopping", extra={"run_id": run.id})
                return self.repository.get_run(run.id)

    async def advance_ready(self, now: datetime, limit: int = 500) -> list[WorkflowRun]:
        """Advance runs that are pending, due, or whose lease expired."""
        advanced = []
        for run in self.repository.list_ready_runs(now, limit):
            result = await self.advance_run(run.id)
            if result is not None:
                advanced.append(result)
        return advanced
