"""Execution of individual workflow actions."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

from campaign_dispatch.dispatch.models import (
    DispatchUnit,
    MessageContent,
    OutcomeKind,
    RecipientOutcome,
    SourceKind,
    UnitKind,
)
from campaign_dispatch.dispatch.queue import DispatchQueue, WorkerPool
from campaign_dispatch.models import utcnow

from .models import (
    AddTagAction,
    RemoveTagAction,
    SendEmailAction,
    SendSmsAction,
    UpdateCustomerAction,
    Workflow,
    WorkflowRun,
)

if TYPE_CHECKING:
    from campaign_dispatch.state.repository import Repository

logger = logging.getLogger(__name__)


def content_for(action: SendEmailAction | SendSmsAction) -> MessageContent:
    if isinstance(action, SendEmailAction):
        return MessageContent(
            subject=action.subject,
            html=action.html,
            text=action.text,
            from_email=action.from_email,
            from_name=action.from_name,
            reply_to=action.reply_to,
        )
    return MessageContent(body=action.message, from_number=action.from_number)


def send_source_id(run: WorkflowRun) -> str:
    """Message record source id for the send at the run's current cursor."""
    return f"{run.id}:{run.cursor}"


class ActionExecutor:
    """Performs send and contact-update actions on behalf of a run."""

    def __init__(
        self,
        repository: Repository,
        queue: DispatchQueue,
        pool: WorkerPool,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.queue = queue
        self.pool = pool
        self.clock = clock

    async def send(
        self,
        run: WorkflowRun,
        workflow: Workflow,
        action: SendEmailAction | SendSmsAction,
    ) -> RecipientOutcome:
        """Dispatch a single-recipient unit and wait for its outcome."""
        now = self.clock()
        unit = DispatchUnit(
            id=str(uuid.uuid4()),
            kind=UnitKind.AUTOMATION_SEND,
            source_kind=SourceKind.WORKFLOW_RUN,
            source_id=send_source_id(run),
            store_id=run.store_id,
            channel=action.channel,
            content=content_for(action),
            recipient_ids=[run.recipient_id],
            variables={
                "trigger": run.trigger_payload,
                "workflow": {"id": workflow.id, "name": workflow.name},
            },
            available_at=now,
            created_at=now,
        )
        self.queue.enqueue([unit])
        results = await self.pool.drain(source_id=unit.source_id)
        for processed, batch in results:
            if processed.id == unit.id and batch.outcomes:
                return batch.outcomes[0]

        # Another worker holds the unit; look again on the next tick.
        logger.info(
            f"Send unit {unit.id} for run {run.id} was not processed here",
            extra={"run_id": run.id, "unit_id": unit.id},
        )
        return RecipientOutcome(
            recipient_id=run.recipient_id,
            outcome=OutcomeKind.DEFERRED,
            reason="unit_in_progress",
            retry_at=now,
        )

    def apply(
        self, run: WorkflowRun, action: AddTagAction | RemoveTagAction | UpdateCustomerAction
    ) -> bool:
        """Apply a contact update. Returns False if the contact no longer exists."""
        now = self.clock()
        if isinstance(action, AddTagAction):
            tags = self.repository.update_contact_tags(run.recipient_id, add=action.tags, now=now)
            return tags is not None
        if isinstance(action, RemoveTagAction):
            tags = self.repository.update_contact_tags(
                run.recipient_id, remove=action.tags, now=now
            )
            return tags is not None
        return self.repository.update_contact_fields(run.recipient_id, action.updates, now=now)
