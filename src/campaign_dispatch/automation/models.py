"""Pydantic models for automation workflows and runs."""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from campaign_dispatch.models import Channel, ContactUpdate, utcnow
from campaign_dispatch.utils.validation import check_sms_body


class TriggerType(str, Enum):
    """Domain events a workflow can be triggered by."""

    ORDER_CREATED = "order_created"
    ORDER_PAID = "order_paid"
    ORDER_UPDATED = "order_updated"
    CUSTOMER_CREATED = "customer_created"
    CUSTOMER_UPDATED = "customer_updated"
    CART_ABANDONED = "cart_abandoned"
    ORDER_REFUNDED = "order_refunded"
    ORDERED_PRODUCT = "ordered_product"
    PAID_FOR_ORDER = "paid_for_order"
    PLACED_ORDER = "placed_order"
    PRODUCT_BACK_IN_STOCK = "product_back_in_stock"
    SPECIAL_OCCASION_BIRTHDAY = "special_occasion_birthday"
    STARTED_CHECKOUT = "started_checkout"
    CUSTOMER_SUBSCRIBED = "customer_subscribed"
    VIEWED_PAGE = "viewed_page"
    VIEWED_PRODUCT = "viewed_product"
    CLICKED_MESSAGE = "clicked_message"
    ENTERED_SEGMENT = "entered_segment"
    EXITED_SEGMENT = "exited_segment"
    MARKED_MESSAGE_AS_SPAM = "marked_message_as_spam"
    MESSAGE_DELIVERY_FAILED = "message_delivery_failed"
    MESSAGE_SENT = "message_sent"
    OPENED_MESSAGE = "opened_message"
    ORDER_CANCELED = "order_canceled"
    ORDER_FULFILLED = "order_fulfilled"


_RECIPIENT_KEYS = frozenset({"contact_id", "email", "customer"})

_ORDER_KEYS = _RECIPIENT_KEYS | {
    "id",
    "order_number",
    "total_price",
    "subtotal_price",
    "currency",
    "line_items",
    "financial_status",
    "fulfillment_status",
    "tags",
    "discount_codes",
    "created_at",
}

_CUSTOMER_KEYS = _RECIPIENT_KEYS | {
    "id",
    "phone",
    "first_name",
    "last_name",
    "tags",
    "orders_count",
    "total_spent",
    "accepts_marketing",
    "created_at",
}

_CHECKOUT_KEYS = _RECIPIENT_KEYS | {
    "id",
    "line_items",
    "total_price",
    "currency",
    "abandoned_checkout_url",
    "created_at",
}

_MESSAGE_KEYS = _RECIPIENT_KEYS | {
    "message_id",
    "campaign_id",
    "workflow_id",
    "channel",
    "url",
}

# Top-level payload keys each trigger type guarantees; trigger conditions
# may only address paths rooted at one of these.
TRIGGER_PAYLOAD_KEYS: dict[TriggerType, frozenset[str]] = {
    TriggerType.ORDER_CREATED: _ORDER_KEYS,
    TriggerType.ORDER_PAID: _ORDER_KEYS,
    TriggerType.ORDER_UPDATED: _ORDER_KEYS,
    TriggerType.ORDER_REFUNDED: _ORDER_KEYS | {"refund_amount"},
    TriggerType.ORDER_CANCELED: _ORDER_KEYS | {"cancel_reason"},
    TriggerType.ORDER_FULFILLED: _ORDER_KEYS,
    TriggerType.PLACED_ORDER: _ORDER_KEYS,
    TriggerType.PAID_FOR_ORDER: _ORDER_KEYS,
    TriggerType.ORDERED_PRODUCT: _ORDER_KEYS | {"product"},
    TriggerType.CUSTOMER_CREATED: _CUSTOMER_KEYS,
    TriggerType.CUSTOMER_UPDATED: _CUSTOMER_KEYS,
    TriggerType.CUSTOMER_SUBSCRIBED: _CUSTOMER_KEYS | {"channel", "source"},
    TriggerType.SPECIAL_OCCASION_BIRTHDAY: _CUSTOMER_KEYS | {"birthday"},
    TriggerType.CART_ABANDONED: _CHECKOUT_KEYS,
    TriggerType.STARTED_CHECKOUT: _CHECKOUT_KEYS,
    TriggerType.PRODUCT_BACK_IN_STOCK: _RECIPIENT_KEYS | {"product", "variant"},
    TriggerType.VIEWED_PAGE: _RECIPIENT_KEYS | {"url", "page"},
    TriggerType.VIEWED_PRODUCT: _RECIPIENT_KEYS | {"url", "product"},
    TriggerType.ENTERED_SEGMENT: _RECIPIENT_KEYS | {"segment"},
    TriggerType.EXITED_SEGMENT: _RECIPIENT_KEYS | {"segment"},
    TriggerType.CLICKED_MESSAGE: _MESSAGE_KEYS,
    TriggerType.MARKED_MESSAGE_AS_SPAM: _MESSAGE_KEYS,
    TriggerType.MESSAGE_DELIVERY_FAILED: _MESSAGE_KEYS | {"error_kind"},
    TriggerType.MESSAGE_SENT: _MESSAGE_KEYS,
    TriggerType.OPENED_MESSAGE: _MESSAGE_KEYS,
}


class ConditionOperator(str, Enum):
    """Comparison operators for trigger filters."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IN = "in"
    NOT_IN = "not_in"


class TriggerCondition(BaseModel):
    """One predicate over the event payload, addressed by dot path."""

    field: str = Field(..., min_length=1)
    operator: ConditionOperator
    value: Any

    @field_validator("value")
    @classmethod
    def _value_required(cls, value: Any) -> Any:
        if value is None:
            raise ValueError("value is required")
        return value

    @model_validator(mode="after")
    def _membership_needs_list(self) -> TriggerCondition:
        if self.operator in (ConditionOperator.IN, ConditionOperator.NOT_IN) and not isinstance(
            self.value, list
        ):
            raise ValueError(f"{self.operator.value} requires a list value")
        return self

    @property
    def root_key(self) -> str:
        return self.field.split(".", 1)[0]


class _ActionBase(BaseModel):
    id: str | None = None
    delay: timedelta | None = Field(None, description="Wait before executing this action")

    @field_validator("delay")
    @classmethod
    def _non_negative_delay(cls, value: timedelta | None) -> timedelta | None:
        if value is not None and value < timedelta(0):
            raise ValueError("delay must be non-negative")
        return value


class SendEmailAction(_ActionBase):
    type: Literal["send_email"] = "send_email"
    subject: str = Field(..., min_length=1)
    html: str = Field(..., min_length=1)
    text: str | None = None
    from_email: str = Field(..., min_length=1)
    from_name: str = Field(..., min_length=1)
    reply_to: str | None = None

    @property
    def channel(self) -> Channel:
        return Channel.EMAIL


class SendSmsAction(_ActionBase):
    type: Literal["send_sms"] = "send_sms"
    message: str = Field(..., min_length=1)
    from_number: str | None = None

    @field_validator("message")
    @classmethod
    def _message_fits(cls, value: str) -> str:
        return check_sms_body(value)

    @property
    def channel(self) -> Channel:
        return Channel.SMS


class DelayAction(_ActionBase):
    type: Literal["delay"] = "delay"
    duration: timedelta

    @field_validator("duration")
    @classmethod
    def _positive_duration(cls, value: timedelta) -> timedelta:
        if value <= timedelta(0):
            raise ValueError("duration must be positive")
        return value


class AddTagAction(_ActionBase):
    type: Literal["add_tag"] = "add_tag"
    tags: list[str] = Field(..., min_length=1)


class RemoveTagAction(_ActionBase):
    type: Literal["remove_tag"] = "remove_tag"
    tags: list[str] = Field(..., min_length=1)


class UpdateCustomerAction(_ActionBase):
    type: Literal["update_customer"] = "update_customer"
    updates: ContactUpdate


Action = Annotated[
    SendEmailAction
    | SendSmsAction
    | DelayAction
    | AddTagAction
    | RemoveTagAction
    | UpdateCustomerAction,
    Field(discriminator="type"),
]


class Workflow(BaseModel):
    """An event-triggered sequence of actions owned by a store."""

    id: str
    store_id: str
    name: str
    trigger_type: TriggerType
    conditions: list[TriggerCondition] = Field(default_factory=list)
    actions: list[Action] = Field(default_factory=list)
    is_active: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _conditions_match_payload(self) -> Workflow:
        allowed = TRIGGER_PAYLOAD_KEYS[self.trigger_type]
        for condition in self.conditions:
            if condition.root_key not in allowed:
                raise ValueError(
                    f"Condition field '{condition.field}' is not part of the "
                    f"{self.trigger_type.value} payload"
                )
        return self


class RunStatus(str, Enum):
    """Workflow run status."""

    PENDING = "pending"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})


class WorkflowRun(BaseModel):
    """One execution of a workflow for one recipient and one event."""

    id: str
    workflow_id: str
    store_id: str
    event_id: str
    recipient_id: str
    trigger_payload: dict[str, Any] = Field(default_factory=dict)
    cursor: int = 0
    status: RunStatus = RunStatus.PENDING
    resume_at: datetime | None = None
    logical_time: datetime
    lease_until: datetime | None = None
    # Cursor position whose per-action delay has already been waited out
    delay_done_cursor: int | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def dedup_key(self) -> tuple[str, str, str]:
        return (self.workflow_id, self.event_id, self.recipient_id)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


class WorkflowStats(BaseModel):
    """Run counts for a workflow."""

    workflow_id: str
    total_runs: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    messages_sent: int = 0
