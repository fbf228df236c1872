"""Variable substitution for message content."""

from __future__ import annotations

import re
from typing import Any

from campaign_dispatch.models import Channel, Contact

from .models import MessageContent, RenderedMessage

_VARIABLE_RE = re.compile(r"\{\{\s*([a-zA-Z_][a-zA-Z0-9_.]*)\s*\}\}")

# camelCase names accepted for contact fields
_CONTACT_ALIASES = {
    "firstName": "first_name",
    "lastName": "last_name",
    "totalSpent": "total_spent",
    "orderCount": "orders_count",
}


def _resolve(context: dict[str, Any], path: str) -> Any:
    current: Any = context
    for key in path.split("."):
        if isinstance(current, dict) and key in current:
            current = current[key]
        else:
            return None
    return current


def render_template(template: str | None, context: dict[str, Any]) -> str | None:
    """Replace ``{{path.to.value}}`` placeholders; unknown paths render empty."""
    if template is None:
        return None

    def substitute(match: re.Match) -> str:
        value = _resolve(context, match.group(1))
        if value is None or isinstance(value, (dict, list)):
            return ""
        return str(value)

    return _VARIABLE_RE.sub(substitute, template)


def build_context(contact: Contact, variables: dict[str, Any] | None = None) -> dict[str, Any]:
    """Template context: ``contact.*`` plus ``trigger.*`` and any extra top-level keys."""
    contact_vars = contact.template_vars()
    contact_vars["total_spent"] = contact.total_spent
    contact_vars["orders_count"] = contact.orders_count
    for alias, field in _CONTACT_ALIASES.items():
        contact_vars[alias] = contact_vars[field]
    context = dict(variables or {})
    context["contact"] = contact_vars
    return context


def render_message(
    content: MessageContent,
    channel: Channel,
    contact: Contact,
    variables: dict[str, Any] | None = None,
    tags: dict[str, str] | None = None,
    idempotency_key: str | None = None,
) -> RenderedMessage:
    """Render content for one contact on one channel."""
    context = build_context(contact, variables)
    return RenderedMessage(
        channel=channel,
        to=contact.address_for(channel),
        subject=render_template(content.subject, context),
        html=render_template(content.html, context),
        text=render_template(content.text, context),
        body=render_template(content.body, context),
        from_email=content.from_email,
        from_name=content.from_name,
        from_number=content.from_number,
        reply_to=content.reply_to,
        tags=tags or {},
        idempotency_key=idempotency_key,
    )
