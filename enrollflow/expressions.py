"""Value expressions and placeholder rendering.

Expressions reference data through ``{{path}}`` placeholders:

- ``{{first_name}}`` / ``{{contact.first_name}}``: contact core or custom field
- ``{{custom.plan}}`` / ``{{contact.custom.plan}}``: custom field only
- ``{{input.order_id}}``: input variable passed to a sub-workflow
- ``{{execution.last_branch}}``: a key of the execution data
- ``{{<node_id>.<output>}}``: an output recorded by an earlier node

A string that is exactly one placeholder resolves to the raw value; anything
else is rendered as text.
"""

from __future__ import annotations

import re
from typing import Any, Optional

from .contracts import Contact, NodeProcessorContext

PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_\-\.]+)\s*\}\}")
_SINGLE = re.compile(r"^\s*\{\{\s*([A-Za-z0-9_\-\.]+)\s*\}\}\s*$")

CONTACT_FIELDS = (
    "id",
    "first_name",
    "last_name",
    "email",
    "phone",
    "status",
    "do_not_contact",
    "tags",
)


def contact_field(contact: Contact, name: str) -> Any:
    """Look up a core field, then a custom field (case-insensitive)."""
    key = name.strip()
    if key in CONTACT_FIELDS:
        return getattr(contact, key)
    if key == "full_name":
        parts = [p for p in (contact.first_name, contact.last_name) if p]
        return " ".join(parts) or None
    return custom_field(contact, key)


def custom_field(contact: Contact, name: str) -> Any:
    lowered = name.lower()
    for field_name, value in contact.custom_fields.items():
        if field_name.lower() == lowered:
            return value
    return None


def _dig(value: Any, parts: list[str]) -> Any:
    for part in parts:
        if isinstance(value, dict):
            value = value.get(part)
        elif hasattr(value, part):
            value = getattr(value, part)
        else:
            return None
        if value is None:
            return None
    return value


def resolve_path(path: str, context: NodeProcessorContext) -> Any:
    """Resolve a dotted reference against the processor context."""
    parts = [p for p in path.strip().split(".") if p]
    if not parts:
        return None
    head, rest = parts[0], parts[1:]
    data = context.execution.execution_data

    if head == "contact":
        if not rest:
            return None
        if rest[0] == "custom" and len(rest) > 1:
            return custom_field(context.contact, ".".join(rest[1:]))
        return contact_field(context.contact, ".".join(rest))
    if head == "custom" and rest:
        return custom_field(context.contact, ".".join(rest))
    if head == "input":
        return _dig(context.enrollment.input_data, rest) if rest else dict(
            context.enrollment.input_data
        )
    if head == "execution":
        if not rest:
            return None
        if rest[0] in type(data).model_fields:
            return _dig(data, rest)
        return _dig(data.extensions, rest)
    if head in data.node_outputs:
        return _dig(data.node_outputs[head], rest) if rest else data.node_outputs[head]

    if not rest:
        value = contact_field(context.contact, head)
        if value is None:
            value = context.enrollment.input_data.get(head)
        return value
    return None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ", ".join(_as_text(v) for v in value)
    return str(value)


def render_text(text: Optional[str], context: NodeProcessorContext) -> str:
    """Replace every placeholder in ``text`` with its resolved value."""
    if not text:
        return ""
    return PLACEHOLDER.sub(lambda m: _as_text(resolve_path(m.group(1), context)), text)


def evaluate_expression(expression: Any, context: NodeProcessorContext) -> Any:
    """Evaluate a value expression.

    Non-string values are returned unchanged. A lone placeholder keeps the
    referenced value's type.
    """
    if not isinstance(expression, str):
        return expression
    single = _SINGLE.match(expression)
    if single:
        return resolve_path(single.group(1), context)
    if PLACEHOLDER.search(expression):
        return render_text(expression, context)
    return expression
