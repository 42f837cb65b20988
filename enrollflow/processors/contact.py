from __future__ import annotations

from ..contracts import NodeProcessorContext, NodeProcessorResult
from ..workflow import UpdateStatusNode
from . import register
from .base import proceed


@register("update_status")
async def update_status(
    node: UpdateStatusNode, context: NodeProcessorContext
) -> NodeProcessorResult:
    new_status = node.data.new_status
    old_status = context.contact.status
    await context.services.contacts.update_contact_status(context.contact.id, new_status)
    return proceed(
        node,
        context,
        output_data={
            "action": "status_updated",
            "old_status": old_status,
            "new_status": new_status,
        },
    )
