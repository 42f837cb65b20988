"""Message send nodes."""

from __future__ import annotations

import logging
from typing import Any, Union

from ..contracts import NodeProcessorContext, NodeProcessorResult
from ..errors import MessageSendError, NodeConfigurationError, TemplateNotFoundError
from ..expressions import render_text
from ..services import OutboundMessage
from ..workflow import SendEmailNode, SendSmsNode
from . import register
from .base import proceed

logger = logging.getLogger(__name__)


def _skip_reason(node: Union[SendSmsNode, SendEmailNode], context: NodeProcessorContext):
    contact = context.contact
    if node.type == "send_sms" and not contact.phone:
        return "no_phone_number"
    if node.type == "send_email" and not contact.email:
        return "no_email"
    if contact.do_not_contact:
        return "do_not_contact"
    return None


async def _send(
    node: Union[SendSmsNode, SendEmailNode],
    context: NodeProcessorContext,
    channel: str,
) -> NodeProcessorResult:
    reason = _skip_reason(node, context)
    if reason:
        return proceed(
            node,
            context,
            output_data={"action": f"{channel}_skipped", "reason": reason},
        )

    data = node.data
    if not data.template_id:
        raise NodeConfigurationError(f"{node.type} node {node.id} has no template")
    template = await context.services.templates.get_template(data.template_id)
    if template is None:
        raise TemplateNotFoundError(data.template_id)

    body = render_text(template.body, context)
    if not body.strip():
        raise NodeConfigurationError(f"Template {data.template_id} renders an empty body")

    subject = None
    if channel == "email":
        subject = render_text(getattr(data, "subject_override", None) or template.subject, context)
        if not subject.strip():
            raise NodeConfigurationError(f"Email node {node.id} has no subject")

    # Stable across retries of the same attempt so the provider can de-duplicate.
    sent_ids = context.data.sent_message_ids
    message = OutboundMessage(
        contact_id=context.contact.id,
        channel=channel,
        to=context.contact.phone if channel == "sms" else context.contact.email,
        body=body,
        subject=subject,
        template_id=data.template_id,
        from_identity_id=data.from_identity_id,
        workflow_execution_id=context.execution.id,
        idempotency_key=f"{context.execution.id}:{node.id}:{len(sent_ids)}",
    )

    try:
        sent = await context.services.messages.send_message(message)
    except MessageSendError as exc:
        logger.warning(
            f"{channel} send failed for contact {context.contact.id} on node {node.id}: {exc}"
        )
        output: dict[str, Any] = {"action": f"{channel}_failed", "error": str(exc)}
        if exc.code:
            output["error_code"] = exc.code
        return NodeProcessorResult(
            error=str(exc), retryable=exc.retryable, output_data=output
        )

    return proceed(
        node,
        context,
        execution_data={"sent_message_ids": [*sent_ids, sent.id]},
        output_data={
            "action": f"{channel}_sent",
            "message_id": sent.id,
            "provider_id": sent.provider_id,
        },
    )


@register("send_sms")
async def send_sms(node: SendSmsNode, context: NodeProcessorContext) -> NodeProcessorResult:
    return await _send(node, context, "sms")


@register("send_email")
async def send_email(
    node: SendEmailNode, context: NodeProcessorContext
) -> NodeProcessorResult:
    return await _send(node, context, "email")
