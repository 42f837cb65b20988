"""Routing nodes: trigger, delay, conditional split and stop-on-reply."""

from __future__ import annotations

from datetime import timedelta

from ..conditions import evaluate_conditions
from ..contracts import NodeProcessorContext, NodeProcessorResult
from ..workflow import (
    ConditionalSplitNode,
    StopOnReplyNode,
    TimeDelayNode,
    TriggerStartNode,
)
from . import register
from .base import proceed

_UNIT_SECONDS = {"minutes": 60, "hours": 3600, "days": 86400}

# Older editors wired binary splits with true/false handles.
_BINARY_FALLBACK = {"yes": "true", "no": "false"}


@register("trigger_start")
async def trigger_start(
    node: TriggerStartNode, context: NodeProcessorContext
) -> NodeProcessorResult:
    return proceed(node, context, output_data={"action": "workflow_started"})


@register("time_delay")
async def time_delay(
    node: TimeDelayNode, context: NodeProcessorContext
) -> NodeProcessorResult:
    seconds = node.data.duration * _UNIT_SECONDS[node.data.unit]
    next_run_at = context.now + timedelta(seconds=seconds)
    return proceed(
        node,
        context,
        next_run_at=next_run_at,
        output_data={
            "action": "delay_scheduled",
            "duration": node.data.duration,
            "unit": node.data.unit,
            "scheduled_for": next_run_at.isoformat(),
        },
    )


@register("conditional_split")
async def conditional_split(
    node: ConditionalSplitNode, context: NodeProcessorContext
) -> NodeProcessorResult:
    outcome = evaluate_conditions(node.data, context)

    next_node_id = context.workflow.next_node_id(node.id, outcome.branch)
    if next_node_id is None and outcome.branch in _BINARY_FALLBACK:
        next_node_id = context.workflow.next_node_id(
            node.id, _BINARY_FALLBACK[outcome.branch]
        )

    return NodeProcessorResult(
        next_node_id=next_node_id,
        execution_data={
            "last_condition_result": outcome.result,
            "last_branch": outcome.branch,
        },
        output_data={
            "action": "condition_evaluated",
            "result": outcome.result,
            "branch": outcome.branch,
            "matched_group": outcome.matched_group,
            "group_results": outcome.group_results,
        },
    )


@register("stop_on_reply")
async def stop_on_reply(
    node: StopOnReplyNode, context: NodeProcessorContext
) -> NodeProcessorResult:
    # Only replies received after enrollment count, so a flag left over from
    # an earlier enrollment of the same contact cannot stop this one.
    channel = context.data.replied_since(
        node.data.channel, context.enrollment.enrolled_at
    )
    if channel is not None:
        return NodeProcessorResult(
            stop_enrollment=True,
            stop_reason=f"Contact replied via {channel}",
            output_data={
                "action": "workflow_stopped",
                "reason": "contact_replied",
                "reply_channel": channel,
            },
        )
    return proceed(
        node,
        context,
        output_data={"action": "no_reply_detected", "channel_checked": node.data.channel},
    )
