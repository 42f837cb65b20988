"""Nodes linking parent and child workflows."""

from __future__ import annotations

import logging

from ..contracts import NodeProcessorContext, NodeProcessorResult, SubWorkflowResult
from ..errors import SubWorkflowError
from ..expressions import PLACEHOLDER, evaluate_expression, resolve_path
from ..workflow import CallSubWorkflowNode, ReturnToParentNode
from . import register

logger = logging.getLogger(__name__)


@register("call_sub_workflow")
async def call_sub_workflow(
    node: CallSubWorkflowNode, context: NodeProcessorContext
) -> NodeProcessorResult:
    if context.sub_workflows is None:
        raise SubWorkflowError("Sub-workflow calls are not configured")
    return await context.sub_workflows.call(node, context)


def _custom_status(reference: str, context: NodeProcessorContext) -> str:
    if PLACEHOLDER.search(reference):
        value = evaluate_expression(reference, context)
    else:
        value = resolve_path(reference, context)
    return str(value) if value not in (None, "") else "custom"


@register("return_to_parent")
async def return_to_parent(
    node: ReturnToParentNode, context: NodeProcessorContext
) -> NodeProcessorResult:
    data = node.data
    outputs = {
        variable.name: evaluate_expression(variable.value, context)
        for variable in data.output_variables
    }
    if data.return_status == "custom":
        if not data.custom_status_field:
            raise SubWorkflowError(f"Return node {node.id} has no custom status field")
        status = _custom_status(data.custom_status_field, context)
    else:
        status = data.return_status

    if context.enrollment.parent_enrollment_id is None:
        logger.warning(
            f"Return node {node.id} reached by top-level enrollment {context.enrollment.id}"
        )

    result = SubWorkflowResult(status=status, outputs=outputs)
    return NodeProcessorResult(
        next_node_id=None,
        execution_data={"sub_workflow_result": result.model_dump(mode="json")},
        output_data={
            "action": "return_to_parent",
            "return_status": status,
            "output_variables": result.model_dump(mode="json")["outputs"],
        },
    )
