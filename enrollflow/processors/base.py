from __future__ import annotations

from typing import Any, Optional

from ..contracts import NodeProcessorContext, NodeProcessorResult


def proceed(
    node: Any,
    context: NodeProcessorContext,
    handle: Optional[str] = None,
    **kwargs: Any,
) -> NodeProcessorResult:
    """Route to the node's outgoing edge; no edge ends the workflow."""
    next_node_id = context.workflow.next_node_id(node.id, handle)
    return NodeProcessorResult(next_node_id=next_node_id, **kwargs)
