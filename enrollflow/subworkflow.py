"""Sub-workflow calls between parent and child enrollments.

A synchronous call never blocks: the parent execution stays on the calling
node in ``waiting`` and re-enters it on every poll until the child enrollment
is terminal or the call deadline passes. The pending call is kept in
``execution_data.sub_workflow_calls`` so it survives process restarts.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Dict, Optional

from .config import SubWorkflowConfig
from .contracts import (
    NodeProcessorContext,
    NodeProcessorResult,
    SubWorkflowCall,
    WorkflowEnrollment,
    utc_now,
)
from .errors import SubWorkflowError
from .expressions import evaluate_expression
from .persistence import WorkflowRepository
from .processors.base import proceed
from .workflow import CallSubWorkflowNode, Workflow

if TYPE_CHECKING:
    from .enrollment import EnrollmentManager

logger = logging.getLogger(__name__)


async def wake_parent(repository: WorkflowRepository, child: WorkflowEnrollment) -> bool:
    """Make a parent waiting on ``child`` due now.

    Only applies while the parent is still parked on the calling node for this
    very child, so a finished async child never disturbs its parent.
    """
    if not child.parent_execution_id or not child.parent_node_id:
        return False
    parent = await repository.get_execution(child.parent_execution_id)
    if parent is None or parent.status != "waiting":
        return False
    call = parent.execution_data.sub_workflow_calls.get(child.parent_node_id)
    if call is None or call.child_enrollment_id != child.id:
        return False
    woken = await repository.update_execution(
        parent.id,
        expected_status="waiting",
        expected_node_id=child.parent_node_id,
        next_run_at=utc_now(),
    )
    if woken:
        logger.debug(f"Woke parent execution {parent.id} for child {child.id}")
    return woken


class SubWorkflowBridge:
    """Start child enrollments and resolve their outcome for the parent."""

    def __init__(
        self,
        repository: WorkflowRepository,
        enrollments: "EnrollmentManager",
        config: Optional[SubWorkflowConfig] = None,
    ) -> None:
        self._repository = repository
        self._enrollments = enrollments
        self.config = config or SubWorkflowConfig()

    async def call(
        self, node: CallSubWorkflowNode, context: NodeProcessorContext
    ) -> NodeProcessorResult:
        pending = context.data.sub_workflow_calls.get(node.id)
        if pending is not None:
            return await self._poll(node, context, pending)
        return await self._start(node, context, retries=0)

    # ------------------------------------------------------------------
    async def _target(self, node: CallSubWorkflowNode) -> Workflow:
        target_id = node.data.target_workflow_id
        if not target_id:
            raise SubWorkflowError(f"Sub-workflow node {node.id} has no target workflow")
        workflow = await self._repository.get_workflow(target_id)
        if workflow is None:
            raise SubWorkflowError(f"Sub-workflow not found: {target_id}")
        if not workflow.is_enabled:
            raise SubWorkflowError(f"Sub-workflow is not enabled: {target_id}")
        return workflow

    def _timeout(self, node: CallSubWorkflowNode) -> Optional[int]:
        if node.data.timeout_seconds > 0:
            return node.data.timeout_seconds
        return self.config.default_timeout_seconds

    def _pending_calls(
        self, context: NodeProcessorContext, node_id: str
    ) -> Dict[str, Any]:
        return {
            key: call.model_dump(mode="json")
            for key, call in context.data.sub_workflow_calls.items()
            if key != node_id
        }

    async def _start(
        self, node: CallSubWorkflowNode, context: NodeProcessorContext, retries: int
    ) -> NodeProcessorResult:
        target = await self._target(node)
        depth = context.enrollment.call_depth + 1
        if depth > self.config.max_call_depth:
            raise SubWorkflowError(
                f"Sub-workflow call depth {depth} exceeds limit {self.config.max_call_depth}"
            )

        inputs = {
            mapping.variable_name: evaluate_expression(mapping.value_expression, context)
            for mapping in node.data.input_mappings
        }
        child = await self._enrollments.enroll_child(
            target,
            context.contact.id,
            parent=context.enrollment,
            parent_execution_id=context.execution.id,
            parent_node_id=node.id,
            input_data=inputs,
        )
        mode = node.data.execution_mode
        logger.info(
            f"Enrollment {context.enrollment.id} started {mode} sub-workflow "
            f"{target.id} as child {child.id}"
        )
        output = {
            "action": "sub_workflow_started",
            "mode": mode,
            "target_workflow_id": target.id,
            "child_enrollment_id": child.id,
            "retries": retries,
        }

        if mode == "async":
            return proceed(node, context, output_data=output)

        if self._timeout(node) is None:
            logger.warning(
                f"Sync sub-workflow call on node {node.id} has no timeout; "
                f"the parent waits until child {child.id} finishes"
            )
        call = SubWorkflowCall(
            child_enrollment_id=child.id,
            target_workflow_id=target.id,
            started_at=context.now,
            retries=retries,
        )
        calls = self._pending_calls(context, node.id)
        calls[node.id] = call.model_dump(mode="json")
        return NodeProcessorResult(
            next_node_id=node.id,
            next_run_at=context.now + timedelta(seconds=self.config.poll_interval_seconds),
            execution_data={"sub_workflow_calls": calls},
            output_data=output,
        )

    async def _poll(
        self,
        node: CallSubWorkflowNode,
        context: NodeProcessorContext,
        call: SubWorkflowCall,
    ) -> NodeProcessorResult:
        child = await self._repository.get_enrollment(call.child_enrollment_id)
        if child is None:
            return await self._on_failure(node, context, call, "Child enrollment not found")

        if child.status == "completed":
            child_execution = await self._repository.get_execution_for_enrollment(child.id)
            result = child_execution.execution_data.sub_workflow_result if child_execution else None
            if result is None or result.status != "failure":
                outputs = dict(result.outputs) if result else {}
                node_outputs = {**context.data.node_outputs, node.id: outputs}
                return proceed(
                    node,
                    context,
                    execution_data={
                        "sub_workflow_calls": self._pending_calls(context, node.id),
                        "node_outputs": node_outputs,
                    },
                    output_data={
                        "action": "sub_workflow_completed",
                        "child_enrollment_id": child.id,
                        "status": result.status if result else "success",
                        "outputs": outputs,
                    },
                )
            return await self._on_failure(
                node, context, call, "Sub-workflow returned failure"
            )

        if child.status in ("stopped", "failed"):
            reason = f"Sub-workflow {child.status}"
            if child.stop_reason:
                reason = f"{reason}: {child.stop_reason}"
            return await self._on_failure(node, context, call, reason)

        timeout = self._timeout(node)
        if timeout is not None and context.now - call.started_at >= timedelta(seconds=timeout):
            await self._enrollments.stop_enrollment(child.id, "Parent call timed out")
            return await self._on_failure(
                node, context, call, f"Sub-workflow timed out after {timeout}s"
            )

        return NodeProcessorResult(
            next_node_id=node.id,
            next_run_at=context.now + timedelta(seconds=self.config.poll_interval_seconds),
            output_data={
                "action": "sub_workflow_waiting",
                "child_enrollment_id": child.id,
                "child_status": child.status,
            },
        )

    async def _on_failure(
        self,
        node: CallSubWorkflowNode,
        context: NodeProcessorContext,
        call: SubWorkflowCall,
        reason: str,
    ) -> NodeProcessorResult:
        policy = node.data.on_failure
        logger.warning(
            f"Sub-workflow call on node {node.id} of enrollment {context.enrollment.id} "
            f"failed ({reason}); on_failure={policy}"
        )
        if policy == "retry" and call.retries < node.data.retry_count:
            return await self._start(node, context, retries=call.retries + 1)

        output = {
            "action": "sub_workflow_failed",
            "child_enrollment_id": call.child_enrollment_id,
            "reason": reason,
            "on_failure": policy,
        }
        if policy == "continue":
            return proceed(
                node,
                context,
                execution_data={"sub_workflow_calls": self._pending_calls(context, node.id)},
                output_data=output,
            )
        return NodeProcessorResult(error=reason, retryable=False, output_data=output)
