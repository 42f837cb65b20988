"""Execution step runner.

Advances one claimed execution through its workflow. Every node attempt is
logged and every outcome is persisted; nothing a processor raises escapes
this boundary. Only storage failures propagate to the scheduler.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from .config import EnrollflowConfig
from .contracts import (
    OPEN_ENROLLMENT_STATUSES,
    ExecutionData,
    NodeProcessorContext,
    NodeProcessorResult,
    WorkflowEnrollment,
    WorkflowExecution,
    WorkflowExecutionLog,
    utc_now,
)
from .errors import EnrollflowError, NodeConfigurationError
from .persistence import WorkflowRepository
from .processors import get_processor
from .services import Services
from .subworkflow import SubWorkflowBridge, wake_parent
from .utils.retry import compute_backoff
from .workflow import Workflow

logger = logging.getLogger(__name__)


def merge_execution_data(
    current: ExecutionData, patch: Dict[str, Any]
) -> Tuple[ExecutionData, Dict[str, Any]]:
    """Validate ``patch`` against ``current``.

    Returns the merged model and the JSON patch to store. Undeclared keys end
    up in ``extensions``.
    """
    if not patch:
        return current, {}
    merged = ExecutionData.model_validate({**current.model_dump(), **patch})
    dumped = merged.model_dump(mode="json")
    keys = {key if key in ExecutionData.model_fields else "extensions" for key in patch}
    return merged, {key: dumped[key] for key in keys}


class ExecutionStepRunner:
    """Run the nodes of claimed executions and apply their results."""

    def __init__(
        self,
        repository: WorkflowRepository,
        services: Optional[Services],
        config: Optional[EnrollflowConfig] = None,
        sub_workflows: Optional[SubWorkflowBridge] = None,
    ) -> None:
        self._repository = repository
        self._services = services
        self.config = config or EnrollflowConfig()
        self._sub_workflows = sub_workflows

    async def run(self, execution: WorkflowExecution) -> str:
        """Process a claimed (``processing``) execution.

        Nodes without a ``next_run_at`` are chained within the same claim.
        Returns the outcome: ``completed``, ``waiting``, ``stopped``,
        ``failed``, or ``superseded`` when another runner took over the claim.
        """
        if self._services is None:
            raise EnrollflowError("Engine has no services configured")

        workflow: Optional[Workflow] = None
        steps = 0
        while True:
            enrollment = await self._repository.get_enrollment(execution.enrollment_id)
            if enrollment is None:
                if not await self._write(
                    execution, status="failed", error_message="Enrollment not found"
                ):
                    return self._superseded(execution)
                return "failed"
            if enrollment.status != "active":
                return await self._release_inactive(execution, enrollment)

            if workflow is None:
                workflow = await self._repository.get_workflow(enrollment.workflow_id)
                if workflow is None:
                    return await self._fail(execution, enrollment, "Workflow not found")
                if not workflow.is_enabled:
                    return await self._fail(execution, enrollment, "Workflow is disabled")

            node = workflow.node(execution.current_node_id)
            if node is None:
                return await self._fail(
                    execution,
                    enrollment,
                    f"Current node not found in workflow: {execution.current_node_id}",
                )
            processor = get_processor(node.type)
            if processor is None:
                return await self._fail(
                    execution, enrollment, f"No processor for node type: {node.type}", node
                )
            contact = await self._services.contacts.get_contact_with_relations(
                enrollment.contact_id
            )
            if contact is None:
                return await self._fail(
                    execution, enrollment, f"Contact not found: {enrollment.contact_id}", node
                )

            context = NodeProcessorContext(
                workflow=workflow,
                enrollment=enrollment,
                execution=execution,
                contact=contact,
                now=utc_now(),
                services=self._services,
                sub_workflows=self._sub_workflows,
            )
            started = time.monotonic()
            try:
                result = await processor(node, context)
            except NodeConfigurationError as exc:
                result = NodeProcessorResult(error=str(exc), retryable=False)
            except Exception as exc:
                logger.exception(
                    f"Node {node.id} ({node.type}) raised for execution {execution.id}"
                )
                result = NodeProcessorResult(error=str(exc) or type(exc).__name__)
            duration_ms = int((time.monotonic() - started) * 1000)
            steps += 1

            await self._log(execution, enrollment, node, result, duration_ms)

            if result.error is not None:
                return await self._handle_error(execution, enrollment, result, context.now)
            if result.stop_enrollment:
                return await self._stop(execution, enrollment, result, context.now)
            if result.next_node_id is None:
                return await self._complete(execution, enrollment, result, context.now)

            _, patch = merge_execution_data(
                execution.execution_data, result.execution_data
            )
            if result.next_run_at is not None:
                if not await self._park(
                    execution,
                    enrollment,
                    execution_data_patch=patch,
                    current_node_id=result.next_node_id,
                    next_run_at=result.next_run_at,
                    attempts=0,
                    error_message=None,
                ):
                    return self._superseded(execution)
                logger.debug(
                    f"Execution {execution.id} waits at {result.next_node_id} until "
                    f"{result.next_run_at.isoformat()}"
                )
                return "waiting"

            if steps >= self.config.scheduler.max_steps_per_claim:
                return await self._fail(
                    execution,
                    enrollment,
                    "Too many nodes processed (possible infinite loop)",
                    node,
                )

            # The claim counts as the first attempt at the next node.
            if not await self._write(
                execution,
                execution_data_patch=patch,
                current_node_id=result.next_node_id,
                attempts=1,
                error_message=None,
            ):
                return self._superseded(execution)
            refreshed = await self._repository.get_execution(execution.id)
            if (
                refreshed is None
                or refreshed.status != "processing"
                or refreshed.claim_token != execution.claim_token
            ):
                return self._superseded(execution)
            execution = refreshed

    # ------------------------------------------------------------------
    async def _write(self, execution: WorkflowExecution, **fields: Any) -> bool:
        """Update the execution only while this runner still holds the claim."""
        return await self._repository.update_execution(
            execution.id,
            expected_status="processing",
            expected_claim_token=execution.claim_token,
            **fields,
        )

    def _superseded(self, execution: WorkflowExecution) -> str:
        logger.warning(
            f"Execution {execution.id} lost its claim at {execution.current_node_id}; "
            "discarding this run"
        )
        return "superseded"

    async def _park(
        self,
        execution: WorkflowExecution,
        enrollment: WorkflowEnrollment,
        **fields: Any,
    ) -> bool:
        """Release the claim, leaving the execution ``waiting``.

        A stop that landed while the node ran only finalises waiting
        executions, so re-check the enrollment after parking. Returns False
        when the claim was already lost.
        """
        if not await self._write(execution, status="waiting", **fields):
            return False
        current = await self._repository.get_enrollment(enrollment.id)
        if current is not None and current.is_terminal:
            await self._repository.update_execution(
                execution.id, expected_status="waiting", status="skipped", next_run_at=None
            )
        return True

    async def _log(
        self,
        execution: WorkflowExecution,
        enrollment: WorkflowEnrollment,
        node: Any,
        result: NodeProcessorResult,
        duration_ms: Optional[int],
    ) -> None:
        if result.error is not None:
            status = "failed"
        elif str(result.output_data.get("action", "")).endswith("_skipped"):
            status = "skipped"
        else:
            status = "completed"
        await self._repository.append_log(
            WorkflowExecutionLog(
                execution_id=execution.id,
                enrollment_id=enrollment.id,
                node_id=node.id,
                node_type=node.type,
                action="stop" if result.stop_enrollment else "execute",
                status=status,
                input_data={"node_data": node.data.model_dump(mode="json")},
                output_data=result.output_data or None,
                error_message=result.error,
                duration_ms=duration_ms,
            )
        )

    async def _handle_error(
        self,
        execution: WorkflowExecution,
        enrollment: WorkflowEnrollment,
        result: NodeProcessorResult,
        now: datetime,
    ) -> str:
        error = result.error or "Unknown error"
        if not result.retryable or execution.attempts >= execution.max_attempts:
            return await self._fail(execution, enrollment, error, logged=True)

        retry = self.config.retry
        delay = compute_backoff(
            execution.attempts,
            base_delay=retry.base_delay_seconds,
            multiplier=retry.multiplier,
            max_delay=retry.max_delay_seconds,
        )
        next_run_at = now + timedelta(seconds=delay)
        if not await self._park(
            execution,
            enrollment,
            next_run_at=next_run_at,
            error_message=error,
        ):
            return self._superseded(execution)
        logger.info(
            f"Execution {execution.id} attempt {execution.attempts}/{execution.max_attempts} "
            f"failed at {execution.current_node_id}: {error}; retrying at {next_run_at.isoformat()}"
        )
        return "waiting"

    async def _stop(
        self,
        execution: WorkflowExecution,
        enrollment: WorkflowEnrollment,
        result: NodeProcessorResult,
        now: datetime,
    ) -> str:
        reason = result.stop_reason or "Stopped by workflow"
        _, patch = merge_execution_data(execution.execution_data, result.execution_data)
        # Stopped enrollments leave their execution skipped, whoever stopped them.
        if not await self._write(
            execution, execution_data_patch=patch, status="skipped", next_run_at=None
        ):
            return self._superseded(execution)
        await self._repository.update_enrollment_status(
            enrollment.id, "stopped", from_statuses=OPEN_ENROLLMENT_STATUSES, at=now, reason=reason
        )
        logger.info(f"Enrollment {enrollment.id} stopped: {reason}")
        await wake_parent(self._repository, enrollment)
        return "stopped"

    async def _complete(
        self,
        execution: WorkflowExecution,
        enrollment: WorkflowEnrollment,
        result: NodeProcessorResult,
        now: datetime,
    ) -> str:
        _, patch = merge_execution_data(execution.execution_data, result.execution_data)
        if not await self._write(
            execution,
            execution_data_patch=patch,
            status="completed",
            next_run_at=None,
            error_message=None,
        ):
            return self._superseded(execution)
        completed = await self._repository.update_enrollment_status(
            enrollment.id, "completed", from_statuses=("active",), at=now
        )
        if not completed:
            # Stopped while the last node ran; the stop stands.
            await self._repository.update_execution(
                execution.id, expected_status="completed", status="skipped"
            )
            logger.info(f"Enrollment {enrollment.id} ended after an external stop")
            return "stopped"
        logger.info(f"Enrollment {enrollment.id} completed workflow {enrollment.workflow_id}")
        await wake_parent(self._repository, enrollment)
        return "completed"

    async def _fail(
        self,
        execution: WorkflowExecution,
        enrollment: WorkflowEnrollment,
        reason: str,
        node: Any = None,
        logged: bool = False,
    ) -> str:
        if not await self._write(
            execution, status="failed", next_run_at=None, error_message=reason
        ):
            return self._superseded(execution)
        if not logged:
            await self._repository.append_log(
                WorkflowExecutionLog(
                    execution_id=execution.id,
                    enrollment_id=enrollment.id,
                    node_id=execution.current_node_id,
                    node_type=node.type if node is not None else "unknown",
                    status="failed",
                    error_message=reason,
                )
            )
        await self._repository.update_enrollment_status(
            enrollment.id,
            "failed",
            from_statuses=OPEN_ENROLLMENT_STATUSES,
            at=utc_now(),
            reason=reason,
        )
        logger.error(f"Enrollment {enrollment.id} failed at {execution.current_node_id}: {reason}")
        await wake_parent(self._repository, enrollment)
        return "failed"

    async def _release_inactive(
        self, execution: WorkflowExecution, enrollment: WorkflowEnrollment
    ) -> str:
        if enrollment.status == "paused":
            # Not an attempt; hand the cursor back untouched.
            if not await self._park(
                execution, enrollment, attempts=max(execution.attempts - 1, 0)
            ):
                return self._superseded(execution)
            return "waiting"

        if not await self._write(execution, status="skipped", next_run_at=None):
            return self._superseded(execution)
        await self._repository.append_log(
            WorkflowExecutionLog(
                execution_id=execution.id,
                enrollment_id=enrollment.id,
                node_id=execution.current_node_id,
                node_type="unknown",
                action="stop",
                status="skipped",
                output_data={"enrollment_status": enrollment.status, "reason": enrollment.stop_reason},
            )
        )
        logger.info(
            f"Execution {execution.id} skipped: enrollment {enrollment.id} is {enrollment.status}"
        )
        return "stopped"
