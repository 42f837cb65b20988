"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Iterable, List

from ..contracts import (
    ExecutionData,
    WorkflowEnrollment,
    WorkflowExecution,
    WorkflowExecutionLog,
)
from ..workflow import Workflow
from .repository import (
    REPLY_STATUSES,
    WorkflowRepository,
    check_execution_fields,
    new_claim_token,
)


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store engine state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._enrollments: Dict[str, WorkflowEnrollment] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._logs: List[WorkflowExecutionLog] = []
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_workflows(self) -> list[Workflow]:
        return [wf.model_copy(deep=True) for wf in self._workflows.values()]

    # ------------------------------------------------------------------
    async def create_enrollment(
        self,
        enrollment: WorkflowEnrollment,
        execution: WorkflowExecution,
        *,
        unique_active: bool = True,
    ) -> bool:
        async with self._lock:
            if unique_active and self._active_for(enrollment.workflow_id, enrollment.contact_id):
                return False
            self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)
            self._executions[execution.id] = execution.model_copy(deep=True)
            return True

    def _active_for(self, workflow_id: str, contact_id: str) -> WorkflowEnrollment | None:
        for enrollment in self._enrollments.values():
            if (
                enrollment.workflow_id == workflow_id
                and enrollment.contact_id == contact_id
                and enrollment.status == "active"
            ):
                return enrollment
        return None

    async def get_enrollment(self, enrollment_id: str) -> WorkflowEnrollment | None:
        enrollment = self._enrollments.get(enrollment_id)
        return enrollment.model_copy(deep=True) if enrollment else None

    async def find_active_enrollment(
        self, workflow_id: str, contact_id: str
    ) -> WorkflowEnrollment | None:
        enrollment = self._active_for(workflow_id, contact_id)
        return enrollment.model_copy(deep=True) if enrollment else None

    async def list_enrollments(
        self,
        *,
        workflow_id: str | None = None,
        contact_id: str | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[WorkflowEnrollment]:
        wanted = set(statuses) if statuses is not None else None
        return [
            e.model_copy(deep=True)
            for e in self._enrollments.values()
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (contact_id is None or e.contact_id == contact_id)
            and (wanted is None or e.status in wanted)
        ]

    async def count_enrollments(self, workflow_id: str) -> dict[str, int]:
        counts: dict[str, int] = {}
        for e in self._enrollments.values():
            if e.workflow_id == workflow_id:
                counts[e.status] = counts.get(e.status, 0) + 1
        return counts

    async def update_enrollment_status(
        self,
        enrollment_id: str,
        status: str,
        *,
        from_statuses: Iterable[str],
        at: datetime,
        reason: str | None = None,
    ) -> bool:
        async with self._lock:
            enrollment = self._enrollments.get(enrollment_id)
            if enrollment is None or enrollment.status not in set(from_statuses):
                return False
            enrollment.status = status
            if status == "completed":
                enrollment.completed_at = at
            elif status in ("stopped", "failed"):
                enrollment.stopped_at = at
                enrollment.stop_reason = reason
            return True

    # ------------------------------------------------------------------
    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def get_execution_for_enrollment(
        self, enrollment_id: str
    ) -> WorkflowExecution | None:
        for execution in self._executions.values():
            if execution.enrollment_id == enrollment_id:
                return execution.model_copy(deep=True)
        return None

    async def list_due_executions(
        self, now: datetime, limit: int
    ) -> list[WorkflowExecution]:
        due = []
        for execution in self._executions.values():
            enrollment = self._enrollments.get(execution.enrollment_id)
            if (
                execution.status == "waiting"
                and enrollment is not None
                and enrollment.status == "active"
                and (execution.next_run_at is None or execution.next_run_at <= now)
            ):
                due.append(execution)
        due.sort(key=lambda e: e.next_run_at or datetime.min.replace(tzinfo=now.tzinfo))
        return [e.model_copy(deep=True) for e in due[:limit]]

    async def claim_execution(
        self, execution_id: str, now: datetime
    ) -> WorkflowExecution | None:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or execution.status != "waiting":
                return None
            execution.status = "processing"
            execution.attempts += 1
            execution.last_run_at = now
            execution.claim_token = new_claim_token()
            return execution.model_copy(deep=True)

    async def update_execution(
        self,
        execution_id: str,
        *,
        expected_status: str | None = None,
        expected_node_id: str | None = None,
        expected_claim_token: str | None = None,
        execution_data_patch: dict[str, Any] | None = None,
        **fields: Any,
    ) -> bool:
        check_execution_fields(fields)
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None:
                return False
            if expected_status is not None and execution.status != expected_status:
                return False
            if (
                expected_node_id is not None
                and execution.current_node_id != expected_node_id
            ):
                return False
            if (
                expected_claim_token is not None
                and execution.claim_token != expected_claim_token
            ):
                return False
            for key, value in fields.items():
                setattr(execution, key, value)
            if execution_data_patch:
                merged = execution.execution_data.model_dump(mode="json")
                merged.update(execution_data_patch)
                execution.execution_data = ExecutionData.model_validate(merged)
            return True

    async def record_reply(
        self, execution_id: str, channel: str, received_at: datetime
    ) -> bool:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None or execution.status not in REPLY_STATUSES:
                return False
            data = execution.execution_data
            previous = data.replies.get(channel)
            if previous is None or received_at > previous:
                data.replies[channel] = received_at
            data.stopped_by_reply = True
            data.reply_channel = channel
            return True

    async def release_stale_claims(self, older_than: datetime) -> int:
        released = 0
        async with self._lock:
            for execution in self._executions.values():
                if (
                    execution.status == "processing"
                    and execution.last_run_at is not None
                    and execution.last_run_at < older_than
                ):
                    execution.status = "waiting"
                    execution.claim_token = None
                    released += 1
        return released

    # ------------------------------------------------------------------
    async def append_log(self, log: WorkflowExecutionLog) -> None:
        self._logs.append(log.model_copy(deep=True))

    async def list_logs(
        self, *, execution_id: str | None = None, enrollment_id: str | None = None
    ) -> list[WorkflowExecutionLog]:
        return [
            log.model_copy(deep=True)
            for log in self._logs
            if (execution_id is None or log.execution_id == execution_id)
            and (enrollment_id is None or log.enrollment_id == enrollment_id)
        ]
