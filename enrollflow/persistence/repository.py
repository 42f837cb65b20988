"""Repository abstraction for enrollment and execution state."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Iterable, Protocol

from ..contracts import WorkflowEnrollment, WorkflowExecution, WorkflowExecutionLog
from ..workflow import Workflow

# Execution columns that ``update_execution`` may set directly.
EXECUTION_FIELDS = frozenset(
    {
        "current_node_id",
        "status",
        "next_run_at",
        "last_run_at",
        "attempts",
        "max_attempts",
        "error_message",
    }
)

# Execution statuses an inbound reply may still flag.
REPLY_STATUSES = ("waiting", "processing")


def new_claim_token() -> str:
    return uuid.uuid4().hex


def check_execution_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - EXECUTION_FIELDS
    if unknown:
        raise ValueError(f"Unknown execution fields: {sorted(unknown)}")


class WorkflowRepository(Protocol):
    """Protocol for persistence backends."""

    async def save_workflow(self, workflow: Workflow) -> None:
        """Insert or replace a workflow definition."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Return the workflow definition by id."""

    async def list_workflows(self) -> list[Workflow]:
        """Return all stored workflow definitions."""

    async def create_enrollment(
        self,
        enrollment: WorkflowEnrollment,
        execution: WorkflowExecution,
        *,
        unique_active: bool = True,
    ) -> bool:
        """Insert an enrollment and its initial execution together.

        With ``unique_active`` the insert is refused (returns False) when the
        contact already has an active enrollment in the workflow.
        """

    async def get_enrollment(self, enrollment_id: str) -> WorkflowEnrollment | None:
        """Return an enrollment by id."""

    async def find_active_enrollment(
        self, workflow_id: str, contact_id: str
    ) -> WorkflowEnrollment | None:
        """Return the contact's active enrollment in the workflow, if any."""

    async def list_enrollments(
        self,
        *,
        workflow_id: str | None = None,
        contact_id: str | None = None,
        statuses: Iterable[str] | None = None,
    ) -> list[WorkflowEnrollment]:
        """Return enrollments matching all given filters."""

    async def count_enrollments(self, workflow_id: str) -> dict[str, int]:
        """Return enrollment counts keyed by status."""

    async def update_enrollment_status(
        self,
        enrollment_id: str,
        status: str,
        *,
        from_statuses: Iterable[str],
        at: datetime,
        reason: str | None = None,
    ) -> bool:
        """Compare-and-set the enrollment status.

        Only applies when the current status is one of ``from_statuses``.
        """

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Return an execution by id."""

    async def get_execution_for_enrollment(
        self, enrollment_id: str
    ) -> WorkflowExecution | None:
        """Return the cursor row of an enrollment."""

    async def list_due_executions(
        self, now: datetime, limit: int
    ) -> list[WorkflowExecution]:
        """Return waiting executions of active enrollments due at ``now``."""

    async def claim_execution(
        self, execution_id: str, now: datetime
    ) -> WorkflowExecution | None:
        """Atomically move a waiting execution to processing.

        Increments ``attempts``, stamps ``last_run_at`` and issues a fresh
        ``claim_token``. Returns None when the execution was not waiting
        anymore.
        """

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
        """Update execution columns and merge a top-level execution data patch.

        The write only applies when the row still has ``expected_status``,
        ``expected_node_id`` and ``expected_claim_token`` (when given).
        Returns whether it applied.
        """

    async def record_reply(
        self, execution_id: str, channel: str, received_at: datetime
    ) -> bool:
        """Merge one channel into ``replies`` and raise the reply flag.

        Other channels are left untouched and an earlier timestamp never
        replaces a later one. Only applies to waiting or processing
        executions.
        """

    async def release_stale_claims(self, older_than: datetime) -> int:
        """Return processing executions claimed before ``older_than`` to waiting.

        The released claim token is revoked.
        """

    async def append_log(self, log: WorkflowExecutionLog) -> None:
        """Append an execution log row."""

    async def list_logs(
        self, *, execution_id: str | None = None, enrollment_id: str | None = None
    ) -> list[WorkflowExecutionLog]:
        """Return log rows in insertion order."""
