"""Enrollment lifecycle: enroll, stop, pause, resume and inbound replies."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .config import EnrollflowConfig
from .contracts import (
    OPEN_ENROLLMENT_STATUSES,
    EnrollContactsResult,
    EnrollmentError,
    WorkflowEnrollment,
    WorkflowExecution,
    WorkflowExecutionLog,
    utc_now,
)
from .errors import (
    ContactNotFoundError,
    DuplicateEnrollmentError,
    EnrollmentNotFoundError,
    WorkflowDisabledError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from .persistence import WorkflowRepository
from .services import ContactStore
from .subworkflow import wake_parent
from .workflow import Workflow

logger = logging.getLogger(__name__)

ENROLLMENT_STATUSES = ("active", "paused", "completed", "stopped", "failed")


class EnrollmentManager:
    """Create enrollments and apply user and external lifecycle events."""

    def __init__(
        self,
        repository: WorkflowRepository,
        contacts: Optional[ContactStore] = None,
        config: Optional[EnrollflowConfig] = None,
    ) -> None:
        self._repository = repository
        self._contacts = contacts
        self.config = config or EnrollflowConfig()

    async def get_workflow(self, workflow_id: str) -> Workflow:
        """Return an enabled workflow that can accept enrollments."""
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        if not workflow.is_enabled:
            raise WorkflowDisabledError(workflow_id)
        if workflow.trigger_node() is None:
            raise WorkflowValidationError(f"Workflow {workflow_id} has no trigger start node")
        return workflow

    def _new_enrollment(
        self, workflow: Workflow, contact_id: str, **linkage: Any
    ) -> tuple[WorkflowEnrollment, WorkflowExecution]:
        now = utc_now()
        enrollment = WorkflowEnrollment(
            workflow_id=workflow.id, contact_id=contact_id, enrolled_at=now, **linkage
        )
        execution = WorkflowExecution(
            enrollment_id=enrollment.id,
            current_node_id=workflow.trigger_node().id,
            next_run_at=now,
            max_attempts=self.config.retry.max_attempts,
        )
        return enrollment, execution

    # ------------------------------------------------------------------
    async def enroll_contact(
        self,
        workflow_id: str,
        contact_id: str,
        *,
        skip_duplicates: bool = True,
        allow_duplicates: bool = False,
        workflow: Optional[Workflow] = None,
    ) -> Optional[WorkflowEnrollment]:
        """Enroll one contact.

        Returns the new enrollment, or None when the contact already has an
        active enrollment and ``skip_duplicates`` is set.

        Raises:
            ContactNotFoundError: the contact store does not know the contact.
            DuplicateEnrollmentError: already enrolled and neither skipping
                nor duplicates are allowed.
        """
        workflow = workflow or await self.get_workflow(workflow_id)
        if self._contacts is not None:
            contact = await self._contacts.get_contact_with_relations(contact_id)
            if contact is None:
                raise ContactNotFoundError(contact_id)

        enrollment, execution = self._new_enrollment(workflow, contact_id)
        created = await self._repository.create_enrollment(
            enrollment, execution, unique_active=not allow_duplicates
        )
        if created:
            logger.info(f"Enrolled contact {contact_id} in workflow {workflow.id} ({enrollment.id})")
            return enrollment
        if skip_duplicates:
            logger.debug(f"Contact {contact_id} already enrolled in workflow {workflow.id}")
            return None
        raise DuplicateEnrollmentError(workflow.id, contact_id)

    async def enroll_contacts(
        self,
        workflow_id: str,
        contact_ids: Iterable[str],
        *,
        skip_duplicates: bool = True,
        allow_duplicates: bool = False,
    ) -> EnrollContactsResult:
        """Enroll a batch of contacts; one contact's failure never aborts the rest."""
        workflow = await self.get_workflow(workflow_id)
        contact_ids = list(contact_ids)
        result = EnrollContactsResult(total=len(contact_ids))

        for contact_id in contact_ids:
            try:
                enrollment = await self.enroll_contact(
                    workflow_id,
                    contact_id,
                    skip_duplicates=skip_duplicates,
                    allow_duplicates=allow_duplicates,
                    workflow=workflow,
                )
            except (ContactNotFoundError, DuplicateEnrollmentError) as exc:
                result.errors.append(EnrollmentError(contact_id=contact_id, reason=str(exc)))
                continue
            except Exception as exc:
                logger.exception(f"Failed to enroll contact {contact_id} in workflow {workflow_id}")
                result.errors.append(
                    EnrollmentError(contact_id=contact_id, reason=str(exc) or type(exc).__name__)
                )
                continue
            if enrollment is None:
                result.skipped += 1
            else:
                result.enrolled += 1

        logger.info(
            f"Enrollment into {workflow_id}: {result.enrolled} enrolled, "
            f"{result.skipped} skipped, {result.failed} failed of {result.total}"
        )
        return result

    async def enroll_child(
        self,
        workflow: Workflow,
        contact_id: str,
        *,
        parent: WorkflowEnrollment,
        parent_execution_id: str,
        parent_node_id: str,
        input_data: Optional[Dict[str, Any]] = None,
    ) -> WorkflowEnrollment:
        """Enroll a contact in a sub-workflow on behalf of a parent enrollment."""
        if workflow.trigger_node() is None:
            raise WorkflowValidationError(f"Workflow {workflow.id} has no trigger start node")
        enrollment, execution = self._new_enrollment(
            workflow,
            contact_id,
            parent_enrollment_id=parent.id,
            parent_execution_id=parent_execution_id,
            parent_node_id=parent_node_id,
            call_depth=parent.call_depth + 1,
            input_data=input_data or {},
        )
        await self._repository.create_enrollment(enrollment, execution, unique_active=False)
        return enrollment

    # ------------------------------------------------------------------
    async def get_enrollment(self, enrollment_id: str) -> WorkflowEnrollment:
        enrollment = await self._repository.get_enrollment(enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFoundError(enrollment_id)
        return enrollment

    async def find_enrollment(
        self, workflow_id: str, contact_id: str
    ) -> Optional[WorkflowEnrollment]:
        """Return the contact's active enrollment, else its most recent one."""
        active = await self._repository.find_active_enrollment(workflow_id, contact_id)
        if active is not None:
            return active
        enrollments = await self._repository.list_enrollments(
            workflow_id=workflow_id, contact_id=contact_id
        )
        return max(enrollments, key=lambda e: e.enrolled_at) if enrollments else None

    async def enrollment_counts(self, workflow_id: str) -> Dict[str, int]:
        if await self._repository.get_workflow(workflow_id) is None:
            raise WorkflowNotFoundError(workflow_id)
        counts = await self._repository.count_enrollments(workflow_id)
        result = {status: counts.get(status, 0) for status in ENROLLMENT_STATUSES}
        result["total"] = sum(result.values())
        return result

    async def stop_enrollment(
        self, enrollment_id: str, reason: str = "Stopped manually"
    ) -> bool:
        """Stop an open enrollment.

        A waiting execution is finalised here. One that is being processed is
        left to the runner, which observes the stop at its next node boundary.
        Returns False when the enrollment had already ended.
        """
        enrollment = await self.get_enrollment(enrollment_id)
        now = utc_now()
        stopped = await self._repository.update_enrollment_status(
            enrollment_id, "stopped", from_statuses=OPEN_ENROLLMENT_STATUSES, at=now, reason=reason
        )
        if not stopped:
            return False

        execution = await self._repository.get_execution_for_enrollment(enrollment_id)
        if execution is not None and await self._repository.update_execution(
            execution.id, expected_status="waiting", status="skipped", next_run_at=None
        ):
            await self._repository.append_log(
                WorkflowExecutionLog(
                    execution_id=execution.id,
                    enrollment_id=enrollment_id,
                    node_id=execution.current_node_id,
                    node_type="manual_stop",
                    action="stop",
                    status="skipped",
                    output_data={"reason": reason},
                )
            )
        logger.info(f"Enrollment {enrollment_id} stopped: {reason}")
        await wake_parent(self._repository, enrollment)
        return True

    async def pause_enrollment(self, enrollment_id: str) -> bool:
        await self.get_enrollment(enrollment_id)
        paused = await self._repository.update_enrollment_status(
            enrollment_id, "paused", from_statuses=("active",), at=utc_now()
        )
        if paused:
            logger.info(f"Enrollment {enrollment_id} paused")
        return paused

    async def resume_enrollment(self, enrollment_id: str) -> bool:
        enrollment = await self.get_enrollment(enrollment_id)
        if enrollment.status != "paused":
            return False
        active = await self._repository.find_active_enrollment(
            enrollment.workflow_id, enrollment.contact_id
        )
        if active is not None and active.id != enrollment_id:
            raise DuplicateEnrollmentError(enrollment.workflow_id, enrollment.contact_id)
        resumed = await self._repository.update_enrollment_status(
            enrollment_id, "active", from_statuses=("paused",), at=utc_now()
        )
        if resumed:
            logger.info(f"Enrollment {enrollment_id} resumed")
        return resumed

    # ------------------------------------------------------------------
    async def on_reply_received(
        self, contact_id: str, channel: str, received_at: Optional[datetime] = None
    ) -> List[str]:
        """Flag open enrollments of the contact that stop on a reply.

        The reply is merged into storage one channel at a time, so concurrent
        replies and a runner holding the claim never overwrite each other.
        Returns the ids of the flagged enrollments.
        """
        received_at = received_at or utc_now()
        if received_at.tzinfo is None:
            received_at = received_at.replace(tzinfo=timezone.utc)
        enrollments = await self._repository.list_enrollments(
            contact_id=contact_id, statuses=OPEN_ENROLLMENT_STATUSES
        )
        workflows: Dict[str, Optional[Workflow]] = {}
        flagged: List[str] = []

        for enrollment in enrollments:
            if enrollment.workflow_id not in workflows:
                workflows[enrollment.workflow_id] = await self._repository.get_workflow(
                    enrollment.workflow_id
                )
            workflow = workflows[enrollment.workflow_id]
            if workflow is None or not any(
                node.data.channel in ("any", channel)
                for node in workflow.nodes_of_type("stop_on_reply")
            ):
                continue

            execution = await self._repository.get_execution_for_enrollment(enrollment.id)
            if execution is None or not await self._repository.record_reply(
                execution.id, channel, received_at
            ):
                continue
            flagged.append(enrollment.id)
            logger.info(f"Flagged enrollment {enrollment.id} for {channel} reply from {contact_id}")

        return flagged
