"""Exception hierarchy for the enrollment engine."""

from __future__ import annotations


class EnrollflowError(Exception):
    """Base class for engine errors."""


class WorkflowValidationError(EnrollflowError):
    """Workflow graph failed load-time validation."""


class WorkflowNotFoundError(EnrollflowError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow not found: {workflow_id}")
        self.workflow_id = workflow_id


class WorkflowDisabledError(EnrollflowError):
    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow is not enabled: {workflow_id}")
        self.workflow_id = workflow_id


class EnrollmentNotFoundError(EnrollflowError):
    def __init__(self, enrollment_id: str) -> None:
        super().__init__(f"Enrollment not found: {enrollment_id}")
        self.enrollment_id = enrollment_id


class ContactNotFoundError(EnrollflowError):
    def __init__(self, contact_id: str) -> None:
        super().__init__(f"Contact not found: {contact_id}")
        self.contact_id = contact_id


class DuplicateEnrollmentError(EnrollflowError):
    def __init__(self, workflow_id: str, contact_id: str) -> None:
        super().__init__("Contact is already enrolled in this workflow")
        self.workflow_id = workflow_id
        self.contact_id = contact_id


class NodeConfigurationError(EnrollflowError):
    """A node cannot run because of how it is configured.

    Never retried: the enrollment fails on first occurrence.
    """


class ConditionError(NodeConfigurationError):
    """Malformed condition data on a conditional split."""


class TemplateNotFoundError(NodeConfigurationError):
    def __init__(self, template_id: str) -> None:
        super().__init__(f"Template not found: {template_id}")
        self.template_id = template_id


class SubWorkflowError(NodeConfigurationError):
    """Sub-workflow call cannot be started."""


class MessageSendError(EnrollflowError):
    """Raised by a message provider when a send fails."""

    def __init__(self, message: str, retryable: bool = True, code: str | None = None):
        super().__init__(message)
        self.retryable = retryable
        self.code = code
