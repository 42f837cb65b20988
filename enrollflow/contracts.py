"""Core records exchanged between the engine components."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .workflow import Workflow

EnrollmentStatus = Literal["active", "paused", "completed", "stopped", "failed"]
ExecutionStatus = Literal["waiting", "processing", "completed", "failed", "skipped"]
LogStatus = Literal["started", "completed", "failed", "skipped"]
Channel = Literal["sms", "email"]

TERMINAL_ENROLLMENT_STATUSES = ("completed", "stopped", "failed")
OPEN_ENROLLMENT_STATUSES = ("active", "paused")
EXECUTION_DATA_VERSION = 1


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Contact(BaseModel):
    """Contact with its tags and custom field values."""

    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    status: Optional[str] = None
    do_not_contact: bool = False
    tags: List[str] = Field(default_factory=list)
    custom_fields: Dict[str, Any] = Field(default_factory=dict)


class SubWorkflowCall(BaseModel):
    """State of a pending synchronous sub-workflow call."""

    child_enrollment_id: str
    target_workflow_id: str
    started_at: datetime
    retries: int = 0


class SubWorkflowResult(BaseModel):
    """Value produced by a ``return_to_parent`` node."""

    status: str = "success"
    outputs: Dict[str, Any] = Field(default_factory=dict)


class ExecutionData(BaseModel):
    """Typed per-execution bag of node results and external flags.

    Keys that are not declared here are preserved in ``extensions``.
    """

    version: int = EXECUTION_DATA_VERSION
    last_condition_result: Optional[bool] = None
    last_branch: Optional[str] = None
    sent_message_ids: List[str] = Field(default_factory=list)
    stopped_by_reply: bool = False
    reply_channel: Optional[Channel] = None
    replies: Dict[str, datetime] = Field(default_factory=dict)
    sub_workflow_calls: Dict[str, SubWorkflowCall] = Field(default_factory=dict)
    node_outputs: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    sub_workflow_result: Optional[SubWorkflowResult] = None
    extensions: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _collect_unknown(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        known = set(cls.model_fields)
        unknown = {k: v for k, v in data.items() if k not in known}
        if not unknown:
            return data
        cleaned = {k: v for k, v in data.items() if k in known}
        cleaned["extensions"] = {**(data.get("extensions") or {}), **unknown}
        return cleaned

    def replied_since(self, channel: str, since: datetime) -> Optional[str]:
        """Return the channel of a reply matching ``channel`` at or after ``since``."""
        candidates = ("sms", "email") if channel == "any" else (channel,)
        for name in candidates:
            at = self.replies.get(name)
            if at is not None and at >= since:
                return name
        return None


class WorkflowEnrollment(BaseModel):
    id: str = Field(default_factory=_new_id)
    workflow_id: str
    contact_id: str
    status: EnrollmentStatus = "active"
    enrolled_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    stop_reason: Optional[str] = None
    parent_enrollment_id: Optional[str] = None
    parent_execution_id: Optional[str] = None
    parent_node_id: Optional[str] = None
    call_depth: int = 0
    input_data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ENROLLMENT_STATUSES


class WorkflowExecution(BaseModel):
    id: str = Field(default_factory=_new_id)
    enrollment_id: str
    current_node_id: str
    status: ExecutionStatus = "waiting"
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    attempts: int = 0
    max_attempts: int = 3
    error_message: Optional[str] = None
    claim_token: Optional[str] = None
    execution_data: ExecutionData = Field(default_factory=ExecutionData)


class WorkflowExecutionLog(BaseModel):
    """Append-only audit record of one node attempt."""

    id: str = Field(default_factory=_new_id)
    execution_id: str
    enrollment_id: str
    node_id: str
    node_type: str
    action: str = "execute"
    status: LogStatus
    input_data: Optional[Dict[str, Any]] = None
    output_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    created_at: datetime = Field(default_factory=utc_now)


class NodeProcessorContext(BaseModel):
    """Everything a node processor may read."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    workflow: Workflow
    enrollment: WorkflowEnrollment
    execution: WorkflowExecution
    contact: Contact
    now: datetime = Field(default_factory=utc_now)
    services: Any = None
    # SubWorkflowBridge used by call_sub_workflow nodes.
    sub_workflows: Any = None

    @property
    def data(self) -> ExecutionData:
        return self.execution.execution_data


class NodeProcessorResult(BaseModel):
    """Transition decision returned by a processor.

    ``next_node_id = None`` without an error completes the enrollment.
    ``next_run_at = None`` means the next node is due immediately.
    """

    next_node_id: Optional[str] = None
    next_run_at: Optional[datetime] = None
    execution_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    retryable: bool = True
    stop_enrollment: bool = False
    stop_reason: Optional[str] = None


class EnrollmentError(BaseModel):
    contact_id: str
    reason: str


class EnrollContactsResult(BaseModel):
    total: int = 0
    enrolled: int = 0
    skipped: int = 0
    errors: List[EnrollmentError] = Field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.errors)
