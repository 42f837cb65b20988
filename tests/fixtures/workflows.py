"""Workflow definitions and context builders shared by the tests."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from enrollflow.contracts import (
    Contact,
    NodeProcessorContext,
    WorkflowEnrollment,
    WorkflowExecution,
    utc_now,
)
from enrollflow.workflow import Workflow, load_workflow


def node(node_id: str, node_type: str, **data: Any) -> Dict[str, Any]:
    return {"id": node_id, "type": node_type, "data": data}


def edge(source: str, target: str, handle: Optional[str] = None) -> Dict[str, Any]:
    data = {"id": f"{source}->{target}", "source": source, "target": target}
    if handle is not None:
        data["sourceHandle"] = handle
    return data


def chain(workflow_id: str, *nodes: Dict[str, Any], **extra: Any) -> Dict[str, Any]:
    """A linear workflow: start -> nodes[0] -> nodes[1] -> ..."""
    all_nodes = [node("start", "trigger_start"), *nodes]
    edges = [edge(a["id"], b["id"]) for a, b in zip(all_nodes, all_nodes[1:])]
    return {"id": workflow_id, "name": workflow_id, "nodes": all_nodes, "edges": edges, **extra}


def welcome_series() -> Dict[str, Any]:
    """SMS, wait a day, then email Pro contacts and mark the rest for nurture."""
    return {
        "id": "welcome",
        "name": "Welcome series",
        "nodes": [
            node("start", "trigger_start"),
            node("sms", "send_sms", templateId="welcome-sms"),
            node("wait", "time_delay", duration=1, unit="days"),
            node(
                "is_pro",
                "conditional_split",
                groups=[
                    {"conditions": [{"field": "Plan", "operator": "equals", "value": "pro"}]}
                ],
            ),
            node("email", "send_email", templateId="pro-email"),
            node("nurture", "update_status", newStatus="nurture"),
        ],
        "edges": [
            edge("start", "sms"),
            edge("sms", "wait"),
            edge("wait", "is_pro"),
            edge("is_pro", "email", "yes"),
            edge("is_pro", "nurture", "no"),
        ],
    }


def make_context(
    nodes: Optional[List[Dict[str, Any]]] = None,
    edges: Optional[List[Dict[str, Any]]] = None,
    *,
    contact: Optional[Contact] = None,
    enrolled_at: Optional[datetime] = None,
    input_data: Optional[Dict[str, Any]] = None,
    execution_data: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
    services: Any = None,
    sub_workflows: Any = None,
) -> NodeProcessorContext:
    workflow = load_workflow(
        {
            "id": "wf",
            "name": "wf",
            "nodes": nodes or [node("start", "trigger_start")],
            "edges": edges or [],
        }
    )
    contact = contact or Contact(
        id="c-1",
        first_name="Ana",
        last_name="Lopez",
        email="ana@example.com",
        phone="+15550001",
        tags=["vip", "beta"],
        custom_fields={"Plan": "Pro", "score": 42, "city": ""},
    )
    now = now or utc_now()
    enrollment = WorkflowEnrollment(
        workflow_id=workflow.id,
        contact_id=contact.id,
        enrolled_at=enrolled_at or now,
        input_data=input_data or {},
    )
    execution = WorkflowExecution(
        enrollment_id=enrollment.id,
        current_node_id=workflow.nodes[-1].id,
        status="processing",
        attempts=1,
        execution_data=execution_data or {},
    )
    return NodeProcessorContext(
        workflow=workflow,
        enrollment=enrollment,
        execution=execution,
        contact=contact,
        now=now,
        services=services,
        sub_workflows=sub_workflows,
    )


def as_workflow(data: Dict[str, Any]) -> Workflow:
    return load_workflow(data)


def later(**delta: float) -> datetime:
    """A scheduler clock shifted into the future."""
    return utc_now() + timedelta(**delta)
