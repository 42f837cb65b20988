"""Workflow graph definitions.

Node data is a tagged union keyed by ``node.type``. A :class:`Workflow` keeps
its nodes indexed by id and its edges as an adjacency list so processors can
route without walking object graphs.
"""

from __future__ import annotations

import re
import uuid
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator
from pydantic.alias_generators import to_camel

from .errors import WorkflowValidationError

TimeUnit = Literal["minutes", "hours", "days"]
ChannelFilter = Literal["any", "sms", "email"]
LogicalOperator = Literal["AND", "OR"]
ComparisonOperator = Literal[
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "greater_than",
    "less_than",
    "is_empty",
    "is_not_empty",
]

_GROUP_HANDLE = re.compile(r"^group_\d+$")
SPLIT_HANDLES = {"yes", "no", "true", "false", "else"}


class NodeData(BaseModel):
    """Base for node payloads; accepts the editor's camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    label: str = ""


class TriggerStartData(NodeData):
    pass


class TimeDelayData(NodeData):
    duration: float = Field(default=1, ge=0)
    unit: TimeUnit = "days"


class Condition(NodeData):
    field: str
    operator: ComparisonOperator = "equals"
    value: Any = ""


class ConditionGroup(NodeData):
    conditions: List[Condition] = Field(default_factory=list)
    logical_operator: LogicalOperator = "AND"

    @model_validator(mode="before")
    @classmethod
    def _upper_operator(cls, data: Any) -> Any:
        if isinstance(data, dict):
            for key in ("logical_operator", "logicalOperator"):
                if isinstance(data.get(key), str):
                    data = {**data, key: data[key].upper()}
        return data


class ConditionalSplitData(NodeData):
    groups: List[ConditionGroup] = Field(default_factory=list)
    group_operator: LogicalOperator = "AND"
    # "binary" routes on yes/no handles, "groups" routes on group_<n>/else.
    branch_mode: Literal["binary", "groups"] = "binary"

    @model_validator(mode="before")
    @classmethod
    def _accept_legacy_shape(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for key in ("group_operator", "groupOperator"):
            if isinstance(data.get(key), str):
                data[key] = data[key].upper()
        has_groups = data.get("groups") or data.get("conditions")
        if not has_groups and data.get("field"):
            # Single-condition shape saved by older editor versions.
            data["groups"] = [
                {
                    "conditions": [
                        {
                            "field": data["field"],
                            "operator": data.get("operator", "equals"),
                            "value": data.get("value", ""),
                        }
                    ],
                    "logical_operator": "AND",
                }
            ]
        elif not data.get("groups") and data.get("conditions"):
            data["groups"] = [
                {
                    "conditions": data["conditions"],
                    "logical_operator": data.get("logical_operator")
                    or data.get("logicalOperator")
                    or "AND",
                }
            ]
        return data


class SendSmsData(NodeData):
    template_id: Optional[str] = None
    template_name: Optional[str] = None
    from_identity_id: Optional[str] = Field(default=None, alias="fromIdentityId")

    @model_validator(mode="before")
    @classmethod
    def _legacy_from(cls, data: Any) -> Any:
        if isinstance(data, dict) and "fromNumber" in data and "fromIdentityId" not in data:
            data = {**data, "fromIdentityId": data["fromNumber"]}
        return data


class SendEmailData(NodeData):
    template_id: Optional[str] = None
    template_name: Optional[str] = None
    from_identity_id: Optional[str] = Field(default=None, alias="fromIdentityId")
    subject_override: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_from(cls, data: Any) -> Any:
        if isinstance(data, dict) and "fromEmail" in data and "fromIdentityId" not in data:
            data = {**data, "fromIdentityId": data["fromEmail"]}
        return data


class UpdateStatusData(NodeData):
    new_status: str


class StopOnReplyData(NodeData):
    channel: ChannelFilter = "any"


class OutputVariable(NodeData):
    name: str
    value: Any = ""


class ReturnToParentData(NodeData):
    return_status: Literal["success", "failure", "custom"] = "success"
    custom_status_field: Optional[str] = None
    output_variables: List[OutputVariable] = Field(default_factory=list)


class InputMapping(NodeData):
    variable_name: str
    value_expression: Any = ""


class CallSubWorkflowData(NodeData):
    target_workflow_id: Optional[str] = None
    target_workflow_name: Optional[str] = None
    execution_mode: Literal["sync", "async"] = "sync"
    input_mappings: List[InputMapping] = Field(default_factory=list)
    timeout_seconds: int = Field(default=0, ge=0)
    on_failure: Literal["stop", "continue", "retry"] = "stop"
    retry_count: int = Field(default=0, ge=0)


class _Node(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    position: Optional[Dict[str, float]] = None


class TriggerStartNode(_Node):
    type: Literal["trigger_start"]
    data: TriggerStartData = Field(default_factory=TriggerStartData)


class TimeDelayNode(_Node):
    type: Literal["time_delay"]
    data: TimeDelayData = Field(default_factory=TimeDelayData)


class ConditionalSplitNode(_Node):
    type: Literal["conditional_split"]
    data: ConditionalSplitData = Field(default_factory=ConditionalSplitData)


class SendSmsNode(_Node):
    type: Literal["send_sms"]
    data: SendSmsData = Field(default_factory=SendSmsData)


class SendEmailNode(_Node):
    type: Literal["send_email"]
    data: SendEmailData = Field(default_factory=SendEmailData)


class UpdateStatusNode(_Node):
    type: Literal["update_status"]
    data: UpdateStatusData


class StopOnReplyNode(_Node):
    type: Literal["stop_on_reply"]
    data: StopOnReplyData = Field(default_factory=StopOnReplyData)


class ReturnToParentNode(_Node):
    type: Literal["return_to_parent"]
    data: ReturnToParentData = Field(default_factory=ReturnToParentData)


class CallSubWorkflowNode(_Node):
    type: Literal["call_sub_workflow"]
    data: CallSubWorkflowData = Field(default_factory=CallSubWorkflowData)


WorkflowNode = Annotated[
    Union[
        TriggerStartNode,
        TimeDelayNode,
        ConditionalSplitNode,
        SendSmsNode,
        SendEmailNode,
        UpdateStatusNode,
        StopOnReplyNode,
        ReturnToParentNode,
        CallSubWorkflowNode,
    ],
    Field(discriminator="type"),
]


class Edge(BaseModel):
    """Directed connection between two nodes."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source: str
    target: str
    source_handle: Optional[str] = None


class Workflow(BaseModel):
    """A workflow definition with indexed nodes and adjacency list."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    description: Optional[str] = None
    is_enabled: bool = True
    nodes: List[WorkflowNode] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)

    _nodes_by_id: Dict[str, Any] = PrivateAttr(default_factory=dict)
    _edges_by_source: Dict[str, List[Edge]] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        self._nodes_by_id = {node.id: node for node in self.nodes}
        self._edges_by_source = {}
        for edge in self.edges:
            self._edges_by_source.setdefault(edge.source, []).append(edge)

    def node(self, node_id: str) -> Optional[WorkflowNode]:
        return self._nodes_by_id.get(node_id)

    def nodes_of_type(self, node_type: str) -> List[WorkflowNode]:
        return [n for n in self.nodes if n.type == node_type]

    def trigger_node(self) -> Optional[WorkflowNode]:
        triggers = self.nodes_of_type("trigger_start")
        return triggers[0] if triggers else None

    def outgoing(self, node_id: str) -> List[Edge]:
        return list(self._edges_by_source.get(node_id, []))

    def next_node_id(self, node_id: str, handle: Optional[str] = None) -> Optional[str]:
        """Return the target of the first edge leaving ``node_id``.

        When ``handle`` is given only edges on that source handle match. A
        missing edge means the path ends here.
        """
        for edge in self._edges_by_source.get(node_id, []):
            if handle is None or edge.source_handle == handle:
                return edge.target
        return None

    def validate_graph(self) -> "Workflow":
        """Check structural invariants, raising WorkflowValidationError."""
        triggers = self.nodes_of_type("trigger_start")
        if len(triggers) != 1:
            raise WorkflowValidationError(
                f"Workflow {self.id} must have exactly one trigger_start node, found {len(triggers)}"
            )
        if len(self._nodes_by_id) != len(self.nodes):
            raise WorkflowValidationError(f"Workflow {self.id} has duplicate node ids")

        for edge in self.edges:
            source = self._nodes_by_id.get(edge.source)
            if source is None or edge.target not in self._nodes_by_id:
                raise WorkflowValidationError(
                    f"Edge {edge.id} references unknown node ({edge.source} -> {edge.target})"
                )
            if edge.target == triggers[0].id:
                raise WorkflowValidationError(
                    f"Edge {edge.id} re-enters the trigger_start node"
                )
            handle = edge.source_handle
            if source.type == "conditional_split":
                if handle is None or not (
                    handle in SPLIT_HANDLES or _GROUP_HANDLE.match(handle)
                ):
                    raise WorkflowValidationError(
                        f"Edge {edge.id} uses invalid branch handle {handle!r} on {source.id}"
                    )
            elif handle not in (None, "default"):
                raise WorkflowValidationError(
                    f"Edge {edge.id} uses handle {handle!r} on single-output node {source.id}"
                )
        return self


def load_workflow(data: Dict[str, Any]) -> Workflow:
    """Parse and validate a workflow definition."""
    try:
        workflow = Workflow.model_validate(data)
    except ValueError as exc:
        raise WorkflowValidationError(str(exc)) from exc
    return workflow.validate_graph()
