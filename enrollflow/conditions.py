"""Condition evaluation for ``conditional_split`` nodes.

Pure functions: no I/O, everything is read from the processor context.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional

from .contracts import NodeProcessorContext
from .errors import ConditionError
from .expressions import PLACEHOLDER, resolve_path
from .workflow import Condition, ConditionalSplitData, ConditionGroup


@dataclass(frozen=True)
class ConditionOutcome:
    result: bool
    branch: str
    matched_group: Optional[int] = None
    group_results: List[bool] = field(default_factory=list)


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip().lower()


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return _text(value) == ""


def compare(actual: Any, operator: str, expected: Any) -> bool:
    """Apply ``operator`` to a field value. Text comparisons ignore case."""
    if operator == "equals":
        if isinstance(actual, (list, tuple)):
            return _text(expected) in {_text(v) for v in actual}
        return _text(actual) == _text(expected)
    if operator == "not_equals":
        return not compare(actual, "equals", expected)
    if operator == "contains":
        if isinstance(actual, (list, tuple)):
            return _text(expected) in {_text(v) for v in actual}
        return _text(expected) in _text(actual)
    if operator == "not_contains":
        return not compare(actual, "contains", expected)
    if operator in ("greater_than", "less_than"):
        left, right = _number(actual), _number(expected)
        if left is None or right is None:
            return False
        return left > right if operator == "greater_than" else left < right
    if operator == "is_empty":
        return _is_empty(actual)
    if operator == "is_not_empty":
        return not _is_empty(actual)
    raise ConditionError(f"Unknown comparison operator: {operator}")


def field_value(field_ref: str, context: NodeProcessorContext) -> Any:
    match = PLACEHOLDER.fullmatch(field_ref.strip())
    path = match.group(1) if match else field_ref
    return resolve_path(path, context)


def evaluate_condition(condition: Condition, context: NodeProcessorContext) -> bool:
    if not condition.field or not condition.field.strip():
        raise ConditionError("Condition is missing a field")
    return compare(field_value(condition.field, context), condition.operator, condition.value)


def evaluate_group(group: ConditionGroup, context: NodeProcessorContext) -> bool:
    if not group.conditions:
        return False
    results = [evaluate_condition(c, context) for c in group.conditions]
    return all(results) if group.logical_operator == "AND" else any(results)


def evaluate_conditions(
    data: ConditionalSplitData, context: NodeProcessorContext
) -> ConditionOutcome:
    """Evaluate every group and combine them with the group operator.

    In ``groups`` branch mode the first matching group wins and the outcome
    is true when any group matched. A split without groups is false.
    """
    if not data.groups:
        return ConditionOutcome(
            result=False, branch="else" if data.branch_mode == "groups" else "no"
        )

    group_results = [evaluate_group(g, context) for g in data.groups]
    matched = next((i for i, ok in enumerate(group_results) if ok), None)

    if data.branch_mode == "groups":
        result = matched is not None
        branch = f"group_{matched}" if matched is not None else "else"
    else:
        if data.group_operator == "AND":
            result = all(group_results)
        else:
            result = any(group_results)
        branch = "yes" if result else "no"

    return ConditionOutcome(
        result=result, branch=branch, matched_group=matched, group_results=group_results
    )
