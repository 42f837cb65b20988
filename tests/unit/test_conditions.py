import pytest

from enrollflow.conditions import compare, evaluate_conditions, evaluate_group
from enrollflow.contracts import Contact
from enrollflow.errors import ConditionError
from enrollflow.workflow import ConditionalSplitData, ConditionGroup
from fixtures.workflows import make_context

PRO = {"field": "Plan", "operator": "equals", "value": "pro"}
FREE = {"field": "Plan", "operator": "equals", "value": "free"}
HIGH_SCORE = {"field": "score", "operator": "greater_than", "value": 40}
LOW_SCORE = {"field": "score", "operator": "less_than", "value": 10}


@pytest.mark.parametrize(
    "groups, group_operator, expected",
    [
        # (true AND true) AND (true) -> true
        ([{"conditions": [PRO, HIGH_SCORE]}, {"conditions": [PRO]}], "AND", True),
        # (true AND false) OR (true) -> true
        ([{"conditions": [PRO, LOW_SCORE]}, {"conditions": [HIGH_SCORE]}], "OR", True),
        # (false OR true) AND (false) -> false
        (
            [{"conditions": [FREE, PRO], "logical_operator": "OR"}, {"conditions": [LOW_SCORE]}],
            "AND",
            False,
        ),
        # (false OR false) OR (false) -> false
        (
            [{"conditions": [FREE, LOW_SCORE], "logical_operator": "OR"}, {"conditions": [FREE]}],
            "OR",
            False,
        ),
    ],
)
def test_group_operator_combinations(groups, group_operator, expected):
    data = ConditionalSplitData(groups=groups, group_operator=group_operator)
    outcome = evaluate_conditions(data, make_context())
    assert outcome.result is expected
    assert outcome.branch == ("yes" if expected else "no")


def test_operators_are_case_insensitive_in_editor_payload():
    data = ConditionalSplitData.model_validate(
        {
            "groups": [{"conditions": [FREE, PRO], "logicalOperator": "or"}],
            "groupOperator": "and",
        }
    )
    assert data.groups[0].logical_operator == "OR"
    assert evaluate_conditions(data, make_context()).result is True


def test_legacy_single_condition_shape():
    data = ConditionalSplitData.model_validate({"field": "Plan", "operator": "equals", "value": "PRO"})
    assert len(data.groups) == 1
    assert evaluate_conditions(data, make_context()).branch == "yes"


def test_legacy_flat_conditions_list():
    data = ConditionalSplitData.model_validate(
        {"conditions": [FREE, HIGH_SCORE], "logicalOperator": "OR"}
    )
    assert data.groups[0].logical_operator == "OR"
    assert evaluate_conditions(data, make_context()).result is True


def test_groups_mode_picks_first_matching_group():
    data = ConditionalSplitData(
        groups=[{"conditions": [FREE]}, {"conditions": [HIGH_SCORE]}, {"conditions": [PRO]}],
        branch_mode="groups",
    )
    outcome = evaluate_conditions(data, make_context())
    assert outcome.branch == "group_1"
    assert outcome.matched_group == 1
    assert outcome.group_results == [False, True, True]


def test_groups_mode_falls_through_to_else():
    data = ConditionalSplitData(groups=[{"conditions": [FREE]}], branch_mode="groups")
    outcome = evaluate_conditions(data, make_context())
    assert outcome.result is False
    assert outcome.branch == "else"


def test_split_without_groups_is_false():
    outcome = evaluate_conditions(ConditionalSplitData(), make_context())
    assert outcome.result is False
    assert outcome.branch == "no"


def test_empty_group_is_false():
    assert evaluate_group(ConditionGroup(conditions=[]), make_context()) is False


def test_condition_without_field_is_rejected():
    data = ConditionalSplitData(groups=[{"conditions": [{"field": " ", "value": "x"}]}])
    with pytest.raises(ConditionError):
        evaluate_conditions(data, make_context())


def test_unknown_operator_is_rejected():
    with pytest.raises(ConditionError):
        compare("a", "starts_with", "a")


@pytest.mark.parametrize(
    "actual, operator, expected, result",
    [
        (["vip", "beta"], "contains", "VIP", True),
        (["vip"], "not_contains", "beta", True),
        ("Hello World", "contains", "world", True),
        ("abc", "not_equals", "ABC", False),
        ("12", "greater_than", 9, True),
        ("n/a", "greater_than", 1, False),
        (None, "is_empty", None, True),
        ([], "is_empty", None, True),
        ("  ", "is_empty", None, True),
        ("x", "is_not_empty", None, True),
        (True, "equals", "true", True),
    ],
)
def test_compare(actual, operator, expected, result):
    assert compare(actual, operator, expected) is result


def test_placeholder_field_and_core_fields():
    context = make_context()
    data = ConditionalSplitData(
        groups=[
            {
                "conditions": [
                    {"field": "{{custom.plan}}", "value": "pro"},
                    {"field": "tags", "operator": "contains", "value": "beta"},
                    {"field": "email", "operator": "contains", "value": "@example.com"},
                    {"field": "city", "operator": "is_empty"},
                ]
            }
        ]
    )
    assert evaluate_conditions(data, context).result is True


QUALIFIED = {"field": "status", "operator": "equals", "value": "qualified"}
REACHABLE = {"field": "do_not_contact", "operator": "equals", "value": False}

# (status == "qualified", do_not_contact == false) for each contact.
CONTACT_MATRIX = [
    ("qualified", False),
    ("qualified", True),
    ("lead", False),
    ("lead", True),
]


@pytest.mark.parametrize(
    "group_operator, expected",
    [("OR", [True, True, True, False]), ("AND", [True, False, False, False])],
)
def test_status_and_do_not_contact_groups(group_operator, expected):
    data = ConditionalSplitData(
        groups=[{"conditions": [QUALIFIED]}, {"conditions": [REACHABLE]}],
        group_operator=group_operator,
    )
    results = [
        evaluate_conditions(
            data,
            make_context(
                contact=Contact(id=f"c-{index}", status=status, do_not_contact=do_not_contact)
            ),
        ).result
        for index, (status, do_not_contact) in enumerate(CONTACT_MATRIX)
    ]
    assert results == expected
