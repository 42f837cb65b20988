from enrollflow.expressions import evaluate_expression, render_text, resolve_path
from fixtures.workflows import make_context


def test_render_contact_and_custom_fields():
    context = make_context()
    text = render_text("Hi {{first_name}} ({{contact.full_name}}), plan {{ custom.plan }}", context)
    assert text == "Hi Ana (Ana Lopez), plan Pro"


def test_unknown_placeholder_renders_empty():
    assert render_text("[{{nope}}]", make_context()) == "[]"


def test_lone_placeholder_keeps_type():
    context = make_context()
    assert evaluate_expression("{{score}}", context) == 42
    assert evaluate_expression("{{contact.tags}}", context) == ["vip", "beta"]
    assert evaluate_expression(5, context) == 5
    assert evaluate_expression("plain", context) == "plain"


def test_mixed_text_is_rendered():
    assert evaluate_expression("score={{score}} vip={{contact.do_not_contact}}", make_context()) == (
        "score=42 vip=false"
    )


def test_input_execution_and_node_outputs():
    context = make_context(
        input_data={"order": {"id": "o-9"}, "coupon": "SAVE"},
        execution_data={
            "last_branch": "yes",
            "node_outputs": {"lookup": {"total": 120}},
            "campaign": "spring",
        },
    )
    assert resolve_path("input.order.id", context) == "o-9"
    assert resolve_path("coupon", context) == "SAVE"
    assert resolve_path("execution.last_branch", context) == "yes"
    assert resolve_path("execution.campaign", context) == "spring"
    assert resolve_path("lookup.total", context) == 120
    assert resolve_path("contact.custom.PLAN", context) == "Pro"
