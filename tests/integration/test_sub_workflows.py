from datetime import timedelta

import pytest

from enrollflow.config import EnrollflowConfig, RetryConfig, SubWorkflowConfig
from enrollflow.contracts import utc_now
from enrollflow.engine import WorkflowEngine
from enrollflow.errors import SubWorkflowError
from enrollflow.processors import get_processor
from fixtures.workflows import chain, later, make_context, node


def qualify_child(return_status="success", delay=False):
    nodes = []
    if delay:
        nodes.append(node("wait", "time_delay", duration=1, unit="days"))
    nodes.append(
        node(
            "ret",
            "return_to_parent",
            returnStatus=return_status,
            outputVariables=[
                {"name": "plan", "value": "{{custom.plan}}"},
                {"name": "order", "value": "{{input.order_id}}"},
            ],
        )
    )
    return chain("child", *nodes)


def parent(**call_data):
    call_data.setdefault("targetWorkflowId", "child")
    return chain(
        "parent",
        node(
            "call",
            "call_sub_workflow",
            inputMappings=[{"variableName": "order_id", "valueExpression": "A-{{score}}"}],
            **call_data,
        ),
        node("after", "update_status", newStatus="qualified"),
    )


async def setup(engine, parent_data, child_data):
    await engine.save_workflow(child_data)
    await engine.save_workflow(parent_data)
    enrollment = await engine.enrollments.enroll_contact("parent", "c-1")
    execution = await engine.repository.get_execution_for_enrollment(enrollment.id)
    return enrollment, execution


async def child_of(engine, enrollment_id):
    children = await engine.repository.list_enrollments(workflow_id="child")
    return [c for c in children if c.parent_enrollment_id == enrollment_id]


async def backdate_call(engine, execution_id, seconds):
    execution = await engine.repository.get_execution(execution_id)
    calls = {
        key: {**call.model_dump(mode="json"), "started_at": (call.started_at - timedelta(seconds=seconds)).isoformat()}
        for key, call in execution.execution_data.sub_workflow_calls.items()
    }
    await engine.repository.update_execution(
        execution_id, execution_data_patch={"sub_workflow_calls": calls}
    )


@pytest.mark.asyncio
async def test_sync_call_waits_for_child_and_reads_outputs(engine):
    enrollment, execution = await setup(engine, parent(), qualify_child())

    assert (await engine.tick()).waiting == 1
    parked = await engine.repository.get_execution(execution.id)
    assert parked.current_node_id == "call"
    assert "call" in parked.execution_data.sub_workflow_calls

    [child] = await child_of(engine, enrollment.id)
    assert child.call_depth == 1
    assert child.parent_execution_id == execution.id
    assert child.parent_node_id == "call"
    assert child.input_data == {"order_id": "A-42"}

    # The child completes and makes the parent due immediately.
    assert (await engine.tick()).completed == 1
    woken = await engine.repository.get_execution(execution.id)
    assert woken.next_run_at <= utc_now()

    assert (await engine.tick()).completed == 1
    done = await engine.repository.get_execution(execution.id)
    assert done.status == "completed"
    assert done.execution_data.node_outputs["call"] == {"plan": "Pro", "order": "A-42"}
    assert done.execution_data.sub_workflow_calls == {}
    assert engine.services.contacts.status_updates == [("c-1", "qualified")]


@pytest.mark.asyncio
async def test_async_call_continues_immediately(engine):
    enrollment, execution = await setup(engine, parent(executionMode="async"), qualify_child())

    assert (await engine.tick()).completed == 1
    [child] = await child_of(engine, enrollment.id)
    assert child.status == "active"

    assert (await engine.tick()).completed == 1
    assert (await engine.repository.get_enrollment(enrollment.id)).status == "completed"


@pytest.mark.asyncio
async def test_child_failure_result_stops_parent(engine):
    enrollment, _ = await setup(engine, parent(onFailure="stop"), qualify_child("failure"))
    await engine.tick()
    await engine.tick()
    assert (await engine.tick()).failed == 1

    stored = await engine.repository.get_enrollment(enrollment.id)
    assert stored.status == "failed"
    assert stored.stop_reason == "Sub-workflow returned failure"


@pytest.mark.asyncio
async def test_child_failure_with_continue_proceeds(engine):
    enrollment, execution = await setup(
        engine, parent(onFailure="continue"), qualify_child("failure")
    )
    await engine.tick()
    await engine.tick()
    assert (await engine.tick()).completed == 1

    logs = await engine.repository.list_logs(enrollment_id=enrollment.id)
    failed_call = [log for log in logs if log.output_data and log.output_data.get("action") == "sub_workflow_failed"]
    assert len(failed_call) == 1
    assert failed_call[0].status == "completed"


@pytest.mark.asyncio
async def test_stopped_child_fails_parent(engine):
    enrollment, _ = await setup(engine, parent(), qualify_child(delay=True))
    await engine.tick()
    [child] = await child_of(engine, enrollment.id)
    await engine.enrollments.stop_enrollment(child.id, "Opted out")

    assert (await engine.tick()).failed == 1
    stored = await engine.repository.get_enrollment(enrollment.id)
    assert stored.stop_reason == "Sub-workflow stopped: Opted out"


@pytest.mark.asyncio
async def test_timeout_stops_child_and_applies_policy(engine):
    enrollment, execution = await setup(
        engine, parent(timeoutSeconds=30, onFailure="stop"), qualify_child(delay=True)
    )
    await engine.tick()
    await engine.tick()
    await backdate_call(engine, execution.id, 60)

    summary = await engine.scheduler.run_once(now=later(minutes=2))
    assert summary.failed == 1
    [child] = await child_of(engine, enrollment.id)
    assert child.status == "stopped"
    assert child.stop_reason == "Parent call timed out"
    stored = await engine.repository.get_enrollment(enrollment.id)
    assert stored.stop_reason == "Sub-workflow timed out after 30s"


@pytest.mark.asyncio
async def test_timeout_with_continue_proceeds(engine):
    enrollment, execution = await setup(
        engine, parent(timeoutSeconds=30, onFailure="continue"), qualify_child(delay=True)
    )
    await engine.tick()
    await backdate_call(engine, execution.id, 60)

    await engine.scheduler.run_once(now=later(minutes=2))
    assert (await engine.repository.get_enrollment(enrollment.id)).status == "completed"


@pytest.mark.asyncio
async def test_timeout_with_retry_starts_a_new_child(engine):
    enrollment, execution = await setup(
        engine, parent(timeoutSeconds=30, onFailure="retry", retryCount=1), qualify_child(delay=True)
    )
    await engine.tick()
    await backdate_call(engine, execution.id, 60)
    await engine.scheduler.run_once(now=later(minutes=2))

    children = await child_of(engine, enrollment.id)
    assert sorted(c.status for c in children) == ["active", "stopped"]
    retried = await engine.repository.get_execution(execution.id)
    assert retried.execution_data.sub_workflow_calls["call"].retries == 1

    # Second timeout exhausts the retries.
    await backdate_call(engine, execution.id, 60)
    await engine.scheduler.run_once(now=later(minutes=4))
    assert (await engine.repository.get_enrollment(enrollment.id)).status == "failed"


@pytest.mark.asyncio
async def test_zero_timeout_waits_indefinitely(engine):
    enrollment, execution = await setup(engine, parent(), qualify_child(delay=True))
    await engine.tick()
    await backdate_call(engine, execution.id, 30 * 86400)

    await engine.scheduler.run_once(now=later(minutes=2))
    still = await engine.repository.get_execution(execution.id)
    assert still.status == "waiting"
    assert still.current_node_id == "call"
    logs = await engine.repository.list_logs(execution_id=execution.id)
    assert logs[-1].output_data["action"] == "sub_workflow_waiting"


@pytest.mark.asyncio
async def test_default_timeout_applies_to_zero_timeout(repo, services):
    config = EnrollflowConfig(
        retry=RetryConfig(base_delay_seconds=0),
        sub_workflows=SubWorkflowConfig(default_timeout_seconds=120),
    )
    engine = WorkflowEngine(repository=repo, services=services, config=config)
    enrollment, execution = await setup(engine, parent(), qualify_child(delay=True))
    await engine.tick()
    await backdate_call(engine, execution.id, 600)

    await engine.scheduler.run_once(now=later(minutes=2))
    stored = await repo.get_enrollment(enrollment.id)
    assert stored.stop_reason == "Sub-workflow timed out after 120s"


@pytest.mark.asyncio
async def test_missing_target_fails_parent(engine):
    await engine.save_workflow(parent(targetWorkflowId="ghost"))
    enrollment = await engine.enrollments.enroll_contact("parent", "c-1")
    assert (await engine.tick()).failed == 1
    stored = await engine.repository.get_enrollment(enrollment.id)
    assert stored.stop_reason == "Sub-workflow not found: ghost"


@pytest.mark.asyncio
async def test_call_depth_is_limited(repo, services):
    config = EnrollflowConfig(sub_workflows=SubWorkflowConfig(max_call_depth=1))
    engine = WorkflowEngine(repository=repo, services=services, config=config)
    await engine.save_workflow(qualify_child())
    await engine.save_workflow(parent())
    context_workflow = await repo.get_workflow("parent")
    context = make_context(
        [n.model_dump(mode="json") for n in context_workflow.nodes],
        [e.model_dump(mode="json") for e in context_workflow.edges],
        services=services,
        sub_workflows=engine.sub_workflows,
    )
    context.enrollment.call_depth = 1
    call = context.workflow.node("call")
    with pytest.raises(SubWorkflowError, match="depth"):
        await get_processor("call_sub_workflow")(call, context)


@pytest.mark.asyncio
async def test_finished_async_child_does_not_wake_parent(engine):
    data = chain(
        "parent",
        node("call", "call_sub_workflow", targetWorkflowId="child", executionMode="async"),
        node("wait", "time_delay", duration=1, unit="days"),
        node("after", "update_status", newStatus="done"),
    )
    enrollment, execution = await setup(engine, data, qualify_child())
    await engine.tick()
    await engine.tick()

    parent_execution = await engine.repository.get_execution(execution.id)
    assert parent_execution.current_node_id == "after"
    assert parent_execution.next_run_at > utc_now() + timedelta(hours=23)


@pytest.mark.asyncio
async def test_return_node_in_top_level_workflow_completes(engine):
    await engine.save_workflow(qualify_child())
    enrollment = await engine.enrollments.enroll_contact("child", "c-1")
    assert (await engine.tick()).completed == 1
    execution = await engine.repository.get_execution_for_enrollment(enrollment.id)
    assert execution.execution_data.sub_workflow_result.outputs["plan"] == "Pro"
