"""Command line interface for the enrollment engine."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer
import yaml

from enrollflow.config import load_config
from enrollflow.engine import WorkflowEngine
from enrollflow.errors import EnrollflowError
from enrollflow.persistence import get_repository
from enrollflow.services import load_services

app = typer.Typer(help="CLI for enrollflow workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
enrollment_app = typer.Typer(help="Commands for inspecting and controlling enrollments")
scheduler_app = typer.Typer(help="Commands for running the execution scheduler")

app.add_typer(workflow_app, name="workflow")
app.add_typer(enrollment_app, name="enrollment")
app.add_typer(scheduler_app, name="scheduler")


@app.callback()
def main() -> None:
    """enrollflow CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _engine(with_services: bool = False) -> WorkflowEngine:
    config = load_config()
    services = None
    if config.services_factory:
        services = load_services(config.services_factory)
    elif with_services:
        typer.secho(
            "No services factory configured (set services_factory or ENROLLFLOW_SERVICES)",
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)
    return WorkflowEngine(repository=get_repository(), services=services, config=config)


def _fail(message: str) -> None:
    typer.echo(message)
    raise typer.Exit(code=1)


@workflow_app.command("load")
def workflow_load(path: Path) -> None:
    """
    Validate a workflow definition file (JSON or YAML) and store it.

    Example:
        enrollflow workflow load ./workflows/welcome.json
    """
    if not path.exists():
        _fail(f"File not found: {path}")
    text = path.read_text()
    data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    try:
        workflow = asyncio.run(_engine().save_workflow(data))
    except EnrollflowError as exc:
        _fail(f"Invalid workflow: {exc}")
    typer.echo(f"Loaded workflow {workflow.id} ({workflow.name})")


@workflow_app.command("list")
def workflow_list() -> None:
    """List stored workflows with their enabled flag."""
    workflows = asyncio.run(get_repository().list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        state = "enabled" if wf.is_enabled else "disabled"
        typer.echo(f"{wf.id}\t{wf.name}\t{state}")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """
    Show a workflow's nodes, edges and enrollment counts.

    Example:
        enrollflow workflow show welcome
        # Output: Workflow welcome: Welcome series (enabled)
        #         - start [trigger_start] -> wait
        #         Enrollments: active=3 paused=0 completed=10 stopped=1 failed=0
    """
    engine = _engine()
    wf = asyncio.run(engine.repository.get_workflow(workflow_id))
    if wf is None:
        _fail("Workflow not found")
    state = "enabled" if wf.is_enabled else "disabled"
    typer.echo(f"Workflow {wf.id}: {wf.name} ({state})")
    for node in wf.nodes:
        targets = [
            f"{edge.target}" + (f" [{edge.source_handle}]" if edge.source_handle else "")
            for edge in wf.outgoing(node.id)
        ]
        typer.echo(f"- {node.id} [{node.type}] -> {', '.join(targets) or 'end'}")
    counts = asyncio.run(engine.enrollments.enrollment_counts(workflow_id))
    summary = " ".join(f"{k}={v}" for k, v in counts.items() if k != "total")
    typer.echo(f"Enrollments: {summary}")


@app.command("enroll")
def enroll(
    workflow_id: str,
    contact_ids: List[str],
    skip_duplicates: bool = typer.Option(
        True, help="Skip contacts that already have an active enrollment"
    ),
    allow_duplicates: bool = typer.Option(
        False, help="Create a second active enrollment for already enrolled contacts"
    ),
) -> None:
    """
    Enroll contacts into a workflow.

    Example:
        enrollflow enroll welcome contact-1 contact-2
    """
    engine = _engine()
    try:
        result = asyncio.run(
            engine.enrollments.enroll_contacts(
                workflow_id,
                contact_ids,
                skip_duplicates=skip_duplicates,
                allow_duplicates=allow_duplicates,
            )
        )
    except EnrollflowError as exc:
        _fail(str(exc))
    typer.echo(
        f"total={result.total} enrolled={result.enrolled} "
        f"skipped={result.skipped} failed={result.failed}"
    )
    for error in result.errors:
        typer.echo(f"  {error.contact_id}: {error.reason}")


@enrollment_app.command("list")
def enrollment_list(
    workflow_id: Optional[str] = typer.Option(None, "--workflow"),
    contact_id: Optional[str] = typer.Option(None, "--contact"),
    status: Optional[str] = typer.Option(None, "--status"),
) -> None:
    """List enrollments, optionally filtered by workflow, contact or status."""
    enrollments = asyncio.run(
        get_repository().list_enrollments(
            workflow_id=workflow_id,
            contact_id=contact_id,
            statuses=[status] if status else None,
        )
    )
    if not enrollments:
        typer.echo("No enrollments found")
        return
    for e in enrollments:
        typer.echo(f"{e.id}\t{e.workflow_id}\t{e.contact_id}\t{e.status}")


@enrollment_app.command("show")
def enrollment_show(enrollment_id: str) -> None:
    """
    Show an enrollment, its execution cursor and the node log.

    Example:
        enrollflow enrollment show 3f2c...
        # Output: Enrollment 3f2c...: active (workflow welcome, contact c-1)
        #         Execution: waiting at wait, next run 2024-01-02T10:00:00+00:00
        #         - start [trigger_start] execute completed (0 ms)
    """
    repo = get_repository()
    enrollment = asyncio.run(repo.get_enrollment(enrollment_id))
    if enrollment is None:
        _fail("Enrollment not found")
    typer.echo(
        f"Enrollment {enrollment.id}: {enrollment.status} "
        f"(workflow {enrollment.workflow_id}, contact {enrollment.contact_id})"
    )
    if enrollment.stop_reason:
        typer.echo(f"Reason: {enrollment.stop_reason}")
    execution = asyncio.run(repo.get_execution_for_enrollment(enrollment_id))
    if execution is not None:
        next_run = execution.next_run_at.isoformat() if execution.next_run_at else "-"
        typer.echo(
            f"Execution: {execution.status} at {execution.current_node_id}, next run {next_run}"
        )
        if execution.error_message:
            typer.echo(f"Error: {execution.error_message}")
    for log in asyncio.run(repo.list_logs(enrollment_id=enrollment_id)):
        line = f"- {log.node_id} [{log.node_type}] {log.action} {log.status}"
        if log.duration_ms is not None:
            line += f" ({log.duration_ms} ms)"
        if log.error_message:
            line += f": {log.error_message}"
        typer.echo(line)


@enrollment_app.command("stop")
def enrollment_stop(
    enrollment_id: str, reason: str = typer.Option("Stopped manually", help="Stop reason")
) -> None:
    """Stop an active or paused enrollment."""
    try:
        stopped = asyncio.run(_engine().enrollments.stop_enrollment(enrollment_id, reason))
    except EnrollflowError as exc:
        _fail(str(exc))
    typer.echo("Enrollment stopped" if stopped else "Enrollment has already ended")


@enrollment_app.command("pause")
def enrollment_pause(enrollment_id: str) -> None:
    """Pause an active enrollment; its execution waits until resumed."""
    try:
        paused = asyncio.run(_engine().enrollments.pause_enrollment(enrollment_id))
    except EnrollflowError as exc:
        _fail(str(exc))
    typer.echo("Enrollment paused" if paused else "Enrollment is not active")


@enrollment_app.command("resume")
def enrollment_resume(enrollment_id: str) -> None:
    """Resume a paused enrollment."""
    try:
        resumed = asyncio.run(_engine().enrollments.resume_enrollment(enrollment_id))
    except EnrollflowError as exc:
        _fail(str(exc))
    typer.echo("Enrollment resumed" if resumed else "Enrollment is not paused")


@scheduler_app.command("tick")
def scheduler_tick() -> None:
    """Process every due execution once and print the outcome counts."""
    summary = asyncio.run(_engine(with_services=True).tick())
    typer.echo(" ".join(f"{k}={v}" for k, v in summary.as_dict().items()))


@scheduler_app.command("run")
def scheduler_run(lifespan: Optional[float] = None) -> None:
    """
    Poll for due executions on the configured interval.

    Args:
        lifespan: Scheduler timeout in seconds (default: run indefinitely)

    Example:
        enrollflow scheduler run --lifespan 300
    """
    engine = _engine(with_services=True)
    typer.echo("Starting scheduler")
    asyncio.run(engine.scheduler.run(lifespan=lifespan))


@app.command("serve")
def serve(host: str = "127.0.0.1", port: int = 8000) -> None:
    """Serve the HTTP API (enroll, stop, reply webhook, scheduler tick)."""
    import uvicorn

    from enrollflow.api import create_app

    uvicorn.run(create_app(_engine()), host=host, port=port)
