import asyncio
import json

import pytest
import yaml
from typer.testing import CliRunner

import enrollflow.persistence as persistence
from enrollflow.cli import app
from enrollflow.persistence import InMemoryWorkflowRepository
from enrollflow.workflow import load_workflow
from fixtures.workflows import welcome_series

runner = CliRunner()


@pytest.fixture
def repo(monkeypatch):
    monkeypatch.setenv("ENROLLFLOW_SERVICES", "fixtures.services:build_services")
    repo = InMemoryWorkflowRepository()
    persistence._repository_instance = repo
    return repo


def _load_welcome(repo):
    asyncio.run(repo.save_workflow(load_workflow(welcome_series())))


def test_workflow_load_json_and_yaml(repo, tmp_path):
    json_path = tmp_path / "welcome.json"
    json_path.write_text(json.dumps(welcome_series()))
    result = runner.invoke(app, ["workflow", "load", str(json_path)])
    assert result.exit_code == 0, result.stdout
    assert "Loaded workflow welcome (Welcome series)" in result.stdout

    yaml_path = tmp_path / "other.yaml"
    yaml_path.write_text(yaml.safe_dump({**welcome_series(), "id": "other", "name": "Other"}))
    result = runner.invoke(app, ["workflow", "load", str(yaml_path)])
    assert result.exit_code == 0, result.stdout

    result = runner.invoke(app, ["workflow", "list"])
    assert "welcome\tWelcome series\tenabled" in result.stdout
    assert "other\tOther\tenabled" in result.stdout


def test_workflow_load_rejects_invalid_definition(repo, tmp_path):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"id": "bad", "name": "bad", "nodes": [], "edges": []}))
    result = runner.invoke(app, ["workflow", "load", str(path)])
    assert result.exit_code == 1
    assert "Invalid workflow" in result.stdout

    result = runner.invoke(app, ["workflow", "load", str(tmp_path / "missing.json")])
    assert result.exit_code == 1
    assert "File not found" in result.stdout


def test_workflow_show_details_and_missing(repo):
    _load_welcome(repo)
    result = runner.invoke(app, ["workflow", "show", "welcome"])
    assert result.exit_code == 0, result.stdout
    assert "Workflow welcome: Welcome series (enabled)" in result.stdout
    assert "- is_pro [conditional_split] -> email [yes], nurture [no]" in result.stdout
    assert "- email [send_email] -> end" in result.stdout
    assert "Enrollments: active=0" in result.stdout

    result_missing = runner.invoke(app, ["workflow", "show", "missing-id"])
    assert result_missing.exit_code == 1
    assert "Workflow not found" in result_missing.stdout


def test_workflow_list_empty(repo):
    result = runner.invoke(app, ["workflow", "list"])
    assert "No workflows found" in result.stdout


def test_enroll_and_tick(repo):
    _load_welcome(repo)
    result = runner.invoke(app, ["enroll", "welcome", "c-1", "c-2", "nobody"])
    assert result.exit_code == 0, result.stdout
    assert "total=3 enrolled=2 skipped=0 failed=1" in result.stdout
    assert "nobody: Contact not found: nobody" in result.stdout

    result = runner.invoke(app, ["enroll", "welcome", "c-1"])
    assert "enrolled=0 skipped=1" in result.stdout

    result = runner.invoke(app, ["scheduler", "tick"])
    assert result.exit_code == 0, result.stdout
    assert "processed=2" in result.stdout
    assert "waiting=2" in result.stdout


def test_enroll_unknown_workflow(repo):
    result = runner.invoke(app, ["enroll", "missing", "c-1"])
    assert result.exit_code == 1
    assert "Workflow not found: missing" in result.stdout


def test_enrollment_commands(repo):
    _load_welcome(repo)
    runner.invoke(app, ["enroll", "welcome", "c-1"])
    runner.invoke(app, ["scheduler", "tick"])
    [enrollment] = asyncio.run(repo.list_enrollments())

    result = runner.invoke(app, ["enrollment", "list", "--workflow", "welcome"])
    assert f"{enrollment.id}\twelcome\tc-1\tactive" in result.stdout

    result = runner.invoke(app, ["enrollment", "show", enrollment.id])
    assert result.exit_code == 0, result.stdout
    assert "Execution: waiting at is_pro" in result.stdout
    assert "- sms [send_sms] execute completed" in result.stdout

    assert "Enrollment paused" in runner.invoke(app, ["enrollment", "pause", enrollment.id]).stdout
    assert "Enrollment resumed" in runner.invoke(app, ["enrollment", "resume", enrollment.id]).stdout

    result = runner.invoke(app, ["enrollment", "stop", enrollment.id, "--reason", "Bounced"])
    assert "Enrollment stopped" in result.stdout
    result = runner.invoke(app, ["enrollment", "stop", enrollment.id])
    assert "Enrollment has already ended" in result.stdout

    result = runner.invoke(app, ["enrollment", "show", enrollment.id])
    assert "Reason: Bounced" in result.stdout
    assert "- is_pro [manual_stop] stop skipped" in result.stdout

    result = runner.invoke(app, ["enrollment", "list", "--status", "active"])
    assert "No enrollments found" in result.stdout


def test_enrollment_show_missing(repo):
    result = runner.invoke(app, ["enrollment", "show", "nope"])
    assert result.exit_code == 1
    assert "Enrollment not found" in result.stdout

    result = runner.invoke(app, ["enrollment", "stop", "nope"])
    assert result.exit_code == 1
    assert "Enrollment not found: nope" in result.stdout


def test_scheduler_requires_services(monkeypatch):
    persistence._repository_instance = InMemoryWorkflowRepository()
    result = runner.invoke(app, ["scheduler", "tick"])
    assert result.exit_code == 1
    assert "No services factory configured" in result.stdout
