import asyncio

import pytest
from fastapi.testclient import TestClient

from enrollflow.api import create_app
from enrollflow.config import EnrollflowConfig
from enrollflow.engine import WorkflowEngine
from enrollflow.workflow import load_workflow
from fixtures.workflows import chain, node, welcome_series


@pytest.fixture
def client(engine):
    asyncio.run(engine.repository.save_workflow(load_workflow(welcome_series())))
    return TestClient(create_app(engine))


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_enroll_contacts(client):
    response = client.post("/workflows/welcome/enroll", json={"contact_ids": ["c-1", "c-2"]})
    assert response.status_code == 200
    body = response.json()
    assert body["enrolled"] == 2
    assert body["message"] == "Enrolled 2 contact(s)"

    response = client.post("/workflows/welcome/enroll", json={"contact_ids": ["c-1", "ghost"]})
    body = response.json()
    assert (body["total"], body["enrolled"], body["skipped"], body["failed"]) == (2, 0, 1, 1)
    assert body["message"] == "Enrolled 0 contact(s), 1 skipped (already enrolled), 1 failed"
    assert body["errors"] == [{"contact_id": "ghost", "reason": "Contact not found: ghost"}]


def test_enroll_rejects_bad_requests(client, engine):
    assert client.post("/workflows/welcome/enroll", json={"contact_ids": []}).status_code == 400
    assert client.post("/workflows/missing/enroll", json={"contact_ids": ["c-1"]}).status_code == 404

    too_many = [f"c-{i}" for i in range(engine.config.max_enroll_batch + 1)]
    response = client.post("/workflows/welcome/enroll", json={"contact_ids": too_many})
    assert response.status_code == 400

    asyncio.run(
        engine.repository.save_workflow(
            load_workflow({**chain("off", node("wait", "time_delay")), "is_enabled": False})
        )
    )
    assert client.post("/workflows/off/enroll", json={"contact_ids": ["c-1"]}).status_code == 400


def test_enrollment_status(client):
    client.post("/workflows/welcome/enroll", json={"contact_ids": ["c-1"]})

    body = client.get("/workflows/welcome/enroll").json()
    assert body["counts"]["active"] == 1
    assert body["counts"]["total"] == 1

    body = client.get("/workflows/welcome/enroll", params={"contact_id": "c-1"}).json()
    assert body["enrolled"] is True
    assert body["enrollment"]["contact_id"] == "c-1"

    body = client.get("/workflows/welcome/enroll", params={"contact_id": "c-9"}).json()
    assert body == {"enrolled": False, "enrollment": None}

    assert client.get("/workflows/missing/enroll").status_code == 404


def test_stop_pause_resume(client):
    client.post("/workflows/welcome/enroll", json={"contact_ids": ["c-1"]})
    enrollment_id = client.get(
        "/workflows/welcome/enroll", params={"contact_id": "c-1"}
    ).json()["enrollment"]["id"]

    assert client.post(f"/enrollments/{enrollment_id}/pause").json()["paused"] is True
    assert client.post(f"/enrollments/{enrollment_id}/resume").json()["resumed"] is True

    response = client.post(f"/enrollments/{enrollment_id}/stop", json={"reason": "Requested"})
    assert response.status_code == 200
    assert client.post(f"/enrollments/{enrollment_id}/stop").status_code == 409

    body = client.get(f"/enrollments/{enrollment_id}").json()
    assert body["status"] == "stopped"
    assert body["stop_reason"] == "Requested"

    assert client.post("/enrollments/nope/stop").status_code == 404
    assert client.get("/enrollments/nope").status_code == 404


def test_reply_webhook_and_tick(repo, services):
    engine = WorkflowEngine(
        repository=repo, services=services, config=EnrollflowConfig()
    )
    asyncio.run(
        engine.save_workflow(
            chain(
                "reply-wf",
                node("reply", "stop_on_reply"),
                node("sms", "send_sms", templateId="welcome-sms"),
            )
        )
    )
    client = TestClient(create_app(engine))
    client.post("/workflows/reply-wf/enroll", json={"contact_ids": ["c-1"]})

    flagged = client.post("/webhooks/replies", json={"contact_id": "c-1", "channel": "email"})
    assert len(flagged.json()["flagged"]) == 1
    assert client.post("/webhooks/replies", json={"contact_id": "c-1", "channel": "fax"}).status_code == 422

    summary = client.post("/scheduler/tick").json()
    assert summary["stopped"] == 1
    assert services.messages.sent == []
