# backend/tests/integration/test_api.py
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from chatflow.config.settings import settings
from chatflow.main import app
from chatflow.models.events import EngineOutcome, OutcomeStatus
from chatflow.models.flow import FlowStatus, FlowVersion

API = f"/api/{settings.api_version}"
TENANT = "tenant-1"

GREETING = FlowVersion(
    flow_id="greeting",
    tenant_id=TENANT,
    status="active",
    nodes=[
        {"id": "start", "type": "start"},
        {"id": "m1", "type": "message", "data": {"message": "Hi"}},
        {"id": "end", "type": "end"},
    ],
    edges=[{"source": "start", "target": "m1"}, {"source": "m1", "target": "end"}],
)
PIN = FlowVersion(
    flow_id="pin",
    tenant_id=TENANT,
    status="active",
    priority=1,
    nodes=[
        {"id": "start", "type": "trigger", "data": {"keywords": ["pin"]}},
        {"id": "ask", "type": "input", "data": {"question": "PIN?", "variable_name": "pin", "encrypt": True}},
        {"id": "done", "type": "message", "data": {"message": "Saved"}},
    ],
    edges=[{"source": "start", "target": "ask"}, {"source": "ask", "target": "done"}],
)


@pytest.fixture
def client():
    # Without MONGO_URI/REDIS_URL the lifespan builds an in-memory engine.
    with TestClient(app) as test_client:
        test_client.app.state.runtime.flows.publish(GREETING)
        test_client.app.state.runtime.flows.publish(PIN)
        yield test_client


def _message(text, message_id, conversation_id="conv-api"):
    return {
        "message_id": message_id,
        "tenant_id": TENANT,
        "conversation_id": conversation_id,
        "contact_id": "contact-api",
        "text": text,
    }


def _trigger(conversation_id="conv-api", **extra):
    return {"tenant_id": TENANT, "conversation_id": conversation_id, "contact_id": "contact-api", **extra}


def test_root_and_health(client):
    assert client.get("/").json()["service"] == "Chatflow Engine"
    assert client.get("/health").json()["status"] == "healthy"
    assert client.get("/health/ready").json() == {"status": "ready"}


def test_trigger_runs_flow_and_session_is_inspectable(client):
    response = client.post(f"{API}/flows/greeting/trigger", json=_trigger())

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["status"] == "completed"
    session_id = body["data"]["session_id"]

    session = client.get(f"{API}/sessions/{session_id}").json()["data"]["session"]
    assert session["status"] == "completed"
    assert session["execution_path"] == ["start", "m1", "end"]
    assert session["node_execution_count"] == 3

    steps = client.get(f"{API}/sessions/{session_id}/steps").json()["data"]["steps"]
    assert [s["node_id"] for s in steps] == ["start", "m1", "end"]
    assert {s["status"] for s in steps} == {"completed"}


def test_inbound_messages_drive_a_conversation_and_mask_secrets(client):
    opened = client.post(f"{API}/events/messages", json=_message("my pin", "wamid.1")).json()
    assert opened["data"]["status"] == "suspended"
    session_id = opened["data"]["session_id"]

    waiting = client.get(f"{API}/sessions/{session_id}").json()["data"]["session"]
    assert waiting["waiting_for"]["node_id"] == "ask"
    assert waiting["waiting_for"]["kind"] == "input"

    done = client.post(f"{API}/events/messages", json=_message("4321", "wamid.2")).json()
    assert done["data"]["status"] == "completed"

    session = client.get(f"{API}/sessions/{session_id}").json()["data"]["session"]
    assert session["variables"] == {"pin": "***"}
    assert "4321" not in client.get(f"{API}/sessions/{session_id}/steps").text

    duplicate = client.post(f"{API}/events/messages", json=_message("4321", "wamid.2")).json()
    assert duplicate["data"]["status"] == "duplicate"


def test_unmatched_message_reports_no_match(client):
    response = client.post(f"{API}/events/messages", json=_message("hello", "wamid.9", conversation_id="conv-other"))
    # The greeting flow has no keywords and matches everything.
    assert response.json()["data"]["status"] == "completed"

    client.app.state.runtime.flows.publish(GREETING.model_copy(update={"status": FlowStatus.INACTIVE}))
    response = client.post(f"{API}/events/messages", json=_message("hello", "wamid.10", conversation_id="conv-third"))
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "no_match"


def test_trigger_errors_map_to_http_status(client):
    assert client.post(f"{API}/flows/nope/trigger", json=_trigger()).status_code == 404

    first = client.post(f"{API}/flows/pin/trigger", json=_trigger("conv-409"))
    assert first.json()["data"]["status"] == "suspended"
    conflict = client.post(f"{API}/flows/pin/trigger", json=_trigger("conv-409"))
    assert conflict.status_code == 409
    assert conflict.json()["success"] is False

    forced = client.post(f"{API}/flows/pin/trigger", json=_trigger("conv-409", force=True))
    assert forced.status_code == 200
    assert forced.json()["data"]["session_id"] != first.json()["data"]["session_id"]


def test_operator_actions(client):
    session_id = client.post(f"{API}/flows/pin/trigger", json=_trigger("conv-ops")).json()["data"]["session_id"]

    assert client.post(f"{API}/sessions/{session_id}/pause").json()["data"]["status"] == "paused"
    assert client.post(f"{API}/sessions/{session_id}/resume").json()["data"]["status"] == "suspended"

    cancelled = client.post(f"{API}/sessions/{session_id}/cancel", json={"reason": "spam"}).json()
    assert cancelled["data"]["status"] == "abandoned"
    assert client.get(f"{API}/sessions/{session_id}").json()["data"]["session"]["last_error_message"] == "spam"

    assert client.post(f"{API}/sessions/{session_id}/timer", json={}).json()["data"]["status"] == "ignored"
    assert client.post(f"{API}/sessions/{session_id}/callback", json={"payload": {}}).json()["data"]["status"] == "ignored"


def test_unknown_sessions_are_404(client):
    assert client.get(f"{API}/sessions/missing").status_code == 404
    assert client.get(f"{API}/sessions/missing/steps").status_code == 404
    assert client.post(f"{API}/sessions/missing/timer", json={}).status_code == 404
    assert client.post(f"{API}/sessions/missing/pause").status_code == 404


def test_retry_later_is_a_503(client, mocker):
    mocker.patch.object(
        client.app.state.engine, "handle_inbound_message",
        AsyncMock(return_value=EngineOutcome(status=OutcomeStatus.RETRY_LATER, error_kind="concurrency", detail="busy")),
    )
    response = client.post(f"{API}/events/messages", json=_message("hi", "wamid.busy"))

    assert response.status_code == 503
    assert response.json()["success"] is False
    assert response.json()["message"] == "busy"


def test_api_key_is_enforced_when_configured(client, mocker):
    mocker.patch.object(settings, "api_key", "s3cret")

    assert client.get(f"{API}/sessions/missing").status_code == 403
    assert client.get("/metrics").status_code == 403
    assert client.get(f"{API}/sessions/missing", headers={"X-API-KEY": "s3cret"}).status_code == 404
    assert client.get("/health").status_code == 200


def test_metrics_endpoint_exposes_engine_counters(client):
    client.post(f"{API}/flows/greeting/trigger", json=_trigger("conv-metrics"))

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "flow_inbound_events_total" in response.text
    assert "flow_node_executions_total" in response.text
