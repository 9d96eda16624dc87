from fastapi.testclient import TestClient

from conftest import REFUND_ARGS, SlowModel, make_context, send_call
from mailgate.errors import ModelUnavailable
from mailgate.main import create_app
from mailgate.models import AssistantOutput


def _client(outputs, **kwargs) -> tuple[TestClient, object]:
    context = make_context(outputs, **kwargs)
    return TestClient(create_app(context)), context


def test_health() -> None:
    client, _ = _client([])
    with client:
        assert client.get("/health").json() == {"status": "ok"}


def test_submit_suspend_and_approve_flow() -> None:
    client, context = _client([send_call(), AssistantOutput.reply("Sent.")])
    with client:
        r = client.post("/sessions/s1/messages", json={"text": "Send a refund email to a@b.com"})
        assert r.status_code == 200
        body = r.json()
        assert body["type"] == "suspended"
        assert body["suspension_id"] == "call_send_1"
        assert body["request"] == {"name": "send_email", "arguments": REFUND_ARGS}
        assert body["allowed_decisions"] == ["approve", "edit", "reject"]
        assert context.outbox.sent == []

        state = client.get("/sessions/s1").json()
        assert state["state"] == "suspended"
        assert state["pending_suspension"]["id"] == "call_send_1"

        r = client.post("/sessions/s1/resume", json={"type": "approve", "target_id": "call_send_1"})
        assert r.status_code == 200
        assert r.json() == {"type": "reply", "text": "Sent."}
        assert len(context.outbox.sent) == 1
        assert client.get("/sessions/s1").json()["state"] == "idle"


def test_protocol_errors_map_to_conflict() -> None:
    client, _ = _client([send_call()])
    with client:
        r = client.post("/sessions/s1/resume", json={"type": "approve", "target_id": "nope"})
        assert r.status_code == 409
        assert r.json()["error"] == "no_matching_suspension"

        client.post("/sessions/s1/messages", json={"text": "send it"})
        r = client.post("/sessions/s1/messages", json={"text": "again"})
        assert r.status_code == 409
        assert r.json()["error"] == "session_suspended"


def test_invalid_edit_returns_422_and_keeps_suspension() -> None:
    client, context = _client([send_call()])
    with client:
        client.post("/sessions/s1/messages", json={"text": "send it"})
        r = client.post(
            "/sessions/s1/resume",
            json={"type": "edit", "target_id": "call_send_1", "arguments": {**REFUND_ARGS, "body": ""}},
        )
        assert r.status_code == 422
        assert r.json()["error"] == "schema_error"
        assert r.json()["field"] == "body"
        assert client.get("/sessions/s1").json()["state"] == "suspended"
        assert context.outbox.sent == []


def test_malformed_decision_returns_400() -> None:
    client, _ = _client([])
    with client:
        r = client.post("/sessions/s1/resume", json={"type": "maybe", "target_id": "x"})
        assert r.status_code == 400
        assert r.json()["error"] == "bad_decision"


def test_model_unavailable_returns_503() -> None:
    client, _ = _client([ModelUnavailable("down")])
    with client:
        r = client.post("/sessions/s1/messages", json={"text": "hi"})
        assert r.status_code == 503
        assert r.json()["error"] == "model_unavailable"
        assert client.get("/sessions/s1").json()["messages"] == []


def test_turn_timeout_returns_504_and_leaves_session_unchanged() -> None:
    context = make_context([], turn_timeout_seconds=0.1)
    context.model = SlowModel(delay=5)
    with TestClient(create_app(context)) as client:
        r = client.post("/sessions/s1/messages", json={"text": "hi"})
        assert r.status_code == 504
        assert r.json()["error"] == "turn_timeout"
        assert "re-fetch" in r.json()["detail"]

        state = client.get("/sessions/s1").json()
        assert state["state"] == "idle"
        assert state["messages"] == []
