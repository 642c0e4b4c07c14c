import json

import pytest

from copilot.services.models import utcnow
from server import create_app

from fakes import FakeClock


def command(tool, **params):
    return f"/{tool} {json.dumps(params)}"


@pytest.fixture
def api_clock():
    return FakeClock(utcnow())


@pytest.fixture
def app(temp_db, api_clock):
    app = create_app("testing", clock=api_clock)
    app.config.update(TESTING=True)
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def _token(client, email="pro@example.com", plan="PRO"):
    client.post(
        "/api/auth/register",
        json={"username": email.split("@")[0], "email": email, "password": "secret-pass", "subscription_plan": plan},
    )
    response = client.post("/api/auth/login", json={"email": email, "password": "secret-pass"})
    assert response.status_code == 200
    return response.get_json()["token"]


@pytest.fixture
def auth_headers(client):
    return {"Authorization": f"Bearer {_token(client)}"}


def _propose_client(client, headers, name="Acme"):
    response = client.post("/api/chat", json={"message": command("clients.create", name=name)}, headers=headers)
    assert response.status_code == 200
    body = response.get_json()
    assert body["state"] == "AWAITING_CONFIRMATION"
    return body


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.get_json() == {"status": "ok"}


def test_endpoints_require_token(client):
    assert client.post("/api/chat", json={"message": "hi"}).status_code == 401
    assert client.get("/api/plans/pending", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_me_returns_subscription_plan(client, auth_headers):
    response = client.get("/api/auth/me", headers=auth_headers)

    assert response.status_code == 200
    assert response.get_json()["user"]["subscription_plan"] == "PRO"


def test_chat_requires_message(client, auth_headers):
    response = client.post("/api/chat", json={"message": "   "}, headers=auth_headers)

    assert response.status_code == 400
    assert response.get_json()["code"] == "validation_error"


def test_chat_confirm_in_conversation(client, auth_headers):
    proposed = _propose_client(client, auth_headers)

    confirmed = client.post(
        "/api/chat",
        json={"message": "yes", "conversation_id": proposed["conversation_id"]},
        headers=auth_headers,
    )

    body = confirmed.get_json()
    assert body["state"] == "IDLE"
    assert body["executed_tools"][0]["success"] is True
    assert client.get("/api/plans/pending", headers=auth_headers).get_json()["plans"] == []


def test_confirm_endpoint_executes_once(client, auth_headers):
    proposed = _propose_client(client, auth_headers)

    pending = client.get("/api/plans/pending", headers=auth_headers).get_json()["plans"]
    assert [plan["id"] for plan in pending] == [proposed["plan_id"]]

    first = client.post("/api/plans/confirm", json={"plan_id": proposed["plan_id"]}, headers=auth_headers)
    assert first.status_code == 200
    assert first.get_json()["status"] == "COMPLETED"
    assert first.get_json()["results"][0]["success"] is True

    second = client.post("/api/plans/confirm", json={"plan_id": proposed["plan_id"]}, headers=auth_headers)
    assert second.status_code == 404
    assert second.get_json()["code"] == "not_found"


def test_reject_endpoint(client, auth_headers):
    proposed = _propose_client(client, auth_headers)

    response = client.post("/api/plans/reject", json={"plan_id": proposed["plan_id"]}, headers=auth_headers)

    assert response.status_code == 200
    assert response.get_json()["status"] == "REJECTED"
    assert client.post("/api/plans/reject", json={"plan_id": proposed["plan_id"]}, headers=auth_headers).status_code == 404


def test_confirm_requires_plan_id(client, auth_headers):
    response = client.post("/api/plans/confirm", json={}, headers=auth_headers)

    assert response.status_code == 400


def test_expired_plan_cannot_be_confirmed(client, auth_headers, api_clock):
    proposed = _propose_client(client, auth_headers)
    api_clock.advance(minutes=6)

    response = client.post("/api/plans/confirm", json={"plan_id": proposed["plan_id"]}, headers=auth_headers)

    assert response.status_code == 400
    assert response.get_json()["code"] == "plan_expired"


def test_plans_are_isolated_between_users(client, auth_headers):
    proposed = _propose_client(client, auth_headers)
    other = {"Authorization": f"Bearer {_token(client, 'other@example.com')}"}

    response = client.post("/api/plans/confirm", json={"plan_id": proposed["plan_id"]}, headers=other)

    assert response.status_code == 404
    assert client.get(f"/api/conversations/{proposed['conversation_id']}", headers=other).status_code == 404


def test_payment_flow_creates_charge(client, auth_headers):
    created = _propose_client(client, auth_headers)
    done = client.post("/api/plans/confirm", json={"plan_id": created["plan_id"]}, headers=auth_headers).get_json()
    client_id = done["results"][0]["result"]["client"]["id"]

    proposed = client.post(
        "/api/chat",
        json={"message": command("payments.create", client_id=client_id, value=250, due_date="2025-03-01", billing_type="pix")},
        headers=auth_headers,
    ).get_json()

    assert "REAL charge" in proposed["message"]
    preview = proposed["pending_plan"]
    assert proposed["state"] == "AWAITING_CONFIRMATION"
    assert preview is not None

    paid = client.post("/api/plans/confirm", json={"plan_id": proposed["plan_id"]}, headers=auth_headers)
    assert paid.get_json()["status"] == "COMPLETED"


def test_free_plan_cannot_create_payments(client):
    headers = {"Authorization": f"Bearer {_token(client, 'free@example.com', 'FREE')}"}

    response = client.post(
        "/api/chat",
        json={"message": command("payments.create", client_id="x", value=10, due_date="2025-03-01")},
        headers=headers,
    )

    assert response.status_code == 200
    assert response.get_json()["state"] == "IDLE"
    logs = client.get("/api/audit/security", headers=headers).get_json()["logs"]
    assert [log["action"] for log in logs] == ["permission_denied"]


def test_conversations_are_listed_with_messages(client, auth_headers):
    proposed = _propose_client(client, auth_headers)

    listed = client.get("/api/conversations", headers=auth_headers).get_json()["conversations"]
    assert [item["id"] for item in listed] == [proposed["conversation_id"]]

    detail = client.get(f"/api/conversations/{proposed['conversation_id']}", headers=auth_headers).get_json()
    assert [message["role"] for message in detail["conversation"]["messages"]] == ["user", "assistant"]


def test_unknown_conversation_is_not_found(client, auth_headers):
    response = client.post("/api/chat", json={"message": "hi", "conversation_id": "missing"}, headers=auth_headers)

    assert response.status_code == 404


def test_tools_listing_and_direct_execution(client, auth_headers):
    tools = client.get("/api/tools", headers=auth_headers).get_json()["tools"]
    assert {tool["name"] for tool in tools} >= {"clients.search", "payments.create"}

    read = client.post("/api/tools/clients.search/execute", json={"params": {"query": "a"}}, headers=auth_headers)
    assert read.status_code == 200
    assert read.get_json()["success"] is True

    write = client.post("/api/tools/clients.create/execute", json={"params": {"name": "Acme"}}, headers=auth_headers)
    assert write.status_code == 400
    assert write.get_json()["error_code"] == "CONFIRMATION_REQUIRED"

    missing = client.post("/api/tools/nope/execute", json={}, headers=auth_headers)
    assert missing.status_code == 400


def test_rate_limit_returns_429(temp_db, monkeypatch):
    monkeypatch.setenv("COPILOT_RATE_LIMIT_PER_MINUTE", "2")
    client = create_app("testing").test_client()
    headers = {"Authorization": f"Bearer {_token(client)}"}

    for _ in range(2):
        assert client.post("/api/chat", json={"message": "hello"}, headers=headers).status_code == 200
    response = client.post("/api/chat", json={"message": "hello"}, headers=headers)

    assert response.status_code == 429
    logs = client.get("/api/audit/security", headers=headers).get_json()["logs"]
    assert "requests_per_minute_exceeded" in [log["action"] for log in logs]


def test_sweep_command_expires_plans(app, client, auth_headers, api_clock):
    _propose_client(client, auth_headers)
    api_clock.advance(minutes=10)

    result = app.test_cli_runner().invoke(args=["sweep-expired"])

    assert "Expired 1 plan(s)" in result.output
    assert client.get("/api/plans/pending", headers=auth_headers).get_json()["plans"] == []
