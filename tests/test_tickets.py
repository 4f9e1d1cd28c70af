import json

import httpx
import pytest
from fastapi.testclient import TestClient

from relaydesk.core.config import get_settings
from relaydesk.core.webhook_dispatcher import DispatchResult
from relaydesk.main import app

ADMIN = ("admin@example.com", "SecurePass123")
WORKER = ("worker@example.com", "WorkerPass123")
OUTSIDER = ("outsider@example.com", "OutsiderPass123")
HOOK_URL = "https://hooks.example/desk"


@pytest.fixture(autouse=True)
def reset_state(tmp_path, monkeypatch):
    db_path = tmp_path / "tickets.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("RELAY_DESK_BCRYPT_ROUNDS", "4")
    monkeypatch.setenv("RELAY_DESK_WEBHOOK_URL", HOOK_URL)
    monkeypatch.setattr(httpx, "AsyncClient", _DummyAsyncClient)
    _DummyAsyncClient.calls = []
    _DummyAsyncClient.status_code = 200
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class _DummyResponse:
    def __init__(self, status_code: int):
        self.status_code = status_code
        self.reason_phrase = "OK" if status_code < 400 else "Internal Server Error"
        self.text = "accepted"


class _DummyAsyncClient:
    calls: list[dict] = []
    status_code = 200

    def __init__(self, *args, **kwargs):
        self.kwargs = kwargs

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def post(self, endpoint, *, content, headers):
        _DummyAsyncClient.calls.append({"endpoint": endpoint, "payload": json.loads(content)})
        return _DummyResponse(_DummyAsyncClient.status_code)


def _register_approved(client, credentials) -> int:
    email, password = credentials
    user_id = client.post("/auth/register", json={"email": email, "password": password}).json()["id"]
    if credentials != ADMIN:
        client.patch(
            f"/api/admin/users/{user_id}/approval",
            json={"approval_status": "approved"},
            auth=ADMIN,
        )
    return user_id


def _bootstrap(client) -> int:
    _register_approved(client, ADMIN)
    worker_id = _register_approved(client, WORKER)
    _DummyAsyncClient.calls = []
    return worker_id


def _create_ticket(client, worker_id, **overrides):
    body = {
        "title": "Printer offline",
        "details": "Second floor printer stopped responding",
        "urgency": "high",
        "deadline": "2025-03-01T14:30:00Z",
        "assigned_to": worker_id,
    }
    body.update(overrides)
    response = client.post("/api/tickets/", json=body, auth=ADMIN)
    assert response.status_code == 201
    return response.json()


def _actions():
    return [call["payload"]["action"] for call in _DummyAsyncClient.calls]


def test_create_ticket_dispatches_flat_payload():
    with TestClient(app) as client:
        worker_id = _bootstrap(client)
        client.put("/api/notification-settings", json={"new_ticket": False}, auth=WORKER)

        ticket = _create_ticket(client, worker_id)
        assert ticket["status"] == "new"

        assert _actions() == ["ticket_created"]
        payload = _DummyAsyncClient.calls[0]["payload"]
        assert payload["ticket_id"] == ticket["id"]
        assert payload["ticket_title"] == "Printer offline"
        assert payload["date"] == "2025-03-01"
        assert payload["time"] == "14:30"
        assert payload["worker_email"] == WORKER[0]
        assert payload["creator_email"] == ADMIN[0]
        assert payload["user_email"] == WORKER[0]
        # The recipient opted out, which is reported but not enforced.
        assert payload["newTicket"] is False


def test_status_updates_map_to_actions():
    with TestClient(app) as client:
        worker_id = _bootstrap(client)
        ticket_id = _create_ticket(client, worker_id)["id"]
        _DummyAsyncClient.calls = []

        for body in (
            {"status": "in_progress"},
            {"status": "in_progress"},
            {"details": "Toner replaced"},
            {"status": "completed"},
        ):
            response = client.patch(f"/api/tickets/{ticket_id}", json=body, auth=WORKER)
            assert response.status_code == 200

        assert _actions() == ["in_work", "updated", "solved"]


def test_complete_succeeds_when_receiver_fails():
    with TestClient(app) as client:
        worker_id = _bootstrap(client)
        ticket_id = _create_ticket(client, worker_id)["id"]
        _DummyAsyncClient.status_code = 500

        response = client.patch(
            f"/api/tickets/{ticket_id}/complete",
            json={"solution_type": "manual", "output_result": "Rebooted"},
            auth=WORKER,
        )
        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert _actions()[-1] == "solved"


def test_complete_succeeds_when_dispatcher_raises(monkeypatch):
    async def _exploding_send(url, payload, **kwargs):
        raise RuntimeError("dispatcher crashed")

    monkeypatch.setattr("relaydesk.services.webhook_notifications.send_webhook", _exploding_send)

    with TestClient(app) as client:
        worker_id = _bootstrap(client)
        ticket_id = _create_ticket(client, worker_id)["id"]

        response = client.patch(f"/api/tickets/{ticket_id}/complete", json={}, auth=WORKER)
        assert response.status_code == 200
        assert client.get(f"/api/tickets/{ticket_id}", auth=WORKER).json()["status"] == "completed"


def test_unconfigured_destination_skips_dispatch(monkeypatch):
    monkeypatch.delenv("RELAY_DESK_WEBHOOK_URL")
    monkeypatch.delenv("WEBHOOK_URL", raising=False)
    get_settings.cache_clear()
    sent = []

    async def _recording_send(url, payload, **kwargs):
        sent.append(url)
        return DispatchResult(success=True)

    monkeypatch.setattr("relaydesk.services.webhook_notifications.send_webhook", _recording_send)

    with TestClient(app) as client:
        worker_id = _bootstrap(client)
        _create_ticket(client, worker_id)

    assert sent == []


def test_ticket_can_only_be_edited_once():
    with TestClient(app) as client:
        worker_id = _bootstrap(client)
        ticket_id = _create_ticket(client, worker_id)["id"]

        first = client.patch(f"/api/tickets/{ticket_id}/edit", json={"title": "Printer jammed"}, auth=ADMIN)
        assert first.status_code == 200
        assert first.json()["edited"] is True

        second = client.patch(f"/api/tickets/{ticket_id}/edit", json={"title": "Again"}, auth=ADMIN)
        assert second.status_code == 409

        not_creator = client.patch(f"/api/tickets/{ticket_id}/edit", json={"title": "Mine"}, auth=WORKER)
        assert not_creator.status_code == 403

        assert _actions()[-1] == "updated"
        assert _DummyAsyncClient.calls[-1]["payload"]["ticket_title"] == "Printer jammed"


def test_delete_dispatches_snapshot():
    with TestClient(app) as client:
        worker_id = _bootstrap(client)
        ticket_id = _create_ticket(client, worker_id)["id"]

        response = client.delete(f"/api/tickets/{ticket_id}", auth=ADMIN)
        assert response.status_code == 204
        assert client.get(f"/api/tickets/{ticket_id}", auth=ADMIN).status_code == 404

        payload = _DummyAsyncClient.calls[-1]["payload"]
        assert payload["action"] == "deleted"
        assert payload["ticket_title"] == "Printer offline"
        assert payload["worker_email"] == WORKER[0]


def test_ticket_visibility():
    with TestClient(app) as client:
        worker_id = _bootstrap(client)
        _register_approved(client, OUTSIDER)
        ticket_id = _create_ticket(client, worker_id)["id"]
        _create_ticket(client, None, title="Unassigned")

        assert len(client.get("/api/tickets/", auth=ADMIN).json()) == 2
        assert [t["id"] for t in client.get("/api/tickets/mine", auth=WORKER).json()] == [ticket_id]
        assert client.get("/api/tickets/", auth=OUTSIDER).json() == []
        assert client.get(f"/api/tickets/{ticket_id}", auth=OUTSIDER).status_code == 403

        missing_assignee = client.post(
            "/api/tickets/", json={"title": "Ghost", "assigned_to": 999}, auth=ADMIN
        )
        assert missing_assignee.status_code == 400
