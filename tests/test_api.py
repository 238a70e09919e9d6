import types

import pytest
from fastapi.testclient import TestClient

from send_scheduler import api
from send_scheduler.api import create_app, API_TOKEN_HEADER_NAME


API_TOKEN = "secret-token"


class DummyService:
    def __init__(self):
        self.calls = []
        self.metrics = types.SimpleNamespace(generate_latest=lambda: b"metrics-data")
        self.items = []
        self.responses = {}

    async def handle_command(self, cmd, payload):
        self.calls.append((cmd, payload))
        if cmd in self.responses:
            return self.responses[cmd]
        if cmd == "addItems":
            return {"ok": True, "queued": len(payload.get("items", [])), "rejected": []}
        if cmd == "listItems":
            return {"ok": True, "items": list(self.items)}
        if cmd == "listInstances":
            return {"ok": True, "instances": [{"id": "inst-1", "status": "connected"}]}
        if cmd == "listCronLogs":
            return {
                "ok": True,
                "logs": [
                    {"id": 1, "cron_kind": "scheduled_dispatch", "status": "success", "occurred_ts": 100}
                ],
                "pagination": {"page": 1, "limit": 50, "total": 1, "total_pages": 1},
                "statistics": [
                    {"cron_kind": "scheduled_dispatch", "total_runs": 1, "successes": 1, "errors": 0, "avg_duration_ms": 3.5}
                ],
            }
        if cmd == "cronStats":
            return {"ok": True, "recent_runs": [], "latest_runs": [], "totals": {"total_runs": 0}, "period": "24h"}
        if cmd == "upcomingItems":
            return {"ok": True, "items": [], "statistics": {"pending": 0}, "by_instance": [], "period": "next 24h"}
        if cmd == "reschedule":
            return {"ok": True, "changed": True, "message": "Item rescheduled", "scheduled_ts": 4_000_000_000}
        if cmd == "cancel":
            return {"ok": True, "changed": True, "message": "Item cancelled"}
        if cmd == "purgeItems":
            return {"ok": True, "removed": 3, "message": "3 old item(s) removed"}
        if cmd == "purgeCronLogs":
            return {"ok": True, "removed": 2, "message": "2 log entries removed"}
        if cmd == "recordCronLog":
            return {"ok": True, "message": "Execution log entry recorded"}
        return {"ok": True}


@pytest.fixture(autouse=True)
def reset_service():
    original = api.service
    original_token = getattr(api.app.state, "api_token", None)
    api.service = None
    api.app.state.api_token = None
    try:
        yield
    finally:
        api.service = original
        api.app.state.api_token = original_token


@pytest.fixture
def client_and_service():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
    return client, svc


def test_returns_500_when_service_missing():
    create_app(DummyService(), api_token=API_TOKEN)
    api.service = None
    client = TestClient(api.app)
    response = client.post("/commands/run-now", headers={API_TOKEN_HEADER_NAME: API_TOKEN})
    assert response.status_code == 500
    assert response.json()["detail"] == "Service not initialized"


def test_rejects_missing_token():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))
    response = client.get("/status")
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing API token"


def test_rejects_wrong_token_on_operator_routes():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))
    response = client.post(
        "/scheduled-items/actions",
        json={"action": "cancel", "item_id": "x"},
        headers={API_TOKEN_HEADER_NAME: "wrong"},
    )
    assert response.status_code == 401
    assert svc.calls == []


def test_open_when_no_token_configured():
    client = TestClient(create_app(DummyService(), api_token=None))
    assert client.get("/status").json() == {"ok": True}


def test_basic_endpoints_dispatch_to_service(client_and_service):
    client, svc = client_and_service

    assert client.get("/status").json() == {"ok": True}
    assert client.post("/commands/run-now").json()["ok"] is True
    assert client.post("/commands/suspend").json()["ok"] is True
    assert client.post("/commands/activate").json()["ok"] is True

    response = client.post(
        "/commands/add-items",
        json={
            "items": [
                {"id": "a", "recipient_ref": "r1", "instance_ref": "i1", "scheduled_time": "2099-01-01T10:00"},
                {"id": "b", "recipient_ref": "r2", "instance_ref": "i1", "scheduled_time": 4_000_000_000,
                 "payload": {"text": "hi"}},
            ]
        },
    )
    assert response.status_code == 200
    assert response.json()["queued"] == 2
    cmd, payload = svc.calls[-1]
    assert cmd == "addItems"
    assert payload["items"][0] == {
        "id": "a", "recipient_ref": "r1", "instance_ref": "i1", "scheduled_time": "2099-01-01T10:00"
    }
    assert payload["items"][1]["payload"] == {"text": "hi"}

    assert client.get("/metrics").content == b"metrics-data"
    assert [c[0] for c in svc.calls[:3]] == ["run now", "suspend", "activate"]


def test_instance_and_recipient_routes(client_and_service):
    client, svc = client_and_service

    assert client.post("/instance", json={"id": "inst-1", "name": "Main"}).json() == {"ok": True}
    assert svc.calls[-1] == ("addInstance", {"id": "inst-1", "name": "Main", "status": "disconnected"})

    assert client.put("/instance/inst-1/status", json={"status": "connected"}).status_code == 200
    assert svc.calls[-1] == ("setInstanceStatus", {"id": "inst-1", "status": "connected"})

    assert client.get("/instances").json()["instances"][0]["id"] == "inst-1"

    assert client.post("/recipient", json={"id": "r1", "name": "Anna"}).status_code == 200
    assert svc.calls[-1] == ("addRecipient", {"id": "r1", "name": "Anna"})


def test_cron_log_routes(client_and_service):
    client, svc = client_and_service

    body = client.get("/cron-logs", params={"page": 1, "limit": 10, "cron_kind": "scheduled_dispatch"}).json()
    assert body["pagination"]["total"] == 1
    assert body["statistics"][0]["avg_duration_ms"] == 3.5
    assert svc.calls[-1] == ("listCronLogs", {"page": 1, "limit": 10, "cron_kind": "scheduled_dispatch"})

    assert client.get("/cron-logs", params={"limit": 1000}).status_code == 422

    recorded = client.post("/cron-logs", json={"cron_kind": "export", "status": "success", "duration_ms": 5})
    assert recorded.json() == {"ok": True, "message": "Execution log entry recorded"}

    purged = client.delete("/cron-logs", params={"days": 10})
    assert purged.json()["removed"] == 2
    assert svc.calls[-1] == ("purgeCronLogs", {"days": 10})

    stats = client.get("/cron-stats").json()
    assert stats["period"] == "24h"


def test_scheduled_item_routes(client_and_service):
    client, svc = client_and_service

    assert client.get("/scheduled-items").json()["period"] == "next 24h"

    svc.items = [
        {"id": "a", "recipient_ref": "r1", "instance_ref": "i1", "scheduled_ts": 10, "attempts": 0, "status": "pending"}
    ]
    listed = client.get("/scheduled-items/all", params={"active_only": True}).json()
    assert listed["items"][0]["id"] == "a"
    assert svc.calls[-1] == ("listItems", {"active_only": True})

    moved = client.post(
        "/scheduled-items/actions",
        json={"action": "reschedule", "item_id": "a", "new_time": "2099-01-01T09:00"},
    ).json()
    assert moved["scheduled_ts"] == 4_000_000_000
    assert svc.calls[-1] == ("reschedule", {"item_id": "a", "new_time": "2099-01-01T09:00"})

    cancelled = client.post("/scheduled-items/actions", json={"action": "cancel", "item_id": "a"}).json()
    assert cancelled["changed"] is True

    purged = client.post(
        "/scheduled-items/actions", json={"action": "purge", "days": 7, "statuses": ["sent"]}
    ).json()
    assert purged["removed"] == 3
    assert svc.calls[-1] == ("purgeItems", {"days": 7, "statuses": ["sent"]})

    assert client.post("/scheduled-items/actions", json={"action": "explode"}).status_code == 422


@pytest.mark.parametrize(
    "code,http_status",
    [
        ("validation_error", 400),
        ("not_found", 404),
        ("conflict", 409),
        ("invalid_transition", 409),
        ("store_unavailable", 503),
    ],
)
def test_operator_errors_map_to_http_status(client_and_service, code, http_status):
    client, svc = client_and_service
    svc.responses["cancel"] = {"ok": False, "error": "nope", "code": code}

    response = client.post("/scheduled-items/actions", json={"action": "cancel", "item_id": "a"})

    assert response.status_code == http_status
    assert response.json()["detail"] == {"error": "nope", "code": code}


def test_add_items_rejection_detail(client_and_service):
    client, svc = client_and_service
    svc.responses["addItems"] = {
        "ok": False,
        "error": "all items rejected",
        "code": "validation_error",
        "rejected": [{"id": "a", "reason": "duplicate id"}],
    }
    response = client.post(
        "/commands/add-items",
        json={"items": [{"id": "a", "recipient_ref": "r", "instance_ref": "i", "scheduled_time": 1}]},
    )
    assert response.status_code == 400
    assert response.json()["detail"]["rejected"] == [{"id": "a", "reason": "duplicate id"}]
