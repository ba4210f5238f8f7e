import json

import pytest
from fastapi.testclient import TestClient

from testgen import webhook
from testgen.config import Settings
from testgen.dependencies import settings_dependency
from testgen.main import app
from testgen.utils.security import build_github_signature, verify_github_signature

SECRET = "s3cret"


def _pull_request_body(action: str = "opened") -> dict:
    return {
        "action": action,
        "installation": {"id": 42},
        "repository": {"id": 1, "full_name": "octo/widgets", "name": "widgets", "owner": {"login": "octo"}},
        "pull_request": {
            "number": 7,
            "title": "Add pricing service",
            "head": {"ref": "feature/pricing", "sha": "h" * 40},
            "base": {"ref": "main", "sha": "b" * 40},
        },
    }


def _post(client: TestClient, body: dict, *, event: str = "pull_request", delivery: str = "d-1", secret: str = SECRET):
    raw = json.dumps(body).encode()
    headers = {
        "X-GitHub-Event": event,
        "X-GitHub-Delivery": delivery,
        "X-Hub-Signature-256": build_github_signature(secret, raw),
        "Content-Type": "application/json",
    }
    return client.post("/webhook", content=raw, headers=headers)


@pytest.fixture
def enqueued(monkeypatch):
    events = []
    monkeypatch.setattr(webhook, "enqueue_webhook_event", events.append)
    webhook.reset_delivery_cache()
    app.dependency_overrides[settings_dependency] = lambda: Settings(github_webhook_secret=SECRET)
    yield events
    app.dependency_overrides.clear()
    webhook.reset_delivery_cache()


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


def test_pull_request_event_is_accepted_and_enqueued(client, enqueued):
    response = _post(client, _pull_request_body())

    assert response.status_code == 200
    assert response.json() == {"status": "accepted"}
    [event] = enqueued
    assert event.delivery_id == "d-1"
    assert event.payload.pull_request.number == 7
    assert event.payload.pull_request.head.ref == "feature/pricing"
    assert event.payload.installation_id == 42


def test_redelivery_is_ignored(client, enqueued):
    _post(client, _pull_request_body())
    response = _post(client, _pull_request_body())

    assert response.json() == {"status": "ignored", "reason": "duplicate"}
    assert len(enqueued) == 1


def test_bad_signature_is_rejected(client, enqueued):
    response = _post(client, _pull_request_body(), secret="wrong")

    assert response.status_code == 401
    assert enqueued == []


@pytest.mark.parametrize("event, action", [("push", "opened"), ("pull_request", "closed")])
def test_unsupported_events_are_acknowledged(client, enqueued, event, action):
    response = _post(client, _pull_request_body(action), event=event)

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"
    assert enqueued == []


def test_missing_delivery_header_is_bad_request(client, enqueued):
    raw = json.dumps(_pull_request_body()).encode()
    response = client.post(
        "/webhook",
        content=raw,
        headers={"X-GitHub-Event": "pull_request", "X-Hub-Signature-256": build_github_signature(SECRET, raw)},
    )

    assert response.status_code == 400


def test_malformed_pull_request_is_bad_request(client, enqueued):
    body = _pull_request_body()
    del body["installation"]

    response = _post(client, body)

    assert response.status_code == 400
    assert enqueued == []


def test_missing_secret_is_a_server_error(client, enqueued):
    app.dependency_overrides[settings_dependency] = lambda: Settings()

    response = _post(client, _pull_request_body())

    assert response.status_code == 500


def test_signature_requires_prefix():
    raw = b"{}"
    digest = build_github_signature(SECRET, raw).removeprefix("sha256=")

    assert verify_github_signature(SECRET, raw, f"sha256={digest}") is True
    assert verify_github_signature(SECRET, raw, digest) is False
    assert verify_github_signature(SECRET, raw, None) is False


def test_ping_health_and_logs(client):
    assert client.get("/").text == "pong"

    health = client.get("/health").json()
    assert health["pending_events"] == 0
    assert "python version" in health["environment"]

    logs = client.get("/logs", params={"limit": 5}).json()
    assert logs["count"] == len(logs["entries"]) <= 5
    assert client.get("/logs", params={"limit": 0}).status_code == 422
