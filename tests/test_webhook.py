"""Tests for the webhook endpoint."""

import asyncio
import hashlib
import hmac
import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from gantry.models import Event
from gantry.webhook import configure, router, verify_signature

SECRET = "s3cret"


def sign(body: bytes, secret: str = SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def headers(body: bytes, *, event: str = "push", delivery: str = "delivery-1", signature=None):
    return {
        "Content-Type": "application/json",
        "X-GitHub-Event": event,
        "X-GitHub-Delivery": delivery,
        "X-Hub-Signature-256": sign(body) if signature is None else signature,
    }


PUSH = {
    "ref": "refs/heads/main",
    "after": "abc123",
    "sender": {"login": "alice"},
    "repository": {"full_name": "acme/app"},
    "commits": [{"added": ["src/a.py"], "modified": ["README.md"], "removed": []}],
}


@pytest.fixture
def app():
    """Create a test FastAPI app with the webhook router."""
    test_app = FastAPI()
    test_app.include_router(router)
    return test_app


@pytest.fixture
def event_queue():
    return asyncio.Queue()


@pytest.fixture
def client(app, event_queue):
    """Configure webhook with a secret and return test client."""
    configure(event_queue, webhook_secret=SECRET)
    return TestClient(app)


class TestWebhookEndpoint:
    def test_valid_webhook(self, client, event_queue):
        body = json.dumps(PUSH).encode()
        response = client.post("/webhook", content=body, headers=headers(body))
        assert response.status_code == 200
        assert not event_queue.empty()

        event = event_queue.get_nowait()
        assert isinstance(event, Event)
        assert event.name == "push"
        assert event.delivery_id == "delivery-1"
        assert event.payload["ref"] == "refs/heads/main"
        assert event.payload["actor"] == "alice"
        assert set(event.payload["changed_files"]) == {"src/a.py", "README.md"}

    def test_pull_request_action(self, client, event_queue):
        payload = {
            "action": "opened",
            "number": 7,
            "pull_request": {"base": {"ref": "main"}, "head": {"ref": "feat", "sha": "f00"}},
            "changed_files": 3,
        }
        body = json.dumps(payload).encode()
        response = client.post(
            "/webhook", content=body, headers=headers(body, event="pull_request")
        )
        assert response.status_code == 200

        event = event_queue.get_nowait()
        assert event.full_type == "pull_request.opened"
        assert event.payload["base_ref"] == "main"
        assert "changed_files" not in event.payload

    def test_invalid_signature(self, client, event_queue):
        body = json.dumps(PUSH).encode()
        response = client.post(
            "/webhook", content=body, headers=headers(body, signature="sha256=bogus")
        )
        assert response.status_code == 401
        assert event_queue.empty()

    def test_missing_headers(self, client):
        response = client.post("/webhook", json=PUSH)
        assert response.status_code == 422

    def test_malformed_body(self, client, event_queue):
        body = b"{not json"
        response = client.post("/webhook", content=body, headers=headers(body))
        assert response.status_code == 400
        assert event_queue.empty()

    def test_non_object_body(self, client, event_queue):
        body = b"[1, 2]"
        response = client.post("/webhook", content=body, headers=headers(body))
        assert response.status_code == 400

    def test_unsigned_when_no_secret(self, app, event_queue):
        configure(event_queue)
        client = TestClient(app)
        body = json.dumps(PUSH).encode()
        response = client.post("/webhook", content=body, headers=headers(body, signature=""))
        assert response.status_code == 200
        assert event_queue.qsize() == 1


class TestRateLimit:
    def test_rate_limit_exceeded(self, app, event_queue):
        configure(event_queue, webhook_secret=SECRET, rate_limit_max=2)
        client = TestClient(app)
        body = json.dumps(PUSH).encode()

        codes = [
            client.post("/webhook", content=body, headers=headers(body, delivery=f"d-{i}")).status_code
            for i in range(3)
        ]
        assert codes == [200, 200, 429]
        assert event_queue.qsize() == 2

    def test_unlimited(self, app, event_queue):
        configure(event_queue, webhook_secret=SECRET, rate_limit_max=0)
        client = TestClient(app)
        body = json.dumps(PUSH).encode()
        for i in range(40):
            response = client.post("/webhook", content=body, headers=headers(body, delivery=f"d-{i}"))
            assert response.status_code == 200


class TestVerifySignature:
    def test_matches(self):
        body = b'{"a": 1}'
        assert verify_signature(SECRET, body, sign(body))

    def test_wrong_secret(self):
        body = b'{"a": 1}'
        assert not verify_signature(SECRET, body, sign(body, "other"))
