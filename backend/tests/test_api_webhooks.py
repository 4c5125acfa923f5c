"""Tests for the Resend delivery event webhook."""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from alphamail.api.deps import Services
from alphamail.api.routes.webhooks import recipients, router
from alphamail.services.webhook_verifier import WebhookVerifier
from conftest import FakeStore


@pytest.fixture
def client(services: Services) -> TestClient:
    app = FastAPI()
    app.include_router(router, prefix="/api/v1")
    app.state.services = services
    return TestClient(app)


def test_recipients_accepts_string_or_list() -> None:
    assert recipients({"to": "Sam@X.com"}) == ["sam@x.com"]
    assert recipients({"to": [" a@x.com ", "", 3]}) == ["a@x.com"]
    assert recipients({}) == []


@pytest.mark.parametrize(("event_type", "status"), [("email.bounced", "bounced"), ("email.complained", "complained")])
def test_bad_delivery_marks_profile(
    client: TestClient, store: FakeStore, event_type: str, status: str
) -> None:
    store.add_profile("sam@x.com", "Sam")

    response = client.post(
        "/api/v1/webhooks/resend-events",
        json={"type": event_type, "data": {"email_id": "re_1", "to": ["Sam@x.com"]}},
    )

    assert response.json() == {"success": True, "action": status}
    assert store.profiles[0]["email_status"] == status


@pytest.mark.parametrize("event_type", ["email.delivery_delayed", "email.failed"])
def test_delivery_problems_are_logged(client: TestClient, event_type: str) -> None:
    response = client.post(
        "/api/v1/webhooks/resend-events", json={"type": event_type, "data": {"email_id": "re_1"}}
    )

    assert response.json() == {"success": True, "action": "logged"}


def test_other_events_are_ignored(client: TestClient) -> None:
    response = client.post(
        "/api/v1/webhooks/resend-events", json={"type": "email.opened", "data": {}}
    )

    assert response.json() == {"success": True, "action": "ignored"}


def test_invalid_payload(client: TestClient) -> None:
    response = client.post(
        "/api/v1/webhooks/resend-events", json={"type": "email.bounced", "data": "nope"}
    )

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Invalid payload"}


def test_store_failure_is_internal_error(client: TestClient, services: Services) -> None:
    async def broken(email: str, status: str) -> int:
        raise RuntimeError("db down")

    services.store.mark_email_status = broken  # type: ignore[method-assign]

    response = client.post(
        "/api/v1/webhooks/resend-events",
        json={"type": "email.complained", "data": {"to": ["sam@x.com"]}},
    )

    assert response.status_code == 500
    assert response.json() == {"success": False, "error": "Internal server error"}


def test_unsigned_rejected_when_secret_required(services: Services) -> None:
    services.verifier = WebhookVerifier(lambda endpoint: "", allow_unsigned=False)
    app = FastAPI()
    app.include_router(router, prefix="/api/v1")
    app.state.services = services

    response = TestClient(app).post(
        "/api/v1/webhooks/resend-events", json={"type": "email.bounced", "data": {}}
    )

    assert response.status_code == 401
