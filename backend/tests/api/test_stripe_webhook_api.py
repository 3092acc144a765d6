"""Tests for the Stripe webhook HTTP endpoint.

Requests are signed with the test webhook secret exactly as Stripe signs
them, so the real verification path runs on every call.
"""

from unittest.mock import patch

import pytest
from httpx import ASGITransport, AsyncClient

from billing_factories import T1, invoice_payload, sign_payload, stripe_event_body, subscription_payload
from sunroad_billing.api.routes.webhooks import get_dispatcher
from sunroad_billing.core.config import Settings, get_settings
from sunroad_billing.core.exceptions import ProviderError
from sunroad_billing.db.base import get_session_factory
from sunroad_billing.db.models.stripe_event import EventState
from sunroad_billing.main import create_app
from sunroad_billing.services.webhook_dispatcher import build_dispatcher

pytestmark = pytest.mark.integration

URL = "/api/webhooks/stripe"


@pytest.fixture
async def client(engine, stripe_client):
    """API client whose dispatcher talks to the test database and a mocked Stripe."""
    app = create_app()
    app.dependency_overrides[get_dispatcher] = lambda: build_dispatcher(
        get_settings(), get_session_factory(), stripe_client=stripe_client
    )
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _post(client, body: bytes, header: str | None = "sign"):
    headers = {"content-type": "application/json"}
    if header == "sign":
        headers["stripe-signature"] = sign_payload(body)
    elif header is not None:
        headers["stripe-signature"] = header
    return await client.post(URL, content=body, headers=headers)


async def test_get_is_not_allowed(client):
    response = await client.get(URL)

    assert response.status_code == 405


async def test_missing_signature_is_rejected(client, ledger):
    body = stripe_event_body("evt_1", "invoice.paid", invoice_payload())

    response = await _post(client, body, header=None)

    assert response.status_code == 400
    assert "stripe-signature" in response.json()["detail"]
    assert await ledger.get("evt_1") is None


async def test_invalid_signature_is_rejected(client, ledger, stripe_client):
    body = stripe_event_body("evt_1", "invoice.paid", invoice_payload())

    response = await _post(client, body, header=sign_payload(body, secret="whsec_wrong"))

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid signature"
    assert "debug_id" in response.json()
    assert await ledger.get("evt_1") is None
    stripe_client.retrieve_subscription.assert_not_awaited()


async def test_unconfigured_secret_returns_503(client):
    body = stripe_event_body("evt_1", "invoice.paid", invoice_payload())

    with patch(
        "sunroad_billing.api.routes.webhooks.get_settings",
        return_value=Settings(stripe_webhook_secret=""),
    ):
        response = await _post(client, body)

    assert response.status_code == 503


async def test_subscription_event_processed(client, ledger, store):
    body = stripe_event_body("evt_sub", "customer.subscription.created", subscription_payload(), created=T1)

    response = await _post(client, body)

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert (await ledger.get("evt_sub")).state == EventState.DONE.value
    assert (await store.get_subscription("sub_001")).status == "active"


async def test_redelivery_returns_duplicate(client):
    body = stripe_event_body("evt_sub", "customer.subscription.updated", subscription_payload())

    first = await _post(client, body)
    second = await _post(client, body)

    assert first.json() == {"status": "ok"}
    assert second.status_code == 200
    assert second.json() == {"status": "duplicate"}


async def test_unhandled_type_is_acknowledged(client, ledger):
    body = stripe_event_body("evt_other", "customer.created", {"id": "cus_001", "object": "customer"})

    response = await _post(client, body)

    assert response.status_code == 200
    assert (await ledger.get("evt_other")).state == EventState.DONE.value


async def test_livemode_mismatch_is_ignored(client, ledger):
    body = stripe_event_body("evt_live", "customer.subscription.updated", subscription_payload(), livemode=True)

    response = await _post(client, body)

    assert response.status_code == 200
    assert response.json() == {"status": "ignored", "reason": "livemode_mismatch"}
    assert await ledger.get("evt_live") is None


async def test_processing_failure_returns_500(client, ledger):
    body = stripe_event_body("evt_inv", "invoice.paid", invoice_payload(subscription_location=None))

    response = await _post(client, body)

    assert response.status_code == 500
    assert response.json() == {"detail": "Webhook processing failed"}
    assert (await ledger.get("evt_inv")).state == EventState.FAILED.value


async def test_failed_event_is_retried_on_redelivery(client, ledger, store, stripe_client):
    await store.upsert_customer("user_001", "cus_001")
    stripe_client.retrieve_subscription.side_effect = ProviderError("Timed out")
    body = stripe_event_body("evt_inv", "invoice.paid", invoice_payload(subscription_location="parent"))

    assert (await _post(client, body)).status_code == 500

    stripe_client.retrieve_subscription.side_effect = None
    response = await _post(client, body)

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert (await ledger.get("evt_inv")).attempts == 2


async def test_health(client):
    response = await client.get("/api/health")

    assert response.status_code == 200
