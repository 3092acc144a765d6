"""Tests for webhook signature verification and the mode guard."""

import time

import pytest

from billing_factories import WEBHOOK_SECRET, invoice_payload, make_event, sign_payload, stripe_event_body
from sunroad_billing.core.exceptions import InvalidWebhookError
from sunroad_billing.domain.extraction import InvoiceIds, extract_invoice_ids
from sunroad_billing.services.event_verifier import livemode_matches, verify_event

pytestmark = pytest.mark.unit


def test_valid_signature_parses_event():
    body = stripe_event_body("evt_1", "invoice.paid", invoice_payload(), created=1767225600)

    event = verify_event(body, sign_payload(body), WEBHOOK_SECRET)

    assert event.id == "evt_1"
    assert event.type == "invoice.paid"
    assert event.created == 1767225600
    assert event.livemode is False
    assert event.api_version == "2024-06-20"
    assert event.data_object["id"] == "in_001"


def test_verified_payload_is_plain_data():
    """Nested objects come back as dicts so the extraction helpers can walk them."""
    invoice = invoice_payload(subscription_location="line", customer={"id": "cus_exp", "object": "customer"})
    body = stripe_event_body("evt_1", "invoice.paid", invoice)

    event = verify_event(body, sign_payload(body), WEBHOOK_SECRET)

    assert type(event.data_object) is dict
    assert type(event.data_object["customer"]) is dict
    assert type(event.data_object["lines"]["data"][0]) is dict
    assert extract_invoice_ids(event.data_object, event.id) == InvoiceIds(
        subscription_id="sub_001",
        customer_id="cus_exp",
        subscription_source="lines.data[0].parent.subscription_item_details.subscription",
    )


def test_wrong_secret_is_rejected():
    body = stripe_event_body("evt_1", "invoice.paid", invoice_payload())

    with pytest.raises(InvalidWebhookError, match="Invalid signature"):
        verify_event(body, sign_payload(body, secret="whsec_other"), WEBHOOK_SECRET)


def test_tampered_body_is_rejected():
    body = stripe_event_body("evt_1", "invoice.paid", invoice_payload())
    header = sign_payload(body)

    with pytest.raises(InvalidWebhookError):
        verify_event(body.replace(b"in_001", b"in_999"), header, WEBHOOK_SECRET)


def test_stale_timestamp_is_rejected():
    body = stripe_event_body("evt_1", "invoice.paid", invoice_payload())
    header = sign_payload(body, timestamp=int(time.time()) - 3600)

    with pytest.raises(InvalidWebhookError, match="Invalid signature"):
        verify_event(body, header, WEBHOOK_SECRET, tolerance=300)


def test_malformed_header_is_rejected():
    body = stripe_event_body("evt_1", "invoice.paid", invoice_payload())

    with pytest.raises(InvalidWebhookError):
        verify_event(body, "not-a-signature", WEBHOOK_SECRET)


def test_signed_non_json_body_is_rejected():
    body = b"this is not json"

    with pytest.raises(InvalidWebhookError, match="Invalid payload"):
        verify_event(body, sign_payload(body), WEBHOOK_SECRET)


def test_livemode_guard():
    test_event = make_event("evt_1", "invoice.paid", {}, livemode=False)
    live_event = make_event("evt_2", "invoice.paid", {}, livemode=True)

    assert livemode_matches(test_event, expect_livemode=False) is True
    assert livemode_matches(live_event, expect_livemode=False) is False
    assert livemode_matches(live_event, expect_livemode=True) is True
