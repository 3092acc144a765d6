"""Webhook signature verification and live/test mode guard."""

from typing import Any

import stripe
import structlog
from pydantic import BaseModel, ConfigDict

from sunroad_billing.core.exceptions import InvalidWebhookError

logger = structlog.get_logger(__name__)


class VerifiedEvent(BaseModel):
    """A Stripe event whose signature has been checked against the raw body."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    created: int
    livemode: bool = False
    api_version: str | None = None
    data_object: dict[str, Any]


def verify_event(payload: bytes, sig_header: str, secret: str, tolerance: int = 300) -> VerifiedEvent:
    """Verify the Stripe signature over the exact request bytes and parse the event.

    Raises:
        InvalidWebhookError: bad signature, stale timestamp, malformed JSON,
            or an event without id/type.
    """
    try:
        event = stripe.Webhook.construct_event(payload, sig_header, secret, tolerance=tolerance)
    except ValueError as e:
        raise InvalidWebhookError("Invalid payload") from e
    except stripe.SignatureVerificationError as e:
        raise InvalidWebhookError("Invalid signature") from e

    # StripeObject is not a Mapping; everything past this point works on plain dicts.
    raw = event.to_dict()

    event_id = raw.get("id")
    event_type = raw.get("type")
    if not event_id or not event_type:
        raise InvalidWebhookError("Event is missing id or type")

    data = raw.get("data") or {}
    data_object = data.get("object") or {}

    return VerifiedEvent(
        id=event_id,
        type=event_type,
        created=int(raw.get("created") or 0),
        livemode=bool(raw.get("livemode", False)),
        api_version=raw.get("api_version"),
        data_object=data_object,
    )


def livemode_matches(event: VerifiedEvent, expect_livemode: bool) -> bool:
    """True when the event was sent from the Stripe mode this deployment expects."""
    if event.livemode == expect_livemode:
        return True
    logger.warning(
        "stripe_livemode_mismatch",
        event_id=event.id,
        event_type=event.type,
        event_livemode=event.livemode,
        expected=expect_livemode,
    )
    return False
