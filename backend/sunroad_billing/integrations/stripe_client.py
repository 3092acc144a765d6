"""Stripe API client for authoritative subscription reads."""

import asyncio
from typing import Any

import stripe
import structlog

from sunroad_billing.core.config import get_settings
from sunroad_billing.core.exceptions import ProviderError

logger = structlog.get_logger(__name__)

SUBSCRIPTION_EXPAND = ["items.data.price"]


def configure_stripe() -> None:
    """Configure the stripe module with the secret key and API version."""
    settings = get_settings()
    stripe.api_key = settings.stripe_secret_key
    if settings.stripe_api_version:
        stripe.api_version = settings.stripe_api_version
    # Webhook redelivery is the retry mechanism; a single bounded attempt here.
    stripe.max_network_retries = 0


class StripeBillingClient:
    """Fetches subscription objects from Stripe with a hard timeout."""

    def __init__(self, timeout_seconds: float | None = None):
        settings = get_settings()
        self.timeout_seconds = timeout_seconds or settings.stripe_timeout_seconds

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        """Return the current subscription, price expanded, as a plain dict.

        Raises:
            ProviderError: Stripe returned an error or did not answer in time.
        """
        try:
            subscription = await asyncio.wait_for(
                stripe.Subscription.retrieve_async(subscription_id, expand=SUBSCRIPTION_EXPAND),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as e:
            logger.error("stripe_subscription_retrieve_timeout", subscription_id=subscription_id)
            raise ProviderError(
                f"Timed out after {self.timeout_seconds}s retrieving subscription {subscription_id}"
            ) from e
        except stripe.StripeError as e:
            logger.error(
                "stripe_subscription_retrieve_failed",
                subscription_id=subscription_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ProviderError(f"Stripe error retrieving subscription {subscription_id}: {e}") from e

        return subscription.to_dict()
