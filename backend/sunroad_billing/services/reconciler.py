"""SubscriptionReconciler: turn provider subscription objects into stored rows."""

from collections.abc import Mapping
from datetime import datetime
from typing import Any

import structlog

from sunroad_billing.core.exceptions import AccountResolutionError, ExtractionError
from sunroad_billing.domain.extraction import (
    as_id,
    extract_period_seconds,
    first_price_id,
    to_datetime,
)
from sunroad_billing.integrations.stripe_client import StripeBillingClient
from sunroad_billing.services.billing_store import BillingStore, SubscriptionSnapshot

logger = structlog.get_logger(__name__)


class SubscriptionReconciler:
    """Normalizes subscriptions and upserts them through the watermark-guarded store.

    Invoice-derived events carry partial subscription data, so those paths
    re-fetch the subscription from Stripe and store what the provider
    reports now rather than what the webhook embedded.
    """

    def __init__(self, store: BillingStore, stripe_client: StripeBillingClient):
        self.store = store
        self.stripe_client = stripe_client

    async def resolve_account(
        self,
        metadata_account_id: str | None,
        customer_id: str | None,
        *,
        event_id: str | None = None,
        object_id: str | None = None,
    ) -> str:
        """Owning account: explicit metadata first, then the customer mapping."""
        if metadata_account_id:
            return metadata_account_id
        if customer_id:
            account_id = await self.store.find_account_by_customer(customer_id)
            if account_id:
                return account_id
        raise AccountResolutionError(event_id, object_id, customer_id)

    def snapshot(
        self,
        subscription: Mapping[str, Any],
        *,
        account_id: str,
        customer_id: str | None,
        event_created_at: datetime,
        event_id: str | None = None,
    ) -> SubscriptionSnapshot:
        subscription_id = subscription.get("id")
        price_id = first_price_id(subscription)
        required = (("subscription.id", subscription_id), ("items.data[0].price", price_id), ("customer", customer_id))
        missing = [name for name, value in required if not value]
        if missing:
            raise ExtractionError(event_id, missing, context={"subscription_id": subscription_id})

        return SubscriptionSnapshot(
            stripe_subscription_id=subscription_id,
            account_id=account_id,
            stripe_customer_id=customer_id,
            stripe_price_id=price_id,
            status=subscription.get("status") or "incomplete",
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end") or False),
            current_period_start=to_datetime(extract_period_seconds(subscription, "current_period_start")),
            current_period_end=to_datetime(extract_period_seconds(subscription, "current_period_end")),
            ended_at=to_datetime(subscription.get("ended_at")),
            event_created_at=event_created_at,
        )

    async def apply_payload(
        self,
        subscription: Mapping[str, Any],
        *,
        account_id: str,
        customer_id: str | None,
        event_created_at: datetime,
        event_id: str | None = None,
    ) -> bool:
        """Upsert the subscription exactly as embedded in the event."""
        snapshot = self.snapshot(
            subscription,
            account_id=account_id,
            customer_id=customer_id or as_id(subscription.get("customer")),
            event_created_at=event_created_at,
            event_id=event_id,
        )
        return await self.store.upsert_subscription(snapshot)

    async def refetch_and_apply(
        self,
        subscription_id: str,
        *,
        account_id: str,
        customer_id: str | None,
        event_created_at: datetime,
        event_id: str | None = None,
    ) -> bool:
        """Re-read the subscription from Stripe and upsert that state."""
        subscription = await self.stripe_client.retrieve_subscription(subscription_id)
        logger.debug("stripe_subscription_refetched", subscription_id=subscription_id, event_id=event_id)
        return await self.apply_payload(
            subscription,
            account_id=account_id,
            customer_id=customer_id,
            event_created_at=event_created_at,
            event_id=event_id,
        )
