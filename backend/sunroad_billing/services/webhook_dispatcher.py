"""StripeWebhookDispatcher: the single path from a verified event to stored billing state.

Per event: mode guard -> ledger claim -> route by type -> ledger finalize.
Every financial-path error lands here and becomes a failed ledger record
plus a FAILED outcome (HTTP 500, so Stripe redelivers). Cache revalidation
and metrics are best-effort and never change the outcome.
"""

from collections.abc import Awaitable, Callable
from enum import Enum

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sunroad_billing.core.config import Settings
from sunroad_billing.core.exceptions import AccountResolutionError, ExtractionError, ProviderError
from sunroad_billing.domain.extraction import (
    ExtractionFailure,
    as_id,
    checkout_account_id,
    dig,
    extract_invoice_ids,
    invoice_metadata_account_id,
    metadata_account_id,
    to_datetime,
)
from sunroad_billing.integrations.stripe_client import StripeBillingClient
from sunroad_billing.metrics.cloudwatch import emit_business_event
from sunroad_billing.services.billing_store import BillingStore
from sunroad_billing.services.cache_invalidator import CacheInvalidator
from sunroad_billing.services.entitlement_service import EntitlementService
from sunroad_billing.services.event_ledger import EventLedger
from sunroad_billing.services.event_verifier import VerifiedEvent, livemode_matches
from sunroad_billing.services.reconciler import SubscriptionReconciler

logger = structlog.get_logger(__name__)


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    LIVEMODE_MISMATCH = "livemode_mismatch"
    FAILED = "failed"


Handler = Callable[[VerifiedEvent], Awaitable[None]]


class StripeWebhookDispatcher:
    def __init__(
        self,
        ledger: EventLedger,
        store: BillingStore,
        reconciler: SubscriptionReconciler,
        entitlements: EntitlementService,
        invalidator: CacheInvalidator,
        expect_livemode: bool = False,
        debug_payloads: bool = False,
    ):
        self.ledger = ledger
        self.store = store
        self.reconciler = reconciler
        self.entitlements = entitlements
        self.invalidator = invalidator
        self.expect_livemode = expect_livemode
        self.debug_payloads = debug_payloads

        self.handlers: dict[str, Handler] = {
            "checkout.session.completed": self._on_checkout_completed,
            "customer.subscription.created": self._on_subscription_changed,
            "customer.subscription.updated": self._on_subscription_changed,
            "customer.subscription.deleted": self._on_subscription_changed,
            "invoice.paid": self._on_invoice_paid,
            "invoice.payment_succeeded": self._on_invoice_paid,
            "invoice.payment_failed": self._on_invoice_payment_failed,
        }

    async def dispatch(self, event: VerifiedEvent) -> WebhookOutcome:
        if not livemode_matches(event, self.expect_livemode):
            return WebhookOutcome.LIVEMODE_MISMATCH

        log = logger.bind(event_id=event.id, event_type=event.type)
        log.info("stripe_webhook_received", created=event.created, livemode=event.livemode)
        if self.debug_payloads:
            log.debug("stripe_webhook_payload", payload=event.data_object)

        try:
            claimed = await self.ledger.begin(event.id, event.type)
        except Exception as e:
            log.error("stripe_event_begin_failed", error=str(e), error_type=type(e).__name__, exc_info=True)
            return WebhookOutcome.FAILED

        if not claimed:
            log.info("stripe_duplicate_event_ignored")
            return WebhookOutcome.DUPLICATE

        try:
            handler = self.handlers.get(event.type)
            if handler is None:
                # Acknowledge so unknown types never sit in Stripe's retry queue.
                log.info("stripe_event_unhandled")
            else:
                await handler(event)
            await self.ledger.mark_done(event.id)
        except Exception as e:
            log.error(
                "stripe_webhook_processing_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            await self._mark_failed(event, e)
            return WebhookOutcome.FAILED

        log.info("stripe_webhook_processed")
        return WebhookOutcome.PROCESSED

    async def _mark_failed(self, event: VerifiedEvent, error: Exception) -> None:
        try:
            await self.ledger.mark_failed(event.id, f"{type(error).__name__}: {error}")
        except Exception as e:
            # The record stays pending; Stripe's redelivery will find it in flight.
            logger.error("stripe_event_mark_failed_error", event_id=event.id, error=str(e), exc_info=True)

    # ── Handlers ────────────────────────────────────────────────────

    async def _on_checkout_completed(self, event: VerifiedEvent) -> None:
        session = event.data_object
        account_id = checkout_account_id(session)
        customer_id = as_id(session.get("customer"))
        if not account_id or not customer_id:
            missing = [name for name, value in (("auth_user_id", account_id), ("customer", customer_id)) if not value]
            raise ExtractionError(event.id, missing, context={"session_id": session.get("id")})

        await self.store.upsert_customer(account_id, customer_id, dig(session, ("customer_details", "email")))

        # Store the subscription now instead of waiting for its own event,
        # so the account is entitled as soon as checkout returns.
        subscription_id = as_id(session.get("subscription"))
        if subscription_id:
            try:
                await self.reconciler.refetch_and_apply(
                    subscription_id,
                    account_id=account_id,
                    customer_id=customer_id,
                    event_created_at=to_datetime(event.created),
                    event_id=event.id,
                )
            except (ProviderError, ExtractionError) as e:
                logger.warning(
                    "checkout_subscription_prefetch_failed",
                    event_id=event.id,
                    subscription_id=subscription_id,
                    error=str(e),
                )

        await self.entitlements.sync(account_id)
        await self.invalidator.invalidate_account(account_id)
        await emit_business_event("checkout_completed", event.type)

    async def _on_subscription_changed(self, event: VerifiedEvent) -> None:
        subscription = event.data_object
        subscription_id = subscription.get("id")
        customer_id = as_id(subscription.get("customer"))
        if not customer_id:
            raise ExtractionError(event.id, ["customer"], context={"subscription_id": subscription_id})

        account_id = await self.reconciler.resolve_account(
            metadata_account_id(subscription),
            customer_id,
            event_id=event.id,
            object_id=subscription_id,
        )
        snapshot = self.reconciler.snapshot(
            subscription,
            account_id=account_id,
            customer_id=customer_id,
            event_created_at=to_datetime(event.created),
            event_id=event.id,
        )

        await self.store.upsert_customer(account_id, customer_id)
        await self.store.upsert_subscription(snapshot)
        await self.entitlements.sync(account_id)
        await self.invalidator.invalidate_account(account_id)
        await emit_business_event("subscription_synced", event.type)

    async def _on_invoice_paid(self, event: VerifiedEvent) -> None:
        invoice = event.data_object
        ids = extract_invoice_ids(invoice, event.id)
        if isinstance(ids, ExtractionFailure):
            logger.error(
                "invoice_ids_missing",
                event_id=event.id,
                invoice_id=ids.invoice_id,
                missing=list(ids.missing),
                searched=list(ids.searched),
                keys_present=ids.keys_present,
            )
            raise ids.to_error()

        logger.debug("invoice_subscription_resolved", event_id=event.id, source=ids.subscription_source)

        account_id = await self.reconciler.resolve_account(
            invoice_metadata_account_id(invoice),
            ids.customer_id,
            event_id=event.id,
            object_id=invoice.get("id"),
        )
        await self.reconciler.refetch_and_apply(
            ids.subscription_id,
            account_id=account_id,
            customer_id=ids.customer_id,
            event_created_at=to_datetime(event.created),
            event_id=event.id,
        )
        await self.entitlements.sync(account_id)
        await self.invalidator.invalidate_account(account_id)
        await emit_business_event("invoice_paid", event.type)

    async def _on_invoice_payment_failed(self, event: VerifiedEvent) -> None:
        invoice = event.data_object
        customer_id = as_id(invoice.get("customer"))
        if not customer_id:
            raise ExtractionError(event.id, ["customer"], context={"invoice_id": invoice.get("id")})

        # Customer lookup only: the subscription event for the status change follows separately.
        account_id = await self.store.find_account_by_customer(customer_id)
        if not account_id:
            raise AccountResolutionError(event.id, invoice.get("id"), customer_id)

        try:
            await self.entitlements.sync(account_id)
        except Exception as e:
            logger.error("payment_failed_entitlement_sync_failed", event_id=event.id, error=str(e), exc_info=True)

        await self.invalidator.invalidate_account(account_id)
        await emit_business_event("payment_failed", event.type)


def build_dispatcher(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    stripe_client: StripeBillingClient | None = None,
) -> StripeWebhookDispatcher:
    """Wire the dispatcher and its collaborators from settings."""
    store = BillingStore(session_factory)
    return StripeWebhookDispatcher(
        ledger=EventLedger(session_factory),
        store=store,
        reconciler=SubscriptionReconciler(store, stripe_client or StripeBillingClient(settings.stripe_timeout_seconds)),
        entitlements=EntitlementService(session_factory, settings.entitling_statuses),
        invalidator=CacheInvalidator(
            store,
            site_url=settings.public_site_url,
            secret=settings.revalidate_secret,
            timeout_seconds=settings.revalidate_timeout_seconds,
        ),
        expect_livemode=settings.stripe_expect_livemode,
        debug_payloads=settings.stripe_debug,
    )
