"""Shared test fixtures for all test groups."""

import os
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from billing_factories import WEBHOOK_SECRET, subscription_payload

# Must be set before any Settings instance is cached.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
os.environ.setdefault("STRIPE_EXPECT_LIVEMODE", "false")
os.environ.setdefault("PUBLIC_SITE_URL", "")
os.environ.setdefault("REVALIDATE_SECRET", "")
os.environ.setdefault("BUSINESS_METRICS_ENABLED", "false")

from sunroad_billing.core.config import get_settings  # noqa: E402
from sunroad_billing.db.base import Base, engine_options  # noqa: E402
from sunroad_billing.services.billing_store import BillingStore  # noqa: E402
from sunroad_billing.services.cache_invalidator import CacheInvalidator  # noqa: E402
from sunroad_billing.services.entitlement_service import EntitlementService  # noqa: E402
from sunroad_billing.services.event_ledger import EventLedger  # noqa: E402
from sunroad_billing.services.reconciler import SubscriptionReconciler  # noqa: E402
from sunroad_billing.services.webhook_dispatcher import StripeWebhookDispatcher  # noqa: E402

get_settings.cache_clear()


@pytest.fixture
async def engine(tmp_path) -> AsyncEngine:
    """File-backed SQLite engine (or TEST_DATABASE_URL) with fresh tables.

    Also installs the global session factory so route handlers can use
    get_session_factory() in the same event loop.
    """
    import sunroad_billing.db.base as db_mod

    url = os.getenv("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'billing_test.db'}"
    engine = create_async_engine(url, echo=False, **engine_options(url, 10.0))

    import sunroad_billing.db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    db_mod._engine = engine
    db_mod._session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    db_mod._engine = None
    db_mod._session_factory = None
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def store(session_factory) -> BillingStore:
    return BillingStore(session_factory)


@pytest.fixture
def ledger(session_factory) -> EventLedger:
    return EventLedger(session_factory)


@pytest.fixture
def entitlements(session_factory) -> EntitlementService:
    return EntitlementService(session_factory, ["active", "trialing"])


@pytest.fixture
def stripe_client():
    """Stand-in for StripeBillingClient; tests set retrieve_subscription's return value."""
    client = AsyncMock()
    client.retrieve_subscription = AsyncMock(return_value=subscription_payload())
    return client


@pytest.fixture
def invalidator(store) -> CacheInvalidator:
    """Unconfigured invalidator: always skips, never raises."""
    return CacheInvalidator(store, site_url="", secret="")


@pytest.fixture
def dispatcher(ledger, store, entitlements, stripe_client, invalidator) -> StripeWebhookDispatcher:
    return StripeWebhookDispatcher(
        ledger=ledger,
        store=store,
        reconciler=SubscriptionReconciler(store, stripe_client),
        entitlements=entitlements,
        invalidator=invalidator,
        expect_livemode=False,
    )
