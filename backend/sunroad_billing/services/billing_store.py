"""BillingStore: persistence for billing customers and subscriptions.

Every write is a single upsert keyed on its natural identifier. Subscription
writes carry the provider event's creation time and only apply when it is
not older than the stored watermark, which is what keeps out-of-order
deliveries from rolling a row back. Within one second (Stripe's timestamp
resolution) an ended subscription only yields to another ended snapshot.
"""

from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sunroad_billing.db.dialect import upsert_insert
from sunroad_billing.db.models.artist_profile import ArtistProfile
from sunroad_billing.db.models.billing_customer import BillingCustomer
from sunroad_billing.db.models.billing_subscription import BillingSubscription

logger = structlog.get_logger(__name__)


def _newer_or_same_second(excluded):
    stored = BillingSubscription
    return or_(
        stored.event_created_at < excluded.event_created_at,
        and_(
            stored.event_created_at == excluded.event_created_at,
            or_(stored.ended_at.is_(None), excluded.ended_at.is_not(None)),
        ),
    )


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Normalized subscription state as reported by one provider event."""

    stripe_subscription_id: str
    account_id: str
    stripe_customer_id: str
    stripe_price_id: str
    status: str
    cancel_at_period_end: bool
    current_period_start: datetime | None
    current_period_end: datetime | None
    ended_at: datetime | None
    event_created_at: datetime


class BillingStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def upsert_customer(self, account_id: str, stripe_customer_id: str, email: str | None = None) -> None:
        """Insert or update the account's customer mapping. A missing email keeps the stored one."""
        now = datetime.now(UTC)
        async with self.session_factory() as session:
            stmt = upsert_insert(session, BillingCustomer).values(
                account_id=account_id,
                stripe_customer_id=stripe_customer_id,
                email=email,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[BillingCustomer.account_id],
                set_={
                    "stripe_customer_id": stmt.excluded.stripe_customer_id,
                    "email": func.coalesce(stmt.excluded.email, BillingCustomer.email),
                    "updated_at": now,
                },
            )
            await session.execute(stmt)
            await session.commit()

        logger.info("billing_customer_upserted", account_id=account_id, customer_id=stripe_customer_id)

    async def upsert_subscription(self, snapshot: SubscriptionSnapshot) -> bool:
        """Write ``snapshot`` unless the stored row came from a newer event.

        Returns True when the row was inserted or updated, False when the
        write was stale and ignored.
        """
        now = datetime.now(UTC)
        values = {
            "stripe_subscription_id": snapshot.stripe_subscription_id,
            "account_id": snapshot.account_id,
            "stripe_customer_id": snapshot.stripe_customer_id,
            "stripe_price_id": snapshot.stripe_price_id,
            "status": snapshot.status,
            "cancel_at_period_end": snapshot.cancel_at_period_end,
            "current_period_start": snapshot.current_period_start,
            "current_period_end": snapshot.current_period_end,
            "ended_at": snapshot.ended_at,
            "event_created_at": snapshot.event_created_at,
        }
        async with self.session_factory() as session:
            stmt = upsert_insert(session, BillingSubscription).values(**values, created_at=now, updated_at=now)
            updatable = {key: stmt.excluded[key] for key in values if key != "stripe_subscription_id"}
            stmt = stmt.on_conflict_do_update(
                index_elements=[BillingSubscription.stripe_subscription_id],
                set_={**updatable, "updated_at": now},
                where=_newer_or_same_second(stmt.excluded),
            ).returning(BillingSubscription.id)

            result = await session.execute(stmt)
            applied = result.scalar_one_or_none() is not None
            await session.commit()

        if applied:
            logger.info(
                "billing_subscription_upserted",
                subscription_id=snapshot.stripe_subscription_id,
                status=snapshot.status,
                event_created_at=snapshot.event_created_at.isoformat(),
            )
        else:
            logger.info(
                "subscription_upsert_stale_ignored",
                subscription_id=snapshot.stripe_subscription_id,
                event_created_at=snapshot.event_created_at.isoformat(),
            )
        return applied

    async def find_account_by_customer(self, stripe_customer_id: str) -> str | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BillingCustomer.account_id)
                .where(BillingCustomer.stripe_customer_id == stripe_customer_id)
                .order_by(BillingCustomer.updated_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def get_customer(self, account_id: str) -> BillingCustomer | None:
        async with self.session_factory() as session:
            result = await session.execute(select(BillingCustomer).where(BillingCustomer.account_id == account_id))
            return result.scalar_one_or_none()

    async def get_subscription(self, stripe_subscription_id: str) -> BillingSubscription | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BillingSubscription).where(BillingSubscription.stripe_subscription_id == stripe_subscription_id)
            )
            return result.scalar_one_or_none()

    async def list_subscriptions(self, account_id: str) -> list[BillingSubscription]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BillingSubscription).where(BillingSubscription.account_id == account_id)
            )
            return list(result.scalars().all())

    async def find_public_handle(self, account_id: str) -> str | None:
        async with self.session_factory() as session:
            result = await session.execute(select(ArtistProfile.handle).where(ArtistProfile.account_id == account_id))
            return result.scalar_one_or_none()
