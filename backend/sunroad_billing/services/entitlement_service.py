"""EntitlementService: recompute and persist an account's tier after billing changes."""

from collections.abc import Sequence
from datetime import UTC, datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sunroad_billing.db.dialect import upsert_insert
from sunroad_billing.db.models.account_entitlement import AccountEntitlement
from sunroad_billing.db.models.billing_subscription import BillingSubscription
from sunroad_billing.domain.entitlements import FREE_TIER, Entitlement, derive_entitlement

logger = structlog.get_logger(__name__)


class EntitlementService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], entitling_statuses: list[str]):
        self.session_factory = session_factory
        self.entitling_statuses = entitling_statuses

    async def sync(self, account_id: str) -> Entitlement:
        """Derive the tier from the account's subscription rows and store it.

        The entitlement row is write-locked before the subscriptions are read,
        so concurrent syncs for one account run one after another and the last
        one to commit has read the latest committed subscriptions.

        Errors propagate: a failed sync must fail the event so it is retried.
        """
        async with self.session_factory() as session:
            now = datetime.now(UTC)
            await self._lock_account(session, account_id, now)

            subscriptions = await self._load_subscriptions(session, account_id)
            entitlement = derive_entitlement(subscriptions, self.entitling_statuses)

            await session.execute(
                update(AccountEntitlement)
                .where(AccountEntitlement.account_id == account_id)
                .values(
                    tier=entitlement.tier,
                    stripe_subscription_id=entitlement.stripe_subscription_id,
                    stripe_price_id=entitlement.stripe_price_id,
                    status=entitlement.status,
                    valid_until=entitlement.valid_until,
                    updated_at=now,
                )
            )
            await session.commit()

        logger.info(
            "entitlement_synced",
            account_id=account_id,
            tier=entitlement.tier,
            subscription_id=entitlement.stripe_subscription_id,
        )
        return entitlement

    async def _lock_account(self, session: AsyncSession, account_id: str, now: datetime) -> None:
        # Postgres holds the row lock until commit; SQLite holds its write lock.
        stmt = upsert_insert(session, AccountEntitlement).values(account_id=account_id, tier=FREE_TIER, updated_at=now)
        stmt = stmt.on_conflict_do_update(index_elements=[AccountEntitlement.account_id], set_={"updated_at": now})
        await session.execute(stmt)

    async def _load_subscriptions(self, session: AsyncSession, account_id: str) -> Sequence[BillingSubscription]:
        result = await session.execute(select(BillingSubscription).where(BillingSubscription.account_id == account_id))
        return result.scalars().all()

    async def get(self, account_id: str) -> AccountEntitlement | None:
        async with self.session_factory() as session:
            result = await session.execute(select(AccountEntitlement).where(AccountEntitlement.account_id == account_id))
            return result.scalar_one_or_none()
