"""EventLedger: idempotency ledger for Stripe webhook deliveries.

State machine per event id:

    (absent) --begin--> pending --mark_done--> done
                        pending --mark_failed--> failed --begin--> pending

``begin`` is a single INSERT ... ON CONFLICT statement so that concurrent
deliveries of the same event can never both claim it.
"""

from datetime import UTC, datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sunroad_billing.db.dialect import upsert_insert
from sunroad_billing.db.models.stripe_event import EventState, StripeWebhookEvent

logger = structlog.get_logger(__name__)

MAX_ERROR_LENGTH = 2000


class EventLedger:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def begin(self, event_id: str, event_type: str | None = None) -> bool:
        """Claim an event for processing.

        Returns True when this call created the record or re-claimed a failed
        one. Returns False when the event is pending elsewhere or already done.
        """
        now = datetime.now(UTC)
        async with self.session_factory() as session:
            stmt = upsert_insert(session, StripeWebhookEvent).values(
                event_id=event_id,
                event_type=event_type,
                state=EventState.PENDING.value,
                attempts=1,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[StripeWebhookEvent.event_id],
                set_={
                    "state": EventState.PENDING.value,
                    "error": None,
                    "attempts": StripeWebhookEvent.attempts + 1,
                    "updated_at": now,
                },
                where=StripeWebhookEvent.state == EventState.FAILED.value,
            ).returning(StripeWebhookEvent.event_id, StripeWebhookEvent.attempts)

            result = await session.execute(stmt)
            row = result.one_or_none()
            await session.commit()

        if row is None:
            return False
        if row.attempts > 1:
            logger.info("stripe_event_retry_claimed", event_id=event_id, attempts=row.attempts)
        return True

    async def mark_done(self, event_id: str) -> bool:
        return await self._finish(event_id, EventState.DONE, None)

    async def mark_failed(self, event_id: str, error: str) -> bool:
        return await self._finish(event_id, EventState.FAILED, error[:MAX_ERROR_LENGTH])

    async def _finish(self, event_id: str, state: EventState, error: str | None) -> bool:
        """Move a pending record to its final state. False if it was not pending."""
        async with self.session_factory() as session:
            result = await session.execute(
                update(StripeWebhookEvent)
                .where(
                    StripeWebhookEvent.event_id == event_id,
                    StripeWebhookEvent.state == EventState.PENDING.value,
                )
                .values(state=state.value, error=error, updated_at=datetime.now(UTC))
            )
            await session.commit()

        if result.rowcount == 0:
            logger.warning("stripe_event_not_pending", event_id=event_id, target_state=state.value)
            return False
        return True

    async def get(self, event_id: str) -> StripeWebhookEvent | None:
        async with self.session_factory() as session:
            result = await session.execute(select(StripeWebhookEvent).where(StripeWebhookEvent.event_id == event_id))
            return result.scalar_one_or_none()

    async def list_by_state(self, state: EventState, limit: int = 100) -> list[StripeWebhookEvent]:
        """Oldest-first records in ``state``; used to find stuck or failing events."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(StripeWebhookEvent)
                .where(StripeWebhookEvent.state == state.value)
                .order_by(StripeWebhookEvent.updated_at)
                .limit(limit)
            )
            return list(result.scalars().all())
