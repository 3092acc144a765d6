"""StripeWebhookEvent model: idempotency ledger for provider event deliveries."""

from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import Column, DateTime, Integer, String, Text

from sunroad_billing.db.base import Base


class EventState(str, Enum):
    """Ledger states for a provider event."""

    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class StripeWebhookEvent(Base):
    """One row per Stripe event id. Rows are never deleted."""

    __tablename__ = "stripe_webhook_events"

    event_id = Column(String(255), primary_key=True)
    event_type = Column(String(255), nullable=True)
    state = Column(String(20), nullable=False, default=EventState.PENDING.value, index=True)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
