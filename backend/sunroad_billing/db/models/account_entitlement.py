"""AccountEntitlement model: tier derived from an account's subscriptions."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Integer, String

from sunroad_billing.db.base import Base


class AccountEntitlement(Base):
    __tablename__ = "account_entitlements"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String(255), unique=True, nullable=False, index=True)
    tier = Column(String(50), nullable=False, default="free")

    # Subscription the tier was derived from (null for free)
    stripe_subscription_id = Column(String(255), nullable=True)
    stripe_price_id = Column(String(255), nullable=True)
    status = Column(String(50), nullable=True)
    valid_until = Column(DateTime(timezone=True), nullable=True)

    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
