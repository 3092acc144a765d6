"""BillingCustomer model: account to Stripe customer mapping."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Integer, String

from sunroad_billing.db.base import Base


class BillingCustomer(Base):
    __tablename__ = "billing_customers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String(255), unique=True, nullable=False, index=True)
    stripe_customer_id = Column(String(255), nullable=False, index=True)
    email = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
