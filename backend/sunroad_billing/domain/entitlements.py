"""Entitlement derivation from subscription rows.

Pure domain function -- no side effects, no DB access.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

FREE_TIER = "free"
PAID_TIER = "pro"

_EPOCH = datetime.min.replace(tzinfo=UTC)


@dataclass(frozen=True)
class Entitlement:
    tier: str
    stripe_subscription_id: str | None = None
    stripe_price_id: str | None = None
    status: str | None = None
    valid_until: datetime | None = None


def _period_end_key(subscription) -> datetime:
    end = subscription.current_period_end
    if end is None:
        return _EPOCH
    # SQLite hands back naive datetimes; they are stored as UTC.
    return end if end.tzinfo is not None else end.replace(tzinfo=UTC)


def derive_entitlement(subscriptions: Iterable, entitling_statuses: Iterable[str]) -> Entitlement:
    """Pick the entitling subscription with the latest period end, else the free tier.

    Args:
        subscriptions: objects with stripe_subscription_id, stripe_price_id,
            status and current_period_end attributes (BillingSubscription rows)
        entitling_statuses: statuses that grant the paid tier
    """
    allowed = set(entitling_statuses)
    candidates = [s for s in subscriptions if s.status in allowed]
    if not candidates:
        return Entitlement(tier=FREE_TIER)

    best = max(candidates, key=_period_end_key)
    return Entitlement(
        tier=PAID_TIER,
        stripe_subscription_id=best.stripe_subscription_id,
        stripe_price_id=best.stripe_price_id,
        status=best.status,
        valid_until=best.current_period_end,
    )
