"""Tests for entitlement derivation."""

from datetime import UTC, datetime
from types import SimpleNamespace

import pytest

from sunroad_billing.domain.entitlements import FREE_TIER, PAID_TIER, derive_entitlement

pytestmark = pytest.mark.unit

ENTITLING = ["active", "trialing"]


def _sub(sub_id, status, period_end=None, price="price_pro"):
    return SimpleNamespace(
        stripe_subscription_id=sub_id,
        stripe_price_id=price,
        status=status,
        current_period_end=period_end,
    )


def test_no_subscriptions_is_free():
    assert derive_entitlement([], ENTITLING).tier == FREE_TIER


def test_active_subscription_grants_paid_tier():
    end = datetime(2026, 2, 1, tzinfo=UTC)
    result = derive_entitlement([_sub("sub_1", "active", end)], ENTITLING)

    assert result.tier == PAID_TIER
    assert result.stripe_subscription_id == "sub_1"
    assert result.valid_until == end


@pytest.mark.parametrize("status", ["canceled", "past_due", "unpaid", "incomplete", "incomplete_expired", "paused"])
def test_non_entitling_statuses_are_free(status):
    assert derive_entitlement([_sub("sub_1", status)], ENTITLING).tier == FREE_TIER


def test_latest_period_end_wins_among_entitling():
    older = _sub("sub_old", "active", datetime(2026, 1, 15, tzinfo=UTC))
    newer = _sub("sub_new", "trialing", datetime(2026, 3, 1, tzinfo=UTC))
    canceled = _sub("sub_gone", "canceled", datetime(2027, 1, 1, tzinfo=UTC))

    result = derive_entitlement([older, canceled, newer], ENTITLING)

    assert result.stripe_subscription_id == "sub_new"
    assert result.status == "trialing"


def test_naive_and_missing_period_ends_are_comparable():
    naive_end = _sub("sub_naive", "active", datetime(2026, 5, 1))
    no_end = _sub("sub_none", "active", None)

    result = derive_entitlement([no_end, naive_end], ENTITLING)

    assert result.stripe_subscription_id == "sub_naive"


def test_entitling_statuses_are_configurable():
    result = derive_entitlement([_sub("sub_1", "past_due")], ["active", "past_due"])
    assert result.tier == PAID_TIER
