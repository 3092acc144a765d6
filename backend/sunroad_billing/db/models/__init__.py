"""Re-export all models so Base.metadata sees them."""

from sunroad_billing.db.models.account_entitlement import AccountEntitlement
from sunroad_billing.db.models.artist_profile import ArtistProfile
from sunroad_billing.db.models.billing_customer import BillingCustomer
from sunroad_billing.db.models.billing_subscription import BillingSubscription
from sunroad_billing.db.models.stripe_event import EventState, StripeWebhookEvent

__all__ = [
    "AccountEntitlement",
    "ArtistProfile",
    "BillingCustomer",
    "BillingSubscription",
    "EventState",
    "StripeWebhookEvent",
]
